"""Logging utilities with colored output via Rich.

Every line is redacted before it is printed. Fields passed as keyword
arguments are appended as JSON; in production mode each record is a single
JSON object instead.
"""

from __future__ import annotations

import contextvars
import json
import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape

from arnold.secrets import redact

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False
_json_mode = False

LogSink = Callable[[str, str, str | None, dict[str, Any]], None]
_sink: LogSink | None = None
_in_sink = contextvars.ContextVar("arnold_log_in_sink", default=False)

_task_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("arnold_task_id", default=None)


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def set_json_mode(enabled: bool) -> None:
    global _json_mode
    _json_mode = enabled


def set_sink(sink: LogSink | None) -> None:
    """Also hand every record to *sink* as ``(level, message, task_id, fields)``."""
    global _sink
    _sink = sink


def current_task_id() -> str | None:
    return _task_id.get()


@contextmanager
def task_context(task_id: str | None) -> Iterator[None]:
    """Associate log records emitted inside the block with *task_id*."""
    token = _task_id.set(task_id)
    try:
        yield
    finally:
        _task_id.reset(token)


def _format_fields(fields: dict[str, Any]) -> str:
    if not fields:
        return ""
    return " " + json.dumps(fields, default=str, ensure_ascii=False)


def _emit(level: str, tag: str, msg: str, fields: dict[str, Any], *, stderr: bool = False) -> None:
    msg = redact(msg)
    safe_fields = {k: redact(v) if isinstance(v, str) else v for k, v in fields.items()}
    task_id = _task_id.get()
    target = _err_console if stderr else console

    if _json_mode:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": msg,
        }
        if task_id:
            entry["task_id"] = task_id
        entry.update(safe_fields)
        target.print(escape(json.dumps(entry, default=str, ensure_ascii=False)), soft_wrap=True)
    else:
        target.print(f"{tag} {escape(msg)}{escape(_format_fields(safe_fields))}")

    _forward(level, msg, task_id, safe_fields)


def _forward(level: str, msg: str, task_id: str | None, fields: dict[str, Any]) -> None:
    if _sink is None or _in_sink.get():
        return
    token = _in_sink.set(True)
    try:
        _sink(level, msg, task_id, fields)
    except Exception:
        # The sink is best-effort; the console line was already written.
        pass
    finally:
        _in_sink.reset(token)


class QueuedSink:
    """Hand records to *target* on a worker thread.

    Callers only enqueue, so a slow target (a database insert) never blocks
    the thread that logged. A full queue drops the record.
    """

    def __init__(self, target: LogSink, *, maxsize: int = 1000) -> None:
        self._target = target
        self._queue: queue.Queue[tuple[str, str, str | None, dict[str, Any]] | None] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._worker = threading.Thread(target=self._run, name="arnold-log-sink", daemon=True)
        self._worker.start()

    def __call__(self, level: str, msg: str, task_id: str | None, fields: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((level, msg, task_id, fields))
        except queue.Full:
            self.dropped += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                with suppress(Exception):
                    self._target(*item)
            finally:
                self._queue.task_done()

    def close(self, timeout: float = 5.0) -> None:
        """Write what is queued, then stop the worker."""
        with suppress(queue.Full):
            self._queue.put(None, timeout=timeout)
        self._worker.join(timeout=timeout)


def info(msg: str, **fields: Any) -> None:
    _emit("INFO", "[blue]\\[INFO][/blue]", msg, fields)


def success(msg: str, **fields: Any) -> None:
    _emit("INFO", "[green]\\[OK][/green]", msg, fields)


def warn(msg: str, **fields: Any) -> None:
    _emit("WARNING", "[yellow]\\[WARN][/yellow]", msg, fields)


def error(msg: str, **fields: Any) -> None:
    _emit("ERROR", "[red]\\[ERROR][/red]", msg, fields, stderr=True)


def debug(msg: str, **fields: Any) -> None:
    if _verbose:
        _emit("DEBUG", "[dim]\\[DEBUG][/dim]", msg, fields)
