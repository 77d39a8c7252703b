"""Outbound notifications: a bounded queue drained into a sink.

``Notifier.notify`` never blocks and never raises, so a slow or broken sink
cannot stall the executor.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import subprocess
import sys
from collections.abc import Awaitable, Callable

from rich.markup import escape

from arnold import log
from arnold.secrets import redact

NotifySink = Callable[[str], Awaitable[None] | None]

DEFAULT_QUEUE_SIZE = 100


class Notifier:
    """Fire-and-forget delivery of text messages to *sink*."""

    def __init__(self, sink: NotifySink, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def sink(self) -> NotifySink:
        return self._sink

    def start(self) -> None:
        """Start the drain task on the running loop (idempotent)."""
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def notify(self, text: str) -> None:
        if self._closed:
            log.debug("Notifier closed; dropping message")
            return
        try:
            self._queue.put_nowait(redact(text))
        except asyncio.QueueFull:
            log.warn("Notification queue full; dropping message")

    async def _drain(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await _deliver(self._sink, text)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warn("Notification sink failed", error=str(exc))
            finally:
                self._queue.task_done()

    async def aclose(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (up to *timeout* seconds), then stop draining."""
        self._closed = True
        if self._drain_task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warn("Timed out flushing notifications", pending=self._queue.qsize())
        self._drain_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._drain_task
        self._drain_task = None


async def _deliver(sink: NotifySink, text: str) -> None:
    # Sync sinks run in a worker thread so a slow one cannot stall the loop.
    if inspect.iscoroutinefunction(sink):
        await sink(text)
        return
    result = await asyncio.to_thread(sink, text)
    if inspect.isawaitable(result):
        await result


# ── Built-in sinks ──────────────────────────────────────────────────


def console_sink(text: str) -> None:
    """Print a notification to the console."""
    log.console.print(f"[magenta]\\[NOTIFY][/magenta] {escape(text)}")


def _run_quiet(*cmd: str) -> None:
    """Fire-and-forget subprocess, ignore failures."""
    try:
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (FileNotFoundError, OSError):
        pass


def desktop_sink(text: str) -> None:
    """Show a desktop notification toast (best-effort)."""
    title = "Arnold"
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if sys.platform == "darwin":
        safe = first_line.replace('"', "'")
        _run_quiet("osascript", "-e", f'display notification "{safe}" with title "{title}"')
    elif sys.platform.startswith("linux"):
        _run_quiet("notify-send", title, first_line)
    elif sys.platform == "win32":
        _run_quiet(
            "powershell.exe", "-Command",
            "[System.Media.SystemSounds]::Asterisk.Play()",
        )


def combine_sinks(*sinks: NotifySink) -> NotifySink:
    """One sink that forwards to several; a failing member does not stop the rest."""

    async def _combined(text: str) -> None:
        for sink in sinks:
            try:
                await _deliver(sink, text)
            except Exception as exc:
                log.warn("Notification sink failed", error=str(exc))

    return _combined
