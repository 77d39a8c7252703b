"""Tests for console logging, redaction, task context, and the persistent sink."""

from __future__ import annotations

import json
import threading
import time

from arnold import log
from arnold.secrets import register_secrets


def test_fields_are_rendered_after_message(capsys):
    log.info("Task completed", task_id="t1", turns=3)
    out = capsys.readouterr().out
    assert "Task completed" in out
    assert '"task_id": "t1"' in out
    assert '"turns": 3' in out


def test_errors_go_to_stderr(capsys):
    log.error("Poll error", error="boom")
    captured = capsys.readouterr()
    assert "Poll error" in captured.err
    assert "Poll error" not in captured.out


def test_debug_only_when_verbose(capsys):
    log.debug("hidden")
    assert "hidden" not in capsys.readouterr().out
    log.set_verbose(True)
    log.debug("shown")
    assert "shown" in capsys.readouterr().out


def test_messages_and_fields_are_redacted(capsys):
    register_secrets(["topsecretvalue"])
    log.warn("using topsecretvalue", token="topsecretvalue")
    out = capsys.readouterr().out
    assert "topsecretvalue" not in out
    assert "[REDACTED]" in out


def test_markup_in_messages_is_not_interpreted(capsys):
    log.info("list[bold]x[/bold]")
    assert "list[bold]x[/bold]" in capsys.readouterr().out


def test_json_mode_emits_one_object_per_line(capsys):
    log.set_json_mode(True)
    with log.task_context("task-9"):
        log.info("Running agent", prompt_length=120)
    line = capsys.readouterr().out.strip()
    entry = json.loads(line)
    assert entry["level"] == "INFO"
    assert entry["message"] == "Running agent"
    assert entry["task_id"] == "task-9"
    assert entry["prompt_length"] == 120
    assert "timestamp" in entry


def test_task_context_is_scoped():
    assert log.current_task_id() is None
    with log.task_context("abc"):
        assert log.current_task_id() == "abc"
    assert log.current_task_id() is None


def test_sink_receives_records_with_task_id():
    records = []
    log.set_sink(lambda level, msg, task_id, fields: records.append((level, msg, task_id, fields)))
    with log.task_context("t1"):
        log.warn("Commit not found on remote", commit_hash="abc1234")
    log.success("Executor started")

    assert records == [
        ("WARNING", "Commit not found on remote", "t1", {"commit_hash": "abc1234"}),
        ("INFO", "Executor started", None, {}),
    ]


def test_failing_sink_is_ignored_and_not_reentered(capsys):
    calls = []

    def sink(level, msg, task_id, fields):
        calls.append(msg)
        log.error("logging from inside the sink")
        raise RuntimeError("sink down")

    log.set_sink(sink)
    log.info("hello")
    assert calls == ["hello"]
    assert "hello" in capsys.readouterr().out


def test_queued_sink_keeps_slow_writes_off_the_caller():
    records = []
    release = threading.Event()

    def slow_insert(level, msg, task_id, fields):
        release.wait(2.0)
        records.append(msg)

    writer = log.QueuedSink(slow_insert)
    log.set_sink(writer)
    started = time.monotonic()
    for i in range(3):
        log.info(f"record {i}")
    elapsed = time.monotonic() - started
    release.set()
    writer.close()

    assert elapsed < 1.0
    assert records == ["record 0", "record 1", "record 2"]


def test_queued_sink_drops_when_full_and_survives_target_errors():
    release = threading.Event()
    seen = []

    def target(level, msg, task_id, fields):
        release.wait(2.0)
        seen.append(msg)
        raise RuntimeError("database is locked")

    writer = log.QueuedSink(target, maxsize=1)
    writer("INFO", "first", None, {})
    # The worker may already hold "first"; either way one of the next two overflows.
    writer("INFO", "second", None, {})
    writer("INFO", "third", None, {})
    release.set()
    writer.close()

    assert writer.dropped >= 1
    assert seen[0] == "first"
    assert len(seen) + writer.dropped == 3
