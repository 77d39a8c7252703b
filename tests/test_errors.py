"""Tests for the error taxonomy and agent failure classification."""

from __future__ import annotations

import pytest

from arnold.engine_errors import (
    AUTH,
    ENVIRONMENT,
    QUOTA,
    failure_kinds,
    looks_like_system_error,
)
from arnold.errors import (
    AlreadyRunningError,
    ArnoldError,
    ConfigError,
    GitError,
    NotRunningError,
    StoreError,
    TaskNotFoundError,
    to_user_message,
)


# ── Error hierarchy ────────────────────────────────────────────────────


class TestErrorHierarchy:
    def test_all_errors_share_the_base(self):
        for exc in (
            TaskNotFoundError("t1"),
            AlreadyRunningError(),
            NotRunningError(),
            StoreError("locked"),
            ConfigError("bad"),
            GitError("clone", "denied"),
        ):
            assert isinstance(exc, ArnoldError)
            assert exc.code

    def test_usage_errors_are_not_recoverable(self):
        assert AlreadyRunningError().recoverable is False
        assert NotRunningError().recoverable is False
        assert AlreadyRunningError().message == "Executor is already running"
        assert NotRunningError().message == "Executor is not running"

    def test_store_errors_are_recoverable(self):
        err = StoreError("database is locked")
        assert err.recoverable is True
        assert err.message == "store: database is locked"

    def test_git_error_keeps_operation(self):
        err = GitError("checkout", "pathspec 'x' did not match")
        assert err.operation == "checkout"
        assert str(err) == "Git checkout failed: pathspec 'x' did not match"

    def test_task_not_found_keeps_id(self):
        err = TaskNotFoundError("abc")
        assert err.task_id == "abc"
        assert err.code == "TASK_NOT_FOUND"


class TestToUserMessage:
    def test_arnold_error_uses_message(self):
        assert to_user_message(ConfigError("missing owner")) == "missing owner"

    def test_plain_exception_uses_str(self):
        assert to_user_message(RuntimeError("boom")) == "boom"

    def test_empty_exception_falls_back_to_type_name(self):
        assert to_user_message(TimeoutError()) == "TimeoutError"


# ── Failure classification ─────────────────────────────────────────────


class TestSystemErrorClassification:
    @pytest.mark.parametrize(
        "text",
        [
            "error: unknown option '--output-format'",
            "sh: claude: command not found",
            "spawn claude ENOENT",
            "EACCES: permission denied, open '/root/.claude'",
            "Permission denied (publickey)",
            "Invalid API key · Please run /login",
            "Authentication failed",
            "Rate limit exceeded",
            "429 Too Many Requests",
        ],
    )
    def test_environment_failures(self, text):
        assert looks_like_system_error(text) is True

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "TypeError: cannot read properties of undefined",
            "Tests failed: 3 of 120",
            "merge conflict in src/app.ts",
        ],
    )
    def test_task_failures(self, text):
        assert looks_like_system_error(text) is False

    def test_matching_is_case_insensitive(self):
        assert looks_like_system_error("COMMAND NOT FOUND") is True
        assert failure_kinds("RATE LIMIT") == {QUOTA}
        assert failure_kinds("UNAUTHORIZED") == {AUTH}
        assert failure_kinds("Spawn ENOENT") == {ENVIRONMENT}

    def test_rate_limit_is_not_auth(self):
        assert failure_kinds("usage limit reached") == {QUOTA}

    def test_failure_kinds_can_overlap(self):
        assert failure_kinds("401 Unauthorized: API key over quota") == {AUTH, QUOTA}
        assert failure_kinds("") == set()
