"""Exception hierarchy shared by the executor, the task store, and the CLI."""

from __future__ import annotations


class ArnoldError(Exception):
    """Base error with a machine-readable code.

    ``recoverable`` tells callers whether retrying the same operation later
    can succeed without a configuration change.
    """

    def __init__(self, message: str, code: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable


class TaskNotFoundError(ArnoldError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND", recoverable=False)
        self.task_id = task_id


class AlreadyRunningError(ArnoldError):
    def __init__(self) -> None:
        super().__init__("Executor is already running", "EXECUTOR_BUSY", recoverable=False)


class NotRunningError(ArnoldError):
    def __init__(self) -> None:
        super().__init__("Executor is not running", "EXECUTOR_NOT_RUNNING", recoverable=False)


class StoreError(ArnoldError):
    """Task store failure other than a missing row."""

    def __init__(self, message: str) -> None:
        super().__init__(f"store: {message}", "EXTERNAL_STORE")


class ConfigError(ArnoldError):
    def __init__(self, message: str) -> None:
        super().__init__(message, "CONFIG_ERROR", recoverable=False)


class GitError(ArnoldError):
    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"Git {operation} failed: {message}", "GIT_ERROR")
        self.operation = operation


def to_user_message(error: BaseException) -> str:
    """Short human-readable text for any exception."""
    if isinstance(error, ArnoldError):
        return error.message
    return str(error) or type(error).__name__
