"""Task data models shared by the store, the executor, and the CLI."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    STUCK = "stuck"
    DONE = "done"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> TaskStatus:
        """Accept stored values plus the user-facing ``upcoming`` alias."""
        normalized = value.strip().lower().replace("-", "_")
        if normalized == "upcoming":
            return cls.BACKLOG
        return cls(normalized)


@dataclass
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    def total(self) -> int:
        return sum(
            v or 0
            for v in (
                self.input_tokens,
                self.output_tokens,
                self.cache_creation_input_tokens,
                self.cache_read_input_tokens,
            )
        )


@dataclass
class ExecutionDetails:
    """Metrics reported by the agent for one run."""

    num_turns: int | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExecutionDetails | None:
        if not isinstance(data, dict):
            return None
        usage_raw = data.get("usage")
        usage = None
        if isinstance(usage_raw, dict):
            usage = TokenUsage(
                input_tokens=_opt_int(usage_raw.get("input_tokens")),
                output_tokens=_opt_int(usage_raw.get("output_tokens")),
                cache_creation_input_tokens=_opt_int(usage_raw.get("cache_creation_input_tokens")),
                cache_read_input_tokens=_opt_int(usage_raw.get("cache_read_input_tokens")),
            )
        return cls(
            num_turns=_opt_int(data.get("num_turns")),
            total_cost_usd=_opt_float(data.get("total_cost_usd")),
            duration_ms=_opt_int(data.get("duration_ms")),
            usage=usage,
        )


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class Task:
    id: str
    title: str
    description: str | None = None
    notes: str | None = None
    area: str | None = None
    status: TaskStatus = TaskStatus.BACKLOG
    commit_hash: str | None = None
    execution_details: ExecutionDetails | None = None
    created_at: str = ""
    completed_at: str | None = None

    def summary(self) -> dict[str, str]:
        return {"id": self.id, "title": self.title}
