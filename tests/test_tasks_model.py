"""Tests for arnold.tasks.model."""

from __future__ import annotations

import pytest

from arnold.tasks.model import ExecutionDetails, Task, TaskStatus, TokenUsage


class TestTaskStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("queued", TaskStatus.QUEUED),
            ("IN_PROGRESS", TaskStatus.IN_PROGRESS),
            ("in-progress", TaskStatus.IN_PROGRESS),
            ("upcoming", TaskStatus.BACKLOG),
            (" done ", TaskStatus.DONE),
        ],
    )
    def test_parse(self, raw, expected):
        assert TaskStatus.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            TaskStatus.parse("finished")

    def test_values_are_strings(self):
        assert TaskStatus.STUCK == "stuck"


class TestExecutionDetails:
    def test_from_dict_tolerates_bad_values(self):
        details = ExecutionDetails.from_dict({
            "num_turns": "4",
            "total_cost_usd": "n/a",
            "duration_ms": True,
            "usage": {"input_tokens": 10, "output_tokens": None},
        })
        assert details.num_turns == 4
        assert details.total_cost_usd is None
        assert details.duration_ms is None
        assert details.usage.total() == 10

    def test_from_dict_rejects_non_dict(self):
        assert ExecutionDetails.from_dict(None) is None
        assert ExecutionDetails.from_dict([1, 2]) is None

    def test_to_dict_drops_missing_fields(self):
        details = ExecutionDetails(num_turns=2, usage=TokenUsage(input_tokens=1))
        data = details.to_dict()
        assert data["num_turns"] == 2
        assert "total_cost_usd" not in data
        assert data["usage"]["input_tokens"] == 1

    def test_round_trip_through_dict(self):
        details = ExecutionDetails(1, 0.5, 300, TokenUsage(1, 2, 3, 4))
        assert ExecutionDetails.from_dict(details.to_dict()) == details


def test_task_summary():
    task = Task(id="t1", title="Fix bug", description="long text")
    assert task.summary() == {"id": "t1", "title": "Fix bug"}
    assert task.status is TaskStatus.BACKLOG
