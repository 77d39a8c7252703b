"""Tests for the agent output protocol parser and directive builder."""

from __future__ import annotations

import json

import pytest

from arnold.protocol import (
    build_directive,
    extract_block,
    extract_commit_hash,
    extract_dev_notes,
    extract_flagged_reason,
    first_match,
    parse_agent_output,
    parse_envelope,
)
from arnold.tasks.model import Task


class TestExtractBlock:
    def test_returns_trimmed_content(self) -> None:
        assert extract_block("pre START\n  body \nEND post", "START", "END") == "body"

    def test_missing_end_marker(self) -> None:
        assert extract_block("START body", "START", "END") is None

    def test_end_before_start(self) -> None:
        assert extract_block("END then START", "START", "END") is None

    def test_uses_first_occurrence_of_each_marker(self) -> None:
        text = "START one END START two END"
        assert extract_block(text, "START", "END") == "one"

    def test_empty_text(self) -> None:
        assert extract_block("", "START", "END") is None


class TestFlaggedReason:
    def test_reason_line(self) -> None:
        text = "TASK_FLAGGED\nReason: Removes all user records\nTASK_FLAGGED_END"
        assert extract_flagged_reason(text) == "Removes all user records"

    def test_multiline_reason(self) -> None:
        text = "TASK_FLAGGED\nReason: First line\nsecond line\nTASK_FLAGGED_END"
        assert extract_flagged_reason(text) == "First line\nsecond line"

    def test_block_without_reason_prefix(self) -> None:
        text = "TASK_FLAGGED\nLooks like credential exfiltration\nTASK_FLAGGED_END"
        assert extract_flagged_reason(text) == "Looks like credential exfiltration"

    def test_end_marker_alone_is_not_a_flag(self) -> None:
        assert extract_flagged_reason("TASK_FLAGGED_END") is None

    def test_no_flag(self) -> None:
        assert extract_flagged_reason("All good, committed.") is None


class TestCommitHash:
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            ("abc1234", "abc1234"),
            ("0123456789abcdef0123456789abcdef01234567", "0123456789abcdef0123456789abcdef01234567"),
            ("ABCDEF1", "ABCDEF1"),
            ("none", None),
            ("None", None),
            ("abc123", None),
            ("not-a-hash", None),
            ("0123456789abcdef0123456789abcdef012345678", None),
            ("", None),
        ],
    )
    def test_validation(self, body: str, expected: str | None) -> None:
        text = f"COMMIT_HASH_START\n{body}\nCOMMIT_HASH_END"
        assert extract_commit_hash(text) == expected

    def test_missing_block(self) -> None:
        assert extract_commit_hash("committed abc1234") is None


def test_dev_notes_empty_block_is_none() -> None:
    assert extract_dev_notes("DEV_NOTES_START\n   \nDEV_NOTES_END") is None
    assert extract_dev_notes("DEV_NOTES_START\n- a\n- b\nDEV_NOTES_END") == "- a\n- b"


def test_first_match_skips_empty_candidates() -> None:
    calls: list[str] = []

    def extractor(text: str) -> str | None:
        calls.append(text)
        return text.upper() if text.startswith("x") else None

    assert first_match(extractor, [None, "", "abc", "xyz", "xqq"]) == "XYZ"
    assert calls == ["abc", "xyz"]


class TestEnvelope:
    def test_parses_metrics_and_result(self) -> None:
        stdout = json.dumps({
            "result": "done",
            "num_turns": 7,
            "total_cost_usd": 0.42,
            "duration_ms": 65000,
            "usage": {
                "input_tokens": 100,
                "output_tokens": 50,
                "cache_creation_input_tokens": 10,
                "cache_read_input_tokens": 5,
            },
        })
        details, result = parse_envelope(stdout)

        assert result == "done"
        assert details.num_turns == 7
        assert details.total_cost_usd == 0.42
        assert details.duration_ms == 65000
        assert details.usage.total() == 165

    def test_non_json_stdout(self) -> None:
        assert parse_envelope("plain text output") == (None, None)

    def test_json_that_is_not_an_object(self) -> None:
        assert parse_envelope("[1, 2, 3]") == (None, None)

    def test_missing_result_field(self) -> None:
        details, result = parse_envelope('{"num_turns": 2}')
        assert result is None
        assert details.num_turns == 2

    @pytest.mark.parametrize(
        "stdout",
        [
            '{"num_turns": 1e400, "duration_ms": -1e400, "total_cost_usd": 1e400}',
            '{"num_turns": Infinity, "total_cost_usd": NaN, "usage": {"input_tokens": Infinity}}',
            '{"total_cost_usd": ' + "9" * 400 + "}",
        ],
    )
    def test_non_finite_metrics_are_dropped(self, stdout: str) -> None:
        details, _ = parse_envelope(stdout)

        assert details.num_turns is None
        assert details.total_cost_usd is None
        assert details.duration_ms is None
        assert details.usage is None or details.usage.input_tokens is None

    def test_non_finite_metrics_keep_markers(self) -> None:
        stdout = json.dumps({"num_turns": 1.0, "result": "COMMIT_HASH_START\nabc1234\nCOMMIT_HASH_END"})
        stdout = stdout.replace("1.0", "1e400")
        parsed = parse_agent_output(stdout)

        assert parsed.commit_hash == "abc1234"
        assert parsed.execution_details.num_turns is None


class TestParseAgentOutput:
    def test_markers_in_result_text(self) -> None:
        stdout = json.dumps({
            "result": "COMMIT_HASH_START\nabcdef1\nCOMMIT_HASH_END\nDEV_NOTES_START\nnotes\nDEV_NOTES_END",
        })
        parsed = parse_agent_output(stdout)

        assert parsed.commit_hash == "abcdef1"
        assert parsed.dev_notes == "notes"
        assert parsed.flagged_reason is None

    def test_falls_back_to_raw_stdout(self) -> None:
        # Output that is not a single JSON document is scanned as plain text.
        stdout = (
            '{"result": "Finished."}\n'
            "COMMIT_HASH_START\nabcdef1234\nCOMMIT_HASH_END\n"
        )
        parsed = parse_agent_output(stdout)

        assert parsed.execution_details is None
        assert parsed.commit_hash == "abcdef1234"

    def test_result_text_wins_over_stdout(self) -> None:
        stdout = json.dumps({
            "result": "DEV_NOTES_START\nfrom result\nDEV_NOTES_END",
        })
        assert parse_agent_output(stdout).dev_notes == "from result"

    def test_flag_detected_in_plain_output(self) -> None:
        parsed = parse_agent_output("TASK_FLAGGED\nReason: unsafe\nTASK_FLAGGED_END")
        assert parsed.flagged_reason == "unsafe"
        assert parsed.commit_hash is None


class TestBuildDirective:
    def test_includes_task_sections(self) -> None:
        task = Task(
            id="t1",
            title="Add CSV export",
            description="Export the report table as CSV.",
            area="backend",
            notes="Customer asked twice.",
        )
        directive = build_directive(task, "develop")

        assert directive.startswith("# Task: Add CSV export\n")
        assert "## Description\nExport the report table as CSV." in directive
        assert "## Area: backend" in directive
        assert "## Notes\nCustomer asked twice." in directive

    def test_omits_empty_sections(self) -> None:
        directive = build_directive(Task(id="t1", title="Bump deps"), "main")

        assert "## Description" not in directive
        assert "## Area" not in directive
        assert "## Notes" not in directive

    def test_contains_protocol_instructions_for_branch(self) -> None:
        directive = build_directive(Task(id="t1", title="x"), "develop")

        assert "git pull origin develop" in directive
        assert "git push origin develop" in directive
        assert "structure.md" in directive
        for marker in (
            "TASK_FLAGGED",
            "TASK_FLAGGED_END",
            "COMMIT_HASH_START",
            "COMMIT_HASH_END",
            "DEV_NOTES_START",
            "DEV_NOTES_END",
        ):
            assert marker in directive
        assert directive.index("### Step 0") < directive.index("### Step 5")
