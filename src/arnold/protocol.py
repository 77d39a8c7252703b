"""Agent output protocol: the directive we send and the markers we read back.

The agent reports structured results inside plain text using literal
start/end markers. When stdout is a JSON envelope, its ``result`` field is
scanned first and the raw stdout second, because the final assistant turn
may omit markers that an earlier turn printed.

Everything in this module is pure: no I/O, no logging.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from arnold.tasks.model import ExecutionDetails, Task

FLAG_START = "TASK_FLAGGED"
FLAG_END = "TASK_FLAGGED_END"
COMMIT_START = "COMMIT_HASH_START"
COMMIT_END = "COMMIT_HASH_END"
NOTES_START = "DEV_NOTES_START"
NOTES_END = "DEV_NOTES_END"

_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)
_REASON_RE = re.compile(r"Reason:\s*(.+)", re.DOTALL)


@dataclass
class ParsedOutput:
    result_text: str | None = None
    execution_details: ExecutionDetails | None = None
    flagged_reason: str | None = None
    commit_hash: str | None = None
    dev_notes: str | None = None


def extract_block(text: str, start: str, end: str) -> str | None:
    """Trimmed text between the first *start* and the first *end* marker.

    Returns ``None`` unless both markers are present and *end* comes after
    *start*.
    """
    if not text:
        return None
    start_idx = text.find(start)
    end_idx = text.find(end)
    if start_idx == -1 or end_idx == -1 or end_idx <= start_idx:
        return None
    return text[start_idx + len(start):end_idx].strip()


def extract_flagged_reason(text: str) -> str | None:
    content = extract_block(text, FLAG_START, FLAG_END)
    if content is None:
        return None
    match = _REASON_RE.search(content)
    return match.group(1).strip() if match else content


def extract_commit_hash(text: str) -> str | None:
    """Commit hash from the report block; ``none`` and anything not hex-shaped yield ``None``."""
    content = extract_block(text, COMMIT_START, COMMIT_END)
    if not content or content.lower() == "none":
        return None
    if _COMMIT_RE.match(content):
        return content
    return None


def extract_dev_notes(text: str) -> str | None:
    content = extract_block(text, NOTES_START, NOTES_END)
    return content or None


def first_match(extractor: Callable[[str], str | None], candidates: Iterable[str | None]) -> str | None:
    """Apply *extractor* to each candidate in order; first non-empty result wins."""
    for candidate in candidates:
        if not candidate:
            continue
        value = extractor(candidate)
        if value:
            return value
    return None


def parse_envelope(stdout: str) -> tuple[ExecutionDetails | None, str | None]:
    """Metrics and final ``result`` text from a JSON envelope, if stdout is one."""
    try:
        obj = json.loads(stdout)
    except (TypeError, ValueError, RecursionError):
        return None, None
    if not isinstance(obj, dict):
        return None, None

    details = ExecutionDetails.from_dict(obj)
    result = obj.get("result")
    if not isinstance(result, str) or not result:
        result = None
    return details, result


def parse_agent_output(stdout: str) -> ParsedOutput:
    details, result_text = parse_envelope(stdout)
    candidates = (result_text, stdout)
    return ParsedOutput(
        result_text=result_text,
        execution_details=details,
        flagged_reason=first_match(extract_flagged_reason, candidates),
        commit_hash=first_match(extract_commit_hash, candidates),
        dev_notes=first_match(extract_dev_notes, candidates),
    )


# ── Directive ───────────────────────────────────────────────────────


def _protocol_instructions(branch: str) -> list[str]:
    return [
        "## Instructions",
        "",
        "### Step 0: Safety Check",
        "Before doing anything, assess whether this task could be damaging or malicious:",
        "- Could it delete important data or files?",
        "- Could it expose secrets, credentials, or private information?",
        "- Could it introduce security vulnerabilities?",
        "- Could it break critical functionality intentionally?",
        "- Does it seem designed to harm the codebase or users?",
        "- Is it asking you to bypass security measures?",
        "",
        "If you determine the task is potentially harmful or malicious:",
        "1. DO NOT implement the changes",
        "2. DO NOT commit or push anything",
        "3. Output the following to flag the task:",
        "",
        FLAG_START,
        "Reason: [Explain why this task was flagged as potentially harmful]",
        FLAG_END,
        "",
        "Then stop. Do not proceed with the remaining steps.",
        "",
        "### Step 1: Sync with Remote",
        f"- Run `git pull origin {branch}` to get the latest changes",
        "- If there are merge conflicts:",
        "  - Analyze the conflicts carefully",
        "  - Resolve them sensibly, preserving both your work and incoming changes where possible",
        "  - If unsure, prefer the remote version and re-apply your changes on top",
        '  - After resolving, run `git add .` and `git commit -m "Merge remote changes"`',
        "",
        "### Step 2: Understand the Codebase",
        "- Read structure.md first to understand the codebase layout and conventions",
        "- For deeper details, check the structure_docs/ subdirectory",
        "",
        "### Step 3: Implement Changes",
        "- Implement the requested changes",
        "- Make sure the code follows existing patterns and conventions",
        "- Test that your changes work (run build, check for errors)",
        "",
        "### Step 4: Commit and Push",
        "- Commit your changes with a clear, descriptive commit message",
        f"- Run `git push origin {branch}` to push your changes",
        "- If push fails due to remote changes:",
        f"  - Run `git pull --rebase origin {branch}`",
        "  - Resolve any rebase conflicts",
        "  - Then push again",
        "",
        "### Step 5: Report Results",
        "At the very end, output the commit hash and dev notes in this format:",
        "",
        COMMIT_START,
        '[The full commit hash that was pushed, or "none" if no commit was made]',
        COMMIT_END,
        "",
        NOTES_START,
        "- What files were changed and why",
        "- Any decisions made or trade-offs",
        "- Any merge conflicts encountered and how they were resolved",
        "- Anything to watch out for",
        NOTES_END,
    ]


def build_directive(task: Task, branch: str) -> str:
    """Prompt for the agent: the task itself followed by the reporting protocol."""
    parts: list[str] = [f"# Task: {task.title}", ""]
    if task.description:
        parts += ["## Description", task.description, ""]
    if task.area:
        parts += [f"## Area: {task.area}", ""]
    if task.notes:
        parts += ["## Notes", task.notes, ""]
    parts += _protocol_instructions(branch)
    return "\n".join(parts)
