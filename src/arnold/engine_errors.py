"""Classify failed agent runs by the text they leave behind.

A broken binary, missing credentials or an exhausted quota fail every task
the same way. Those are *system* failures; anything else is attributed to
the task itself.
"""

from __future__ import annotations

QUOTA = "quota"
AUTH = "auth"
ENVIRONMENT = "environment"

# Lowercase substrings, grouped by what went wrong.
FAILURE_MARKERS: dict[str, tuple[str, ...]] = {
    QUOTA: (
        "rate limit",
        "rate_limit",
        "usage limit",
        "you've hit your limit",
        "too many requests",
        "quota",
        "429",
    ),
    AUTH: (
        "api key",
        "invalid x-api-key",
        "unauthorized",
        "authentication",
    ),
    ENVIRONMENT: (
        "command not found",
        "no such file or directory",
        "unknown option",
        "permission denied",
        "enoent",
        "eacces",
        "spawn",
    ),
}


def failure_kinds(text: str) -> set[str]:
    """Return every failure kind whose markers appear in ``text``."""
    if not text:
        return set()
    haystack = text.lower()
    return {kind for kind, markers in FAILURE_MARKERS.items() if any(m in haystack for m in markers)}


def looks_like_system_error(text: str) -> bool:
    """``True`` when the failure points at the environment rather than the task."""
    return bool(failure_kinds(text))
