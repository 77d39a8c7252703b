"""Best-effort redaction of credentials from text before it is logged or sent."""

from __future__ import annotations

import re
from collections.abc import Iterable

PLACEHOLDER = "[REDACTED]"

# Shorter values are too likely to collide with ordinary text.
MIN_SECRET_LENGTH = 8

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}"),
    re.compile(r"ghp_[a-zA-Z0-9]{36}"),
    re.compile(r"gho_[a-zA-Z0-9]{36}"),
    re.compile(r"github_pat_[a-zA-Z0-9_]{22,}"),
    re.compile(r"eyJ[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]{10,}"),
    re.compile(r"(?<=Bearer )[a-zA-Z0-9._~+/=-]{16,}"),
)


class Redactor:
    """Replace known secret values and credential-shaped tokens with a placeholder."""

    def __init__(self, values: Iterable[str] = ()) -> None:
        self._values: list[str] = []
        self.add(values)

    def add(self, values: Iterable[str]) -> None:
        for value in values:
            if value and len(value) >= MIN_SECRET_LENGTH and value not in self._values:
                self._values.append(value)
        # Longest first so a secret containing another is replaced whole.
        self._values.sort(key=len, reverse=True)

    def clear(self) -> None:
        self._values = []

    def redact(self, text: str) -> str:
        if not text:
            return text
        redacted = text
        for value in self._values:
            redacted = redacted.replace(value, PLACEHOLDER)
        for pattern in SECRET_PATTERNS:
            redacted = pattern.sub(PLACEHOLDER, redacted)
        return redacted


_default = Redactor()


def register_secrets(values: Iterable[str]) -> None:
    """Add configured credential values to the process-wide redactor."""
    _default.add(values)


def reset_secrets() -> None:
    _default.clear()


def redact(text: str) -> str:
    return _default.redact(text)
