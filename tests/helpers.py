"""Small git helpers shared by fixtures and tests."""

from __future__ import annotations

import subprocess
from pathlib import Path


def git(*args: str, cwd: Path) -> str:
    r = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return r.stdout.strip()


def commit_file(repo: Path, name: str, content: str, msg: str) -> str:
    """Commit one file and return the new commit hash."""
    (repo / name).write_text(content)
    git("add", name, cwd=repo)
    git("-c", "commit.gpgsign=false", "commit", "-m", msg, cwd=repo)
    return git("rev-parse", "HEAD", cwd=repo)


def init_identity(repo: Path) -> None:
    git("config", "user.name", "Test", cwd=repo)
    git("config", "user.email", "test@test", cwd=repo)
