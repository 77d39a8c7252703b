"""Shared fixtures for arnold tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Git fixtures build real repositories; commits disable signing so a user's
  global git config cannot break them.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from arnold import log
from arnold.secrets import reset_secrets
from arnold.tasks.model import Task, TaskStatus
from arnold.tasks.store import TaskStore

from .helpers import commit_file, git, init_identity


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register opt-in switch for tests that need the real agent CLI."""
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests marked with 'e2e'.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip e2e tests unless explicitly enabled."""
    if config.getoption("--run-e2e"):
        return

    skip_e2e = pytest.mark.skip(
        reason="E2E tests are skipped by default. Use --run-e2e to include them.",
    )
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _reset_globals():
    """Process-wide log and redaction state must not leak between tests."""
    yield
    reset_secrets()
    log.set_sink(None)
    log.set_json_mode(False)
    log.set_verbose(False)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A minimal git repo on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git("init", cwd=repo)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo)
    init_identity(repo)
    commit_file(repo, "README.md", "# Test", "Initial")
    return repo


@pytest.fixture
def remote_repo(tmp_path: Path, git_repo: Path) -> Path:
    """A bare repository seeded from ``git_repo``; ``git_repo`` tracks it as origin."""
    bare = tmp_path / "remote.git"
    git("init", "--bare", str(bare), cwd=tmp_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)
    git("remote", "add", "origin", str(bare), cwd=git_repo)
    git("push", "-u", "origin", "main", cwd=git_repo)
    return bare


@pytest.fixture
def clone_of(tmp_path: Path):
    """Factory: clone a repository into tmp_path/<name> with a commit identity."""

    def _clone(source: Path, name: str = "clone") -> Path:
        dest = tmp_path / name
        git("clone", str(source), str(dest), cwd=tmp_path)
        init_identity(dest)
        return dest

    return _clone


# ── task helpers ─────────────────────────────────────────────────────


def _make_task(
    id: str = "task-1",
    title: str = "",
    description: str | None = None,
    area: str | None = None,
    notes: str | None = None,
    status: TaskStatus = TaskStatus.QUEUED,
    created_at: str = "2026-01-01T00:00:00.000000+00:00",
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        description=description,
        area=area,
        notes=notes,
        status=status,
        created_at=created_at,
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "db" / "tasks.sqlite3")
