"""Git operations: workspace clone/checkout and remote push verification."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from arnold import log
from arnold.config import Config
from arnold.errors import GitError
from arnold.secrets import redact

GIT_TIMEOUT = 120


def _git(*args: str, cwd: Path | None = None, timeout: float | None = GIT_TIMEOUT) -> subprocess.CompletedProcess[str]:
    """Run a git command with captured output; never prompts for credentials."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        timeout=timeout,
        stdin=subprocess.DEVNULL,
        env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
    )


def _describe_failure(r: subprocess.CompletedProcess[str]) -> str:
    details = [
        f"stderr: {r.stderr.strip()}" if r.stderr.strip() else "",
        f"stdout: {r.stdout.strip()}" if r.stdout.strip() else "",
        f"exit code: {r.returncode}",
    ]
    return redact("; ".join(d for d in details if d))


def git_version() -> str | None:
    try:
        r = _git("--version", timeout=10)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    return r.stdout.strip() if r.returncode == 0 else None


def clone(url: str, dest: Path) -> None:
    r = _git("clone", url, str(dest), cwd=dest.parent, timeout=None)
    if r.returncode != 0:
        raise GitError("clone", _describe_failure(r))


def set_identity(name: str, email: str, cwd: Path) -> None:
    for key, value in (("user.name", name), ("user.email", email)):
        r = _git("config", key, value, cwd=cwd)
        if r.returncode != 0:
            raise GitError("config", _describe_failure(r))


def checkout(branch: str, cwd: Path) -> None:
    r = _git("checkout", branch, cwd=cwd)
    if r.returncode != 0:
        raise GitError("checkout", _describe_failure(r))


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def fetch(remote: str, cwd: Path) -> None:
    r = _git("fetch", remote, cwd=cwd)
    if r.returncode != 0:
        raise GitError("fetch", _describe_failure(r))


def remote_branches_containing(commit: str, cwd: Path) -> list[str]:
    """Remote-tracking branches (``origin/main`` …) that contain *commit*."""
    r = _git("branch", "-r", "--contains", commit, cwd=cwd)
    if r.returncode != 0:
        raise GitError("branch --contains", _describe_failure(r))
    branches: list[str] = []
    for line in r.stdout.splitlines():
        name = line.strip().lstrip("* ").strip()
        # Skip symbolic refs such as "origin/HEAD -> origin/main".
        if not name or "->" in name:
            continue
        branches.append(name)
    return branches


def verify_commit_pushed(commit: str, branch: str, cwd: Path, remote: str = "origin") -> bool:
    """Return ``True`` when *commit* is on ``<remote>/<branch>``.

    Never raises: a failed fetch or lookup is logged as a warning and
    reported as not verified.
    """
    try:
        fetch(remote, cwd=cwd)
        branches = remote_branches_containing(commit, cwd=cwd)
    except (GitError, OSError, subprocess.TimeoutExpired) as exc:
        log.warn("Failed to verify commit on remote", commit_hash=commit, error=str(exc))
        return False
    return f"{remote}/{branch}" in branches


class RepoWorkspace:
    """The executor's exclusive checkout of the target repository.

    ``ensure_ready`` is idempotent; a successful setup is remembered for the
    lifetime of the instance, a failed one is retried on the next call.
    """

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        self._ready = False

    @property
    def path(self) -> Path:
        return self.cfg.project_dir

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure_ready(self) -> None:
        """Clone (if needed), configure identity, and check out the work branch.

        Raises :class:`GitError` with secrets already redacted.
        """
        if self._ready:
            return

        workspace = Path(self.cfg.workspace_dir)
        if not workspace.exists():
            log.info("Creating workspace directory", path=str(workspace))
            workspace.mkdir(parents=True, exist_ok=True)

        if not self.path.exists():
            version = git_version()
            if version is None:
                raise GitError("setup", "git is not installed")
            log.info("Git available", version=version)
            log.info("Cloning repository", dest=str(self.path))
            clone(self.cfg.clone_url, self.path)
            log.success("Repository cloned", path=str(self.path))

        set_identity(self.cfg.git_user_name, self.cfg.git_user_email, cwd=self.path)
        checkout(self.cfg.repo_branch, cwd=self.path)
        self._ready = True

    def verify_commit_pushed(self, commit: str) -> bool:
        return verify_commit_pushed(commit, self.cfg.repo_branch, cwd=self.path, remote=self.cfg.remote)
