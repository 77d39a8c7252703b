"""Configuration defaults, env vars, and runtime options for Arnold."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from arnold.errors import ConfigError


VERSION = "1.0.0"

DEFAULT_WORKSPACE_DIR = "/tmp/workspace"
DEFAULT_DB_PATH = ".local/arnold/tasks.sqlite3"


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass
class Config:
    """Runtime configuration for the executor and the CLI."""

    # Credentials
    anthropic_api_key: str = ""
    github_token: str = ""

    # Repository
    repo_owner: str = ""
    repo_name: str = "project"
    repo_branch: str = "main"
    repo_url: str = ""
    remote: str = "origin"

    # Executor
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    claude_path: str = "claude"
    git_user_name: str = "Arnold Bot"
    git_user_email: str = "bot@example.com"
    poll_interval: float = 10.0
    task_timeout: float = 600.0
    shutdown_timeout: float = 660.0

    # Storage
    db_path: str = DEFAULT_DB_PATH

    # Misc
    production: bool = False
    verbose: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a config from environment variables (``os.environ`` by default)."""
        env = os.environ if environ is None else environ
        return cls(
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            github_token=env.get("GITHUB_API_KEY", ""),
            repo_owner=env.get("GITHUB_REPO_OWNER", ""),
            repo_name=env.get("GITHUB_REPO_NAME", "") or "project",
            repo_branch=env.get("GITHUB_REPO_BRANCH", "") or "main",
            repo_url=env.get("ARNOLD_REPO_URL", ""),
            workspace_dir=env.get("WORKSPACE_DIR", "") or DEFAULT_WORKSPACE_DIR,
            claude_path=env.get("CLAUDE_PATH", "") or "claude",
            git_user_name=env.get("GIT_USER_NAME", "") or "Arnold Bot",
            git_user_email=env.get("GIT_USER_EMAIL", "") or "bot@example.com",
            poll_interval=_env_float(env, "ARNOLD_POLL_INTERVAL", 10.0),
            task_timeout=_env_float(env, "ARNOLD_TASK_TIMEOUT", 600.0),
            shutdown_timeout=_env_float(env, "ARNOLD_SHUTDOWN_TIMEOUT", 660.0),
            db_path=env.get("ARNOLD_DB_PATH", "") or DEFAULT_DB_PATH,
            production=env.get("ARNOLD_ENV", "").lower() == "production",
        )

    # ── derived values ───────────────────────────────────────────

    @property
    def project_dir(self) -> Path:
        return Path(self.workspace_dir) / self.repo_name

    @property
    def clone_url(self) -> str:
        if self.repo_url:
            return self.repo_url
        slug = f"{self.repo_owner}/{self.repo_name}"
        if self.github_token:
            return f"https://{self.github_token}@github.com/{slug}.git"
        return f"https://github.com/{slug}.git"

    def commit_url(self, commit_hash: str) -> str | None:
        """Link to a commit on GitHub, or ``None`` for non-GitHub remotes."""
        if self.repo_url or not self.repo_owner:
            return None
        return f"https://github.com/{self.repo_owner}/{self.repo_name}/commit/{commit_hash}"

    def secret_values(self) -> list[str]:
        return [v for v in (self.anthropic_api_key, self.github_token) if v]

    def validate(self) -> list[str]:
        """Return configuration problems that do not prevent startup."""
        problems: list[str] = []
        if self.poll_interval <= 0:
            problems.append("poll interval must be positive")
        if self.task_timeout <= 0:
            problems.append("task timeout must be positive")
        if self.task_timeout >= self.shutdown_timeout:
            problems.append(
                f"task timeout ({self.task_timeout:g}s) should be shorter than the "
                f"shutdown timeout ({self.shutdown_timeout:g}s)"
            )
        if not self.repo_url and not self.repo_owner:
            problems.append("GITHUB_REPO_OWNER is not set and no ARNOLD_REPO_URL was given")
        return problems
