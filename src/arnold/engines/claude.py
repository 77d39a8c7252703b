"""Claude Code engine adapter."""

from __future__ import annotations

import shutil

from arnold import log
from arnold.config import Config
from arnold.engine_errors import looks_like_system_error
from arnold.engines.base import AgentResult, EngineBase, ProcessOutput
from arnold.protocol import parse_agent_output
from arnold.secrets import redact


class ClaudeEngine(EngineBase):
    name = "claude"

    def __init__(self, claude_path: str = "claude", *, extra_env: dict[str, str] | None = None) -> None:
        super().__init__(extra_env=extra_env)
        self.claude_path = claude_path

    @classmethod
    def from_config(cls, cfg: Config) -> ClaudeEngine:
        return cls(
            cfg.claude_path,
            extra_env={
                "ANTHROPIC_API_KEY": cfg.anthropic_api_key,
                "GITHUB_API_KEY": cfg.github_token,
                # Non-interactive mode.
                "CI": "true",
            },
        )

    def build_cmd(self, prompt: str) -> list[str]:
        # Use resolved path so subprocess gets an absolute path.
        claude = shutil.which(self.claude_path) or self.claude_path
        return [claude, "-p", prompt, "--output-format", "json"]

    def parse_output(self, output: ProcessOutput, *, timeout: float) -> AgentResult:
        if output.spawn_error:
            return AgentResult(
                success=False,
                error=f"Failed to run Claude Code: {redact(output.spawn_error)}",
                is_system_error=True,
            )

        if output.timed_out:
            return AgentResult(success=False, error=f"Task timed out after {_describe_duration(timeout)}")

        if output.exit_code != 0:
            error_text = output.stderr or output.stdout or ""
            return AgentResult(
                success=False,
                error=redact(error_text).strip() or f"Exit code {output.exit_code}",
                is_system_error=looks_like_system_error(error_text),
            )

        parsed = parse_agent_output(output.stdout)
        details = parsed.execution_details
        if details is not None:
            log.info(
                "Claude Code usage",
                num_turns=details.num_turns,
                cost_usd=details.total_cost_usd,
                duration_ms=details.duration_ms,
            )
        else:
            log.debug("Could not parse Claude Code output as JSON")

        return AgentResult(
            success=True,
            dev_notes=parsed.dev_notes,
            flagged_reason=parsed.flagged_reason,
            commit_hash=parsed.commit_hash,
            execution_details=details,
        )

    def check_available(self) -> str | None:
        if not shutil.which(self.claude_path):
            return "Claude Code CLI not found. Install from https://github.com/anthropics/claude-code"
        return None


def _describe_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"
