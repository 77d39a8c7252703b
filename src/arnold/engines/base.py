"""Base class for agent engine adapters: spawn, supervise, collect output."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from arnold import log
from arnold.tasks.model import ExecutionDetails

# Variables the agent needs from the host; everything else is withheld.
PASSTHROUGH_ENV: tuple[str, ...] = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER")

_READ_CHUNK = 4096
_LOG_PREVIEW = 200


@dataclass
class ProcessOutput:
    """Raw outcome of one supervised process."""

    success: bool = False
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    spawn_error: str = ""
    duration_ms: int = 0


@dataclass
class AgentResult:
    """Interpreted outcome of one agent run, ready to be written to a task."""

    success: bool
    dev_notes: str | None = None
    error: str | None = None
    is_system_error: bool | None = None
    execution_details: ExecutionDetails | None = None
    flagged_reason: str | None = None
    commit_hash: str | None = None


class EngineBase(ABC):
    """Abstract engine adapter.  Subclasses implement ``build_cmd`` and ``parse_output``."""

    name: str = "base"

    def __init__(self, *, extra_env: dict[str, str] | None = None) -> None:
        self.extra_env = dict(extra_env or {})

    @abstractmethod
    def build_cmd(self, prompt: str) -> list[str]:
        """Return the CLI command list for the given prompt."""
        ...

    @abstractmethod
    def parse_output(self, output: ProcessOutput, *, timeout: float) -> AgentResult:
        """Interpret a finished process."""
        ...

    def build_env(self) -> dict[str, str]:
        """Explicit child environment: a few host variables plus the engine's own."""
        env = {k: os.environ[k] for k in PASSTHROUGH_ENV if k in os.environ}
        env.update({k: v for k, v in self.extra_env.items() if v})
        return env

    def check_available(self) -> str | None:
        """Return an error message if the engine CLI is not available, else None."""
        cmd_name = self.build_cmd("test")[0]
        if not shutil.which(cmd_name):
            return f"{cmd_name} not found in PATH"
        return None

    async def run(self, prompt: str, *, cwd: Path | None = None, timeout: float) -> AgentResult:
        output = await self.supervise(
            self.build_cmd(prompt),
            cwd=cwd,
            env=self.build_env(),
            timeout=timeout,
        )
        return self.parse_output(output, timeout=timeout)

    async def supervise(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float,
    ) -> ProcessOutput:
        """Run *cmd* to completion or until *timeout* seconds elapse."""
        start = time.monotonic()
        log.debug(f"Spawning {self.name}", cwd=str(cwd) if cwd else None)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except OSError as exc:
            log.error(f"Failed to spawn {self.name}: {exc}")
            return ProcessOutput(success=False, spawn_error=str(exc) or type(exc).__name__)

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = asyncio.gather(
            self._pump(proc.stdout, stdout_chunks, "stdout"),
            self._pump(proc.stderr, stderr_chunks, "stderr"),
        )

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            log.warn(f"{self.name} timed out after {timeout:g}s, terminating")
            await self._terminate_process(proc)
        except asyncio.CancelledError:
            await self._terminate_process(proc)
            readers.cancel()
            raise

        # A grandchild holding the pipes open must not block us forever.
        try:
            await asyncio.wait_for(readers, timeout=5)
        except asyncio.TimeoutError:
            log.warn(f"{self.name} output streams did not close after exit")

        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        log.info(
            f"{self.name} exited",
            code=proc.returncode,
            timed_out=timed_out,
            stdout_len=len(stdout),
            stderr_len=len(stderr),
        )
        return ProcessOutput(
            success=not timed_out and proc.returncode == 0,
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            timed_out=timed_out,
            duration_ms=elapsed_ms,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        label: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                sink.append(text)
                log.debug(f"{self.name} {label}", text=text[:_LOG_PREVIEW])
        tail = decoder.decode(b"", final=True)
        if tail:
            sink.append(tail)

    @staticmethod
    async def _terminate_process(proc: asyncio.subprocess.Process) -> None:
        """Terminate a subprocess promptly (best effort), escalating to kill."""
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=2)
            return
        except asyncio.TimeoutError:
            pass

        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=2)
