"""Task executor: polls the store and drives one task at a time through the agent.

States::

    Stopped --start()--> Idle <--pipeline done-- Busy
       ^                  |  \\--queued task found-->/
       +-----stop()-------+

``stop()`` cancels the polling loop only; a task already in its pipeline
runs to completion. Hosts that need a bounded shutdown call ``stop()`` and
then ``wait_for_idle(timeout)`` (or simply ``shutdown()``).
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

from arnold import log
from arnold.config import Config
from arnold.engines.base import AgentResult, EngineBase
from arnold.engines.claude import ClaudeEngine
from arnold.errors import AlreadyRunningError, GitError, NotRunningError, to_user_message
from arnold.git_ops import RepoWorkspace
from arnold.notify import Notifier, NotifySink
from arnold.protocol import build_directive
from arnold.tasks.model import Task, TaskStatus
from arnold.tasks.store import TaskRepo


@dataclass
class ExecutorResult:
    success: bool
    message: str


@dataclass
class ExecutorStatus:
    running: bool
    current_task: dict[str, str] | None = None


class TaskExecutor:
    """Single-worker executor owned by the host process."""

    def __init__(
        self,
        cfg: Config,
        store: TaskRepo,
        *,
        engine: EngineBase | None = None,
        workspace: RepoWorkspace | None = None,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.engine = engine or ClaudeEngine.from_config(cfg)
        self.workspace = workspace or RepoWorkspace(cfg)

        self._running = False
        self._current_task: Task | None = None
        self._notifier: Notifier | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._pipeline_task: asyncio.Task[None] | None = None
        self._idle_waiters: list[asyncio.Future[None]] = []
        self._start_lock = asyncio.Lock()

    # ── lifecycle ────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def current_task(self) -> Task | None:
        return self._current_task

    async def start(self, notify: NotifySink) -> ExecutorResult:
        """Prepare the workspace, reset stranded tasks, and begin polling.

        Raises :class:`AlreadyRunningError` if the executor is running.
        """
        async with self._start_lock:
            if self._running:
                raise AlreadyRunningError()

            try:
                await asyncio.to_thread(self.workspace.ensure_ready)
            except (GitError, OSError) as exc:
                log.error("Failed to setup repository", error=to_user_message(exc))
                return ExecutorResult(False, f"Failed to setup repository: {to_user_message(exc)}")

            await self._swap_notifier(notify)
            self._running = True
            log.info("Executor started", project_dir=str(self.workspace.path))

            try:
                reset_count = await asyncio.to_thread(self.store.reset_stranded_in_progress)
                if reset_count > 0:
                    log.info("Reset stranded tasks", count=reset_count)
            except Exception as exc:
                log.error("Failed to reset in_progress tasks", error=to_user_message(exc))

            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
            return ExecutorResult(True, "Executor started")

    def stop(self) -> ExecutorResult:
        """Stop picking up new tasks. Raises :class:`NotRunningError` when stopped."""
        if not self._running:
            raise NotRunningError()

        self._running = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

        current = self._current_task
        log.info("Executor stopped", current_task=current.title if current else None)
        if current is not None:
            return ExecutorResult(True, f"Stopping after current task: {current.title}")
        return ExecutorResult(True, "Stopped")

    def get_status(self) -> ExecutorStatus:
        current = self._current_task
        return ExecutorStatus(
            running=self._running,
            current_task=current.summary() if current else None,
        )

    async def wait_for_idle(self, timeout: float) -> None:
        """Return once no task is executing, or after *timeout* seconds."""
        if self._current_task is None:
            return

        log.info("Waiting for executor to become idle", current_task=self._current_task.title, timeout=timeout)
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        try:
            done, _ = await asyncio.wait({waiter}, timeout=timeout)
            if not done:
                log.warn("Executor idle wait timed out")
        finally:
            if waiter in self._idle_waiters:
                self._idle_waiters.remove(waiter)
            if not waiter.done():
                waiter.cancel()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop, wait for the in-flight task (bounded), and flush notifications."""
        if self._running:
            result = self.stop()
            log.info(result.message)
        await self.wait_for_idle(self.cfg.shutdown_timeout if timeout is None else timeout)
        if self._notifier is not None:
            await self._notifier.aclose()
            self._notifier = None

    # ── polling ──────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_for_tasks()
            await asyncio.sleep(self.cfg.poll_interval)

    async def poll_for_tasks(self) -> None:
        """Dequeue the oldest queued task and start its pipeline, if idle."""
        if not self._running or self._current_task is not None:
            return

        try:
            task = await asyncio.to_thread(self.store.fetch_oldest_queued)
        except Exception as exc:
            log.error("Poll error", error=to_user_message(exc))
            return

        # Re-check: stop() or another poll may have run while we were suspended.
        if task is None or not self._running or self._current_task is not None:
            return

        log.info("Found task to execute", task_id=task.id, title=task.title)
        self._current_task = task
        self._pipeline_task = asyncio.get_running_loop().create_task(self._execute_task(task))

    # ── pipeline ─────────────────────────────────────────────────

    async def _execute_task(self, task: Task) -> None:
        with log.task_context(task.id):
            try:
                await self._run_pipeline(task)
            except Exception as exc:
                message = to_user_message(exc)
                log.error("Unexpected task execution error", task_id=task.id, error=message)
                await self._record(task.id, TaskStatus.STUCK, notes=message)
                self._notify(f"⚠️ **Stuck:** {task.title}\n{message}")
            finally:
                self._current_task = None
                self._pipeline_task = None
                self._resolve_idle_waiters()

    async def _run_pipeline(self, task: Task) -> None:
        await asyncio.to_thread(self.store.set_status, task.id, TaskStatus.IN_PROGRESS)
        self._notify(f"🔄 **Starting:** {task.title}")

        directive = build_directive(task, self.cfg.repo_branch)
        log.info("Running agent", task_id=task.id, prompt_length=len(directive))
        result = await self.engine.run(directive, cwd=self.workspace.path, timeout=self.cfg.task_timeout)

        if not result.success:
            await self._handle_failure(task, result)
            return

        if result.flagged_reason:
            log.warn("Task flagged as potentially harmful", task_id=task.id, reason=result.flagged_reason)
            await self._record(task.id, TaskStatus.STUCK, notes=f"⚠️ FLAGGED: {result.flagged_reason}")
            self._notify(
                f"🚨 **Flagged:** {task.title}\n\n"
                "⚠️ This task was flagged as potentially harmful and was NOT executed.\n\n"
                f"**Reason:** {result.flagged_reason}\n\n`{task.id}`"
            )
            return

        push_info = await self._describe_push(result.commit_hash)
        await asyncio.to_thread(
            self.store.set_status,
            task.id,
            TaskStatus.DONE,
            result.dev_notes or "Completed successfully.",
            result.commit_hash,
            result.execution_details,
        )
        self._notify(f"✅ **Done:** {task.title}{push_info}\n`{task.id}`")
        log.success("Task completed", task_id=task.id, commit_hash=result.commit_hash)

    async def _handle_failure(self, task: Task, result: AgentResult) -> None:
        error = result.error or "Unknown error"
        log.error("Task failed", task_id=task.id, error=error, is_system_error=result.is_system_error)
        await self._record(task.id, TaskStatus.STUCK, notes=error)
        self._notify(f"⚠️ **Stuck:** {task.title}\n{error}")

    async def _describe_push(self, commit_hash: str | None) -> str:
        if not commit_hash:
            return "\n\n📝 No commit was made"

        verified = await asyncio.to_thread(self.workspace.verify_commit_pushed, commit_hash)
        short = commit_hash[:7]
        if verified:
            log.info("Commit verified on remote", commit_hash=commit_hash)
            url = self.cfg.commit_url(commit_hash)
            ref = f"[`{short}`]({url})" if url else f"`{short}`"
            return f"\n\n🔗 Pushed {ref} to `{self.cfg.repo_branch}`"
        log.warn("Commit not found on remote", commit_hash=commit_hash)
        return f"\n\n⚠️ Commit `{short}` was not found on remote - push may have failed"

    async def _record(self, task_id: str, status: TaskStatus, *, notes: str | None = None) -> None:
        """Status write whose failure is logged rather than raised."""
        try:
            await asyncio.to_thread(self.store.set_status, task_id, status, notes)
        except Exception as exc:
            log.error("Failed to update task status", task_id=task_id, status=status.value, error=to_user_message(exc))

    # ── helpers ──────────────────────────────────────────────────

    def _notify(self, message: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(message)
        except Exception as exc:
            log.warn("Notification failed", error=str(exc))

    def _resolve_idle_waiters(self) -> None:
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def _swap_notifier(self, sink: NotifySink) -> None:
        if self._notifier is not None and self._notifier.sink is sink:
            self._notifier.start()
            return
        if self._notifier is not None:
            with contextlib.suppress(Exception):
                await self._notifier.aclose()
        self._notifier = Notifier(sink)
        self._notifier.start()
