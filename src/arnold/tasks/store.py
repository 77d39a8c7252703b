"""SQLite task store.

The executor only needs the three methods of :class:`TaskRepo`; the rest of
:class:`TaskStore` backs the CLI (task CRUD, usage stats, system logs).

Each method opens its own connection, so the store can be called from
worker threads (``asyncio.to_thread``) without sharing connection state.
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from arnold import log
from arnold.errors import StoreError, TaskNotFoundError
from arnold.tasks.model import ExecutionDetails, Task, TaskStatus

USAGE_PERIODS: tuple[str, ...] = ("today", "yesterday", "week", "month", "all")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_UPDATABLE_FIELDS = ("title", "description", "status", "area", "notes")

# Columns beyond id/title/created_at, in the order they were introduced.
_TASK_COLUMNS: tuple[tuple[str, str], ...] = (
    ("description", "TEXT"),
    ("notes", "TEXT"),
    ("area", "TEXT"),
    ("status", "TEXT NOT NULL DEFAULT 'backlog'"),
    ("commit_hash", "TEXT"),
    ("execution_details", "TEXT"),
    ("completed_at", "TEXT"),
)


class TaskRepo(Protocol):
    """What the executor needs from a task store."""

    def fetch_oldest_queued(self) -> Task | None: ...

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        notes: str | None = None,
        commit_hash: str | None = None,
        execution_details: ExecutionDetails | None = None,
    ) -> None: ...

    def reset_stranded_in_progress(self) -> int: ...


@dataclass
class UsageStats:
    period: str
    start: str
    end: str
    total_tasks: int = 0
    completed_tasks: int = 0
    stuck_tasks: int = 0
    total_cost_usd: float = 0.0
    total_tokens: int = 0
    tasks_by_status: dict[str, int] = field(default_factory=dict)
    tasks_by_area: dict[str, int] = field(default_factory=dict)

    @property
    def avg_cost_per_task(self) -> float:
        return self.total_cost_usd / self.total_tasks if self.total_tasks else 0.0

    @property
    def avg_tokens_per_task(self) -> float:
        return self.total_tokens / self.total_tasks if self.total_tasks else 0.0


@dataclass
class SystemLog:
    id: int
    created_at: str
    level: str
    message: str
    task_id: str | None
    metadata: dict[str, Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat(timespec="microseconds")


class TaskStore:
    """SQLite implementation of the task store."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            with contextlib.suppress(sqlite3.Error):
                conn.rollback()
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    notes TEXT,
                    area TEXT,
                    status TEXT NOT NULL DEFAULT 'backlog',
                    commit_hash TEXT,
                    execution_details TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            self._migrate_tasks(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS system_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    task_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_created ON tasks(status, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_created ON system_logs(created_at)")

    @staticmethod
    def _migrate_tasks(conn: sqlite3.Connection) -> None:
        """Add columns that databases created by older versions lack."""
        cols = {row["name"] for row in conn.execute("PRAGMA table_info(tasks)")}
        for name, decl in _TASK_COLUMNS:
            if name in cols:
                continue
            conn.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
            log.info("Task store migration: added column", column=name)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        details = None
        if row["execution_details"]:
            with contextlib.suppress(ValueError):
                details = ExecutionDetails.from_dict(json.loads(row["execution_details"]))
        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            notes=row["notes"],
            area=row["area"],
            status=TaskStatus(row["status"]),
            commit_hash=row["commit_hash"],
            execution_details=details,
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    # ---- executor interface ----

    def fetch_oldest_queued(self) -> Task | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                (TaskStatus.QUEUED.value,),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        notes: str | None = None,
        commit_hash: str | None = None,
        execution_details: ExecutionDetails | None = None,
    ) -> None:
        """Write a status transition in a single UPDATE.

        ``notes`` overwrites the stored value only when given. ``done`` stamps
        ``completed_at`` and always writes ``commit_hash``, clearing it when
        the run made no commit; other statuses write it only when given.
        """
        assignments = ["status = ?"]
        params: list[Any] = [TaskStatus(status).value]
        if status == TaskStatus.DONE:
            assignments.append("completed_at = ?")
            params.append(_iso(_now()))
        if notes is not None:
            assignments.append("notes = ?")
            params.append(notes)
        if commit_hash is not None or status == TaskStatus.DONE:
            assignments.append("commit_hash = ?")
            params.append(commit_hash)
        if execution_details is not None:
            assignments.append("execution_details = ?")
            params.append(json.dumps(execution_details.to_dict()))
        params.append(task_id)

        with self._connect() as conn:
            cur = conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)
            if cur.rowcount == 0:
                raise TaskNotFoundError(task_id)

    def reset_stranded_in_progress(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = ? WHERE status = ?",
                (TaskStatus.QUEUED.value, TaskStatus.IN_PROGRESS.value),
            )
            return cur.rowcount

    # ---- CRUD ----

    def create_task(
        self,
        title: str,
        *,
        description: str | None = None,
        status: TaskStatus = TaskStatus.BACKLOG,
        area: str | None = None,
        notes: str | None = None,
    ) -> Task:
        title = title.strip()
        if not title:
            raise ValueError("Task title cannot be empty")
        task = Task(
            id=uuid.uuid4().hex,
            title=title,
            description=description or None,
            notes=notes or None,
            area=area or None,
            status=TaskStatus(status),
            created_at=_iso(_now()),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tasks (id, title, description, notes, area, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    task.id,
                    task.title,
                    task.description,
                    task.notes,
                    task.area,
                    task.status.value,
                    task.created_at,
                ),
            )
        return task

    def get_task(self, task_id: str) -> Task:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)
        return self._row_to_task(row)

    def update_task(self, task_id: str, **updates: Any) -> Task:
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        values = {k: v for k, v in updates.items() if v is not None}
        if "status" in values:
            values["status"] = TaskStatus(values["status"]).value
        if values:
            assignments = ", ".join(f"{k} = ?" for k in values)
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE tasks SET {assignments} WHERE id = ?",
                    [*values.values(), task_id],
                )
                if cur.rowcount == 0:
                    raise TaskNotFoundError(task_id)
        return self.get_task(task_id)

    def search_tasks(
        self,
        *,
        query: str | None = None,
        status: TaskStatus | None = None,
        area: str | None = None,
        limit: int = 10,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        if area:
            clauses.append("area = ?")
            params.append(area)
        if query:
            clauses.append("(title LIKE ? OR description LIKE ?)")
            params.extend([f"%{query}%", f"%{query}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def recent_tasks(self, limit: int = 10) -> list[Task]:
        return self.search_tasks(limit=limit)

    # ---- stats ----

    def usage_stats(self, period: str = "all", *, now: datetime | None = None) -> UsageStats:
        if period not in USAGE_PERIODS:
            raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(USAGE_PERIODS)}")
        now = now or _now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = now
        label = period
        if period == "today":
            start = midnight
        elif period == "yesterday":
            start = midnight - timedelta(days=1)
            end = midnight
        elif period == "week":
            start = now - timedelta(days=7)
            label = "Last 7 days"
        elif period == "month":
            start = now - timedelta(days=30)
            label = "Last 30 days"
        else:
            start = datetime.fromtimestamp(0, tz=timezone.utc)
            label = "All time"

        with self._connect() as conn:
            if period == "all":
                rows = conn.execute("SELECT * FROM tasks").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE created_at >= ? AND created_at < ?",
                    (_iso(start), _iso(end)),
                ).fetchall()

        stats = UsageStats(period=label, start=_iso(start), end=_iso(end))
        for row in rows:
            task = self._row_to_task(row)
            stats.total_tasks += 1
            status = task.status.value
            stats.tasks_by_status[status] = stats.tasks_by_status.get(status, 0) + 1
            area = task.area or "unspecified"
            stats.tasks_by_area[area] = stats.tasks_by_area.get(area, 0) + 1
            details = task.execution_details
            if details is not None:
                stats.total_cost_usd += details.total_cost_usd or 0.0
                if details.usage is not None:
                    stats.total_tokens += details.usage.total()
        stats.completed_tasks = stats.tasks_by_status.get(TaskStatus.DONE.value, 0)
        stats.stuck_tasks = stats.tasks_by_status.get(TaskStatus.STUCK.value, 0)
        return stats

    # ---- system logs ----

    def insert_system_log(
        self,
        level: str,
        message: str,
        task_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO system_logs (created_at, level, message, task_id, metadata) VALUES (?, ?, ?, ?, ?)",
                (_iso(_now()), level.upper(), message, task_id, json.dumps(metadata or {}, default=str)),
            )

    def query_system_logs(
        self,
        *,
        levels: list[str] | None = None,
        task_id: str | None = None,
        since: datetime | None = None,
        search: str | None = None,
        limit: int = 50,
    ) -> list[SystemLog]:
        """Most recent matching log records, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if levels:
            clauses.append(f"level IN ({', '.join('?' for _ in levels)})")
            params.extend(lv.upper() for lv in levels)
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_iso(since))
        if search:
            clauses.append("message LIKE ?")
            params.append(f"%{search}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM system_logs {where} ORDER BY id DESC LIMIT ?",
                params,
            ).fetchall()

        logs: list[SystemLog] = []
        for row in rows:
            try:
                metadata = json.loads(row["metadata"] or "{}")
            except ValueError:
                metadata = {}
            logs.append(
                SystemLog(
                    id=row["id"],
                    created_at=row["created_at"],
                    level=row["level"],
                    message=row["message"],
                    task_id=row["task_id"],
                    metadata=metadata,
                )
            )
        return logs
