"""Arnold CLI: run the task executor and manage the task queue.

Installed as ``arnold`` console_script via pip.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import signal
import sys
from datetime import datetime, timedelta, timezone
from typing import Any

import click
from rich.markup import escape
from rich.table import Table

from arnold import __version__
from arnold import log
from arnold.config import DEFAULT_DB_PATH, Config
from arnold.errors import ArnoldError, to_user_message
from arnold.tasks.model import Task, TaskStatus
from arnold.tasks.store import LOG_LEVELS, USAGE_PERIODS, SystemLog, TaskStore

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

STATUS_CHOICES = [s.value for s in TaskStatus] + ["upcoming"]

_LEVEL_STYLES = {
    "DEBUG": "dim",
    "INFO": "cyan",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "magenta",
}

_RELATIVE_SINCE = re.compile(r"^(\d+)([mhd])$")


def _parse_status(ctx: click.Context, param: click.Parameter, value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus.parse(value)
    except ValueError:
        raise click.BadParameter(
            f"{value!r} is not one of {', '.join(STATUS_CHOICES)}.",
            ctx=ctx,
            param=param,
        ) from None


def parse_since(value: str, *, now: datetime | None = None) -> datetime:
    """``30m`` / ``1h`` / ``7d`` relative to *now*, or an ISO date/timestamp."""
    now = now or datetime.now(timezone.utc)
    match = _RELATIVE_SINCE.match(value.strip())
    if match:
        amount = int(match.group(1))
        unit = {"m": "minutes", "h": "hours", "d": "days"}[match.group(2)]
        return now - timedelta(**{unit: amount})
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise click.BadParameter(
            f"{value!r} is neither a relative time (30m, 1h, 7d) nor an ISO date.",
            param_hint="--since",
        ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _open_store(ctx: click.Context) -> TaskStore:
    try:
        return TaskStore(ctx.obj["db_path"])
    except ArnoldError as exc:
        raise click.ClickException(to_user_message(exc)) from None


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--db",
    "db_path",
    envvar="ARNOLD_DB_PATH",
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="SQLite task database",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="arnold")
@click.pass_context
def main(ctx: click.Context, db_path: str, verbose: bool) -> None:
    """Arnold: an autonomous coding agent that works through a task queue.

    \b
    EXAMPLES:
      arnold add "Fix the login redirect" --status queued
      arnold run                        # Execute queued tasks until Ctrl+C
      arnold list --status stuck
      arnold logs --errors --since 1h
    """
    log.set_verbose(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["verbose"] = verbose


# ── Subcommand: run ──────────────────────────────────────────────


@main.command()
@click.option("--desktop-notify", is_flag=True, help="Also show desktop notifications")
@click.option("--persist-logs/--no-persist-logs", default=True, help="Write log records to the task database")
@click.pass_context
def run(ctx: click.Context, desktop_notify: bool, persist_logs: bool) -> None:
    """Poll the queue and execute tasks one at a time until interrupted.

    SIGINT/SIGTERM stop polling and wait (bounded by ARNOLD_SHUTDOWN_TIMEOUT)
    for the task in progress to finish.
    """
    from arnold.secrets import register_secrets

    try:
        cfg = Config.from_env()
    except ArnoldError as exc:
        log.error(to_user_message(exc))
        sys.exit(1)
    cfg.db_path = ctx.obj["db_path"]
    cfg.verbose = ctx.obj["verbose"]

    register_secrets(cfg.secret_values())
    log.set_json_mode(cfg.production)
    for problem in cfg.validate():
        log.warn(f"Config: {problem}")

    store = _open_store(ctx)
    log_writer = log.QueuedSink(store.insert_system_log) if persist_logs else None
    log.set_sink(log_writer)

    try:
        code = asyncio.run(_serve(cfg, store, desktop_notify=desktop_notify))
    finally:
        log.set_sink(None)
        if log_writer is not None:
            log_writer.close()
    sys.exit(code)


async def _serve(cfg: Config, store: TaskStore, *, desktop_notify: bool = False) -> int:
    from arnold.executor import TaskExecutor
    from arnold.notify import combine_sinks, console_sink, desktop_sink

    executor = TaskExecutor(cfg, store)
    err = executor.engine.check_available()
    if err:
        log.warn(err)

    sink = combine_sinks(console_sink, desktop_sink) if desktop_notify else console_sink
    result = await executor.start(sink)
    if not result.success:
        log.error(result.message)
        return 1

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows has no add_signal_handler; Ctrl+C then surfaces as KeyboardInterrupt.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    log.info(
        "Waiting for queued tasks",
        poll_interval=cfg.poll_interval,
        task_timeout=cfg.task_timeout,
    )
    try:
        await stop_requested.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        log.info("Shutting down")
        await executor.shutdown(cfg.shutdown_timeout)
    return 0


# ── Task commands ────────────────────────────────────────────────


@main.command()
@click.argument("title")
@click.option("-d", "--description", default=None, help="What needs to be done")
@click.option("-a", "--area", default=None, help="Area of the codebase (e.g. frontend)")
@click.option(
    "-s",
    "--status",
    default="backlog",
    callback=_parse_status,
    help=f"Initial status ({', '.join(STATUS_CHOICES)})",
)
@click.pass_context
def add(ctx: click.Context, title: str, description: str | None, area: str | None, status: TaskStatus) -> None:
    """Create a task. Use --status queued to have the executor pick it up."""
    store = _open_store(ctx)
    try:
        task = store.create_task(title, description=description, area=area, status=status)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="TITLE") from None
    log.success(f"Created task: {task.title}", id=task.id, status=task.status.value)


@main.command(name="list")
@click.option("-s", "--status", default=None, callback=_parse_status, help="Filter by status")
@click.option("-a", "--area", default=None, help="Filter by area")
@click.option("-q", "--search", default=None, help="Search title and description")
@click.option("-n", "--limit", type=click.IntRange(min=1), default=20, show_default=True)
@click.pass_context
def list_tasks(
    ctx: click.Context,
    status: TaskStatus | None,
    area: str | None,
    search: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""
    store = _open_store(ctx)
    tasks = store.search_tasks(query=search, status=status, area=area, limit=limit)
    if not tasks:
        log.info("No tasks found")
        return

    table = Table(border_style="blue")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Status")
    table.add_column("Area")
    table.add_column("Title")
    table.add_column("Created", style="dim")
    for task in tasks:
        table.add_row(task.id[:8], task.status.value, escape(task.area or ""), escape(task.title), task.created_at[:19])
    log.console.print(table)


@main.command()
@click.argument("task_id")
@click.pass_context
def show(ctx: click.Context, task_id: str) -> None:
    """Show every field of one task."""
    store = _open_store(ctx)
    task = _get_task_or_exit(store, task_id)

    log.console.print(f"[bold]{escape(task.title)}[/bold]")
    rows: list[tuple[str, Any]] = [
        ("id", task.id),
        ("status", task.status.value),
        ("area", task.area),
        ("created", task.created_at),
        ("completed", task.completed_at),
        ("commit", task.commit_hash),
    ]
    for label, value in rows:
        if value:
            log.console.print(f"  [dim]{label:<10}[/dim] {escape(str(value))}")
    details = task.execution_details
    if details is not None:
        tokens = details.usage.total() if details.usage else 0
        log.console.print(
            f"  [dim]{'usage':<10}[/dim] turns={details.num_turns} "
            f"cost=${details.total_cost_usd or 0:.4f} tokens={tokens}",
        )
    if task.description:
        log.console.print("\n[bold]Description[/bold]")
        log.console.print(task.description, markup=False)
    if task.notes:
        log.console.print("\n[bold]Notes[/bold]")
        log.console.print(task.notes, markup=False)


@main.command()
@click.argument("task_id")
@click.option("-t", "--title", default=None)
@click.option("-d", "--description", default=None)
@click.option("-a", "--area", default=None)
@click.option("-s", "--status", default=None, callback=_parse_status)
@click.option("--notes", default=None)
@click.pass_context
def update(
    ctx: click.Context,
    task_id: str,
    title: str | None,
    description: str | None,
    area: str | None,
    status: TaskStatus | None,
    notes: str | None,
) -> None:
    """Change fields of an existing task (e.g. move it to queued)."""
    if all(v is None for v in (title, description, area, status, notes)):
        raise click.UsageError("Nothing to update. Pass at least one of --title/--description/--area/--status/--notes.")
    store = _open_store(ctx)
    try:
        task = store.update_task(
            task_id,
            title=title,
            description=description,
            area=area,
            status=status,
            notes=notes,
        )
    except ArnoldError as exc:
        log.error(to_user_message(exc))
        sys.exit(1)
    log.success(f"Updated task: {task.title}", id=task.id, status=task.status.value)


def _get_task_or_exit(store: TaskStore, task_id: str) -> Task:
    try:
        return store.get_task(task_id)
    except ArnoldError as exc:
        log.error(to_user_message(exc))
        sys.exit(1)


# ── Subcommand: stats ────────────────────────────────────────────


@main.command()
@click.option(
    "-p",
    "--period",
    type=click.Choice(USAGE_PERIODS),
    default="all",
    show_default=True,
)
@click.pass_context
def stats(ctx: click.Context, period: str) -> None:
    """Task counts, cost, and token usage for a period."""
    store = _open_store(ctx)
    s = store.usage_stats(period)

    log.console.print(f"[bold]Usage: {s.period}[/bold]")
    log.console.print(f"  Tasks:      {s.total_tasks} ({s.completed_tasks} done, {s.stuck_tasks} stuck)")
    log.console.print(f"  Total cost: ${s.total_cost_usd:.4f} (avg ${s.avg_cost_per_task:.4f}/task)")
    log.console.print(f"  Tokens:     {s.total_tokens:,} (avg {s.avg_tokens_per_task:,.0f}/task)")

    if s.tasks_by_status:
        table = Table(title="By status", border_style="blue")
        table.add_column("Status")
        table.add_column("Tasks", justify="right")
        for name, count in sorted(s.tasks_by_status.items()):
            table.add_row(name, str(count))
        log.console.print(table)
    if s.tasks_by_area:
        table = Table(title="By area", border_style="blue")
        table.add_column("Area")
        table.add_column("Tasks", justify="right")
        for name, count in sorted(s.tasks_by_area.items(), key=lambda kv: (-kv[1], kv[0])):
            table.add_row(name, str(count))
        log.console.print(table)


# ── Subcommand: logs ─────────────────────────────────────────────


@main.command()
@click.option("-l", "--level", default=None, help="Comma-separated levels (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.option("-t", "--task", "task_id", default=None, help="Only records for this task id")
@click.option("-s", "--since", default=None, help='Relative ("30m", "1h", "7d") or ISO date')
@click.option("-q", "--search", default=None, help="Substring of the message")
@click.option("-n", "--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("-e", "--errors", is_flag=True, help="Only ERROR and CRITICAL")
@click.option("-j", "--json", "as_json", is_flag=True, help="One JSON object per line")
@click.pass_context
def logs(
    ctx: click.Context,
    level: str | None,
    task_id: str | None,
    since: str | None,
    search: str | None,
    limit: int,
    errors: bool,
    as_json: bool,
) -> None:
    """Show persisted log records, oldest first."""
    levels: list[str] | None = None
    if errors:
        levels = ["ERROR", "CRITICAL"]
    elif level:
        levels = [lv.strip().upper() for lv in level.split(",") if lv.strip()]
        unknown = [lv for lv in levels if lv not in LOG_LEVELS]
        if unknown:
            raise click.BadParameter(
                f"Unknown level(s): {', '.join(unknown)}. Valid levels: {', '.join(LOG_LEVELS)}.",
                param_hint="--level",
            )

    since_ts = parse_since(since) if since else None
    store = _open_store(ctx)
    records = store.query_system_logs(
        levels=levels,
        task_id=task_id,
        since=since_ts,
        search=search,
        limit=limit,
    )
    for record in reversed(records):
        if as_json:
            click.echo(json.dumps(_log_to_dict(record), ensure_ascii=False))
        else:
            _print_log(record)


def _log_to_dict(record: SystemLog) -> dict[str, Any]:
    return {
        "id": record.id,
        "timestamp": record.created_at,
        "level": record.level,
        "message": record.message,
        "task_id": record.task_id,
        "metadata": record.metadata,
    }


def _print_log(record: SystemLog) -> None:
    style = _LEVEL_STYLES.get(record.level, "none")
    line = f"[{style}]\\[{record.created_at[:19]}] {record.level:<8}[/{style}] {escape(record.message)}"
    if record.task_id:
        line += f" [dim](task: {record.task_id[:8]})[/dim]"
    log.console.print(line)
    if record.metadata:
        log.console.print(f"  [dim]{escape(json.dumps(record.metadata, default=str))}[/dim]")


if __name__ == "__main__":
    main()
