import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone

import click

from . import scheduler, service
from .archiver import archive_and_delete_historical_tasks
from .db import connect_db, init_db
from .errors import TaskCtlError
from .models import TaskEventType, TaskSortBy, TaskStatus, TaskType
from .pattern import Predictor, SchedulingPattern
from .reaper import reset_hung_tasks
from .repository import get_config, set_config
from .utils import from_iso, iso_from_now, parse_delay_to_seconds, to_iso
from .worker import start_workers

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

STATUS_CHOICE = click.Choice([s.value for s in TaskStatus])
EVENT_CHOICE = click.Choice([e.value for e in TaskEventType])


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _dump(obj):
    click.echo(json.dumps(asdict(obj), indent=2))


@click.group(help="taskctl — durable background task engine")
@click.option("--db", "db_path", envvar="TASKCTL_DB", default=None,
              help="SQLite database file (default: taskctl.db)")
@click.pass_context
def cli(ctx, db_path):
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = db_path


# ---------- Tasks ----------
@cli.command("submit", help="Queue a task for execution")
@click.argument("task_type")
@click.option("--data", default="{}", show_default=True, help="Task data (usually JSON)")
@click.option("--priority", default=None, type=int,
              help="1=critical, 2=high, 3=normal, 4=low (default: the task type's priority)")
@click.option("--batch", "batch_id", default=None, help="Batch id for batch operations")
@click.option("--ref", "external_reference", default=None, help="Unique external reference")
@click.option("--run-at", default=None, help="ISO datetime; without an offset it is taken as UTC")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.option("--suspended", is_flag=True, help="Queue the task suspended")
@click.pass_obj
def submit_cmd(db_path, task_type, data, priority, batch_id, external_reference, run_at,
               delay_str, suspended):
    conn = connect_db(db_path)
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")

        next_execution = None
        if delay_str:
            next_execution = iso_from_now(parse_delay_to_seconds(delay_str))
        elif run_at:
            next_execution = run_at

        task_id = service.submit_task(
            conn,
            task_type,
            data,
            priority=priority,
            batch_id=batch_id,
            external_reference=external_reference,
            next_execution=next_execution,
            suspended=suspended,
        )
        click.secho(task_id, fg="green")
    except (ValueError, TaskCtlError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("get", help="Show a task")
@click.argument("task_id")
@click.option("--ref", "by_reference", is_flag=True, help="TASK_ID is an external reference")
@click.pass_obj
def get_cmd(db_path, task_id, by_reference):
    conn = connect_db(db_path)
    try:
        if by_reference:
            task = service.get_task_by_external_reference(conn, task_id)
        else:
            task = service.get_task(conn, task_id)
        _dump(task)
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("status", help="Status of one task, or task counts by status")
@click.argument("task_id", required=False)
@click.pass_obj
def status_cmd(db_path, task_id):
    conn = connect_db(db_path)
    try:
        if task_id:
            click.echo(service.get_task_status(conn, task_id).value)
        else:
            click.echo(json.dumps(service.get_task_counts(conn), indent=2))
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("list", help="List tasks")
@click.option("--type", "task_type", default=None)
@click.option("--status", type=STATUS_CHOICE, default=None)
@click.option("--filter", "filter_", default=None, help="Matches batch ids and external references")
@click.option("--sort", type=click.Choice([s.value for s in TaskSortBy]), default="queued",
              show_default=True)
@click.option("--asc", is_flag=True, help="Oldest first")
@click.option("--page", type=int, default=0, show_default=True)
@click.option("--size", type=int, default=None, help="Page size (max 100)")
@click.pass_obj
def list_cmd(db_path, task_type, status, filter_, sort, asc, page, size):
    conn = connect_db(db_path)
    try:
        summaries = service.get_task_summaries(
            conn,
            task_type=task_type,
            status=TaskStatus(status) if status else None,
            filter=filter_,
            sort_by=TaskSortBy(sort),
            descending=not asc,
            page_index=page,
            page_size=size,
        )
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()

    if not summaries.tasks:
        click.echo("No tasks.")
        return

    for t in summaries.tasks:
        click.echo(
            f"{t.id} | {t.type:<12} | {t.status.value:<9} | p={t.priority} "
            f"| attempts={t.execution_attempts} | step={t.step} | next={t.next_execution} "
            f"| failure={t.failure}"
        )
    click.echo(f"{len(summaries.tasks)} of {summaries.total} (page {summaries.page_index})")


def _lifecycle_command(name, single, batch, past_tense):
    @cli.command(name, help=f"{name.capitalize()} a task, or every task in a batch")
    @click.argument("task_id", required=False)
    @click.option("--batch", "batch_id", default=None, help="Apply to every task in this batch")
    @click.pass_obj
    def command(db_path, task_id, batch_id):
        if bool(task_id) == bool(batch_id):
            _fail("Pass either a TASK_ID or --batch")
        conn = connect_db(db_path)
        try:
            if batch_id:
                count = batch(conn, batch_id)
                click.secho(f"{past_tense.capitalize()} {count} task(s) in batch {batch_id}.",
                            fg="green")
            else:
                single(conn, task_id)
                click.secho(f"{past_tense.capitalize()} {task_id}.", fg="green")
        except TaskCtlError as e:
            _fail(e)
        finally:
            conn.close()

    return command


cancel_cmd = _lifecycle_command("cancel", service.cancel_task, service.cancel_batch, "cancelled")
suspend_cmd = _lifecycle_command("suspend", service.suspend_task, service.suspend_batch, "suspended")
unsuspend_cmd = _lifecycle_command("unsuspend", service.unsuspend_task, service.unsuspend_batch,
                                   "unsuspended")


@cli.command("delete", help="Delete a task and its events")
@click.argument("task_id")
@click.pass_obj
def delete_cmd(db_path, task_id):
    conn = connect_db(db_path)
    try:
        service.delete_task(conn, task_id)
        click.secho(f"Deleted {task_id}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("events", help="Show the events recorded for a task")
@click.argument("task_id")
@click.pass_obj
def events_cmd(db_path, task_id):
    conn = connect_db(db_path)
    try:
        events = service.get_task_events(conn, task_id)
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()

    if not events:
        click.echo("No events.")
        return
    for e in events:
        click.echo(f"{e.timestamp} | {e.type.value:<14} | step={e.step} | data={e.data}")


@cli.command("archived", help="Show an archived task")
@click.argument("task_id")
@click.pass_obj
def archived_cmd(db_path, task_id):
    conn = connect_db(db_path)
    try:
        _dump(service.get_archived_task(conn, task_id))
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Maintenance ----------
@cli.command("reap", help="Return hung tasks to the queue")
@click.pass_obj
def reap_cmd(db_path):
    conn = connect_db(db_path)
    try:
        count = reset_hung_tasks(conn)
        click.secho(f"Reset {count} hung task(s).", fg="yellow" if count else "green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("archive", help="Archive and delete terminal tasks past the retention period")
@click.option("--retention-days", type=int, default=None,
              help="Override the retention_days setting")
@click.pass_obj
def archive_cmd(db_path, retention_days):
    conn = connect_db(db_path)
    try:
        result = archive_and_delete_historical_tasks(conn, retention_days)
        click.secho(f"Archived {result['archived']}, deleted {result['deleted']}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.option("--name", default=None,
              help="Stable worker name; a restart with the same name releases its old locks")
@click.pass_obj
def worker_start(db_path, count, verbose, name):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, db_path, name=name)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Task types ----------
@cli.group("types", help="Task types")
def types_group():
    pass


@types_group.command("add")
@click.argument("code")
@click.option("--name", default=None, help="Display name (default: CODE)")
@click.option("--priority", type=int, default=3, show_default=True)
@click.option("--max-attempts", type=int, default=None, help="Override max_attempts_default")
@click.option("--retry-delay", type=int, default=None, help="Fixed retry delay in seconds")
@click.option("--timeout", type=int, default=None, help="Execution lease in seconds")
@click.option("--event", "events", type=EVENT_CHOICE, multiple=True, help="Record this event type")
@click.option("--event-with-data", "events_with_data", type=EVENT_CHOICE, multiple=True,
              help="Record this event type with a data snapshot")
@click.option("--no-archive", type=click.Choice(["completed", "failed", "cancelled"]),
              multiple=True, help="Delete tasks with this status instead of archiving them")
@click.option("--disabled", is_flag=True)
@click.pass_obj
def types_add(db_path, code, name, priority, max_attempts, retry_delay, timeout, events,
              events_with_data, no_archive, disabled):
    conn = connect_db(db_path)
    try:
        service.create_task_type(conn, TaskType(
            code=code,
            name=name or code,
            enabled=not disabled,
            priority=priority,
            maximum_execution_attempts=max_attempts,
            retry_delay=retry_delay,
            execution_timeout=timeout,
            archive_completed="completed" not in no_archive,
            archive_failed="failed" not in no_archive,
            archive_cancelled="cancelled" not in no_archive,
            event_types=[TaskEventType(e) for e in events],
            event_types_with_data=[TaskEventType(e) for e in events_with_data],
        ))
        click.secho(f"Added task type {code}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@types_group.command("list")
@click.pass_obj
def types_list(db_path):
    conn = connect_db(db_path)
    try:
        task_types = service.get_task_types(conn)
    finally:
        conn.close()

    if not task_types:
        click.echo("No task types.")
        return
    for t in task_types:
        state = "enabled" if t.enabled else "disabled"
        click.echo(
            f"{t.code:<16} | {t.name:<20} | {state:<8} | p={t.priority} "
            f"| max_attempts={t.maximum_execution_attempts} | timeout={t.execution_timeout}"
        )


@types_group.command("enable")
@click.argument("code")
@click.pass_obj
def types_enable(db_path, code):
    conn = connect_db(db_path)
    try:
        service.set_task_type_enabled(conn, code, True)
        click.secho(f"Enabled {code}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@types_group.command("disable")
@click.argument("code")
@click.pass_obj
def types_disable(db_path, code):
    conn = connect_db(db_path)
    try:
        service.set_task_type_enabled(conn, code, False)
        click.secho(f"Disabled {code}.", fg="yellow")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@types_group.command("remove")
@click.argument("code")
@click.pass_obj
def types_remove(db_path, code):
    conn = connect_db(db_path)
    try:
        service.delete_task_type(conn, code)
        click.secho(f"Removed {code}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Jobs ----------
@cli.group("jobs", help="Recurring jobs")
def jobs_group():
    pass


@jobs_group.command("add")
@click.argument("name")
@click.argument("pattern")
@click.argument("task_type")
@click.option("--data", default=None, help="Data for the tasks the job queues")
@click.option("--id", "job_id", default=None)
@click.pass_obj
def jobs_add(db_path, name, pattern, task_type, data, job_id):
    conn = connect_db(db_path)
    try:
        job = scheduler.create_job(conn, name, pattern, task_type, data, job_id=job_id)
        click.secho(f"Added job {job.name} ({job.id}).", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


@jobs_group.command("list")
@click.option("--filter", "filter_", default=None)
@click.pass_obj
def jobs_list(db_path, filter_):
    conn = connect_db(db_path)
    try:
        jobs = scheduler.get_jobs(conn, filter_)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return
    for j in jobs:
        state = "enabled" if j.enabled else "disabled"
        click.echo(
            f"{j.id} | {j.name:<20} | {j.scheduling_pattern:<16} | {j.task_type:<12} "
            f"| {state:<8} | next={j.next_execution} | last={j.last_executed}"
        )


@jobs_group.command("remove")
@click.argument("job_id")
@click.pass_obj
def jobs_remove(db_path, job_id):
    conn = connect_db(db_path)
    try:
        scheduler.delete_job(conn, job_id)
        click.secho(f"Removed job {job_id}.", fg="green")
    except TaskCtlError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Scheduling patterns ----------
@cli.group("pattern", help="Scheduling patterns")
def pattern_group():
    pass


@pattern_group.command("check")
@click.argument("pattern")
@click.option("--at", "at", default=None, help="ISO datetime to test (default: now)")
@click.option("--tz", default=None, help="Time zone the pattern is evaluated in (default: UTC)")
def pattern_check(pattern, at, tz):
    try:
        parsed = SchedulingPattern(pattern)
        instant = from_iso(at) if at else datetime.now(timezone.utc)
        matched = parsed.matches(instant, tz)
    except (TaskCtlError, ValueError, LookupError) as e:
        _fail(e)
    click.secho("match" if matched else "no match", fg="green" if matched else "yellow")


@pattern_group.command("next")
@click.argument("pattern")
@click.option("--count", type=int, default=5, show_default=True)
@click.option("--start", default=None, help="ISO datetime to start from (default: now)")
@click.option("--tz", default=None, help="Time zone the pattern is evaluated in (default: UTC)")
def pattern_next(pattern, count, start, tz):
    try:
        predictor = Predictor(pattern, from_iso(start) if start else None, tz)
        for _ in range(count):
            click.echo(to_iso(predictor.next_matching_time()))
    except (TaskCtlError, ValueError, LookupError) as e:
        _fail(e)


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(db_path):
    conn = connect_db(db_path)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(db_path, key, value):
    conn = connect_db(db_path)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
