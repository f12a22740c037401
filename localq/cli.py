import json
import logging

import click

from .config import get_config, load_config, set_config
from .db import DB_FILE, SQLiteStore
from .dlq import list_dlq, retry_from_dlq
from .errors import QueueError
from .models import STATES
from .repository import enqueue_job, list_jobs, status
from .worker import DEFAULT_GRACE_PERIOD, MAX_WORKERS, MIN_WORKERS, start_workers, stop_registered_workers

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _fail(error):
    click.secho(f"Error: {error}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="localq: local persistent background job queue")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, envvar="LOCALQ_DB",
              help="SQLite database file")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    # Ensure DB/schema exist before any command runs
    try:
        store = SQLiteStore(db_path)
    except QueueError as e:
        _fail(e)
    ctx.obj = store
    ctx.call_on_close(store.close)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.argument("job_json", required=False)
@click.option("--id", "job_id", default=None, help="Job ID (default: random uuid)")
@click.option("--cmd", "command", default=None, help="Command to execute")
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.pass_obj
def enqueue_cmd(store, job_json, job_id, command, max_retries):
    spec = {}
    if job_json:
        try:
            spec = json.loads(job_json.lstrip("\ufeff"))
        except ValueError as e:
            _fail(f"Invalid job JSON: {e}")
        if not isinstance(spec, dict):
            _fail("Job JSON must be an object")
    if job_id is not None:
        spec["id"] = job_id
    if command is not None:
        spec["command"] = command
    if max_retries is not None:
        spec["max_retries"] = max_retries
    if not spec.get("command"):
        _fail("A command is required (--cmd or {\"command\": ...})")

    try:
        job = enqueue_job(
            store,
            command=spec["command"],
            job_id=spec.get("id"),
            max_retries=spec.get("max_retries"),
        )
    except QueueError as e:
        _fail(e)
    click.secho(f"Enqueued {job.id} -> `{job.command}` (max_retries={job.max_retries})", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True,
              help=f"Number of worker threads ({MIN_WORKERS}-{MAX_WORKERS})")
@click.option("--grace", type=float, default=DEFAULT_GRACE_PERIOD, show_default=True,
              help="Seconds to wait for running jobs on shutdown")
@click.pass_obj
def worker_start(store, count, grace):
    try:
        config = load_config(store)
        click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
        start_workers(store, count, config, grace_period=grace)
    except QueueError as e:
        _fail(e)
    click.secho("Workers stopped.", fg="yellow")


@worker_group.command("stop")
@click.pass_obj
def worker_stop(store):
    try:
        n = stop_registered_workers(store)
    except QueueError as e:
        _fail(e)
    if n:
        click.secho(f"Asked {n} worker process(es) to stop.", fg="yellow")
    else:
        click.echo("No running workers.")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(list(STATES)), default=None)
@click.pass_obj
def list_cmd(store, state):
    try:
        jobs = list_jobs(store, state=state)
    except QueueError as e:
        _fail(e)

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>20} | {j.state:<10} | attempts={j.attempts}/{j.max_retries} "
            f"| next={j.next_retry_at} | cmd={j.command} | last_error={j.last_error}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(store):
    try:
        click.echo(json.dumps(status(store), indent=2))
    except QueueError as e:
        _fail(e)


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@click.pass_obj
def dlq_list_cmd(store):
    try:
        jobs = list_dlq(store)
    except QueueError as e:
        _fail(e)

    if not jobs:
        click.echo("DLQ is empty.")
        return

    for j in jobs:
        click.echo(
            f"{j.id} | attempts={j.attempts} | reason={j.dlq_reason} "
            f"| last_error={j.last_error} | cmd={j.command}"
        )


@dlq_group.command("retry")
@click.argument("job_id")
@click.pass_obj
def dlq_retry_cmd(store, job_id):
    try:
        retry_from_dlq(store, job_id)
    except QueueError as e:
        _fail(e)
    click.secho(f"Re-queued DLQ job {job_id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.argument("key", required=False)
@click.pass_obj
def config_get(store, key):
    try:
        value = get_config(store, key)
    except QueueError as e:
        _fail(e)
    click.echo(json.dumps(value, indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(store, key, value):
    try:
        set_config(store, key, value)
    except QueueError as e:
        _fail(e)
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()


if __name__ == "__main__":
    main()
