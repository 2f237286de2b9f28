import json
import logging
import time

import click

from .config import load_config
from .models import ID, PRIORITY, RESERVED, QueueError
from .queue import Queue
from .repository import open_store
from .sweeper import run_sweeper, setup_signal_handlers
from .utils import epoch_to_iso, parse_duration


def _dumps(obj) -> str:
    # ObjectId and other store types print as strings
    return json.dumps(obj, indent=2, default=str)


def _fail(e: Exception):
    click.secho(f"Error: {e}", fg="red", err=True)
    raise SystemExit(1)


def _queue(ctx) -> Queue:
    obj = ctx.obj
    if "queue" not in obj:
        obj["queue"] = Queue(open_store(obj["config"]))
    return obj["queue"]


def _ref(queue: Queue, task_id: str) -> dict:
    return {ID: queue.store.parse_id(task_id)}


def _line(task) -> str:
    state = "reserved" if task.get(RESERVED) is not None else "available"
    data = {k: v for k, v in task.items() if not k.startswith("_")}
    return (
        f"{str(task[ID]):>24} | {state:<9} | priority={task.get(PRIORITY)} "
        f"| reserved_at={epoch_to_iso(task.get(RESERVED))} | data={json.dumps(data, default=str)}"
    )


@click.group(help="docqueue — priority work queue over MongoDB or SQLite")
@click.option("--store", "store_uri", default=None, help="SQLite path or mongodb:// URI")
@click.option("--database", "database_name", default=None, help="MongoDB database name")
@click.option("--collection", "collection_name", default=None, help="Collection (or SQLite table) name")
@click.pass_context
def cli(ctx, store_uri, database_name, collection_name):
    try:
        cfg = load_config({
            "store_uri": store_uri,
            "database_name": database_name,
            "collection_name": collection_name,
        })
    except ValueError as e:
        _fail(e)
    logging.basicConfig(
        level=cfg["log_level"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": cfg}


# ---------- Producers ----------
@cli.command("add", help="Add a new task to the queue")
@click.option("--data", "data_json", default="{}", show_default=True, help="Task fields as a JSON object")
@click.option("--priority", default=None, type=float, help="Lower value is reserved first (default: now)")
@click.option("--delay", "delay_str", default=None,
              help="Make the task visible after a delay, e.g. 90, 20s, 5m, 1h30m (mutually exclusive with --priority)")
@click.pass_context
def add_cmd(ctx, data_json, priority, delay_str):
    try:
        if priority is not None and delay_str:
            raise click.ClickException("Use either --priority or --delay, not both.")
        try:
            fields = json.loads(data_json)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"--data is not valid JSON: {e}")
        if delay_str:
            priority = time.time() + parse_duration(delay_str)
        tid = _queue(ctx).add_task(fields, priority=priority)
        click.secho(f"Added task {tid}", fg="green")
    except (ValueError, QueueError, click.ClickException) as e:
        _fail(e)


# ---------- Consumers ----------
@cli.command("reserve", help="Reserve the next eligible task and print it")
@click.option("--max-priority", default=None, type=float, help="Visibility horizon (default: now)")
@click.pass_context
def reserve_cmd(ctx, max_priority):
    try:
        task = _queue(ctx).reserve_task(max_priority=max_priority)
    except (ValueError, QueueError) as e:
        _fail(e)
    if task is None:
        click.echo("No task available.")
        return
    click.echo(_dumps(task))


@cli.command("reschedule", help="Release a reserved task")
@click.argument("task_id")
@click.option("--priority", default=None, type=float, help="New priority (default: keep current)")
@click.pass_context
def reschedule_cmd(ctx, task_id, priority):
    try:
        q = _queue(ctx)
        task = q.peek(_ref(q, task_id))
        if task is None:
            raise click.ClickException(f"Task {task_id} not found.")
        q.reschedule_task(task, priority=priority)
        click.secho(f"Rescheduled task {task_id}.", fg="green")
    except (ValueError, QueueError, click.ClickException) as e:
        _fail(e)


@cli.command("remove", help="Remove a task permanently")
@click.argument("task_id")
@click.pass_context
def remove_cmd(ctx, task_id):
    try:
        q = _queue(ctx)
        q.remove_task(_ref(q, task_id))
        click.secho(f"Removed task {task_id}.", fg="green")
    except (ValueError, QueueError) as e:
        _fail(e)


@cli.command("timeout", help="Release reservations older than N seconds")
@click.option("--seconds", default=None, type=float, help="Reservation timeout (default: timeout_seconds config)")
@click.pass_context
def timeout_cmd(ctx, seconds):
    if seconds is None:
        seconds = float(ctx.obj["config"]["timeout_seconds"])
    try:
        released = _queue(ctx).apply_timeout(seconds)
    except (ValueError, QueueError) as e:
        _fail(e)
    click.echo(f"Released {released} task(s).")


# ---------- Inspection ----------
@cli.command("list", help="List tasks")
@click.option("--reserved/--available", "reserved", default=None, help="Only reserved or only available tasks")
@click.option("--limit", default=None, type=int)
@click.option("--skip", default=None, type=int)
@click.pass_context
def list_cmd(ctx, reserved, limit, skip):
    try:
        tasks = _queue(ctx).search(reserved=reserved, sort=[(PRIORITY, 1)], limit=limit, skip=skip)
    except (ValueError, QueueError) as e:
        _fail(e)

    if not tasks:
        click.echo("No tasks.")
        return

    for t in tasks:
        click.echo(_line(t))


@cli.command("peek", help="Show one task")
@click.argument("task_id")
@click.pass_context
def peek_cmd(ctx, task_id):
    try:
        q = _queue(ctx)
        task = q.peek(_ref(q, task_id))
    except (ValueError, QueueError) as e:
        _fail(e)
    if task is None:
        _fail(click.ClickException(f"Task {task_id} not found."))
    click.echo(_dumps(task))


@cli.command("status", help="Show queue counts")
@click.pass_context
def status_cmd(ctx):
    try:
        q = _queue(ctx)
        size, waiting = q.size(), q.waiting()
    except (ValueError, QueueError) as e:
        _fail(e)
    click.echo(_dumps({"size": size, "waiting": waiting, "reserved": size - waiting}))


@cli.command("init", help="Create the priority index")
@click.pass_context
def init_cmd(ctx):
    try:
        _queue(ctx).store.ensure_indexes()
    except (ValueError, QueueError) as e:
        _fail(e)
    click.secho("Indexes ready.", fg="green")


# ---------- Sweeper ----------
@cli.command("sweep", help="Periodically release timed-out reservations")
@click.option("--interval", default=None, type=float, help="Seconds between sweeps (default: sweep_interval config)")
@click.option("--timeout", "timeout", default=None, type=float,
              help="Reservation timeout (default: timeout_seconds config)")
@click.option("--once", is_flag=True, help="Run a single sweep and exit")
@click.pass_context
def sweep_cmd(ctx, interval, timeout, once):
    cfg = ctx.obj["config"]
    interval = float(cfg["sweep_interval"]) if interval is None else interval
    timeout = float(cfg["timeout_seconds"]) if timeout is None else timeout
    try:
        q = _queue(ctx)
    except (ValueError, QueueError) as e:
        _fail(e)
    if not once:
        setup_signal_handlers()
        click.secho(f"Sweeping every {interval}s (timeout {timeout}s). Press Ctrl+C to stop…", fg="cyan")
    released = run_sweeper(q, interval, timeout, max_runs=1 if once else None)
    click.echo(f"Released {released} task(s).")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    click.echo(_dumps(ctx.obj["config"]))


def main():
    cli()
