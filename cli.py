# cli.py
import importlib
import json
import logging
import time

import click

from errors import SchedulerError
from resume import resume_on_restart
from scheduler import Scheduler
from settings import DEFAULT_DB_PATH
from storage import Storage
from worker import run_command

COMMAND_JOB = "command"


def _storage(ctx):
    return Storage(ctx.obj["db"])


def _scheduler(ctx, **overrides):
    return Scheduler(db_path=ctx.obj["db"], **overrides)


def _load_apps(scheduler, apps):
    """Each app is "module" or "module:function"; the function receives the scheduler."""
    for target in apps:
        module_name, _, attr = target.partition(":")
        module = importlib.import_module(module_name)
        register = getattr(module, attr or "register")
        register(scheduler)


def _parse_data(data, command=None, timeout_seconds=None):
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"--data is not valid JSON ({e})")
    if command:
        payload["command"] = command
    if timeout_seconds:
        payload["timeout_seconds"] = timeout_seconds
    return payload


def _filters(name, job_id):
    filters = {}
    if name:
        filters["name"] = name
    if job_id:
        filters["id"] = job_id
    if not filters:
        raise click.UsageError("Give --name and/or --id")
    return filters


def _fmt(value):
    return value.isoformat(timespec="seconds") if value else "-"


@click.group()
@click.option("--db", default=DEFAULT_DB_PATH, envvar="SCHEDCTL_DB", show_default=True, help="Path of the shared job table")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db, verbose):
    """schedctl - a distributed job scheduler over a shared SQLite job table"""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="[%(asctime)s] %(message)s")


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--name", default=COMMAND_JOB, show_default=True, help="Job name (definition key)")
@click.option("--command", default=None, help="Shell command (for the built-in 'command' job)")
@click.option("--data", default=None, help="JSON payload")
@click.option("--priority", default="normal", help="lowest|low|normal|high|highest or a number")
@click.option("--run-at", default="now", help="ISO timestamp (UTC), +seconds delay, or 'in 5 minutes'")
@click.option("--timeout-seconds", default=None, type=int, help="Max runtime of a shell command")
@click.pass_context
def enqueue(ctx, name, command, data, priority, run_at, timeout_seconds):
    """Add a one-off job"""
    scheduler = _scheduler(ctx)
    try:
        job = scheduler.create(name, _parse_data(data, command, timeout_seconds))
        job.set_priority(priority)
        job.schedule(run_at)
        scheduler.save_job(job)
    except (SchedulerError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"✅ Job {job.id} ({name}) enqueued (priority={job.priority}, run_at={_fmt(job.next_run_at)}).")


@cli.command()
@click.option("--name", default=COMMAND_JOB, show_default=True, help="Job name (definition key)")
@click.option("--interval", required=True, help="'5 minutes', a cron expression, ...")
@click.option("--command", default=None, help="Shell command (for the built-in 'command' job)")
@click.option("--data", default=None, help="JSON payload")
@click.option("--timezone", default=None, help="IANA timezone for cron expressions")
@click.option("--skip-immediate", is_flag=True, help="First run at the next occurrence instead of now")
@click.pass_context
def every(ctx, name, interval, command, data, timezone, skip_immediate):
    """Create or update a recurring job (one row per name)"""
    scheduler = _scheduler(ctx)
    try:
        job = scheduler.every(interval, name, _parse_data(data, command),
                              timezone=timezone, skip_immediate=skip_immediate)
    except (SchedulerError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"🔁 Job {job.id} ({name}) repeats every '{interval}', next run {_fmt(job.next_run_at)}.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--name", default=None, help="Filter by job name")
@click.option("--state", default=None, help="scheduled, locked, completed, failed, disabled, unscheduled")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def list_jobs(ctx, name, state, limit):
    """List jobs in the table"""
    db = _storage(ctx)
    if state:
        jobs = db.find_by_state(state, limit, name=name)
    else:
        jobs = db.find({"name": name} if name else None, sort={"next_run_at": 1, "priority": -1}, limit=limit)

    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        repeat = job.repeat_interval or job.repeat_at or "-"
        click.echo(f"{job.id} | {job.name} | state={job.state} | priority={job.priority} | next_run_at={_fmt(job.next_run_at)} | repeat={repeat} | fails={job.fail_count}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states"""
    counts = _storage(ctx).count_by_state()
    if not counts:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state, count in sorted(counts.items()):
        click.echo(f"  {state}: {count}")


@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    job = _storage(ctx).get(job_id)
    if not job:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Name: {job.name} ({job.type})")
    click.echo(f"  State: {job.state}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Repeat: {job.repeat_interval or job.repeat_at or '-'}"
               + (f" [{job.repeat_timezone}]" if job.repeat_timezone else ""))
    click.echo(f"  Next run: {_fmt(job.next_run_at)}")
    click.echo(f"  Last run: {_fmt(job.last_run_at)}")
    click.echo(f"  Last finished: {_fmt(job.last_finished_at)}")
    click.echo(f"  Locked at: {_fmt(job.locked_at)}")
    click.echo(f"  Attempts: {job.attempts_made}/{job.attempts}")
    click.echo(f"  Failures: {job.fail_count} (last: {_fmt(job.failed_at)})")
    click.echo(f"  Error: {job.fail_reason or '-'}")
    click.echo(f"  Data: {json.dumps(job.data)}")
    if job.result is not None:
        click.echo(f"  Result: {json.dumps(job.result, default=str)}")


# ---------------- Worker ----------------
@cli.command()
@click.option("--app", "apps", multiple=True, help="module[:function] that defines jobs on the scheduler")
@click.option("--name", default=None, help="Worker name written to last_modified_by")
@click.option("--process-every", default=None, help="Tick interval, e.g. '5 seconds' (uses config if set)")
@click.option("--max-concurrency", default=None, type=int, help="Process-wide running cap (uses config if set)")
@click.option("--lock-lifetime", default=None, help="Default lock lifetime, e.g. '10 minutes' (uses config if set)")
@click.option("--attempts", default=3, show_default=True, help="Attempts for the built-in 'command' job")
@click.option("--backoff-delay", default=1000, show_default=True, help="Exponential backoff base delay (ms)")
@click.pass_context
def worker(ctx, apps, name, process_every, max_concurrency, lock_lifetime, attempts, backoff_delay):
    """Run a scheduler instance until Ctrl+C"""
    try:
        scheduler = _scheduler(ctx, name=name, process_every=process_every,
                               max_concurrency=max_concurrency, default_lock_lifetime=lock_lifetime)
        scheduler.define(COMMAND_JOB, run_command, attempts=attempts,
                         backoff={"type": "exponential", "delay": backoff_delay})
        _load_apps(scheduler, apps)
    except (SchedulerError, ValueError, ImportError, AttributeError) as e:
        raise click.ClickException(str(e))

    click.echo(f"🚀 Starting {scheduler.name} (jobs={', '.join(scheduler.registry.names())}, "
               f"process_every={scheduler.config.process_every}ms, max_concurrency={scheduler.config.max_concurrency})")
    scheduler.start()
    click.echo("Press Ctrl+C to stop gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping scheduler ...")
        if scheduler.stop(grace_period=10.0):
            click.echo("✅ Scheduler stopped cleanly.")
        else:
            click.echo("⚠️ Some jobs were still running; their locks will expire.")


# ---------------- Maintenance ----------------
@cli.command()
@click.pass_context
def resume(ctx):
    """Reschedule jobs stranded by a crash"""
    count = resume_on_restart(_storage(ctx), modified_by="schedctl-cli")
    click.echo(f"🔧 Rescheduled {count} job(s).")


@cli.command()
@click.option("--name", default=None)
@click.option("--id", "job_id", default=None)
@click.pass_context
def cancel(ctx, name, job_id):
    """Delete jobs"""
    filters = _filters(name, job_id)
    count = _scheduler(ctx).cancel(filters)
    click.echo(f"🗑 Cancelled {count} job(s).")


@cli.command()
@click.option("--name", default=None)
@click.option("--id", "job_id", default=None)
@click.pass_context
def disable(ctx, name, job_id):
    """Exclude jobs from locking"""
    count = _storage(ctx).update_many(_filters(name, job_id), {"disabled": True})
    click.echo(f"⏸ Disabled {count} job(s).")


@cli.command()
@click.option("--name", default=None)
@click.option("--id", "job_id", default=None)
@click.pass_context
def enable(ctx, name, job_id):
    """Re-enable disabled jobs"""
    count = _storage(ctx).update_many(_filters(name, job_id), {"disabled": False})
    click.echo(f"▶️ Enabled {count} job(s).")


@cli.command()
@click.option("--app", "apps", multiple=True, help="module[:function] that defines jobs on the scheduler")
@click.pass_context
def purge(ctx, apps):
    """Delete jobs that no loaded definition knows about"""
    scheduler = _scheduler(ctx)
    scheduler.define(COMMAND_JOB, run_command)
    _load_apps(scheduler, apps)
    count = scheduler.purge()
    click.echo(f"🧹 Purged {count} job(s).")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration shared by all workers"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    _storage(ctx).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    value = _storage(ctx).get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _storage(ctx).all_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
