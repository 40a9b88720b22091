"""CLI interface for inkqueue."""

import logging
import sys
from typing import Optional
import click
from .config import Settings, get_settings
from .models import JobKind, JobStatus, LogLevel, QueueConfig
from .storage import Storage


def get_storage(ctx: click.Context) -> Storage:
    """Open the data file for this invocation."""
    obj = ctx.ensure_object(dict)
    if "storage" not in obj:
        settings: Settings = get_settings()
        obj["storage"] = Storage(obj.get("data_dir") or settings.data_dir, defaults=settings.queue_defaults())
    return obj["storage"]


@click.group()
@click.option("--data-dir", default=None, help="Directory holding inkqueue.json (env: INKQUEUE_DATA_DIR)")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str]):
    """inkqueue - generation job queue with API key rotation"""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@cli.command()
@click.option("--host", default=None, help="Bind address (env: INKQUEUE_HOST)")
@click.option("--port", default=None, type=int, help="Port (env: INKQUEUE_PORT)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]):
    """Run the HTTP service and job queue.

    Example:
        INKQUEUE_API_KEYS=key1,key2 inkqueue serve --port 3001
    """
    import uvicorn
    from .api import create_app

    settings = get_settings()
    if ctx.obj.get("data_dir"):
        settings = settings.model_copy(update={"data_dir": ctx.obj["data_dir"]})

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings=settings)
    host = host or settings.host
    port = port or settings.port
    click.echo(f"inkqueue listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show job statistics and queue configuration.

    Example:
        inkqueue status
    """
    storage = get_storage(ctx)
    stats = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("inkqueue status")
    click.echo("=" * 50)
    click.echo(f"Total Jobs:       {stats['total']}")
    click.echo(f"  Pending:        {stats['pending']}")
    click.echo(f"  Running:        {stats['running']}")
    click.echo(f"  Completed:      {stats['completed']}")
    click.echo(f"  Failed:         {stats['failed']}")
    click.echo(f"  Cancelled:      {stats['cancelled']}")
    log_stats = storage.get_log_stats()
    click.echo(f"Log Entries:      {log_stats['total']} ({log_stats['error']} errors)")
    click.echo("\nConfiguration:")
    click.echo(f"  Max Concurrent: {config.max_concurrent}")
    click.echo(f"  Task Timeout:   {config.task_timeout:g}s")
    click.echo(f"  Max Retries:    {config.max_retries}")
    click.echo(f"  Retry Delay:    {config.retry_delay:g}s")
    click.echo("=" * 50 + "\n")


@cli.command(name="list")
@click.option("--status", "status_", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--kind", type=click.Choice([k.value for k in JobKind]), help="Filter by job kind")
@click.option("--limit", default=20, help="Maximum jobs to display")
@click.option("--offset", default=0, help="Jobs to skip")
@click.pass_context
def list_jobs(ctx: click.Context, status_: Optional[str], kind: Optional[str], limit: int, offset: int):
    """List jobs.

    Example:
        inkqueue list --status failed
        inkqueue list --kind chapter_draft --limit 50
    """
    storage = get_storage(ctx)
    jobs = storage.list_jobs(
        status=JobStatus(status_) if status_ else None,
        kind=JobKind(kind) if kind else None,
        limit=limit,
        offset=offset,
    )

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<34} {'Kind':<24} {'Status':<10} {'Key':<8} {'Created':<20}")
    click.echo("-" * 98)
    for job in jobs:
        created = job.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{job.id:<34} {job.kind.value:<24} {job.status.value:<10} {job.credential_id or '-':<8} {created:<20}"
        )
    click.echo()


@cli.command()
@click.argument("job_id")
@click.option("--level", type=click.Choice([lv.value for lv in LogLevel]), help="Only this severity")
@click.option("--limit", default=100, help="Maximum entries to display")
@click.pass_context
def logs(ctx: click.Context, job_id: str, level: Optional[str], limit: int):
    """Show the log trail of a job.

    Example:
        inkqueue logs 3f2a... --level error
    """
    storage = get_storage(ctx)
    job = storage.get_job(job_id)
    if job is None:
        click.echo(f"✗ Job {job_id} not found", err=True)
        sys.exit(1)

    click.echo(f"\nJob {job.id} ({job.kind.value}) - {job.status.value}")
    if job.error:
        click.echo(f"Error: {job.error}")
    for entry in storage.get_logs(job_id, level=LogLevel(level) if level else None, limit=limit):
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"  {stamp} [{entry.level.value.upper():<5}] {entry.message}")
    click.echo()


@cli.command()
@click.option("--keep", default=100, help="Number of most recent jobs to keep")
@click.option("--days", default=7.0, help="Drop log entries older than this many days")
@click.pass_context
def cleanup(ctx: click.Context, keep: int, days: float):
    """Prune old jobs and log entries.

    Example:
        inkqueue cleanup --keep 200 --days 14
    """
    storage = get_storage(ctx)
    removed_jobs = storage.cleanup_jobs(keep=keep)
    removed_logs = storage.cleanup_logs(days=days)
    click.echo(f"✓ Removed {removed_jobs} jobs and {removed_logs} log entries")


@cli.group()
def config():
    """Manage queue configuration"""
    pass


@config.command()
@click.pass_context
def show(ctx: click.Context):
    """Show current configuration.

    Example:
        inkqueue config show
    """
    cfg = get_storage(ctx).get_config()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  max-concurrent: {cfg.max_concurrent}")
    click.echo(f"  task-timeout:   {cfg.task_timeout:g} seconds")
    click.echo(f"  max-retries:    {cfg.max_retries}")
    click.echo(f"  retry-delay:    {cfg.retry_delay:g} seconds")
    click.echo()


_CONFIG_KEYS = {
    "max-concurrent": "max_concurrent",
    "task-timeout": "task_timeout",
    "max-retries": "max_retries",
    "retry-delay": "retry_delay",
}


@config.command(name="set")
@click.argument("key", type=click.Choice(sorted(_CONFIG_KEYS)))
@click.argument("value")
@click.pass_context
def set_value(ctx: click.Context, key: str, value: str):
    """Set a configuration value. Takes effect on the next `serve`.

    Example:
        inkqueue config set max-concurrent 5
        inkqueue config set retry-delay 1.5
    """
    storage = get_storage(ctx)
    cfg = storage.get_config()

    try:
        data = cfg.model_dump()
        data[_CONFIG_KEYS[key]] = value
        storage.set_config(QueueConfig.model_validate(data))
        click.echo(f"✓ Configuration updated: {key} = {value}")
    except ValueError as e:
        click.echo(f"✗ Invalid value: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
