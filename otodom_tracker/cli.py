"""Command-line interface for the Otodom district price tracker."""

import sys
from datetime import date
from pathlib import Path
from typing import Optional, Tuple

import click
from loguru import logger

from otodom_tracker.analysis import run_analysis
from otodom_tracker.config_loader import ensure_directories, load_config, select_districts
from otodom_tracker.exporter import export_to_csv
from otodom_tracker.models import get_engine, get_session_factory, init_db
from otodom_tracker.orchestrator import run_queue
from otodom_tracker.repositories import AggregateRepository
from otodom_tracker.task_queue import RoomType, TaskQueue


def setup_logging(config: dict, verbose: bool = False):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    level = "DEBUG" if verbose else log_config.get("level", "INFO")
    log_file = log_config.get("file", "data/logs/otodom_tracker.log")

    # Ensure log directory exists
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stdout,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}",
    )
    logger.add(
        log_file,
        level=level,
        rotation=log_config.get("rotation", "1 week"),
        retention=log_config.get("retention", "1 month"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}",
    )


def _parse_room_types(values: Tuple[str, ...]):
    if not values:
        return list(RoomType)
    try:
        return [RoomType.parse(v) for v in values]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--room-type")


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """Otodom Tracker - apartment asking prices per city district."""
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        ctx.obj["config_path"] = config

        ensure_directories(cfg)
        setup_logging(cfg, verbose=verbose)

        logger.debug("Otodom tracker initialized")

    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def init(ctx):
    """Create data directories and database tables."""
    config = ctx.obj["config"]
    try:
        ensure_directories(config)
        init_db(get_engine(config))
        click.echo("Database initialized")
    except Exception as e:
        logger.exception("Init failed")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("city")
@click.option("--district", "-d", "districts", multiple=True, help="District name or slug (repeatable, default all)")
@click.option("--room-type", "-r", "room_types", multiple=True, help="Room type, e.g. 2 or twoRoom (repeatable, default all)")
@click.option("--fetch-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Fetch date (YYYY-MM-DD)")
@click.option("--replace", is_flag=True, help="Delete stored aggregates for the city first")
@click.pass_context
def enqueue(ctx, city: str, districts: Tuple[str, ...], room_types: Tuple[str, ...], fetch_date, replace: bool):
    """Queue one scrape task per district and room type of CITY."""
    config = ctx.obj["config"]
    rooms = _parse_room_types(room_types)

    try:
        selected = select_districts(config, city, list(districts))
    except KeyError as e:
        click.echo(f"Error: {e.args[0]}", err=True)
        sys.exit(1)

    try:
        if replace:
            engine = get_engine(config)
            init_db(engine)
            session = get_session_factory(engine)()
            try:
                AggregateRepository(session).delete_aggregates_for_city(city)
            finally:
                session.close()

        day = (fetch_date.date() if fetch_date else date.today()).isoformat()
        queue = TaskQueue.from_config(config, recover=False)
        tasks = queue.enqueue_batch(city, selected, rooms, fetch_date=day)
        click.echo(f"Enqueued {len(tasks)} tasks for {city} ({len(selected)} districts x {len(rooms)} room types)")
    except Exception as e:
        logger.exception("Enqueue failed")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--max-tasks", "-n", type=int, default=None, help="Stop after N processed tasks")
@click.option("--headless/--no-headless", default=None, help="Run browser in headless mode (default from config)")
@click.pass_context
def run(ctx, max_tasks: Optional[int], headless: Optional[bool]):
    """Work the task queue until it is empty."""
    config_path = ctx.obj.get("config_path")
    try:
        results = run_queue(config_path=config_path, max_tasks=max_tasks, headless=headless)

        click.echo(f"\n{'='*70}")
        click.echo("QUEUE RUN RESULTS")
        click.echo(f"{'='*70}")
        click.echo(f"Tasks processed: {results.get('processed', 0)}")
        click.echo(f"Completed: {results.get('completed', 0)}")
        click.echo(f"Retried: {results.get('retried', 0)}")
        click.echo(f"Failed: {results.get('failed', 0)}")
        queue_status = results.get("queue") or {}
        click.echo(f"Still pending: {queue_status.get('pending', 0)} (+{queue_status.get('retrying', 0)} retrying)")
        stats = results.get("statistics") or {}
        if stats.get("errors_by_type"):
            click.echo("\nErrors by type:")
            for error_type, count in stats["errors_by_type"].items():
                click.echo(f"  - {error_type}: {count}")
        click.echo(f"{'='*70}")

    except Exception as e:
        logger.exception("Queue run failed")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show queue status and success statistics."""
    queue = TaskQueue.from_config(ctx.obj["config"], recover=False)
    state = queue.status()
    stats = queue.statistics()

    click.echo(f"\n{'='*60}")
    click.echo("QUEUE STATUS")
    click.echo(f"{'='*60}")
    click.echo(f"Processing: {'yes' if state['isProcessing'] else 'no'}")
    if state.get("currentTaskId"):
        click.echo(f"Current task: {state['currentTaskId']}")
    click.echo(f"Pending: {state['pending']}")
    click.echo(f"Retrying: {state['retrying']}")
    click.echo(f"Completed: {state['completed']}")
    click.echo(f"Failed: {state['failed']}")
    if stats["finished"]:
        click.echo(f"Success rate: {stats['success_rate']:.1%}")
    for error_type, count in stats["errors_by_type"].items():
        click.echo(f"  - {error_type}: {count}")
    click.echo(f"{'='*60}")


@cli.command()
@click.option("--limit", "-n", type=int, default=20, show_default=True, help="Number of tasks to show")
@click.pass_context
def tasks(ctx, limit: int):
    """List queued and recently finished tasks."""
    queue = TaskQueue.from_config(ctx.obj["config"], recover=False)

    pending = queue.pending_tasks()
    click.echo(f"Queued ({len(pending)}):")
    for task in pending[:limit]:
        suffix = f" retry={task.retry_count}" if task.retry_count else ""
        click.echo(f"  {task.id[:8]} [{task.status.value}] {task.target.label}{suffix}")

    history = queue.completed_tasks(limit=limit)
    click.echo(f"Finished (latest {len(history)}):")
    for task in history:
        count = (task.result or {}).get("count", 0)
        line = f"  {task.id[:8]} [{task.status.value}] {task.target.label} listings={count}"
        if task.error_type:
            line += f" error={task.error_type}"
        click.echo(line)


@cli.command("clear-queue")
@click.option("--include-history", is_flag=True, help="Also remove finished task history")
@click.confirmation_option(prompt="Drop all queued tasks?")
@click.pass_context
def clear_queue(ctx, include_history: bool):
    """Drop every queued task."""
    queue = TaskQueue.from_config(ctx.obj["config"], recover=False)
    removed = queue.clear(include_history=include_history)
    click.echo(f"Removed {removed} queued tasks")


@cli.command()
@click.argument("city")
@click.option("--export/--no-export", default=True, help="Export results to files")
@click.pass_context
def analyze(ctx, city: str, export: bool):
    """Compute district price statistics for CITY."""
    config_path = ctx.obj.get("config_path")

    try:
        results = run_analysis(config_path=config_path, city=city, export=export)

        click.echo(f"\n{'='*60}")
        click.echo("ANALYSIS RESULTS")
        click.echo(f"{'='*60}")
        click.echo(f"City: {results['city']}")
        click.echo(f"District rows: {len(results['district_statistics'])}")

        for row in results["city_summary"]:
            click.echo(
                f"  {row['room_type']:<14} districts={row['districts']} listings={row['listings']} "
                f"median={row['median_price_per_sqm']} zł/m²"
            )

        if results.get("exported_files"):
            click.echo("\nExported files:")
            for key, path in results["exported_files"].items():
                click.echo(f"  - {key}: {path}")

        click.echo(f"{'='*60}")

    except Exception as e:
        logger.exception("Analysis failed")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--city", default=None, help="Only export this city")
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.pass_context
def export(ctx, city: Optional[str], output: Optional[str]):
    """Export stored aggregates to CSV."""
    config = ctx.obj["config"]

    try:
        paths = export_to_csv(config, output, city=city)
        if not paths:
            click.echo("Nothing to export")
            return
        click.echo("CSV exports:")
        for name, path in paths.items():
            click.echo(f"  - {name}: {path}")

    except Exception as e:
        logger.exception("Export failed")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
