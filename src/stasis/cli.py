"""Stasis CLI — long-term context persistence for agent sessions."""

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from stasis.config import DB_NAME, STASIS_DIR, StasisConfig
from stasis.engine import PersistenceEngine
from stasis.errors import StasisError
from stasis.formatting import (
    format_archive_compact, format_cleanup_compact, format_health_compact,
    format_json, format_maintenance_compact, format_restore_compact,
    format_snapshot_compact, format_stats_compact, format_summary_compact,
)
from stasis.models import HealthMetric, HealthSummary, Scope
from stasis.store import ContextStore

SCOPE_CHOICE = click.Choice([s.value for s in Scope])
FORMAT_CHOICE = click.Choice(["compact", "json"])


def _resolve_project(project: str) -> Path:
    """Resolve project directory."""
    return Path(project).resolve()


def _get_engine(project: Path) -> PersistenceEngine:
    """Get an engine for an initialized project, or exit."""
    db_path = project / STASIS_DIR / DB_NAME
    if not db_path.exists():
        click.echo(f"Error: Stasis not initialized in {project}", err=True)
        click.echo("Run 'stasis init' first.", err=True)
        sys.exit(1)
    try:
        return PersistenceEngine.open(project)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.option("--project", "-p", default=".", help="Project directory")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
@click.pass_context
def cli(ctx, project, verbose):
    """Stasis — long-term context persistence and health monitoring."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["project"] = _resolve_project(project)


@cli.command()
@click.pass_context
def init(ctx):
    """Initialize Stasis in this project."""
    project = ctx.obj["project"]
    stasis_dir = project / STASIS_DIR

    if (stasis_dir / DB_NAME).exists():
        click.echo(f"Stasis already initialized in {project}")
        return

    stasis_dir.mkdir(parents=True, exist_ok=True)
    store = ContextStore(stasis_dir / DB_NAME)
    store.initialize()
    store.set_meta("initialized_at", datetime.now(timezone.utc).isoformat())
    store.close()

    config = StasisConfig()
    config_path = config.write(stasis_dir)
    click.echo(f"Stasis initialized in {stasis_dir}")
    click.echo(f"Default policy written to {config_path}")


@cli.command()
@click.argument("context_id")
@click.option("--scope", "-s", default=Scope.SESSION.value, type=SCOPE_CHOICE)
@click.option("--task", "-t", default=None, help="Current task description")
@click.pass_context
def start(ctx, context_id, scope, task):
    """Start tracking a new context."""
    engine = _get_engine(ctx.obj["project"])
    try:
        snapshot = engine.contexts.start_context(context_id, Scope(scope), current_task=task)
    except ValueError as e:
        _fail(e)
    finally:
        engine.close()
    click.echo(f"Started {snapshot.scope.value}/{snapshot.context_id}")


@cli.command()
@click.argument("context_id")
@click.option("--scope", "-s", default=Scope.SESSION.value, type=SCOPE_CHOICE)
@click.option("--type", "-t", "event_type", required=True, help="Event type tag")
@click.option("--content", "-c", required=True, help="Payload (JSON, or plain text)")
@click.option("--importance", "-i", default=5, type=click.IntRange(0, 10),
              help="Importance 0-10 (default: 5)")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def post(ctx, context_id, scope, event_type, content, importance, fmt):
    """Append an event to a live context."""
    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        payload = content

    engine = _get_engine(ctx.obj["project"])
    try:
        event = engine.contexts.append(context_id, Scope(scope), event_type, payload, importance)
    except ValueError as e:
        _fail(e)
    finally:
        engine.close()

    if fmt == "json":
        click.echo(format_json(event))
    else:
        click.echo(f"#{event.seq} [{event.event_type}] importance {event.importance}")


@cli.command()
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def status(ctx, fmt):
    """Show live contexts and archive totals."""
    engine = _get_engine(ctx.obj["project"])
    try:
        snapshots = [
            engine.contexts.snapshot(cid, scope) for cid, scope in engine.contexts.list_contexts()
        ]
        stats = engine.stats()
        initialized = engine.contexts.get_meta("initialized_at") or "unknown"
    finally:
        engine.close()

    if fmt == "json":
        click.echo(json.dumps({
            "initialized_at": initialized,
            "live_contexts": [
                {
                    "context_id": s.context_id,
                    "scope": s.scope.value,
                    "events": len(s.events),
                    "last_activity_at": s.last_activity_at.isoformat(),
                    "current_task": s.current_task,
                }
                for s in snapshots
            ],
            "archived_contexts": stats.total_contexts,
        }, indent=2))
        return

    click.echo(f"Initialized:   {initialized}")
    click.echo(f"Live contexts: {len(snapshots)}")
    for s in snapshots:
        click.echo(f"  {format_snapshot_compact(s)}")
    click.echo(f"Archives:      {stats.total_contexts}")


@cli.command()
@click.argument("context_id")
@click.option("--scope", "-s", default=Scope.SESSION.value, type=SCOPE_CHOICE)
@click.option("--keep-active/--no-keep-active", default=True,
              help="Keep the live context after archiving (default: keep)")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def archive(ctx, context_id, scope, keep_active, fmt):
    """Archive a live context at the level its age calls for."""
    engine = _get_engine(ctx.obj["project"])
    try:
        result = engine.archive(context_id, Scope(scope), keep_active=keep_active)
    except (StasisError, ValueError) as e:
        _fail(e)
    finally:
        engine.close()

    click.echo(format_json(result) if fmt == "json" else format_archive_compact(result))


@cli.command()
@click.argument("context_id")
@click.option("--scope", "-s", default=Scope.SESSION.value, type=SCOPE_CHOICE)
@click.option("--reregister/--no-reregister", default=True,
              help="Load the restored log back into the live store (default: yes)")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def restore(ctx, context_id, scope, reregister, fmt):
    """Restore an archived context."""
    engine = _get_engine(ctx.obj["project"])
    try:
        result = engine.restore(context_id, Scope(scope), reregister=reregister)
    except (StasisError, ValueError) as e:
        _fail(e)
    finally:
        engine.close()

    click.echo(format_json(result) if fmt == "json" else format_restore_compact(result))


cli.add_command(restore, name="resume")


async def _watch(engine: PersistenceEngine) -> None:
    await engine.monitor.start_background_maintenance()
    try:
        while engine.monitor.maintenance_running:
            await asyncio.sleep(1)
    finally:
        await engine.monitor.stop_background_maintenance()


@cli.command()
@click.argument("context_id", required=False)
@click.option("--scope", "-s", default=Scope.SESSION.value, type=SCOPE_CHOICE)
@click.option("--maintenance", "-m", is_flag=True,
              help="Act on the score: archive stale contexts, flag broken ones")
@click.option("--watch", is_flag=True, help="Run background maintenance until interrupted")
@click.option("--interval", default=None, type=float,
              help="Seconds between maintenance cycles when watching")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def health(ctx, context_id, scope, maintenance, watch, interval, fmt):
    """Score context health (one context, or all live contexts)."""
    engine = _get_engine(ctx.obj["project"])

    if watch:
        if interval is not None:
            engine.monitor.interval_seconds = interval
        click.echo(f"Running maintenance every {engine.monitor.interval_seconds:g}s (Ctrl-C to stop)")
        try:
            asyncio.run(_watch(engine))
        except KeyboardInterrupt:
            click.echo(f"Stopped after {engine.monitor.cycle_count} cycle(s).")
        finally:
            engine.close()
        return

    try:
        result = engine.health(context_id, Scope(scope), maintenance=maintenance)
    except (StasisError, ValueError) as e:
        _fail(e)
    finally:
        engine.close()

    if fmt == "json":
        click.echo(format_json(result))
    elif isinstance(result, HealthSummary):
        click.echo(format_summary_compact(result))
    elif isinstance(result, HealthMetric):
        click.echo(format_health_compact(result))
    else:
        click.echo(format_maintenance_compact(result))


@cli.command()
@click.option("--retention-days", default=None, type=click.IntRange(min=0),
              help="Delete archives older than N days (default: from config, 365)")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def cleanup(ctx, retention_days, fmt):
    """Delete archives past the retention window."""
    engine = _get_engine(ctx.obj["project"])
    try:
        result = engine.cleanup(retention_days)
    except (StasisError, ValueError) as e:
        _fail(e)
    finally:
        engine.close()

    click.echo(format_json(result) if fmt == "json" else format_cleanup_compact(result))


@cli.command()
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def stats(ctx, fmt):
    """Show archive statistics."""
    engine = _get_engine(ctx.obj["project"])
    try:
        result = engine.stats()
    finally:
        engine.close()

    click.echo(format_json(result) if fmt == "json" else format_stats_compact(result))


if __name__ == "__main__":
    cli()
