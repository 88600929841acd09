"""Stasis MCP server — exposes archive, restore, health and cleanup as tools."""

import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from stasis.config import DB_NAME, ENV_PROJECT_DIR, STASIS_DIR
from stasis.engine import PersistenceEngine
from stasis.errors import StasisError
from stasis.formatting import (
    format_archive_compact, format_cleanup_compact, format_health_compact,
    format_json, format_maintenance_compact, format_restore_compact,
    format_stats_compact, format_summary_compact,
)
from stasis.models import HealthMetric, HealthSummary, Scope

mcp = FastMCP("stasis", instructions=(
    "Stasis preserves agent contexts across long inactivity. Archive a "
    "context when work pauses, restore it when work resumes, and check "
    "health to find stale or damaged contexts."
))


def _get_engine() -> PersistenceEngine:
    """Get an engine for the configured project directory."""
    project_dir = Path(os.environ.get(ENV_PROJECT_DIR, os.getcwd()))
    if not (project_dir / STASIS_DIR / DB_NAME).exists():
        raise FileNotFoundError(
            f"Stasis not initialized in {project_dir}. "
            f"Run 'stasis init' in the project directory first."
        )
    return PersistenceEngine.open(project_dir)


@mcp.tool()
def archive_context(
    context_id: str,
    scope: str = "session",
    keep_active: bool = True,
    format: str = "compact",
) -> str:
    """Archive a live context. The archive level follows the context's age.

    Args:
        context_id: Context identifier
        scope: "session" or "project"
        keep_active: Keep the live context after archiving (default true)
        format: Output format: "compact" or "json"
    """
    engine = _get_engine()
    try:
        result = engine.archive(context_id, Scope(scope), keep_active=keep_active)
    except (StasisError, ValueError) as e:
        return f"Error: {e}"
    finally:
        engine.close()
    return format_json(result) if format == "json" else format_archive_compact(result)


@mcp.tool()
def restore_context(
    context_id: str,
    scope: str = "session",
    format: str = "compact",
) -> str:
    """Restore an archived context and load it back as a live context.

    The scope must match the one the context was archived under.

    Args:
        context_id: Context identifier
        scope: "session" or "project"
        format: Output format: "compact" or "json"
    """
    engine = _get_engine()
    try:
        result = engine.restore(context_id, Scope(scope))
    except (StasisError, ValueError) as e:
        return f"Error: {e}"
    finally:
        engine.close()
    return format_json(result) if format == "json" else format_restore_compact(result)


@mcp.tool()
def context_health(
    context_id: str | None = None,
    scope: str = "session",
    maintenance: bool = False,
    format: str = "compact",
) -> str:
    """Score context health. Without context_id, summarizes all live contexts.

    Args:
        context_id: Context to score (omit for a summary)
        scope: "session" or "project"
        maintenance: Also act on the score (archive stale contexts, flag broken ones)
        format: Output format: "compact" or "json"
    """
    engine = _get_engine()
    try:
        result = engine.health(context_id, Scope(scope), maintenance=maintenance)
    except (StasisError, ValueError) as e:
        return f"Error: {e}"
    finally:
        engine.close()

    if format == "json":
        return format_json(result)
    if isinstance(result, HealthSummary):
        return format_summary_compact(result)
    if isinstance(result, HealthMetric):
        return format_health_compact(result)
    return format_maintenance_compact(result)


@mcp.tool()
def cleanup_archives(retention_days: int | None = None, format: str = "compact") -> str:
    """Delete archives older than the retention window.

    Args:
        retention_days: Age limit in days (default from project config, 365)
        format: Output format: "compact" or "json"
    """
    engine = _get_engine()
    try:
        result = engine.cleanup(retention_days)
    except (StasisError, ValueError) as e:
        return f"Error: {e}"
    finally:
        engine.close()
    return format_json(result) if format == "json" else format_cleanup_compact(result)


@mcp.tool()
def archive_stats(format: str = "compact") -> str:
    """Archive counts per scope and level, total sizes and compression ratio.

    Args:
        format: Output format: "compact" or "json"
    """
    engine = _get_engine()
    try:
        result = engine.stats()
    finally:
        engine.close()
    return format_json(result) if format == "json" else format_stats_compact(result)


def main():
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
