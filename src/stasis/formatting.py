"""Output formatters for archive, restore, health and cleanup results."""

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum

from stasis.models import (
    ArchiveResult, ArchiveStats, CleanupResult, ContextSnapshot, HealthMetric,
    HealthSummary, MaintenanceResult, RestoreResult,
)


def _short_timestamp(ts: datetime | None) -> str:
    """Compact form: '2026-02-23 14:30'."""
    if ts is None:
        return "never"
    return ts.isoformat()[:16].replace("T", " ")


def _human_bytes(n: int) -> str:
    for unit in ("B", "KiB", "MiB"):
        if n < 1024:
            return f"{n:,} {unit}" if unit == "B" else f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} GiB"


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def format_json(result) -> str:
    """JSON output for any result dataclass."""
    data = asdict(result) if is_dataclass(result) else result
    return json.dumps(data, indent=2, default=_json_default)


def format_archive_compact(result: ArchiveResult) -> str:
    kept = "" if result.kept_active else " (removed from live store)"
    return (
        f"Archived {result.scope.value}/{result.context_id} at {result.archive_level.value}: "
        f"{_human_bytes(result.original_size_bytes)} -> {_human_bytes(result.compressed_size_bytes)} "
        f"(ratio {result.compression_ratio:.3f}, {result.archive_time_ms:.1f}ms){kept}\n"
        f"  payload:  {result.paths['payload']}\n"
        f"  metadata: {result.paths['metadata']}"
    )


def format_restore_compact(result: RestoreResult) -> str:
    summary = result.restoration_summary
    ctx = result.context
    perf = "within budget" if result.performance_met else "OVER BUDGET"
    lines = [
        f"{summary.message}.",
        f"Context: {ctx.scope.value}/{ctx.context_id} [{summary.archive_level.value}]",
        f"Task:    {summary.original_task or '(none)'}",
        f"Events:  {summary.events_preserved} preserved, {summary.events_summarized} summarized",
        f"Storage: {summary.compression_applied}",
        f"Restore: {result.restore_time_ms:.1f}ms ({perf})",
    ]
    if summary.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        lines.extend(f"  - {r}" for r in summary.recommendations)
    return "\n".join(lines)


def format_health_compact(metric: HealthMetric) -> str:
    scope = f"{metric.scope.value}/" if metric.scope else ""
    f = metric.factors
    lines = [
        f"{scope}{metric.context_id}: {metric.level.value.upper()} ({metric.overall_score:.2f})",
        f"  freshness {f.freshness:.2f} | structural {f.structural:.2f} | size {f.size:.2f}",
    ]
    lines.extend(f"  ! {issue}" for issue in metric.issues)
    lines.extend(f"  - {rec}" for rec in metric.recommendations)
    return "\n".join(lines)


def format_maintenance_compact(result: MaintenanceResult) -> str:
    lines = [format_health_compact(result.metric)] if result.metric else [result.context_id]
    actions = ", ".join(result.actions_taken) or "none"
    lines.append(f"Actions: {actions}")
    if result.error:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)


def format_summary_compact(summary: HealthSummary) -> str:
    levels = " | ".join(f"{level} {count}" for level, count in summary.by_level.items())
    lines = [
        f"Live contexts:     {summary.total_contexts}",
        f"Archived contexts: {summary.archived_contexts}",
        f"Average score:     {summary.average_score:.2f}",
        f"Levels:            {levels}",
    ]
    if summary.flagged:
        lines.append("Flagged for manual intervention:")
        lines.extend(f"  - {key}" for key in summary.flagged)
    return "\n".join(lines)


def format_cleanup_compact(result: CleanupResult) -> str:
    lines = [
        f"Scanned {result.scanned_count} archives, deleted {result.processed_count}, "
        f"freed {_human_bytes(result.freed_bytes)}."
    ]
    if result.errors:
        lines.append(f"{len(result.errors)} error(s):")
        lines.extend(f"  - {e}" for e in result.errors)
    return "\n".join(lines)


def format_stats_compact(stats: ArchiveStats) -> str:
    if not stats.total_contexts:
        return "(no archives)"
    scopes = ", ".join(f"{k} {v}" for k, v in stats.by_scope.items())
    levels = ", ".join(f"{k} {v}" for k, v in stats.by_level.items())
    lines = [
        f"Archives:      {stats.total_contexts} ({scopes})",
        f"Levels:        {levels}",
        f"Original size: {_human_bytes(stats.total_original_bytes)}",
        f"Stored size:   {_human_bytes(stats.total_compressed_bytes)} "
        f"(ratio {stats.average_compression_ratio:.3f})",
        f"Tokens:        ~{stats.total_original_tokens} -> ~{stats.total_compressed_tokens} "
        f"after summarization",
    ]
    if stats.oldest:
        lines.append(f"Oldest:        {stats.oldest.scope.value}/{stats.oldest.context_id} "
                     f"({_short_timestamp(stats.oldest.archived_at)})")
    if stats.newest:
        lines.append(f"Newest:        {stats.newest.scope.value}/{stats.newest.context_id} "
                     f"({_short_timestamp(stats.newest.archived_at)})")
    return "\n".join(lines)


def format_snapshot_compact(snapshot: ContextSnapshot) -> str:
    """One line per live context."""
    task = f" — {snapshot.current_task}" if snapshot.current_task else ""
    return (
        f"[{_short_timestamp(snapshot.last_activity_at)}] {snapshot.scope.value}/"
        f"{snapshot.context_id}: {len(snapshot.events)} events{task}"
    )
