"""Plain-text reports for a single timeline and for a batch comparison."""

from __future__ import annotations

from typing import List

from .batch_models import BatchComparisonResult, FieldStatistics
from .models import MRTimeline, Phase
from .serialization import format_timestamp
from .stats import format_duration


def _stat_lines(label: str, stats: FieldStatistics, as_duration: bool = False) -> List[str]:
    def fmt(value: float) -> str:
        return format_duration(value) if as_duration else f"{value:g}"

    return [
        f"   {label}: n={stats.count} avg={fmt(stats.avg)} P50={fmt(stats.p50)} "
        f"P75={fmt(stats.p75)} P90={fmt(stats.p90)} P95={fmt(stats.p95)}"
    ]


def generate_timeline_report(timeline: MRTimeline) -> str:
    """Generate a human-readable report for one merge request timeline."""
    mr = timeline.mr
    summary = timeline.summary
    lines = [
        f"MR !{mr.iid}: {mr.title}",
        f"Author: {mr.author.username}  State: {mr.state}",
        f"Cycle time: {format_duration(timeline.cycle_time_seconds)}",
        "",
        "Events",
    ]
    for event in timeline.events:
        lines.append(
            f"   {event.sequence:>3}. {format_timestamp(event.timestamp)}  "
            f"{event.event_type.value:<22} {event.actor.username} ({event.actor.role.value})"
        )

    lines.extend(["", "Phases"])
    for phase in Phase:
        segment = timeline.phase(phase)
        if segment is None:
            lines.append(f"   {phase.value:<7} n/a")
            continue
        lines.append(
            f"   {phase.value:<7} {format_duration(segment.duration_seconds)} "
            f"({segment.percentage:.1f}%)"
        )

    breakdown = summary.comment_breakdown
    lines.extend(
        [
            "",
            "Summary",
            f"   Commits: {summary.commits}",
            f"   AI reviews: {summary.ai_reviews}",
            f"   Human comments: {summary.human_comments} "
            f"(reviews {breakdown.human_review_comments}, author {breakdown.author_responses})",
            f"   CI bot comments: {breakdown.ci_bot_comments}",
            f"   Pipelines: {summary.system_events}",
            f"   Reviewers: {', '.join(actor.username for actor in summary.reviewers) or '-'}",
        ]
    )
    return "\n".join(lines)


def generate_batch_report(result: BatchComparisonResult) -> str:
    """Generate a human-readable report for a batch comparison."""
    summary = result.summary
    lines = [
        f"Project: {result.metadata.project_id}",
        "MR Batch Comparison Report",
        f"   Analyzed: {summary.total_count}  Succeeded: {summary.success_count}  "
        f"Failed: {summary.failed_count}",
        "",
        f"{'MR':>6}  {'Cycle(d)':>8}  {'Dev%':>5}  {'Wait%':>5}  {'Rev%':>5}  {'Mrg%':>5}  Title",
    ]
    for row in result.rows:
        if row.is_error:
            lines.append(f"{row.iid:>6}  ERROR: {row.error}")
            continue
        percents = [
            f"{timing.percentage:>5.1f}" if timing else f"{'-':>5}"
            for timing in (row.phases.get(phase) for phase in Phase)
        ]
        lines.append(f"{row.iid:>6}  {row.cycle_days:>8.1f}  {'  '.join(percents)}  {row.title}")

    lines.extend(["", "Statistics"])
    lines.extend(_stat_lines("Cycle days", summary.fields.get("cycle_days", FieldStatistics())))
    for phase in Phase:
        key = f"{phase.value.lower()}_seconds"
        lines.extend(
            _stat_lines(f"{phase.value} time", summary.fields.get(key, FieldStatistics()), True)
        )
    lines.append(
        f"   Review density: {summary.review_density_per_kloc:g}/KLoC, "
        f"{summary.review_density_per_file:g}/file"
    )
    lines.append(
        f"   With AI review: {summary.with_ai.count}  Without: {summary.without_ai.count}"
    )
    if summary.dora_tier is not None:
        lines.append(f"   DORA lead time tier: {summary.dora_tier.value}")

    if summary.mr_type_stats:
        lines.extend(["", "MR types"])
        for name, stats in summary.mr_type_stats.items():
            lines.append(f"   {name}: {stats.count} ({stats.percentage:g}%)")

    phase_stats = result.metadata.phase_filter_stats
    if phase_stats is not None and phase_stats.filtered_count == 0:
        restrictive = phase_stats.most_restrictive_filter()
        if restrictive:
            lines.append(f"\nNo MR matched; most restrictive filter: {restrictive}")

    return "\n".join(lines)
