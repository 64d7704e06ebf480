"""Command-line argument parsing for the GitLab MR timeline tool."""

from __future__ import annotations

import argparse
from typing import List, Optional, Sequence

from .batch_models import BatchFilter, MRStatus, PhaseBounds, SortField, SortOrder
from .models import Phase

PHASE_FILTER_OPTIONS = [
    (phase, metric, bound)
    for phase in Phase
    for metric in ("percent", "days")
    for bound in ("min", "max")
]


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _non_negative_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a number") from exc

    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")

    return parsed


def _iid_list(value: str) -> List[int]:
    """Parse ``1,2,5-7`` into ``[1, 2, 5, 6, 7]``."""
    iids: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        start, sep, end = part.partition("-")
        if sep:
            low, high = _positive_int(start), _positive_int(end)
            if low > high:
                raise argparse.ArgumentTypeError(f"invalid range '{part}'")
            iids.extend(range(low, high + 1))
        else:
            iids.append(_positive_int(part))
    if not iids:
        raise argparse.ArgumentTypeError("at least one MR iid is required")
    return iids


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project", required=True, help="GitLab project id or 'group/project' path.")
    parser.add_argument("--host", default=None, help="GitLab base URL (default: $GITLAB_HOST or gitlab.com).")
    parser.add_argument("--format", choices=("text", "json"), default="text", help="Output format.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging on stderr.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitlab-mr-timeline",
        description=(
            "Reconstruct GitLab merge request timelines (Dev/Wait/Review/Merge phases) "
            "and compare them across a batch."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    timeline = subparsers.add_parser("timeline", help="Show the timeline of a single MR.")
    _add_common_arguments(timeline)
    timeline.add_argument("--mr", type=_positive_int, required=True, help="Merge request iid.")

    batch = subparsers.add_parser("batch", help="Compare many MRs.")
    _add_common_arguments(batch)
    batch.add_argument(
        "--mrs", type=_iid_list, required=True, help="MR iids, e.g. '12,15,20-25'."
    )
    batch.add_argument("--author", default=None, help="Case-insensitive author substring.")
    batch.add_argument("--min-cycle-days", type=_non_negative_float, default=None)
    batch.add_argument("--max-cycle-days", type=_non_negative_float, default=None)
    batch.add_argument("--status", choices=[status.value for status in MRStatus], default=None)
    batch.add_argument("--since", default=None, help="Earliest creation date (YYYY-MM-DD).")
    batch.add_argument("--until", default=None, help="Latest creation date (YYYY-MM-DD).")
    for phase, metric, bound in PHASE_FILTER_OPTIONS:
        batch.add_argument(
            f"--{phase.value.lower()}-{metric}-{bound}",
            type=_non_negative_float,
            default=None,
            help=f"{bound.capitalize()} {phase.value} phase {metric}.",
        )
    batch.add_argument(
        "--sort", choices=[sort_field.value for sort_field in SortField], default=None
    )
    batch.add_argument(
        "--order", choices=[order.value for order in SortOrder], default=SortOrder.DESC.value
    )
    batch.add_argument("--limit", type=_positive_int, default=None)
    batch.add_argument("--include-events", action="store_true", help="Embed events in each row.")
    batch.add_argument(
        "--include-post-merge-reviews",
        action="store_true",
        help="Count AI reviews after approval/merge when flagging AI-reviewed MRs.",
    )
    batch.add_argument("--classify", action="store_true", help="Classify MR types.")
    batch.add_argument(
        "--threshold-hours",
        type=float,
        default=2.0,
        help="Active-development threshold in hours (default: 2).",
    )
    batch.add_argument("--ai-review-only", action="store_true", help="Keep only AI-reviewed MRs.")
    batch.add_argument("--concurrency", type=_positive_int, default=10)

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list; defaults to ``sys.argv[1:]``.

    Returns:
        Parsed arguments with a ``command`` of ``timeline`` or ``batch``.
    """
    return build_parser().parse_args(argv)


def build_batch_filter(args: argparse.Namespace) -> Optional[BatchFilter]:
    """Translate parsed batch arguments into a ``BatchFilter`` (``None`` if unset)."""
    phase_filters = {}
    for phase in Phase:
        name = phase.value.lower()
        bounds = PhaseBounds(
            percent_min=getattr(args, f"{name}_percent_min"),
            percent_max=getattr(args, f"{name}_percent_max"),
            days_min=getattr(args, f"{name}_days_min"),
            days_max=getattr(args, f"{name}_days_max"),
        )
        if not bounds.is_empty():
            phase_filters[phase] = bounds

    batch_filter = BatchFilter(
        author=args.author,
        min_cycle_days=args.min_cycle_days,
        max_cycle_days=args.max_cycle_days,
        status=MRStatus(args.status) if args.status else None,
        since=args.since,
        until=args.until,
        phase_filters=phase_filters,
    )
    if batch_filter == BatchFilter():
        return None
    return batch_filter
