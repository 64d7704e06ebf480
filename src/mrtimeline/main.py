"""Entry point for the GitLab MR timeline tool.

Exit codes:
    0  success
    1  unexpected error
    2  configuration or validation error
    3  authentication error
    4  GitLab API error (including an unknown MR)
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .actor_classifier import ActorClassifier
from .batch import BatchAnalyzer, analyze_batch, filter_ai_review_only
from .batch_models import BatchInput
from .cli import build_batch_filter, parse_args
from .config import build_classifier_config, load_config
from .errors import AuthenticationError, ConfigurationError, UpstreamError, ValidationError
from .filters import parse_sort
from .gitlab_client import GitLabClient
from .report import generate_batch_report, generate_timeline_report
from .serialization import dumps
from .timeline import TimelineAssembler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID_INPUT = 2
EXIT_AUTH = 3
EXIT_UPSTREAM = 4


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _log_progress(completed: int, total: int, elapsed_ms: int) -> None:
    logger.info(
        "Batch progress",
        extra={"completed": completed, "total": total, "elapsed_ms": elapsed_ms},
    )


def run_timeline(args: argparse.Namespace, assembler: TimelineAssembler) -> str:
    timeline = assembler.analyze(args.project, args.mr)
    if args.format == "json":
        return dumps(timeline)
    return generate_timeline_report(timeline)


def run_batch(
    args: argparse.Namespace, client: GitLabClient, assembler: TimelineAssembler
) -> str:
    batch_input = BatchInput(
        project_id=args.project,
        mr_iids=args.mrs,
        filter=build_batch_filter(args),
        sort=parse_sort(args.sort, args.order) if args.sort else None,
        limit=args.limit,
        include_events=args.include_events,
        include_post_merge_reviews=args.include_post_merge_reviews,
        classify_mr_types=args.classify,
        mr_type_threshold_hours=args.threshold_hours,
    )
    analyzer = BatchAnalyzer(client, assembler, max_concurrency=args.concurrency)
    result = analyze_batch(analyzer, batch_input, on_progress=_log_progress)
    if args.ai_review_only:
        result = filter_ai_review_only(result)

    if args.format == "json":
        return dumps(result)
    return generate_batch_report(result)


def orchestrate(argv: Optional[Sequence[str]] = None) -> int:
    """Run the requested command and map failures to exit codes."""
    try:
        args = parse_args(argv)
        _configure_logging(args.verbose)

        config = load_config(host=args.host)
        client = GitLabClient(config=config)
        assembler = TimelineAssembler(client, ActorClassifier(build_classifier_config(config)))

        if args.command == "timeline":
            output = run_timeline(args, assembler)
        else:
            output = run_batch(args, client, assembler)

        print(output)
        return EXIT_OK
    except (ConfigurationError, ValidationError) as exc:
        logger.error("Invalid input: %s", exc)
        return EXIT_INVALID_INPUT
    except AuthenticationError as exc:
        logger.error("Authentication failed: %s", exc)
        return EXIT_AUTH
    except UpstreamError as exc:
        logger.error("GitLab request failed: %s", exc)
        return EXIT_UPSTREAM
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_UNEXPECTED


def main() -> None:
    sys.exit(orchestrate())


if __name__ == "__main__":
    main()
