import argparse
import asyncio
import logging
import sys

from testfleet.agents.orchestrator import Orchestrator, exit_code_for
from testfleet.core.config import load_settings
from testfleet.core.constants import EXIT_COULD_NOT_RUN, EXIT_INTERRUPTED
from testfleet.core.errors import ConfigurationError, RuntimeUnavailable
from testfleet.models.execution_outcome import PolledResult
from testfleet.services.unit_loader import load_units
from testfleet.utils.log_excerpt import create_log_excerpt
from testfleet.utils.logging_config import setup_logging

logger = logging.getLogger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testfleet",
        description="Run build and test units in parallel Docker containers.",
    )
    parser.add_argument("units", help="JSON file containing the list of execution units")
    parser.add_argument("--project-root", default=None,
                        help="Project tree mounted read-only into build containers")
    parser.add_argument("--max-parallel", type=int, default=None)
    parser.add_argument("--memory-per-unit-gb", type=float, default=None)
    parser.add_argument("--total-memory-gb", type=float, default=None)
    parser.add_argument("--memory-headroom", type=int, default=None,
                        help="Percent of memory kept free (0-99)")
    return parser


def report_progress(result: PolledResult) -> None:
    outcome = result.outcome
    logger.info("[%s] %s (exit=%d, %.2fs)",
                outcome.status.value.upper(), result.unit_id, outcome.exit_code, outcome.duration_seconds)
    if outcome.status.value == "failure" and outcome.stderr:
        logger.info("stderr for %s:\n%s", result.unit_id, create_log_excerpt(outcome.stderr, head=5, tail=15))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(
            max_parallel=args.max_parallel,
            memory_per_unit_gb=args.memory_per_unit_gb,
            total_memory_gb=args.total_memory_gb,
            memory_headroom_percent=args.memory_headroom,
        )
    except ConfigurationError as e:
        print(f"testfleet: {e}", file=sys.stderr)
        return EXIT_COULD_NOT_RUN

    setup_logging(level=settings.log_level, scratch_root=settings.scratch_root)

    try:
        units = load_units(args.units, project_root=args.project_root)
        orchestrator = Orchestrator(settings, progress_callback=report_progress)
        summary = asyncio.run(orchestrator.run(units))
    except (ConfigurationError, RuntimeUnavailable) as e:
        logger.error("%s", e)
        return EXIT_COULD_NOT_RUN
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED

    logger.info(
        "Summary: %s | total=%d succeeded=%d failed=%d skipped=%d cancelled=%d | batches=%d peak=%d",
        summary.status, summary.total, summary.succeeded, summary.failed,
        summary.skipped, summary.cancelled, len(summary.batches), summary.peak_running,
    )
    return exit_code_for(summary)


if __name__ == "__main__":
    sys.exit(main())
