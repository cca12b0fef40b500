from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from .config import Settings
from .context import RunContext
from .errors import ConfigurationError, ReconciliationInProgressError
from .models import RunStatus
from .pipeline import ReconciliationEngine
from .report import generate_markdown_summary, write_json, write_markdown
from .triggers import IntervalScheduler

LOGGER = logging.getLogger(__name__)

EXIT_CODES = {RunStatus.SUCCESS: 0, RunStatus.PARTIAL: 1, RunStatus.FAILED: 2}
EXIT_IN_PROGRESS = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Protection vs MDM device inventory reconciliation")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Execute one reconciliation run")
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Deadline in seconds; remaining batches are skipped once it passes.",
    )
    run_parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out"),
        help="Directory that will receive the reconciliation artefacts.",
    )

    schedule_parser = subparsers.add_parser(
        "schedule", help="Run reconciliation on a fixed interval until interrupted")
    schedule_parser.add_argument(
        "--interval-hours",
        type=float,
        default=None,
        help="Hours between runs (defaults to DEVRECON_SCHEDULE_INTERVAL_HOURS).",
    )

    subparsers.add_parser(
        "status", help="Print the sync metadata record as JSON")

    return parser


def _run(engine: ReconciliationEngine, args: argparse.Namespace) -> int:
    previous = engine.status()
    try:
        result = engine.run(RunContext(timeout=args.timeout), trigger="cli")
    except ReconciliationInProgressError as exc:
        LOGGER.error("%s", exc)
        return EXIT_IN_PROGRESS

    json_path = args.out_dir / "recon_result.json"
    report_path = args.out_dir / "recon_report.md"
    write_json(json_path, result)
    write_markdown(report_path, generate_markdown_summary(result, previous=previous))
    LOGGER.info("Wrote %s and %s", json_path, report_path)
    return EXIT_CODES[result.status]


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = Settings.from_env()
        engine = ReconciliationEngine.from_settings(settings)
    except ConfigurationError as exc:
        parser.error(str(exc))
        return 2

    with engine:
        if args.command == "run":
            return _run(engine, args)

        if args.command == "schedule":
            hours = args.interval_hours or settings.schedule_interval_hours
            IntervalScheduler(engine, hours * 3600.0).run_forever()
            return 0

        if args.command == "status":
            metadata = engine.status()
            print(json.dumps(metadata.as_json() if metadata else {}, indent=2))
            return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover - exercised via CLI entry point
    raise SystemExit(main())
