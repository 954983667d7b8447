"""Command-line entry point for the arena.

Usage:
    arena init-db
    arena start-cohort [--force]
    arena run-decisions
    arena take-snapshots
    arena check-resolutions
    arena serve
"""

import argparse
import asyncio
import json
import logging
import sys

from llm_service.config import configure_logging, get_settings

from .engine import build_engine
from .errors import CycleAborted

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arena",
        description="Run forecast arena passes against the configured database",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables and seed the model roster")
    start = subparsers.add_parser("start-cohort", help="Start this week's cohort")
    start.add_argument(
        "--force",
        action="store_true",
        help="Ignore the schedule window and any active cohort",
    )
    subparsers.add_parser("run-decisions", help="Run one decision cycle")
    subparsers.add_parser("take-snapshots", help="Settle markets and snapshot portfolios")
    subparsers.add_parser("check-resolutions", help="Settle resolved and cancelled markets")
    subparsers.add_parser("serve", help="Run the HTTP trigger service")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "serve":
        from llm_service.main import main as serve
        serve()
        return 0

    configure_logging(settings)
    engine = build_engine(settings)

    try:
        if args.command == "init-db":
            engine.database.create_all()
            seeded = engine.cohorts.seed_models()
            result = {"tables_created": True, "models_seeded": seeded}
        elif args.command == "start-cohort":
            result = engine.start_cohort(force=args.force).to_dict()
        elif args.command == "run-decisions":
            result = asyncio.run(engine.run_decision_cycle()).to_dict()
        elif args.command == "take-snapshots":
            result = engine.run_snapshot_sweep().to_dict()
        else:
            result = engine.run_settlement_pass().to_dict()
    except CycleAborted as e:
        logger.error(f"{args.command} aborted: {e.message}")
        return 2
    finally:
        engine.database.dispose()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
