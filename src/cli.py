"""Console entry point for the sole-tenant placement history CLI."""

from __future__ import annotations

import argparse
from typing import List

from analyzer import FleetHistoryAnalyzer
from config import AnalyzerConfig
from log_utils import setup_logging


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser of the placement-history command."""
    parser = argparse.ArgumentParser(
        description=(
            "Reconstruct sole-tenant placement history of Compute Engine "
            "instances from audit logs"
        )
    )
    parser.add_argument(
        "--project",
        required=True,
        nargs="+",
        help="GCP project ID(s) to analyze",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Size of the analysis window in days, ending now (default: 30)",
    )
    parser.add_argument(
        "--output",
        help="Path of the JSON archive to write (default: timestamped file)",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=1000,
        help="Audit log entries fetched per request, 1-1000 (default: 1000)",
    )
    parser.add_argument(
        "--no-annotate",
        action="store_true",
        help="Skip looking up operating system and license of images",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """Run the analysis; returns 1 if any project could not be read."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file="placement-history.log")

    try:
        config = AnalyzerConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    runner = FleetHistoryAnalyzer(
        project_ids=config.project_ids,
        days=config.days,
        output=config.output,
        page_size=config.page_size,
        annotate=config.annotate,
    )

    stats = runner.run()
    return 1 if stats.get("failed", 0) > 0 else 0
