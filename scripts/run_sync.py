#!/usr/bin/env python3
"""Run one Gmail sync and signal extraction cycle, then exit.

Usage:
    python -m scripts.run_sync [--skip-extraction] [--cleanup-stuck]
"""
import argparse
import logging
import sys

from scripts.bootstrap import prepare
from src.main import run_email_sync, run_signal_extraction, run_stuck_cleanup

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="One-off Gmail sync")
    parser.add_argument("--skip-extraction", action="store_true", help="Only sync, don't extract signals")
    parser.add_argument("--cleanup-stuck", action="store_true", help="Also fail stuck scraping attempts")
    args = parser.parse_args()

    prepare()

    results = run_email_sync()
    failures = [email for email, result in results.items() if not result["success"]]
    for email, result in results.items():
        if result["success"]:
            logger.info(
                "%s: %d found, %d new, %d matched",
                email,
                result["emails_found"],
                result["emails_new"],
                result["emails_matched"],
            )
        else:
            logger.error("%s: %s", email, result.get("error"))

    if not args.skip_extraction:
        run_signal_extraction()
    if args.cleanup_stuck:
        run_stuck_cleanup()

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
