"""Cron entry point for the payment reconciliation sweep."""
import argparse
import logging
import os

from dotenv import load_dotenv

from backend.core.logging import configure_logging
from backend.features.billing.reconcile_job import run_reconcile_job

logger = logging.getLogger("logedin.workers.reconcile")


def main(argv=None) -> dict:
    parser = argparse.ArgumentParser(description="Backfill purchases for payments the webhook missed")
    parser.add_argument("--fix", action="store_true", help="insert missing purchases (default: report only)")
    parser.add_argument("--lookback-hours", type=int, default=None)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args(argv)

    result = run_reconcile_job(fix=args.fix, lookback_hours=args.lookback_hours, limit=args.limit)
    logger.info("[reconcile] worker finished", extra={"result": str(result)})
    return result


if __name__ == "__main__":
    load_dotenv()
    configure_logging(os.getenv("ENV", "development"))
    print(main())
