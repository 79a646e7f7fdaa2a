"""
Runs one reconciliation pass and prints the JSON result.

    python -m storefront.worker cleanup --hours 24 --dry-run
    python -m storefront.worker report --hours 12 --limit 50
    python -m storefront.worker verify --limit 20

Meant for cron. Exit status is 1 when the pass could not reach a dependency.
"""
import argparse
import json
import logging
import sys

from storefront.core.config import settings
from storefront.core.errors import CheckoutError
from storefront.infrastructure.database import Database
from storefront.main import build_services

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storefront.worker", description="Order reconciliation sweeps")
    sub = parser.add_subparsers(dest="command", required=True)

    cleanup = sub.add_parser("cleanup", help="delete stale drafts")
    cleanup.add_argument("--hours", type=float, default=None)
    cleanup.add_argument("--limit", type=int, default=None, help="oldest drafts first")
    cleanup.add_argument("--dry-run", action="store_true")

    report = sub.add_parser("report", help="report payments stuck in pending_payment")
    report.add_argument("--hours", type=float, default=None)
    report.add_argument("--limit", type=int, default=None)

    verify = sub.add_parser("verify", help="verify pending blockchain payments")
    verify.add_argument("--limit", type=int, default=None)
    return parser


def run(args, services: dict) -> dict:
    if args.command == "cleanup":
        return services["cleanup"].run(args.hours, args.dry_run, args.limit).to_dict()
    if args.command == "report":
        return services["monitor"].run(args.hours, args.limit).to_dict()
    return services["transaction_verifier"].run(args.limit).to_dict()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    database = Database(settings.DATABASE_URL)
    if not database.connect_with_retry(settings.DB_CONNECT_RETRIES, settings.DB_CONNECT_WAIT_SECONDS):
        return 1
    try:
        result = run(args, build_services(database))
    except CheckoutError as e:
        logger.error(f"❌ {args.command} pass aborted: {e}")
        print(json.dumps({"error": e.to_dict()}, indent=2))
        return 1
    finally:
        database.dispose()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
