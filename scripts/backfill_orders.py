"""Materialize Orders for paid checkout sessions the webhook path missed.

Usage:
    python scripts/backfill_orders.py --days 90 [--dry-run]

Ctrl-C stops after the current session; the partial report is printed.
"""

import argparse
import asyncio
import signal
from datetime import UTC, datetime, timedelta

from billing_recon.core.logging import configure_structlog

configure_structlog(log_level="INFO", json_logs=False)

from billing_recon.core.config import get_settings
from billing_recon.db import open_database
from billing_recon.services.backfill_service import BackfillService
from billing_recon.services.entitlement_store import SqlEntitlementStore
from billing_recon.services.stripe_gateway import StripeGateway, build_stripe_client


async def main(days: int, dry_run: bool) -> None:
    settings = get_settings()
    database = await open_database(settings.database_url)
    gateway = StripeGateway(build_stripe_client(settings), read_attempts=settings.stripe_read_retry_attempts)
    service = BackfillService(SqlEntitlementStore(database.session_factory), gateway, settings)

    stop_event = asyncio.Event()
    asyncio.get_running_loop().add_signal_handler(signal.SIGINT, stop_event.set)

    since = datetime.now(UTC) - timedelta(days=days)
    print(f"{'[DRY RUN] ' if dry_run else ''}Backfilling orders since {since.isoformat()}")
    try:
        report = await service.backfill_orders(since, dry_run=dry_run, stop_event=stop_event)
    finally:
        await database.dispose()

    print("\nSummary:")
    print(f"  Accounts scanned:   {report.accounts_scanned}")
    print(f"  Sessions seen:      {report.sessions_seen}")
    print(f"  Orders created:     {report.created}")
    print(f"  Already present:    {report.skipped_existing}")
    print(f"  Unpaid:             {report.skipped_unpaid}")
    print(f"  Subscription mode:  {report.skipped_subscription}")
    print(f"  Failed:             {report.failed}")
    if report.stopped_early:
        print("  Stopped early on request")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill marketplace orders from Stripe checkout sessions")
    parser.add_argument("--days", type=int, default=get_settings().backfill_default_days, help="How far back to look")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()
    asyncio.run(main(args.days, args.dry_run))
