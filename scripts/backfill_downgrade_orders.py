"""Create subscription_change Orders for downgrade credit invoices.

Usage:
    python scripts/backfill_downgrade_orders.py --days 90 [--dry-run] [--force-update]
"""

import argparse
import asyncio
from datetime import UTC, datetime, timedelta

from billing_recon.core.logging import configure_structlog

configure_structlog(log_level="INFO", json_logs=False)

from billing_recon.core.config import get_settings
from billing_recon.db import open_database
from billing_recon.services.backfill_service import BackfillService
from billing_recon.services.entitlement_store import SqlEntitlementStore
from billing_recon.services.stripe_gateway import StripeGateway, build_stripe_client


async def main(days: int, dry_run: bool, force_update: bool) -> None:
    settings = get_settings()
    database = await open_database(settings.database_url)
    gateway = StripeGateway(build_stripe_client(settings), read_attempts=settings.stripe_read_retry_attempts)
    service = BackfillService(SqlEntitlementStore(database.session_factory), gateway, settings)

    since = datetime.now(UTC) - timedelta(days=days)
    try:
        report = await service.backfill_downgrade_orders(since, dry_run=dry_run, force_update=force_update)
    finally:
        await database.dispose()

    print(f"\n{'[DRY RUN] ' if dry_run else ''}Summary:")
    print(f"  Invoices seen:     {report.invoices_seen}")
    print(f"  Credit invoices:   {report.credit_invoices}")
    print(f"  Orders created:    {report.created}")
    print(f"  Orders updated:    {report.updated}")
    print(f"  Already present:   {report.skipped_existing}")
    print(f"  Failed:            {report.failed}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill downgrade orders from Stripe credit invoices")
    parser.add_argument("--days", type=int, default=get_settings().backfill_default_days, help="How far back to look")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    parser.add_argument("--force-update", action="store_true", help="Rewrite orders that already exist")
    args = parser.parse_args()
    asyncio.run(main(args.days, args.dry_run, args.force_update))
