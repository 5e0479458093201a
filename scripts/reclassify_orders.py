"""Rewrite plan upgrades that were recorded as marketplace sales.

Usage:
    python scripts/reclassify_orders.py [--dry-run]
"""

import argparse
import asyncio

from billing_recon.core.logging import configure_structlog

configure_structlog(log_level="INFO", json_logs=False)

from billing_recon.core.config import get_settings
from billing_recon.db import open_database
from billing_recon.services.backfill_service import BackfillService
from billing_recon.services.entitlement_store import SqlEntitlementStore
from billing_recon.services.stripe_gateway import StripeGateway, build_stripe_client


async def main(dry_run: bool) -> None:
    settings = get_settings()
    database = await open_database(settings.database_url)
    gateway = StripeGateway(build_stripe_client(settings), read_attempts=settings.stripe_read_retry_attempts)
    service = BackfillService(SqlEntitlementStore(database.session_factory), gateway, settings)

    try:
        report = await service.reclassify_misassigned_orders(dry_run=dry_run)
    finally:
        await database.dispose()

    print(f"\n{'[DRY RUN] ' if dry_run else ''}Summary:")
    print(f"  Orders scanned:        {report.scanned}")
    print(f"  Reclassified:          {report.reclassified}")
    print(f"    explicit metadata:   {report.explicit}")
    print(f"    heuristic:           {report.heuristic}")
    for method, count in sorted(report.by_method.items()):
        print(f"      {method}: {count}")
    print(f"  Skipped:               {report.skipped}")
    print(f"  Failed:                {report.failed}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reclassify subscription changes stored as marketplace sales")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()
    asyncio.run(main(args.dry_run))
