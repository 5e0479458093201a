"""BackfillReconciler: offline jobs that repair Orders the webhook path missed.

- ``backfill_orders`` replays paid checkout sessions of every connected account.
- ``reclassify_misassigned_orders`` finds plan upgrades stored as marketplace sales.
- ``backfill_downgrade_orders`` materializes Orders for downgrade credit invoices.

Every job is idempotent and reports counts. A single bad record is logged and
counted, never fatal.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from billing_recon.core.config import Settings
from billing_recon.core.exceptions import ProcessorUnavailable
from billing_recon.domain.correlation import UpgradePlanCorrelation, parse_correlation
from billing_recon.domain.orders import order_from_checkout_session
from billing_recon.domain.plans import PlanCatalog, parse_plan_type
from billing_recon.domain.proration import invoice_subscription_id, proration_lines
from billing_recon.domain.reclassification import (
    CREDIT_DOWNGRADE_TITLE,
    GENERIC_CHANGE_TITLE,
    Confidence,
    ReclassificationMethod,
    heuristic_title,
    infer_transition_from_invoice,
    infer_transition_from_invoices,
    is_credit_invoice,
    looks_like_subscription_change,
    transition_title,
)
from billing_recon.domain.records import (
    OrderDraft,
    OrderReclassification,
    OrderRecord,
    OrderStatus,
    OrderType,
)
from billing_recon.services.entitlement_store import EntitlementStore
from billing_recon.services.stripe_gateway import ProcessorGateway

logger = structlog.get_logger(__name__)


@dataclass
class BackfillReport:
    accounts_scanned: int = 0
    sessions_seen: int = 0
    created: int = 0
    skipped_existing: int = 0
    skipped_unpaid: int = 0
    skipped_subscription: int = 0
    failed: int = 0
    stopped_early: bool = False


@dataclass
class ReclassificationReport:
    scanned: int = 0
    explicit: int = 0
    heuristic: int = 0
    skipped: int = 0
    failed: int = 0
    by_method: dict[str, int] = field(default_factory=dict)

    @property
    def reclassified(self) -> int:
        return self.explicit + self.heuristic


@dataclass
class DowngradeBackfillReport:
    invoices_seen: int = 0
    credit_invoices: int = 0
    created: int = 0
    updated: int = 0
    skipped_existing: int = 0
    failed: int = 0


@dataclass
class _Finding:
    method: ReclassificationMethod
    change: OrderReclassification


def _timestamp(since: datetime) -> int:
    return int(since.timestamp())


class BackfillService:
    """Batch reconciliation jobs over the processor history and the Order table."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: ProcessorGateway,
        settings: Settings,
        catalog: PlanCatalog | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.catalog = catalog or settings.plan_catalog()

    # ── Order backfill ──────────────────────────────────────────────

    async def backfill_orders(
        self,
        since: datetime,
        *,
        dry_run: bool = False,
        stop_event: asyncio.Event | None = None,
    ) -> BackfillReport:
        """Materialize missing Orders from each connected account's checkout.session.completed events."""
        report = BackfillReport()
        created_gte = _timestamp(since)

        def stopping() -> bool:
            return stop_event is not None and stop_event.is_set()

        async for account in self.gateway.iter_connected_accounts():
            if stopping():
                report.stopped_early = True
                break
            if report.accounts_scanned:
                await asyncio.sleep(self.settings.backfill_account_delay_seconds)

            report.accounts_scanned += 1
            account_id = account["id"]
            log = logger.bind(account_id=account_id)
            try:
                async for event in self.gateway.iter_events("checkout.session.completed", created_gte, account_id):
                    if stopping():
                        report.stopped_early = True
                        break
                    session = (event.get("data") or {}).get("object") or {}
                    await self._backfill_session(session, account_id, report, dry_run)
            except ProcessorUnavailable as exc:
                log.warning("backfill_account_unavailable", error=str(exc))
                report.failed += 1
                continue

            if report.stopped_early:
                break
            log.info("backfill_account_done", sessions_seen=report.sessions_seen, created=report.created)

        logger.info("backfill_orders_complete", dry_run=dry_run, **report.__dict__)
        return report

    async def _backfill_session(
        self,
        session: dict[str, Any],
        account_id: str,
        report: BackfillReport,
        dry_run: bool,
    ) -> None:
        report.sessions_seen += 1
        if session.get("mode") != "payment":
            # Subscription checkouts are not marketplace sales
            report.skipped_subscription += 1
            return
        if session.get("payment_status") != "paid":
            report.skipped_unpaid += 1
            return

        session_id = session.get("id")
        try:
            correlation = parse_correlation(session.get("metadata"), session.get("client_reference_id"))
            draft = order_from_checkout_session(session, correlation, self.catalog, account_id=account_id)
            if isinstance(correlation, UpgradePlanCorrelation):
                draft.seller_account_id = None

            if dry_run:
                if await self.store.order_exists(session_id):
                    report.skipped_existing += 1
                else:
                    report.created += 1
                return

            if await self.store.create_order_if_absent(draft):
                report.created += 1
                logger.info("backfill_order_created", checkout_session_id=session_id, account_id=account_id)
            else:
                report.skipped_existing += 1
        except Exception:
            report.failed += 1
            logger.error("backfill_session_failed", checkout_session_id=session_id, exc_info=True)

    # ── Reclassification ────────────────────────────────────────────

    async def reclassify_misassigned_orders(self, *, dry_run: bool = False) -> ReclassificationReport:
        """Rewrite Orders that are really plan changes into subscription_change Orders."""
        report = ReclassificationReport()
        orders = await self.store.list_orders_without_seller()

        for order in orders:
            report.scanned += 1
            try:
                finding = await self._classify_order(order)
                if finding is None:
                    report.skipped += 1
                    continue

                if finding.method.confidence == Confidence.EXPLICIT:
                    report.explicit += 1
                else:
                    report.heuristic += 1
                report.by_method[finding.method.value] = report.by_method.get(finding.method.value, 0) + 1

                logger.info(
                    "order_reclassified",
                    order_id=order.id,
                    method=finding.method.value,
                    confidence=finding.method.confidence.value,
                    title=finding.change.title,
                    dry_run=dry_run,
                )
                if not dry_run:
                    await self.store.reclassify_order(order.id, finding.change)
            except Exception:
                report.failed += 1
                logger.error("order_reclassification_failed", order_id=order.id, exc_info=True)

        logger.info(
            "reclassification_complete",
            dry_run=dry_run,
            scanned=report.scanned,
            explicit=report.explicit,
            heuristic=report.heuristic,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    def _upgrade_change(
        self,
        correlation: UpgradePlanCorrelation,
        method: ReclassificationMethod,
    ) -> _Finding:
        current = correlation.current_plan_type
        title = (
            transition_title(current, correlation.new_plan_type, self.catalog)
            if current is not None
            else GENERIC_CHANGE_TITLE
        )
        return _Finding(
            method=method,
            change=OrderReclassification(
                title=title,
                method=method.value,
                subscription_id=correlation.subscription_id,
                current_plan_type=current.value if current else None,
                new_plan_type=correlation.new_plan_type.value,
            ),
        )

    async def _invoice_finding(
        self,
        subscription_id: str,
        method: ReclassificationMethod,
    ) -> _Finding | None:
        invoices = await self.gateway.list_subscription_invoices(subscription_id, self.settings.recent_invoice_limit)
        inferred = infer_transition_from_invoices(invoices, self.catalog)
        if inferred is None:
            return None
        transition, _invoice = inferred
        return _Finding(
            method=method,
            change=OrderReclassification(
                title=transition_title(transition.current, transition.new, self.catalog),
                method=method.value,
                subscription_id=subscription_id,
                current_plan_type=transition.current.value,
                new_plan_type=transition.new.value,
            ),
        )

    async def _classify_order(self, order: OrderRecord) -> _Finding | None:
        # (a) checkout session metadata
        session = None
        if order.checkout_session_id:
            session = await self.gateway.retrieve_checkout_session(order.checkout_session_id, order.seller_account_id)
        if session is not None:
            correlation = parse_correlation(session.get("metadata"), session.get("client_reference_id"))
            if isinstance(correlation, UpgradePlanCorrelation):
                return self._upgrade_change(correlation, ReclassificationMethod.CHECKOUT_METADATA)

        # (b) payment intent metadata
        payment_intent = (session or {}).get("payment_intent")
        if not isinstance(payment_intent, dict) and order.payment_intent_id:
            payment_intent = await self.gateway.retrieve_payment_intent(
                order.payment_intent_id, order.seller_account_id
            )
        metadata = (payment_intent.get("metadata") or {}) if isinstance(payment_intent, dict) else {}
        correlation = parse_correlation(metadata)
        if isinstance(correlation, UpgradePlanCorrelation):
            return self._upgrade_change(correlation, ReclassificationMethod.PAYMENT_INTENT_METADATA)
        if metadata.get("subscriptionId"):
            subscription_id = metadata["subscriptionId"]
            finding = await self._invoice_finding(subscription_id, ReclassificationMethod.PAYMENT_INTENT_METADATA)
            if finding is not None:
                return finding
            new_plan = parse_plan_type(metadata.get("newPlanType") or metadata.get("planType"))
            return _Finding(
                method=ReclassificationMethod.PAYMENT_INTENT_METADATA,
                change=OrderReclassification(
                    title=heuristic_title(order.title, order.amount),
                    method=ReclassificationMethod.PAYMENT_INTENT_METADATA.value,
                    subscription_id=subscription_id,
                    new_plan_type=new_plan.value if new_plan else None,
                ),
            )

        # (c) the buyer's membership subscription, (d) its recent credit invoices
        buyer = await self.store.get_user(order.buyer_id) if order.buyer_id else None
        subscription_id = buyer.membership_subscription_id if buyer else None
        if subscription_id:
            finding = await self._invoice_finding(subscription_id, ReclassificationMethod.INVOICE_PRORATION)
            if finding is not None:
                return finding

        # (e) amount and title pattern
        if looks_like_subscription_change(order.amount, order.title, order.listing_id, self.catalog):
            return _Finding(
                method=ReclassificationMethod.AMOUNT_PATTERN,
                change=OrderReclassification(
                    title=heuristic_title(order.title, order.amount),
                    method=ReclassificationMethod.AMOUNT_PATTERN.value,
                    subscription_id=subscription_id,
                    new_plan_type=buyer.membership_plan if subscription_id else None,
                ),
            )
        return None

    # ── Downgrade credit invoices ───────────────────────────────────

    async def backfill_downgrade_orders(
        self,
        since: datetime,
        *,
        dry_run: bool = False,
        force_update: bool = False,
    ) -> DowngradeBackfillReport:
        """Materialize subscription_change Orders for downgrade credit invoices."""
        report = DowngradeBackfillReport()

        try:
            async for invoice in self.gateway.iter_invoices(_timestamp(since)):
                report.invoices_seen += 1
                if not is_credit_invoice(invoice) or not proration_lines(invoice):
                    continue
                report.credit_invoices += 1
                try:
                    await self._backfill_downgrade(invoice, report, dry_run=dry_run, force_update=force_update)
                except Exception:
                    report.failed += 1
                    logger.error("downgrade_backfill_failed", invoice_id=invoice.get("id"), exc_info=True)
        except ProcessorUnavailable as exc:
            logger.warning("downgrade_backfill_interrupted", error=str(exc))
            report.failed += 1

        logger.info("downgrade_backfill_complete", dry_run=dry_run, force_update=force_update, **report.__dict__)
        return report

    async def _downgrade_draft(self, invoice: dict[str, Any]) -> OrderDraft:
        subscription_id = invoice_subscription_id(invoice)
        transition = infer_transition_from_invoice(invoice, self.catalog)
        buyer = (
            await self.store.find_user_by_membership_subscription(subscription_id) if subscription_id else None
        )
        if transition is not None:
            title = transition_title(transition.current, transition.new, self.catalog)
        else:
            title = CREDIT_DOWNGRADE_TITLE
        created = invoice.get("created")
        customer = invoice.get("customer")

        return OrderDraft(
            order_type=OrderType.SUBSCRIPTION_CHANGE,
            status=OrderStatus.COMPLETED,
            amount=abs(int(invoice.get("total") or invoice.get("amount_due") or 0)),
            currency=invoice.get("currency") or self.settings.plan_currency,
            invoice_id=invoice["id"],
            title=title,
            buyer_id=buyer.id if buyer else None,
            customer_id=customer.get("id") if isinstance(customer, dict) else customer,
            customer_email=invoice.get("customer_email"),
            subscription_id=subscription_id,
            current_plan_type=transition.current.value if transition else None,
            new_plan_type=transition.new.value if transition else None,
            created_at=datetime.fromtimestamp(int(created), tz=UTC) if created else None,
        )

    async def _backfill_downgrade(
        self,
        invoice: dict[str, Any],
        report: DowngradeBackfillReport,
        *,
        dry_run: bool,
        force_update: bool,
    ) -> None:
        invoice_id = invoice["id"]
        existing = await self.store.find_order_by_invoice(invoice_id)
        if existing is not None and not force_update:
            report.skipped_existing += 1
            return

        draft = await self._downgrade_draft(invoice)
        if dry_run:
            if existing is None:
                report.created += 1
            else:
                report.updated += 1
            return

        if existing is not None:
            await self.store.overwrite_order(existing.id, draft)
            report.updated += 1
            logger.info("downgrade_order_updated", invoice_id=invoice_id, title=draft.title)
        elif await self.store.create_order_if_absent(draft):
            report.created += 1
            logger.info("downgrade_order_created", invoice_id=invoice_id, title=draft.title)
        else:
            report.skipped_existing += 1
