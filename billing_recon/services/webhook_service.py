"""WebhookReconciler: apply Stripe events to the entitlement store exactly once.

Flow per delivery:
1. Verify the ``stripe-signature`` header (HMAC-SHA256 over ``"{t}.{body}"``).
2. Claim the ledger key ``"{event_type}:{resource_id}"`` with an atomic insert.
   A key that already exists means the event was applied; nothing else is written.
3. Dispatch to a handler. Handlers make their processor calls before any store
   write, so on ``ProcessorUnavailable`` the claim is released and the processor's
   redelivery is applied normally. Any other failure keeps the claim: a redelivery
   is then acknowledged as a duplicate (no double application, possible loss,
   repaired by the backfill jobs).
"""

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import stripe
import structlog

from billing_recon.core.config import Settings
from billing_recon.core.exceptions import InvalidSignature, ProcessorUnavailable, WebhookNotConfigured
from billing_recon.domain.correlation import (
    CorrelationMetadata,
    LegacySubscriptionCorrelation,
    MembershipCorrelation,
    UnparsedCorrelation,
    UpgradePlanCorrelation,
    parse_correlation,
)
from billing_recon.domain.orders import checkout_customer_email, order_from_checkout_session
from billing_recon.domain.plans import PlanCatalog, parse_plan_type
from billing_recon.domain.records import (
    ENTITLED_STATUSES,
    PAYOUT_UNRESOLVED_STATUS,
    LegacySubscriptionRecord,
    PendingClaimRecord,
)
from billing_recon.metrics.cloudwatch import BusinessMetrics
from billing_recon.services.entitlement_store import EntitlementStore
from billing_recon.services.event_ledger import EventLedger, ledger_key
from billing_recon.services.plan_change_service import PlanChangeService
from billing_recon.services.stripe_gateway import ProcessorGateway

logger = structlog.get_logger(__name__)

# Events that recur for the same object; keyed by event id instead of object id
PER_DELIVERY_EVENT_TYPES = frozenset({
    "customer.subscription.updated",
    "customer.subscription.deleted",
})


class WebhookStatus(StrEnum):
    OK = "ok"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookOutcome:
    status: WebhookStatus
    event_id: str
    event_type: str

    @property
    def duplicate(self) -> bool:
        return self.status == WebhookStatus.DUPLICATE


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def event_resource_id(event: dict[str, Any]) -> str:
    if event.get("type") in PER_DELIVERY_EVENT_TYPES:
        return event["id"]
    obj = (event.get("data") or {}).get("object") or {}
    return obj.get("id") or event["id"]


class WebhookService:
    """Verifies, deduplicates and dispatches processor events."""

    def __init__(
        self,
        ledger: EventLedger,
        store: EntitlementStore,
        gateway: ProcessorGateway,
        plan_changes: PlanChangeService,
        settings: Settings,
        metrics: BusinessMetrics | None = None,
        catalog: PlanCatalog | None = None,
    ):
        self.ledger = ledger
        self.store = store
        self.gateway = gateway
        self.plan_changes = plan_changes
        self.settings = settings
        self.metrics = metrics
        self.catalog = catalog or settings.plan_catalog()

    async def _emit(self, event_name: str, user_id: str | None = None) -> None:
        if self.metrics is not None:
            await self.metrics.emit(event_name, user_id=user_id)

    # ── Verification ────────────────────────────────────────────────

    def verify(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """Return the verified event as a dict.

        The platform secret is tried first, then the connected-accounts secret.

        Raises:
            WebhookNotConfigured: no signing secret configured
            InvalidSignature: header missing, signature mismatch, or payload not JSON
        """
        secrets = [
            s for s in (self.settings.stripe_webhook_secret, self.settings.stripe_connect_webhook_secret) if s
        ]
        if not secrets:
            logger.error("stripe_webhook_secret_missing")
            raise WebhookNotConfigured("Stripe webhook endpoint is not configured")
        if not signature_header:
            raise InvalidSignature("Missing stripe-signature header")

        last_error: Exception | None = None
        for secret in secrets:
            try:
                stripe.Webhook.construct_event(payload, signature_header, secret)
            except stripe.SignatureVerificationError as exc:
                last_error = exc
                continue
            except ValueError as exc:
                raise InvalidSignature("Invalid payload") from exc
            # Handlers work on the verified body as plain dicts
            return json.loads(payload)

        logger.warning("stripe_webhook_signature_invalid", error=str(last_error))
        raise InvalidSignature("Invalid signature") from last_error

    # ── Entry point ─────────────────────────────────────────────────

    async def handle_event(self, payload: bytes, signature_header: str | None) -> WebhookOutcome:
        event = self.verify(payload, signature_header)
        event_id = event["id"]
        event_type = event.get("type", "")

        key = ledger_key(event_type, event_resource_id(event))
        if not await self.ledger.claim(key, event_id, event_type):
            logger.info("stripe_duplicate_event_ignored", event_id=event_id, event_type=event_type, key=key)
            await self._emit("webhook_duplicate")
            return WebhookOutcome(WebhookStatus.DUPLICATE, event_id, event_type)

        logger.info("stripe_webhook_received", event_id=event_id, event_type=event_type)
        try:
            status = await self._dispatch(event)
        except ProcessorUnavailable:
            await self.ledger.release(key)
            logger.warning("stripe_webhook_deferred", event_id=event_id, event_type=event_type)
            raise

        return WebhookOutcome(status, event_id, event_type)

    async def _dispatch(self, event: dict[str, Any]) -> WebhookStatus:
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return await self._handle_checkout_completed(data, event.get("account"))
        if event_type == "payment_intent.succeeded":
            return await self._handle_payment_intent_succeeded(data)
        if event_type == "customer.subscription.updated":
            return await self._handle_subscription_changed(data, deleted=False)
        if event_type == "customer.subscription.deleted":
            return await self._handle_subscription_changed(data, deleted=True)

        logger.debug("stripe_event_type_ignored", event_type=event_type)
        return WebhookStatus.IGNORED

    # ── Checkout ────────────────────────────────────────────────────

    async def _handle_checkout_completed(self, session: dict[str, Any], account: str | None) -> WebhookStatus:
        correlation = parse_correlation(session.get("metadata"), session.get("client_reference_id"))
        mode = session.get("mode")

        if mode == "subscription":
            return await self._handle_subscription_checkout(session, correlation)
        if mode != "payment":
            return WebhookStatus.IGNORED

        if isinstance(correlation, UpgradePlanCorrelation):
            return await self._apply_upgrade(correlation, session=session)
        return await self._record_sale(session, correlation, account)

    async def _record_sale(
        self,
        session: dict[str, Any],
        correlation: CorrelationMetadata,
        account: str | None,
    ) -> WebhookStatus:
        if isinstance(correlation, UnparsedCorrelation):
            # Money moved: keep the order, reclassification can correct it later
            logger.warning(
                "checkout_correlation_unparsed",
                checkout_session_id=session.get("id"),
                reason=correlation.reason,
            )

        draft = order_from_checkout_session(session, correlation, self.catalog, account_id=account)
        if draft.seller_account_id is None and draft.payment_intent_id:
            payment_intent = await self.gateway.retrieve_payment_intent(draft.payment_intent_id, account)
            draft.seller_account_id = ((payment_intent or {}).get("transfer_data") or {}).get("destination")

        created = await self.store.create_order_if_absent(draft)
        logger.info(
            "order_recorded" if created else "order_already_recorded",
            checkout_session_id=draft.checkout_session_id,
            order_type=draft.order_type.value,
            amount=draft.amount,
        )
        return WebhookStatus.OK

    async def _apply_upgrade(
        self,
        correlation: UpgradePlanCorrelation,
        session: dict[str, Any] | None = None,
    ) -> WebhookStatus:
        """Apply a paid upgrade using only the correlation metadata."""
        subscription = await self.gateway.retrieve_subscription(correlation.subscription_id)
        if subscription is None:
            logger.error("upgrade_subscription_missing", subscription_id=correlation.subscription_id)
        elif subscription.get("status") not in ENTITLED_STATUSES:
            logger.warning(
                "upgrade_subscription_not_active",
                subscription_id=correlation.subscription_id,
                status=subscription.get("status"),
            )
            subscription = None
        else:
            # Proration was collected by the checkout payment
            await self.plan_changes.apply_plan_swap(
                subscription,
                correlation.new_plan_type,
                buyer_id=correlation.buyer_id,
                proration_behavior="none",
            )

        buyer_id = correlation.buyer_id
        if buyer_id is None:
            user = await self.store.find_user_by_membership_subscription(correlation.subscription_id)
            buyer_id = user.id if user else None

        if subscription is not None and buyer_id:
            await self.store.update_membership(
                buyer_id,
                active=True,
                plan_type=correlation.new_plan_type.value,
                subscription_id=correlation.subscription_id,
            )
            logger.info(
                "plan_upgraded",
                user_id=buyer_id,
                subscription_id=correlation.subscription_id,
                new_plan=correlation.new_plan_type.value,
            )
            await self._emit("plan_upgraded", user_id=buyer_id)

        if session is not None:
            draft = order_from_checkout_session(session, correlation, self.catalog)
            await self.store.create_order_if_absent(draft)
        return WebhookStatus.OK

    async def _handle_subscription_checkout(
        self,
        session: dict[str, Any],
        correlation: CorrelationMetadata,
    ) -> WebhookStatus:
        subscription_id = _object_id(session.get("subscription"))

        if isinstance(correlation, LegacySubscriptionCorrelation) and subscription_id:
            buyer_id = correlation.buyer_id or session.get("client_reference_id")
            account = correlation.connect_account_id or await self._creator_payout_account(correlation.creator_id)
            status = "active"
            if not account:
                logger.error(
                    "legacy_subscription_payout_unresolved",
                    creator_id=correlation.creator_id,
                    subscription_id=subscription_id,
                )
                status = PAYOUT_UNRESOLVED_STATUS
            await self.store.upsert_legacy_subscription(
                LegacySubscriptionRecord(
                    subscription_id=subscription_id,
                    creator_id=correlation.creator_id,
                    status=status,
                    user_id=buyer_id,
                    customer_id=_object_id(session.get("customer")),
                    checkout_session_id=session.get("id"),
                    amount=int(session.get("amount_total") or 0),
                    currency=session.get("currency") or "usd",
                    seller_account_id=account,
                )
            )
            logger.info(
                "legacy_subscription_recorded",
                subscription_id=subscription_id,
                creator_id=correlation.creator_id,
                user_id=buyer_id,
                status=status,
            )
            await self._emit("legacy_subscription_activated", user_id=buyer_id)
            return WebhookStatus.OK

        if isinstance(correlation, MembershipCorrelation) and subscription_id:
            return await self._activate_membership(session, correlation, subscription_id)

        logger.warning(
            "subscription_checkout_correlation_unparsed",
            checkout_session_id=session.get("id"),
            kind=correlation.kind,
        )
        return WebhookStatus.IGNORED

    async def _activate_membership(
        self,
        session: dict[str, Any],
        correlation: MembershipCorrelation,
        subscription_id: str,
    ) -> WebhookStatus:
        plan = correlation.plan_type.value
        buyer_id = correlation.buyer_id or session.get("client_reference_id")
        email = checkout_customer_email(session)

        if not buyer_id and email:
            user = await self.store.find_user_by_email(email)
            buyer_id = user.id if user else None

        if buyer_id:
            await self.store.update_membership(
                buyer_id,
                active=True,
                plan_type=plan,
                subscription_id=subscription_id,
                cancel_at_period_end=False,
            )
            logger.info("membership_activated", user_id=buyer_id, plan_type=plan, subscription_id=subscription_id)
            await self._emit("membership_activated", user_id=buyer_id)
            return WebhookStatus.OK

        if not email:
            logger.warning("guest_membership_without_email", checkout_session_id=session.get("id"))
            return WebhookStatus.IGNORED

        created = await self.store.create_pending_claim(
            PendingClaimRecord(
                session_id=session["id"],
                email=email,
                plan_type=plan,
                subscription_id=subscription_id,
            )
        )
        logger.info("pending_membership_recorded", checkout_session_id=session["id"], created=created)
        return WebhookStatus.OK

    # ── Payment intents ─────────────────────────────────────────────

    async def _handle_payment_intent_succeeded(self, payment_intent: dict[str, Any]) -> WebhookStatus:
        correlation = parse_correlation(payment_intent.get("metadata"))
        if isinstance(correlation, UpgradePlanCorrelation):
            return await self._apply_upgrade(correlation)
        return WebhookStatus.IGNORED

    # ── Subscription state sync ─────────────────────────────────────

    async def _creator_payout_account(self, creator_id: str) -> str | None:
        creator = await self.store.get_creator(creator_id)
        return creator.connect_account_id if creator else None

    async def _sync_legacy_subscription(self, subscription_id: str, status: str) -> bool:
        record = await self.store.get_legacy_subscription(subscription_id)
        if record is None:
            return False
        if status in ENTITLED_STATUSES:
            account = record.seller_account_id or await self._creator_payout_account(record.creator_id)
            if not account:
                logger.error(
                    "legacy_subscription_payout_unresolved",
                    creator_id=record.creator_id,
                    subscription_id=subscription_id,
                )
                status = PAYOUT_UNRESOLVED_STATUS
            record.seller_account_id = account
        record.status = status
        await self.store.upsert_legacy_subscription(record)
        logger.info("legacy_subscription_status_synced", subscription_id=subscription_id, status=status)
        return True

    async def _handle_subscription_changed(self, subscription: dict[str, Any], deleted: bool) -> WebhookStatus:
        subscription_id = subscription.get("id")
        if not subscription_id:
            return WebhookStatus.IGNORED
        status = "canceled" if deleted else (subscription.get("status") or "unknown")

        legacy_synced = await self._sync_legacy_subscription(subscription_id, status)

        metadata = subscription.get("metadata") or {}
        plan = parse_plan_type(metadata.get("planType"))
        user = await self.store.find_user_by_membership_subscription(subscription_id)
        user_id = user.id if user else None
        if user_id is None and plan and metadata.get("buyerId") and not deleted:
            user_id = metadata["buyerId"]

        if user_id is None:
            return WebhookStatus.OK if legacy_synced else WebhookStatus.IGNORED

        active = not deleted and status in ENTITLED_STATUSES
        # Plan and subscription id stay on deactivation: a later event for the same
        # subscription must still find the user, and status reports the lapsed plan
        await self.store.update_membership(
            user_id,
            active=active,
            plan_type=plan.value if plan else None,
            subscription_id=subscription_id,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        )
        logger.info(
            "membership_status_synced",
            user_id=user_id,
            subscription_id=subscription_id,
            status=status,
            active=active,
        )
        return WebhookStatus.OK
