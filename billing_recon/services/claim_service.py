"""ClaimResolver: attach subscriptions bought under an email to a signed-in user."""

from dataclasses import dataclass

import structlog

from billing_recon.core.config import Settings
from billing_recon.domain.plans import parse_plan_type
from billing_recon.domain.records import ENTITLED_STATUSES
from billing_recon.metrics.cloudwatch import BusinessMetrics
from billing_recon.services.entitlement_store import EntitlementStore, normalize_email
from billing_recon.services.stripe_gateway import ProcessorGateway

logger = structlog.get_logger(__name__)


@dataclass
class ClaimResult:
    updated_legacy_subs: int = 0
    reassigned_legacy_subs: int = 0
    membership_activated: bool = False
    pending_claims_consumed: int = 0


class ClaimService:
    def __init__(
        self,
        store: EntitlementStore,
        gateway: ProcessorGateway,
        settings: Settings,
        metrics: BusinessMetrics | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.metrics = metrics

    async def claim_by_email(self, user_id: str, email: str) -> ClaimResult:
        """Reassign every live subscription paid for with ``email`` to ``user_id``.

        Legacy creator subscriptions get their subscriber overwritten; a membership
        subscription sets the user's membership flags. Pending guest claims for the
        email are consumed exactly once. Repeating the call changes nothing.

        Raises:
            ProcessorUnavailable: customer or subscription listing failed
        """
        result = ClaimResult()
        normalized = normalize_email(email)
        if not normalized:
            return result

        async for customer in self.gateway.iter_customers_by_email(normalized):
            async for subscription in self.gateway.iter_customer_subscriptions(customer["id"]):
                if subscription.get("status") not in ENTITLED_STATUSES:
                    continue
                metadata = subscription.get("metadata") or {}

                if metadata.get("legacyCreatorId"):
                    reassignment = await self.store.reassign_legacy_subscription(subscription["id"], user_id)
                    if reassignment.matched:
                        result.updated_legacy_subs += 1
                    if reassignment.changed:
                        result.reassigned_legacy_subs += 1
                    continue

                plan = parse_plan_type(metadata.get("planType"))
                if plan is not None:
                    await self.store.update_membership(
                        user_id,
                        active=True,
                        plan_type=plan.value,
                        subscription_id=subscription["id"],
                        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
                        email=normalized,
                    )
                    result.membership_activated = True

        for claim in await self.store.consume_pending_claims(normalized, user_id):
            await self.store.update_membership(
                user_id,
                active=True,
                plan_type=claim.plan_type,
                subscription_id=claim.subscription_id,
                email=normalized,
            )
            result.pending_claims_consumed += 1
            result.membership_activated = True

        logger.info(
            "subscriptions_claimed",
            user_id=user_id,
            updated_legacy_subs=result.updated_legacy_subs,
            reassigned_legacy_subs=result.reassigned_legacy_subs,
            membership_activated=result.membership_activated,
            pending_claims_consumed=result.pending_claims_consumed,
        )
        if result.membership_activated and self.metrics is not None:
            await self.metrics.emit("membership_activated", user_id=user_id)
        return result
