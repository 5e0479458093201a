"""EntitlementResolver: read-side access decisions over the entitlement store."""

from dataclasses import dataclass

from billing_recon.core.config import Settings
from billing_recon.domain.plans import NO_FEES_PLANS, PlanCatalog, parse_plan_type
from billing_recon.domain.records import EffectiveSubscription
from billing_recon.services.entitlement_store import EntitlementStore

ALL_ACCESS_ID_PREFIX = "all-access-"


@dataclass
class MembershipStatus:
    active: bool
    plan_type: str | None
    all_access: bool
    no_fees: bool
    pending_claim: bool


class EntitlementService:
    def __init__(self, store: EntitlementStore, settings: Settings, catalog: PlanCatalog | None = None):
        self.store = store
        self.settings = settings
        self.catalog = catalog or settings.plan_catalog()

    async def _all_access(self, user_id: str) -> bool:
        user = await self.store.get_user(user_id)
        return bool(user and user.membership_active and self.catalog.is_all_access(user.membership_plan))

    async def has_access_to_creator(self, user_id: str, creator_id: str) -> bool:
        """Any active membership, or a live subscription to this creator."""
        user = await self.store.get_user(user_id)
        if user is not None and user.membership_active:
            return True
        return await self.store.has_entitled_legacy_subscription(user_id, creator_id)

    async def list_effective_subscriptions(self, user_id: str) -> list[EffectiveSubscription]:
        """Creators the user is subscribed to.

        All-access members get one synthetic entry per known creator instead of
        their real records.
        """
        if await self._all_access(user_id):
            return [
                EffectiveSubscription(
                    id=f"{ALL_ACCESS_ID_PREFIX}{creator.id}",
                    creator_id=creator.id,
                    status="active",
                    amount=0,
                    currency="usd",
                    subscription_id=None,
                    synthetic=True,
                    creator_name=creator.display_name,
                )
                for creator in await self.store.list_creators()
            ]

        records = await self.store.list_legacy_subscriptions(user_id)
        return [
            EffectiveSubscription(
                id=record.id,
                creator_id=record.creator_id,
                status=record.status,
                amount=record.amount,
                currency=record.currency,
                subscription_id=record.subscription_id,
            )
            for record in records
        ]

    async def membership_status(self, user_id: str, email: str | None) -> MembershipStatus:
        user = await self.store.get_user(user_id)
        pending = await self.store.has_unclaimed_pending_claim(email) if email else False

        plan_type = user.membership_plan if user else None
        active = bool(user and user.membership_active)
        plan = parse_plan_type(plan_type)
        return MembershipStatus(
            active=active or pending,
            plan_type=plan_type,
            all_access=active and self.catalog.is_all_access(plan_type),
            no_fees=active and plan in NO_FEES_PLANS,
            pending_claim=pending,
        )
