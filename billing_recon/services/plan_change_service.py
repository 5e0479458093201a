"""PlanChangeEngine: membership upgrades, downgrades, previews and cancellation.

Downgrades and zero-cost changes swap the subscription price immediately.
Upgrades with a non-zero proration create a one-time checkout for the prorated
amount, raised to Stripe's minimum charge when smaller. The subscription is
swapped only when the payment webhook arrives, using the correlation metadata
embedded here.
"""

import math
import time
from dataclasses import dataclass
from typing import Any

import structlog

from billing_recon.core.config import Settings
from billing_recon.core.exceptions import (
    NoActiveSubscription,
    ProcessorUnavailable,
    SamePlanRequested,
    SubscriptionNotActive,
    UnknownPlanType,
)
from billing_recon.domain.correlation import UPGRADE_PLAN_ACTION
from billing_recon.domain.plans import PlanCatalog, PlanType, parse_plan_type, plan_display_name
from billing_recon.domain.proration import ProrationQuote, calculate_proration
from billing_recon.domain.records import UserRecord
from billing_recon.metrics.cloudwatch import BusinessMetrics
from billing_recon.services.entitlement_store import EntitlementStore
from billing_recon.services.stripe_gateway import ProcessorGateway

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86_400
# Stripe refuses card charges below 50 cents (USD)
MIN_CHECKOUT_AMOUNT_CENTS = 50


@dataclass
class PlanChangeResult:
    requires_payment: bool
    new_plan_type: PlanType
    checkout_url: str | None = None
    proration_amount: int | None = None


@dataclass
class PlanChangePreview:
    current_plan_type: str
    new_plan_type: PlanType
    current_price: int
    new_price: int
    proration_amount: int
    is_upgrade: bool
    requires_payment: bool
    days_remaining: int | None


@dataclass
class SubscriptionDetails:
    has_subscription: bool
    membership_active: bool
    plan_type: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False


@dataclass
class _PlanChangeContext:
    user: UserRecord
    current_plan: str
    new_plan: PlanType
    subscription: dict[str, Any]
    item: dict[str, Any]
    price: dict[str, Any]
    current_price: int
    new_price: int
    quote: ProrationQuote


def subscription_item(subscription: dict[str, Any]) -> dict[str, Any] | None:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else None


def subscription_customer_id(subscription: dict[str, Any]) -> str | None:
    customer = subscription.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def current_period_end(subscription: dict[str, Any]) -> int | None:
    """Period end from the subscription, or from its item on newer API versions."""
    if subscription.get("current_period_end"):
        return int(subscription["current_period_end"])
    item = subscription_item(subscription) or {}
    end = item.get("current_period_end")
    return int(end) if end else None


def plan_lookup_key(plan_type: PlanType) -> str:
    return f"{plan_type.value}_monthly"


class PlanChangeService:
    """Changes a member's plan against the processor and the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: ProcessorGateway,
        settings: Settings,
        metrics: BusinessMetrics | None = None,
        catalog: PlanCatalog | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.metrics = metrics
        self.catalog = catalog or settings.plan_catalog()

    async def _emit(self, event_name: str, user_id: str | None = None) -> None:
        if self.metrics is not None:
            await self.metrics.emit(event_name, user_id=user_id)

    # ── Price resolution ────────────────────────────────────────────

    async def resolve_plan_price(self, plan_type: PlanType) -> dict[str, Any]:
        """Look up the plan's recurring price by lookup key, creating it once if missing."""
        lookup_key = plan_lookup_key(plan_type)
        price = await self.gateway.find_price_by_lookup_key(lookup_key)
        if price is not None:
            return price

        await self.gateway.ensure_product(self.settings.membership_product_id, self.settings.membership_product_name)
        price = await self.gateway.create_price(
            product_id=self.settings.membership_product_id,
            lookup_key=lookup_key,
            unit_amount=self.catalog.price_of(plan_type),
            currency=self.settings.plan_currency,
            plan_type=plan_type.value,
        )
        logger.info("plan_price_created", plan_type=plan_type.value, price_id=price.get("id"))
        return price

    async def apply_plan_swap(
        self,
        subscription: dict[str, Any],
        new_plan: PlanType,
        buyer_id: str | None,
        proration_behavior: str,
        price: dict[str, Any] | None = None,
    ) -> bool:
        """Swap the subscription item to the plan's price. False if it was already on it."""
        item = subscription_item(subscription)
        if item is None:
            raise NoActiveSubscription(f"Subscription {subscription.get('id')} has no items")

        price = price or await self.resolve_plan_price(new_plan)
        if (item.get("price") or {}).get("id") == price["id"]:
            logger.info("plan_swap_already_applied", subscription_id=subscription.get("id"), plan=new_plan.value)
            return False

        metadata = {"planType": new_plan.value}
        if buyer_id:
            metadata["buyerId"] = buyer_id
        await self.gateway.swap_subscription_price(
            subscription_id=subscription["id"],
            item_id=item["id"],
            price_id=price["id"],
            proration_behavior=proration_behavior,
            metadata=metadata,
        )
        return True

    # ── Plan change ─────────────────────────────────────────────────

    async def _prepare(self, user_id: str, new_plan_type: str) -> _PlanChangeContext:
        new_plan = parse_plan_type(new_plan_type)
        if new_plan is None:
            raise UnknownPlanType(new_plan_type)

        user = await self.store.get_user(user_id)
        if user is None or not user.membership_subscription_id or not user.membership_plan:
            raise NoActiveSubscription("No active membership subscription to change")
        if user.membership_plan == new_plan.value:
            raise SamePlanRequested(new_plan.value)

        subscription = await self.gateway.retrieve_subscription(user.membership_subscription_id)
        status = (subscription or {}).get("status")
        if subscription is None or status != "active":
            raise SubscriptionNotActive(user.membership_subscription_id, status)

        item = subscription_item(subscription)
        if item is None:
            raise SubscriptionNotActive(user.membership_subscription_id, status)

        current = parse_plan_type(user.membership_plan)
        if current is not None:
            current_price = self.catalog.price_of(current)
        else:
            current_price = int((item.get("price") or {}).get("unit_amount") or 0)
        new_price = self.catalog.price_of(new_plan)

        price = await self.resolve_plan_price(new_plan)
        preview = await self.gateway.preview_price_swap(
            customer_id=subscription_customer_id(subscription),
            subscription_id=subscription["id"],
            item_id=item["id"],
            price_id=price["id"],
        )
        quote = calculate_proration(current_price, new_price, preview or {})

        return _PlanChangeContext(
            user=user,
            current_plan=user.membership_plan,
            new_plan=new_plan,
            subscription=subscription,
            item=item,
            price=price,
            current_price=current_price,
            new_price=new_price,
            quote=quote,
        )

    async def change_plan(self, user_id: str, new_plan_type: str) -> PlanChangeResult:
        """Change the user's membership plan.

        Raises:
            UnknownPlanType, NoActiveSubscription, SamePlanRequested,
            SubscriptionNotActive: nothing was mutated
            ProcessorUnavailable: the processor failed; the caller may retry
        """
        ctx = await self._prepare(user_id, new_plan_type)

        if not ctx.quote.requires_payment:
            await self.apply_plan_swap(
                ctx.subscription,
                ctx.new_plan,
                buyer_id=user_id,
                proration_behavior="always_invoice",
                price=ctx.price,
            )
            await self.store.update_membership(user_id, active=True, plan_type=ctx.new_plan.value)
            logger.info(
                "plan_change_applied",
                user_id=user_id,
                current_plan=ctx.current_plan,
                new_plan=ctx.new_plan.value,
                credit=ctx.quote.credit,
            )
            await self._emit("plan_downgraded", user_id=user_id)
            return PlanChangeResult(requires_payment=False, new_plan_type=ctx.new_plan)

        metadata = {
            "action": UPGRADE_PLAN_ACTION,
            "subscriptionId": ctx.subscription["id"],
            "currentPlanType": ctx.current_plan,
            "newPlanType": ctx.new_plan.value,
            "buyerId": user_id,
            "prorationAmount": str(ctx.quote.amount),
        }
        charge_amount = max(ctx.quote.amount, MIN_CHECKOUT_AMOUNT_CENTS)
        frontend = self.settings.frontend_url.rstrip("/")
        session = await self.gateway.create_payment_checkout(
            customer_id=subscription_customer_id(ctx.subscription),
            amount=charge_amount,
            currency=self.settings.plan_currency,
            product_name=(
                f"Plan upgrade: {plan_display_name(ctx.current_plan)} → {plan_display_name(ctx.new_plan)}"
            ),
            metadata=metadata,
            success_url=f"{frontend}/account/subscription?upgrade=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/account/subscription?upgrade=canceled",
            client_reference_id=user_id,
        )
        logger.info(
            "plan_change_checkout_created",
            user_id=user_id,
            current_plan=ctx.current_plan,
            new_plan=ctx.new_plan.value,
            proration_amount=ctx.quote.amount,
            charge_amount=charge_amount,
            checkout_session_id=session.get("id"),
        )
        await self._emit("plan_change_checkout_created", user_id=user_id)
        return PlanChangeResult(
            requires_payment=True,
            new_plan_type=ctx.new_plan,
            checkout_url=session.get("url"),
            proration_amount=ctx.quote.amount,
        )

    async def preview_plan_change(self, user_id: str, new_plan_type: str) -> PlanChangePreview:
        """Quote a plan change without mutating anything."""
        ctx = await self._prepare(user_id, new_plan_type)
        period_end = current_period_end(ctx.subscription)
        days_remaining = None
        if period_end:
            days_remaining = max(0, math.ceil((period_end - time.time()) / SECONDS_PER_DAY))
        return PlanChangePreview(
            current_plan_type=ctx.current_plan,
            new_plan_type=ctx.new_plan,
            current_price=ctx.current_price,
            new_price=ctx.new_price,
            proration_amount=ctx.quote.amount,
            is_upgrade=ctx.quote.is_upgrade,
            requires_payment=ctx.quote.requires_payment,
            days_remaining=days_remaining,
        )

    # ── Self-service ────────────────────────────────────────────────

    async def cancel_at_period_end(self, user_id: str) -> None:
        user = await self.store.get_user(user_id)
        if user is None or not user.membership_active or not user.membership_subscription_id:
            raise NoActiveSubscription("No membership subscription to cancel")

        await self.gateway.set_cancel_at_period_end(user.membership_subscription_id)
        await self.store.update_membership(user_id, cancel_at_period_end=True)
        logger.info(
            "subscription_cancel_scheduled",
            user_id=user_id,
            subscription_id=user.membership_subscription_id,
        )
        await self._emit("subscription_cancel_scheduled", user_id=user_id)

    async def subscription_details(self, user_id: str) -> SubscriptionDetails:
        user = await self.store.get_user(user_id)
        if user is None or not user.membership_active or not user.membership_subscription_id:
            return SubscriptionDetails(has_subscription=False, membership_active=False)

        details = SubscriptionDetails(
            has_subscription=True,
            membership_active=True,
            plan_type=user.membership_plan,
            subscription_id=user.membership_subscription_id,
            status="unknown",
            cancel_at_period_end=user.subscription_cancel_at_period_end,
        )
        try:
            subscription = await self.gateway.retrieve_subscription(user.membership_subscription_id)
        except ProcessorUnavailable as exc:
            # Fall back to the stored membership fields
            logger.warning("subscription_details_degraded", user_id=user_id, error=str(exc))
            return details

        if subscription is not None:
            details.status = subscription.get("status") or "unknown"
            details.current_period_end = current_period_end(subscription)
            details.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        return details
