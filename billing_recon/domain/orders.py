"""Build Order drafts from completed checkout sessions.

Shared by the webhook handler and the backfill job so both materialize the same
record for the same session.
"""

from datetime import UTC, datetime
from typing import Any

from billing_recon.domain.correlation import (
    CorrelationMetadata,
    MarketplaceCorrelation,
    UpgradePlanCorrelation,
)
from billing_recon.domain.plans import PlanCatalog
from billing_recon.domain.reclassification import GENERIC_CHANGE_TITLE, PLACEHOLDER_TITLE, transition_title
from billing_recon.domain.records import OrderDraft, OrderStatus, OrderType


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def payment_intent_destination(session: dict[str, Any]) -> str | None:
    """Connected account the payment transfers to, when the intent is expanded."""
    payment_intent = session.get("payment_intent")
    if not isinstance(payment_intent, dict):
        return None
    return (payment_intent.get("transfer_data") or {}).get("destination")


def checkout_customer_email(session: dict[str, Any]) -> str | None:
    details = session.get("customer_details") or {}
    return details.get("email") or session.get("customer_email")


def _created_at(session: dict[str, Any]) -> datetime | None:
    created = session.get("created")
    if not created:
        return None
    return datetime.fromtimestamp(int(created), tz=UTC)


def upgrade_order_title(correlation: UpgradePlanCorrelation, catalog: PlanCatalog) -> str:
    if correlation.current_plan_type is None:
        return GENERIC_CHANGE_TITLE
    return transition_title(correlation.current_plan_type, correlation.new_plan_type, catalog)


def order_from_checkout_session(
    session: dict[str, Any],
    correlation: CorrelationMetadata,
    catalog: PlanCatalog,
    account_id: str | None = None,
) -> OrderDraft:
    """OrderDraft for a paid checkout session.

    Args:
        session: Checkout session payload (payment_intent may be expanded)
        correlation: Parsed correlation metadata of the session
        catalog: Plan catalog used for subscription-change titles
        account_id: Connected account the event was delivered for, if any

    Returns:
        A subscription_change draft (completed) for plan upgrades, otherwise a
        marketplace_sale draft awaiting fulfillment
    """
    common = {
        "checkout_session_id": session["id"],
        "payment_intent_id": _object_id(session.get("payment_intent")),
        "amount": int(session.get("amount_total") or 0),
        "currency": session.get("currency") or "usd",
        "customer_id": _object_id(session.get("customer")),
        "customer_email": checkout_customer_email(session),
        "created_at": _created_at(session),
    }

    if isinstance(correlation, UpgradePlanCorrelation):
        return OrderDraft(
            order_type=OrderType.SUBSCRIPTION_CHANGE,
            status=OrderStatus.COMPLETED,
            title=upgrade_order_title(correlation, catalog),
            buyer_id=correlation.buyer_id or session.get("client_reference_id"),
            subscription_id=correlation.subscription_id,
            current_plan_type=correlation.current_plan_type.value if correlation.current_plan_type else None,
            new_plan_type=correlation.new_plan_type.value,
            **common,
        )

    listing_id = seller_id = seller_account_id = title = buyer_id = None
    if isinstance(correlation, MarketplaceCorrelation):
        listing_id = correlation.listing_id
        seller_id = correlation.seller_id
        seller_account_id = correlation.seller_account_id
        title = correlation.listing_title
        buyer_id = correlation.buyer_id
    if not title:
        title = f"Listing {listing_id}" if listing_id else PLACEHOLDER_TITLE

    return OrderDraft(
        order_type=OrderType.MARKETPLACE_SALE,
        status=OrderStatus.AWAITING_FULFILLMENT,
        title=title,
        listing_id=listing_id,
        buyer_id=buyer_id or session.get("client_reference_id"),
        seller_id=seller_id,
        seller_account_id=account_id or seller_account_id or payment_intent_destination(session),
        **common,
    )
