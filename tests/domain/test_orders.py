"""Tests for building Order drafts from checkout sessions."""

from datetime import UTC, datetime

import pytest

from billing_recon.domain.correlation import (
    CorrelationFormat,
    MarketplaceCorrelation,
    UnparsedCorrelation,
    UpgradePlanCorrelation,
)
from billing_recon.domain.orders import order_from_checkout_session
from billing_recon.domain.plans import PlanType, default_catalog
from billing_recon.domain.reclassification import PLACEHOLDER_TITLE
from billing_recon.domain.records import OrderStatus, OrderType

pytestmark = pytest.mark.unit


def _session(**overrides) -> dict:
    session = {
        "id": "cs_1",
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 2500,
        "currency": "usd",
        "payment_intent": "pi_1",
        "customer": "cus_1",
        "customer_details": {"email": "buyer@example.com"},
        "created": 1_700_000_000,
    }
    session.update(overrides)
    return session


def test_upgrade_session_becomes_completed_subscription_change():
    correlation = UpgradePlanCorrelation(
        subscription_id="sub_1",
        new_plan_type=PlanType.ALL_ACCESS_87,
        current_plan_type=PlanType.MONTHLY_37,
        buyer_id="user_1",
        proration_amount=2500,
        source=CorrelationFormat.STRUCTURED,
    )

    draft = order_from_checkout_session(_session(), correlation, default_catalog())

    assert draft.order_type is OrderType.SUBSCRIPTION_CHANGE
    assert draft.status is OrderStatus.COMPLETED
    assert draft.title == "Subscription Upgrade: Monthly Membership → All-Access Membership"
    assert draft.subscription_id == "sub_1"
    assert draft.new_plan_type == "cca_membership_87"
    assert draft.seller_account_id is None
    assert draft.created_at == datetime.fromtimestamp(1_700_000_000, tz=UTC)


def test_marketplace_sale_prefers_event_account():
    correlation = MarketplaceCorrelation(
        listing_id="lst_1",
        buyer_id="user_2",
        seller_id="seller_1",
        seller_account_id="acct_meta",
        listing_title=None,
        source=CorrelationFormat.STRUCTURED,
    )

    draft = order_from_checkout_session(_session(), correlation, default_catalog(), account_id="acct_event")

    assert draft.order_type is OrderType.MARKETPLACE_SALE
    assert draft.status is OrderStatus.AWAITING_FULFILLMENT
    assert draft.seller_account_id == "acct_event"
    assert draft.title == "Listing lst_1"
    assert draft.customer_email == "buyer@example.com"


def test_unparsed_session_still_records_the_money():
    session = _session(
        payment_intent={"id": "pi_9", "transfer_data": {"destination": "acct_dest"}},
        client_reference_id="user_3",
    )

    draft = order_from_checkout_session(session, UnparsedCorrelation(reason="none"), default_catalog())

    assert draft.order_type is OrderType.MARKETPLACE_SALE
    assert draft.payment_intent_id == "pi_9"
    assert draft.seller_account_id == "acct_dest"
    assert draft.buyer_id == "user_3"
    assert draft.title == PLACEHOLDER_TITLE
