"""Plain records exchanged between services and the entitlement store.

The store maps these to and from ORM rows, so services never touch a session.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class OrderType(StrEnum):
    MARKETPLACE_SALE = "marketplace_sale"
    SUBSCRIPTION_CHANGE = "subscription_change"


class OrderStatus(StrEnum):
    AWAITING_FULFILLMENT = "awaiting_fulfillment"
    COMPLETED = "completed"


# Processor subscription statuses that grant access
ENTITLED_STATUSES: frozenset[str] = frozenset({"active", "trialing"})

# Stored in place of a processor status while the creator payout account is unknown
PAYOUT_UNRESOLVED_STATUS = "incomplete"


@dataclass
class UserRecord:
    id: str
    email: str | None = None
    membership_active: bool = False
    membership_plan: str | None = None
    membership_subscription_id: str | None = None
    subscription_cancel_at_period_end: bool = False


@dataclass
class OrderDraft:
    """A new Order to materialize. checkout_session_id or invoice_id is the dedup key."""

    order_type: OrderType
    amount: int
    currency: str
    status: OrderStatus
    checkout_session_id: str | None = None
    invoice_id: str | None = None
    payment_intent_id: str | None = None
    title: str | None = None
    listing_id: str | None = None
    buyer_id: str | None = None
    seller_id: str | None = None
    seller_account_id: str | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    subscription_id: str | None = None
    current_plan_type: str | None = None
    new_plan_type: str | None = None
    created_at: datetime | None = None


@dataclass
class OrderRecord(OrderDraft):
    id: str = ""
    reclassified_by: str | None = None


@dataclass
class OrderReclassification:
    """Field rewrite applied when an Order turns out to be a subscription change."""

    title: str
    method: str
    subscription_id: str | None = None
    current_plan_type: str | None = None
    new_plan_type: str | None = None
    order_type: OrderType = OrderType.SUBSCRIPTION_CHANGE
    status: OrderStatus = OrderStatus.COMPLETED


@dataclass
class LegacySubscriptionRecord:
    subscription_id: str
    creator_id: str
    status: str
    user_id: str | None = None
    customer_id: str | None = None
    checkout_session_id: str | None = None
    amount: int = 0
    currency: str = "usd"
    seller_account_id: str | None = None
    id: str = ""


@dataclass
class CreatorRecord:
    id: str
    display_name: str | None = None
    owner_user_id: str | None = None
    connect_account_id: str | None = None


@dataclass
class PendingClaimRecord:
    session_id: str
    email: str
    plan_type: str
    subscription_id: str | None = None
    claimed: bool = False
    claimed_by: str | None = None


@dataclass
class ReassignmentResult:
    """Outcome of overwriting a LegacySubscription's subscriber."""

    matched: bool = False
    changed: bool = False


@dataclass
class EffectiveSubscription:
    """A creator the user is entitled to, real or synthetic (all-access)."""

    id: str
    creator_id: str
    status: str
    amount: int
    currency: str
    subscription_id: str | None = None
    synthetic: bool = False
    creator_name: str | None = None
