"""Request and response bodies for the billing API.

Field names are snake_case in Python and camelCase on the wire.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Subscription ────────────────────────────────────────────────────


class ChangePlanRequest(CamelModel):
    new_plan_type: str = Field(..., description="Target membership plan, e.g. cca_no_fees_60")
    preview: bool = False


class ChangePlanResponse(CamelModel):
    success: bool = True
    requires_payment: bool
    checkout_url: str | None = None
    proration_amount: int | None = None


class PlanChangePreviewBody(CamelModel):
    current_plan_type: str
    new_plan_type: str
    current_price: int
    new_price: int
    proration_amount: int
    is_upgrade: bool
    requires_payment: bool
    days_remaining: int | None = None


class ChangePlanPreviewResponse(CamelModel):
    success: bool = True
    preview: PlanChangePreviewBody


class CancelSubscriptionResponse(CamelModel):
    success: bool = True
    cancel_at_period_end: bool = True


class SubscriptionDetailsResponse(CamelModel):
    has_subscription: bool
    membership_active: bool
    plan_type: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    current_period_end: int | None = None  # unix seconds
    cancel_at_period_end: bool = False


# ── Legacy creator subscriptions ────────────────────────────────────


class ClaimByEmailRequest(CamelModel):
    email: str | None = None  # defaults to the token email


class ClaimByEmailResponse(CamelModel):
    updated_legacy_subs: int
    reassigned_legacy_subs: int
    membership_activated: bool


class EffectiveSubscriptionBody(CamelModel):
    id: str
    creator_id: str
    creator_name: str | None = None
    status: str
    amount: int
    currency: str
    subscription_id: str | None = None
    synthetic: bool = False


class EffectiveSubscriptionsResponse(CamelModel):
    subscriptions: list[EffectiveSubscriptionBody]


class CreatorAccessResponse(CamelModel):
    has_access: bool


class MembershipStatusResponse(CamelModel):
    active: bool
    plan_type: str | None = None
    all_access: bool
    no_fees: bool
    pending_claim: bool


# ── Webhooks ────────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    status: str
