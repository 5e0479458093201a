"""Membership subscription self-service: change plan, cancel, details."""

import structlog
from fastapi import APIRouter, Depends

from billing_recon.api.dependencies import get_plan_change_service
from billing_recon.core.auth import AuthenticatedUser, require_auth
from billing_recon.schemas.billing import (
    CancelSubscriptionResponse,
    ChangePlanPreviewResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    PlanChangePreviewBody,
    SubscriptionDetailsResponse,
)
from billing_recon.services.plan_change_service import PlanChangeService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/change-plan", response_model=ChangePlanResponse | ChangePlanPreviewResponse)
async def change_plan(
    body: ChangePlanRequest,
    user: AuthenticatedUser = Depends(require_auth),
    service: PlanChangeService = Depends(get_plan_change_service),
):
    """Change the membership plan, or quote the change when ``preview`` is set.

    Upgrades that cost money return a checkout URL; the plan switches once
    the payment webhook arrives.
    """
    if body.preview:
        preview = await service.preview_plan_change(user.user_id, body.new_plan_type)
        return ChangePlanPreviewResponse(
            preview=PlanChangePreviewBody(
                current_plan_type=preview.current_plan_type,
                new_plan_type=preview.new_plan_type.value,
                current_price=preview.current_price,
                new_price=preview.new_price,
                proration_amount=preview.proration_amount,
                is_upgrade=preview.is_upgrade,
                requires_payment=preview.requires_payment,
                days_remaining=preview.days_remaining,
            )
        )

    result = await service.change_plan(user.user_id, body.new_plan_type)
    return ChangePlanResponse(
        requires_payment=result.requires_payment,
        checkout_url=result.checkout_url,
        proration_amount=result.proration_amount,
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    user: AuthenticatedUser = Depends(require_auth),
    service: PlanChangeService = Depends(get_plan_change_service),
):
    await service.cancel_at_period_end(user.user_id)
    return CancelSubscriptionResponse(cancel_at_period_end=True)


@router.get("/details", response_model=SubscriptionDetailsResponse)
async def subscription_details(
    user: AuthenticatedUser = Depends(require_auth),
    service: PlanChangeService = Depends(get_plan_change_service),
):
    details = await service.subscription_details(user.user_id)
    return SubscriptionDetailsResponse(
        has_subscription=details.has_subscription,
        membership_active=details.membership_active,
        plan_type=details.plan_type,
        subscription_id=details.subscription_id,
        status=details.status,
        current_period_end=details.current_period_end,
        cancel_at_period_end=details.cancel_at_period_end,
    )
