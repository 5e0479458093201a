"""Creator subscriptions, claims and membership status."""

from fastapi import APIRouter, Depends, HTTPException

from billing_recon.api.dependencies import get_claim_service, get_entitlement_service
from billing_recon.core.auth import AuthenticatedUser, require_auth
from billing_recon.schemas.billing import (
    ClaimByEmailRequest,
    ClaimByEmailResponse,
    CreatorAccessResponse,
    EffectiveSubscriptionBody,
    EffectiveSubscriptionsResponse,
    MembershipStatusResponse,
)
from billing_recon.services.claim_service import ClaimService
from billing_recon.services.entitlement_service import EntitlementService

router = APIRouter()


@router.post("/legacy/claim/by-email", response_model=ClaimByEmailResponse)
async def claim_by_email(
    body: ClaimByEmailRequest | None = None,
    user: AuthenticatedUser = Depends(require_auth),
    service: ClaimService = Depends(get_claim_service),
):
    """Attach subscriptions paid for with an email address to the caller."""
    email = (body.email if body else None) or user.email
    if not email:
        raise HTTPException(status_code=400, detail="No email to claim with")

    result = await service.claim_by_email(user.user_id, email)
    return ClaimByEmailResponse(
        updated_legacy_subs=result.updated_legacy_subs,
        reassigned_legacy_subs=result.reassigned_legacy_subs,
        membership_activated=result.membership_activated,
    )


@router.get("/legacy/subscriptions", response_model=EffectiveSubscriptionsResponse)
async def list_subscriptions(
    user: AuthenticatedUser = Depends(require_auth),
    service: EntitlementService = Depends(get_entitlement_service),
):
    subscriptions = await service.list_effective_subscriptions(user.user_id)
    return EffectiveSubscriptionsResponse(
        subscriptions=[
            EffectiveSubscriptionBody(
                id=sub.id,
                creator_id=sub.creator_id,
                creator_name=sub.creator_name,
                status=sub.status,
                amount=sub.amount,
                currency=sub.currency,
                subscription_id=sub.subscription_id,
                synthetic=sub.synthetic,
            )
            for sub in subscriptions
        ]
    )


@router.get("/legacy/access/{creator_id}", response_model=CreatorAccessResponse)
async def creator_access(
    creator_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return CreatorAccessResponse(has_access=await service.has_access_to_creator(user.user_id, creator_id))


@router.get("/membership/status", response_model=MembershipStatusResponse)
async def membership_status(
    user: AuthenticatedUser = Depends(require_auth),
    service: EntitlementService = Depends(get_entitlement_service),
):
    status = await service.membership_status(user.user_id, user.email)
    return MembershipStatusResponse(
        active=status.active,
        plan_type=status.plan_type,
        all_access=status.all_access,
        no_fees=status.no_fees,
        pending_claim=status.pending_claim,
    )
