"""Service providers for route handlers.

Everything is built from the objects the lifespan stores on ``app.state``.
Override these in tests via ``app.dependency_overrides``.
"""

from fastapi import Request

from billing_recon.core.config import get_settings
from billing_recon.services.claim_service import ClaimService
from billing_recon.services.entitlement_service import EntitlementService
from billing_recon.services.plan_change_service import PlanChangeService
from billing_recon.services.webhook_service import WebhookService


def get_plan_change_service(request: Request) -> PlanChangeService:
    state = request.app.state
    return PlanChangeService(state.store, state.gateway, get_settings(), metrics=state.metrics)


def get_webhook_service(request: Request) -> WebhookService:
    state = request.app.state
    settings = get_settings()
    plan_changes = PlanChangeService(state.store, state.gateway, settings, metrics=state.metrics)
    return WebhookService(state.ledger, state.store, state.gateway, plan_changes, settings, metrics=state.metrics)


def get_claim_service(request: Request) -> ClaimService:
    state = request.app.state
    return ClaimService(state.store, state.gateway, get_settings(), metrics=state.metrics)


def get_entitlement_service(request: Request) -> EntitlementService:
    return EntitlementService(request.app.state.store, get_settings())
