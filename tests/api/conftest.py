"""API-specific test fixtures.

The app is built with ``create_app()`` and driven by a ``TestClient`` used
without a context manager, so the lifespan (database, Stripe client) never
runs. Shared state and service providers are wired to the in-memory fakes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from billing_recon.api.dependencies import (
    get_claim_service,
    get_entitlement_service,
    get_plan_change_service,
    get_webhook_service,
)
from billing_recon.core.auth import AuthenticatedUser, require_auth
from billing_recon.main import create_app
from billing_recon.services.claim_service import ClaimService
from billing_recon.services.entitlement_service import EntitlementService
from billing_recon.services.plan_change_service import PlanChangeService
from billing_recon.services.webhook_service import WebhookService

TEST_USER = AuthenticatedUser(user_id="user_1", email="user@example.com", claims={"sub": "user_1"})


def override_auth(user: AuthenticatedUser):
    """Dependency override factory for require_auth."""

    async def _override():
        return user

    return _override


@pytest.fixture
def app(store, ledger, gateway, settings) -> FastAPI:
    app = create_app()
    app.state.store = store
    app.state.ledger = ledger
    app.state.gateway = gateway
    app.state.metrics = None
    app.state.shutting_down = False

    def plan_changes() -> PlanChangeService:
        return PlanChangeService(store, gateway, settings)

    app.dependency_overrides[get_plan_change_service] = plan_changes
    app.dependency_overrides[get_webhook_service] = lambda: WebhookService(
        ledger, store, gateway, plan_changes(), settings
    )
    app.dependency_overrides[get_claim_service] = lambda: ClaimService(store, gateway, settings)
    app.dependency_overrides[get_entitlement_service] = lambda: EntitlementService(store, settings)
    return app


@pytest.fixture
def api_client(app) -> TestClient:
    """Unauthenticated client."""
    return TestClient(app)


@pytest.fixture
def auth_client(app) -> TestClient:
    """Client whose requests are authenticated as TEST_USER."""
    app.dependency_overrides[require_auth] = override_auth(TEST_USER)
    return TestClient(app)
