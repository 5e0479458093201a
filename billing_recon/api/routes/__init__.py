from fastapi import APIRouter

from billing_recon.api.routes import health, legacy, subscription, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(subscription.router, prefix="/subscription", tags=["subscription"])
api_router.include_router(legacy.router, tags=["legacy"])
