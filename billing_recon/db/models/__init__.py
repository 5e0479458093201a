"""Re-export all models so Base.metadata sees them."""

from billing_recon.db.models.legacy_creator import LegacyCreator
from billing_recon.db.models.legacy_subscription import LegacySubscription
from billing_recon.db.models.order import Order
from billing_recon.db.models.pending_membership_claim import PendingMembershipClaim
from billing_recon.db.models.processed_event import ProcessedEvent
from billing_recon.db.models.user import User

__all__ = [
    "LegacyCreator",
    "LegacySubscription",
    "Order",
    "PendingMembershipClaim",
    "ProcessedEvent",
    "User",
]
