"""PendingMembershipClaim model: guest membership purchase awaiting an account."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String

from billing_recon.db.base import Base


class PendingMembershipClaim(Base):
    __tablename__ = "pending_membership_claims"

    session_id = Column(String(255), primary_key=True)  # checkout session that paid
    email = Column(String(320), nullable=False, index=True)
    plan_type = Column(String(100), nullable=False)
    subscription_id = Column(String(255), nullable=True)
    claimed = Column(Boolean, nullable=False, default=False, index=True)
    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
