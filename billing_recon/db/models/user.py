"""User model: membership fields owned by billing reconciliation."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, String

from billing_recon.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)  # identity provider subject
    email = Column(String(320), nullable=True, index=True)

    # Membership
    membership_active = Column(Boolean, nullable=False, default=False)
    membership_plan = Column(String(100), nullable=True)
    membership_subscription_id = Column(String(255), nullable=True, index=True)
    subscription_cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
