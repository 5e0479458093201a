"""LegacySubscription model: per-creator recurring support subscription."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from billing_recon.db.base import Base


class LegacySubscription(Base):
    __tablename__ = "legacy_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    creator_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)  # null until claimed
    customer_id = Column(String(255), nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="usd")
    seller_account_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
