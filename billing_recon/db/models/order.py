"""Order model: one financial transaction, deduplicated by checkout session id."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from billing_recon.db.base import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Dedup keys (Postgres UNIQUE allows many NULLs)
    checkout_session_id = Column(String(255), unique=True, nullable=True, index=True)
    invoice_id = Column(String(255), unique=True, nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True)

    amount = Column(Integer, nullable=False, default=0)  # cents
    currency = Column(String(10), nullable=False, default="usd")
    order_type = Column(String(50), nullable=False, index=True)  # marketplace_sale | subscription_change
    status = Column(String(50), nullable=False, index=True)
    title = Column(String(500), nullable=True)

    # Marketplace
    listing_id = Column(String(255), nullable=True)
    buyer_id = Column(String(255), nullable=True, index=True)
    seller_id = Column(String(255), nullable=True, index=True)
    seller_account_id = Column(String(255), nullable=True)
    customer_id = Column(String(255), nullable=True)
    customer_email = Column(String(320), nullable=True)

    # Subscription change correlation
    subscription_id = Column(String(255), nullable=True, index=True)
    current_plan_type = Column(String(100), nullable=True)
    new_plan_type = Column(String(100), nullable=True)
    reclassified_by = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
