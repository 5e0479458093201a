"""ProcessedEvent model: write-ahead idempotency ledger for processor events."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from billing_recon.db.base import Base


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    # "{event_type}:{resource_id}"; the primary key is the atomic create-if-absent guard
    key = Column(String(512), primary_key=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(255), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
