"""EventLedger: durable record of which processor events have been applied."""

from typing import Protocol

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_recon.db.models.processed_event import ProcessedEvent

logger = structlog.get_logger(__name__)


def ledger_key(event_type: str, resource_id: str) -> str:
    return f"{event_type}:{resource_id}"


class EventLedger(Protocol):
    async def claim(self, key: str, event_id: str, event_type: str) -> bool:
        """Atomically record key. True if newly claimed, False if already present."""

    async def release(self, key: str) -> None:
        """Drop a claim whose event could not be applied for a transient reason."""


class SqlEventLedger:
    """EventLedger backed by the processed_events primary key."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def claim(self, key: str, event_id: str, event_type: str) -> bool:
        async with self.session_factory() as session:
            try:
                session.add(ProcessedEvent(key=key, event_id=event_id, event_type=event_type))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def release(self, key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(ProcessedEvent).where(ProcessedEvent.key == key))
            await session.commit()
        logger.info("ledger_claim_released", key=key)
