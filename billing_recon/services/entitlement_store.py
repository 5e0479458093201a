"""EntitlementStore: persistence for membership flags, orders and legacy subscriptions.

Services depend on the ``EntitlementStore`` protocol; ``SqlEntitlementStore`` is
the PostgreSQL implementation. Inserts that must be unique (orders by checkout
session id or invoice id, pending claims by session id) rely on the table
constraints and treat ``IntegrityError`` as "already present", so concurrent
webhook and backfill writers race safely.
"""

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_recon.db.models.legacy_creator import LegacyCreator
from billing_recon.db.models.legacy_subscription import LegacySubscription
from billing_recon.db.models.order import Order
from billing_recon.db.models.pending_membership_claim import PendingMembershipClaim
from billing_recon.db.models.user import User
from billing_recon.domain.records import (
    ENTITLED_STATUSES,
    CreatorRecord,
    LegacySubscriptionRecord,
    OrderDraft,
    OrderRecord,
    OrderReclassification,
    OrderStatus,
    OrderType,
    PendingClaimRecord,
    ReassignmentResult,
    UserRecord,
)

logger = structlog.get_logger(__name__)


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


class EntitlementStore(Protocol):
    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def find_user_by_email(self, email: str) -> UserRecord | None: ...

    async def find_user_by_membership_subscription(self, subscription_id: str) -> UserRecord | None: ...

    async def update_membership(
        self,
        user_id: str,
        *,
        active: bool | None = None,
        plan_type: str | None = None,
        subscription_id: str | None = None,
        cancel_at_period_end: bool | None = None,
        email: str | None = None,
    ) -> None:
        """Set the given membership fields (None = unchanged), creating the user row if needed."""

    async def create_order_if_absent(self, draft: OrderDraft) -> bool:
        """Insert unless an order with the same checkout session or invoice exists."""

    async def order_exists(self, checkout_session_id: str) -> bool: ...

    async def find_order_by_invoice(self, invoice_id: str) -> OrderRecord | None: ...

    async def overwrite_order(self, order_id: str, draft: OrderDraft) -> None: ...

    async def list_orders_without_seller(self) -> list[OrderRecord]: ...

    async def reclassify_order(self, order_id: str, change: OrderReclassification) -> None: ...

    async def upsert_legacy_subscription(self, record: LegacySubscriptionRecord) -> None: ...

    async def get_legacy_subscription(self, subscription_id: str) -> LegacySubscriptionRecord | None: ...

    async def reassign_legacy_subscription(self, subscription_id: str, user_id: str) -> ReassignmentResult: ...

    async def list_legacy_subscriptions(
        self, user_id: str, statuses: Iterable[str] = ENTITLED_STATUSES
    ) -> list[LegacySubscriptionRecord]: ...

    async def has_entitled_legacy_subscription(self, user_id: str, creator_id: str) -> bool: ...

    async def list_creators(self) -> list[CreatorRecord]: ...

    async def get_creator(self, creator_id: str) -> CreatorRecord | None: ...

    async def create_pending_claim(self, claim: PendingClaimRecord) -> bool: ...

    async def consume_pending_claims(self, email: str, user_id: str) -> list[PendingClaimRecord]:
        """Mark every unclaimed claim for email as claimed by user_id; return those claimed now."""

    async def has_unclaimed_pending_claim(self, email: str) -> bool: ...


# ── Row mappers ─────────────────────────────────────────────────────


def _user_record(row: User) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        membership_active=bool(row.membership_active),
        membership_plan=row.membership_plan,
        membership_subscription_id=row.membership_subscription_id,
        subscription_cancel_at_period_end=bool(row.subscription_cancel_at_period_end),
    )


def _order_record(row: Order) -> OrderRecord:
    return OrderRecord(
        id=str(row.id),
        order_type=OrderType(row.order_type),
        amount=row.amount,
        currency=row.currency,
        status=OrderStatus(row.status),
        checkout_session_id=row.checkout_session_id,
        invoice_id=row.invoice_id,
        payment_intent_id=row.payment_intent_id,
        title=row.title,
        listing_id=row.listing_id,
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        seller_account_id=row.seller_account_id,
        customer_id=row.customer_id,
        customer_email=row.customer_email,
        subscription_id=row.subscription_id,
        current_plan_type=row.current_plan_type,
        new_plan_type=row.new_plan_type,
        created_at=row.created_at,
        reclassified_by=row.reclassified_by,
    )


def _order_columns(draft: OrderDraft) -> dict:
    columns = {
        "checkout_session_id": draft.checkout_session_id,
        "invoice_id": draft.invoice_id,
        "payment_intent_id": draft.payment_intent_id,
        "amount": draft.amount,
        "currency": draft.currency,
        "order_type": draft.order_type.value,
        "status": draft.status.value,
        "title": draft.title,
        "listing_id": draft.listing_id,
        "buyer_id": draft.buyer_id,
        "seller_id": draft.seller_id,
        "seller_account_id": draft.seller_account_id,
        "customer_id": draft.customer_id,
        "customer_email": normalize_email(draft.customer_email),
        "subscription_id": draft.subscription_id,
        "current_plan_type": draft.current_plan_type,
        "new_plan_type": draft.new_plan_type,
    }
    if draft.created_at is not None:
        columns["created_at"] = draft.created_at
    return columns


def _legacy_record(row: LegacySubscription) -> LegacySubscriptionRecord:
    return LegacySubscriptionRecord(
        id=str(row.id),
        subscription_id=row.subscription_id,
        creator_id=row.creator_id,
        status=row.status,
        user_id=row.user_id,
        customer_id=row.customer_id,
        checkout_session_id=row.checkout_session_id,
        amount=row.amount,
        currency=row.currency,
        seller_account_id=row.seller_account_id,
    )


def _creator_record(row: LegacyCreator) -> CreatorRecord:
    return CreatorRecord(
        id=row.id,
        display_name=row.display_name,
        owner_user_id=row.owner_user_id,
        connect_account_id=row.connect_account_id,
    )


def _claim_record(row: PendingMembershipClaim) -> PendingClaimRecord:
    return PendingClaimRecord(
        session_id=row.session_id,
        email=row.email,
        plan_type=row.plan_type,
        subscription_id=row.subscription_id,
        claimed=bool(row.claimed),
        claimed_by=row.claimed_by,
    )


class SqlEntitlementStore:
    """EntitlementStore over the shared async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Users ───────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> UserRecord | None:
        async with self.session_factory() as session:
            row = await session.get(User, user_id)
            return _user_record(row) if row else None

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        normalized = normalize_email(email)
        if not normalized:
            return None
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.email == normalized).limit(1))
            row = result.scalar_one_or_none()
            return _user_record(row) if row else None

    async def find_user_by_membership_subscription(self, subscription_id: str) -> UserRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(User.membership_subscription_id == subscription_id).limit(1)
            )
            row = result.scalar_one_or_none()
            return _user_record(row) if row else None

    async def update_membership(
        self,
        user_id: str,
        *,
        active: bool | None = None,
        plan_type: str | None = None,
        subscription_id: str | None = None,
        cancel_at_period_end: bool | None = None,
        email: str | None = None,
    ) -> None:
        values = {
            "membership_active": active,
            "membership_plan": plan_type,
            "membership_subscription_id": subscription_id,
            "subscription_cancel_at_period_end": cancel_at_period_end,
            "email": normalize_email(email),
        }
        values = {k: v for k, v in values.items() if v is not None}

        async with self.session_factory() as session:
            row = await session.get(User, user_id)
            if row is None:
                session.add(User(id=user_id, **values))
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    # Concurrent writer created the row first, fall through to update it
                    await session.rollback()
                    logger.debug("user_row_created_concurrently", user_id=user_id)
            if values:
                await session.execute(update(User).where(User.id == user_id).values(**values))
                await session.commit()

    # ── Orders ──────────────────────────────────────────────────────

    async def create_order_if_absent(self, draft: OrderDraft) -> bool:
        async with self.session_factory() as session:
            try:
                session.add(Order(**_order_columns(draft)))
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def order_exists(self, checkout_session_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id).where(Order.checkout_session_id == checkout_session_id).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def find_order_by_invoice(self, invoice_id: str) -> OrderRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Order).where(Order.invoice_id == invoice_id).limit(1))
            row = result.scalar_one_or_none()
            return _order_record(row) if row else None

    async def overwrite_order(self, order_id: str, draft: OrderDraft) -> None:
        columns = _order_columns(draft)
        columns.pop("created_at", None)
        async with self.session_factory() as session:
            await session.execute(update(Order).where(Order.id == uuid.UUID(order_id)).values(**columns))
            await session.commit()

    async def list_orders_without_seller(self) -> list[OrderRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(
                    Order.seller_id.is_(None),
                    Order.order_type != OrderType.SUBSCRIPTION_CHANGE.value,
                )
                .order_by(Order.created_at)
            )
            return [_order_record(row) for row in result.scalars().all()]

    async def reclassify_order(self, order_id: str, change: OrderReclassification) -> None:
        values = {
            "order_type": change.order_type.value,
            "title": change.title,
            "status": change.status.value,
            "seller_id": None,
            "seller_account_id": None,
            "reclassified_by": change.method,
        }
        if change.subscription_id:
            values["subscription_id"] = change.subscription_id
        if change.current_plan_type:
            values["current_plan_type"] = change.current_plan_type
        if change.new_plan_type:
            values["new_plan_type"] = change.new_plan_type
        async with self.session_factory() as session:
            await session.execute(update(Order).where(Order.id == uuid.UUID(order_id)).values(**values))
            await session.commit()

    # ── Legacy subscriptions ────────────────────────────────────────

    async def upsert_legacy_subscription(self, record: LegacySubscriptionRecord) -> None:
        values = {
            "creator_id": record.creator_id,
            "status": record.status,
            "customer_id": record.customer_id,
            "checkout_session_id": record.checkout_session_id,
            "amount": record.amount,
            "currency": record.currency,
            "seller_account_id": record.seller_account_id,
        }
        if record.user_id:
            values["user_id"] = record.user_id

        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacySubscription).where(LegacySubscription.subscription_id == record.subscription_id)
            )
            if result.scalar_one_or_none() is None:
                session.add(LegacySubscription(subscription_id=record.subscription_id, **values))
                try:
                    await session.commit()
                    return
                except IntegrityError:
                    await session.rollback()
            await session.execute(
                update(LegacySubscription)
                .where(LegacySubscription.subscription_id == record.subscription_id)
                .values(**values)
            )
            await session.commit()

    async def get_legacy_subscription(self, subscription_id: str) -> LegacySubscriptionRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacySubscription).where(LegacySubscription.subscription_id == subscription_id)
            )
            row = result.scalar_one_or_none()
            return _legacy_record(row) if row else None

    async def reassign_legacy_subscription(self, subscription_id: str, user_id: str) -> ReassignmentResult:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacySubscription).where(LegacySubscription.subscription_id == subscription_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return ReassignmentResult(matched=False, changed=False)
            changed = row.user_id != user_id
            row.user_id = user_id
            await session.commit()
            return ReassignmentResult(matched=True, changed=changed)

    async def list_legacy_subscriptions(
        self, user_id: str, statuses: Iterable[str] = ENTITLED_STATUSES
    ) -> list[LegacySubscriptionRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacySubscription).where(
                    LegacySubscription.user_id == user_id,
                    LegacySubscription.status.in_(list(statuses)),
                )
            )
            return [_legacy_record(row) for row in result.scalars().all()]

    async def has_entitled_legacy_subscription(self, user_id: str, creator_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LegacySubscription.id)
                .where(
                    LegacySubscription.user_id == user_id,
                    LegacySubscription.creator_id == creator_id,
                    LegacySubscription.status.in_(list(ENTITLED_STATUSES)),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    # ── Creators ────────────────────────────────────────────────────

    async def list_creators(self) -> list[CreatorRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(LegacyCreator).order_by(LegacyCreator.id))
            return [_creator_record(row) for row in result.scalars().all()]

    async def get_creator(self, creator_id: str) -> CreatorRecord | None:
        async with self.session_factory() as session:
            row = await session.get(LegacyCreator, creator_id)
            return _creator_record(row) if row else None

    # ── Pending membership claims ───────────────────────────────────

    async def create_pending_claim(self, claim: PendingClaimRecord) -> bool:
        async with self.session_factory() as session:
            try:
                session.add(
                    PendingMembershipClaim(
                        session_id=claim.session_id,
                        email=normalize_email(claim.email),
                        plan_type=claim.plan_type,
                        subscription_id=claim.subscription_id,
                        claimed=False,
                    )
                )
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def consume_pending_claims(self, email: str, user_id: str) -> list[PendingClaimRecord]:
        normalized = normalize_email(email)
        if not normalized:
            return []
        async with self.session_factory() as session:
            # Single conditional UPDATE so each claim is consumed exactly once
            result = await session.execute(
                update(PendingMembershipClaim)
                .where(
                    PendingMembershipClaim.email == normalized,
                    PendingMembershipClaim.claimed.is_(False),
                )
                .values(claimed=True, claimed_by=user_id, claimed_at=datetime.now(UTC))
                .returning(PendingMembershipClaim)
            )
            rows = result.scalars().all()
            await session.commit()
            return [_claim_record(row) for row in rows]

    async def has_unclaimed_pending_claim(self, email: str) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingMembershipClaim.session_id)
                .where(
                    PendingMembershipClaim.email == normalized,
                    PendingMembershipClaim.claimed.is_(False),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None
