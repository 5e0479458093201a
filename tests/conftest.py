"""Shared test fixtures: in-memory store, ledger and processor gateway."""

import itertools
import uuid
from collections.abc import AsyncIterator, Iterable
from typing import Any

import pytest

from billing_recon.core.config import Settings
from billing_recon.core.exceptions import ProcessorUnavailable
from billing_recon.domain.records import (
    ENTITLED_STATUSES,
    CreatorRecord,
    LegacySubscriptionRecord,
    OrderDraft,
    OrderRecord,
    OrderReclassification,
    OrderType,
    PendingClaimRecord,
    ReassignmentResult,
    UserRecord,
)
from billing_recon.services.entitlement_store import normalize_email

TEST_WEBHOOK_SECRET = "whsec_test_secret"


class InMemoryEventLedger:
    def __init__(self):
        self.keys: dict[str, str] = {}
        self.released: list[str] = []

    async def claim(self, key: str, event_id: str, event_type: str) -> bool:
        if key in self.keys:
            return False
        self.keys[key] = event_id
        return True

    async def release(self, key: str) -> None:
        self.keys.pop(key, None)
        self.released.append(key)


class InMemoryEntitlementStore:
    """Dict-backed EntitlementStore with the same uniqueness rules as the SQL tables."""

    def __init__(self):
        self.users: dict[str, UserRecord] = {}
        self.orders: dict[str, OrderRecord] = {}
        self.legacy: dict[str, LegacySubscriptionRecord] = {}
        self.creators: dict[str, CreatorRecord] = {}
        self.claims: dict[str, PendingClaimRecord] = {}

    # Users

    def add_user(self, user_id: str, **fields) -> UserRecord:
        user = UserRecord(id=user_id, **fields)
        self.users[user_id] = user
        return user

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        normalized = normalize_email(email)
        return next((u for u in self.users.values() if u.email == normalized), None)

    async def find_user_by_membership_subscription(self, subscription_id: str) -> UserRecord | None:
        return next((u for u in self.users.values() if u.membership_subscription_id == subscription_id), None)

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
        user = self.users.setdefault(user_id, UserRecord(id=user_id))
        if active is not None:
            user.membership_active = active
        if plan_type is not None:
            user.membership_plan = plan_type
        if subscription_id is not None:
            user.membership_subscription_id = subscription_id
        if cancel_at_period_end is not None:
            user.subscription_cancel_at_period_end = cancel_at_period_end
        if email is not None:
            user.email = normalize_email(email)

    # Orders

    def add_order(self, **fields) -> OrderRecord:
        order = OrderRecord(id=str(uuid.uuid4()), **fields)
        self.orders[order.id] = order
        return order

    def order_by_session(self, checkout_session_id: str) -> OrderRecord | None:
        return next((o for o in self.orders.values() if o.checkout_session_id == checkout_session_id), None)

    async def create_order_if_absent(self, draft: OrderDraft) -> bool:
        for order in self.orders.values():
            if draft.checkout_session_id and order.checkout_session_id == draft.checkout_session_id:
                return False
            if draft.invoice_id and order.invoice_id == draft.invoice_id:
                return False
        record = OrderRecord(id=str(uuid.uuid4()), **draft.__dict__)
        self.orders[record.id] = record
        return True

    async def order_exists(self, checkout_session_id: str) -> bool:
        return self.order_by_session(checkout_session_id) is not None

    async def find_order_by_invoice(self, invoice_id: str) -> OrderRecord | None:
        return next((o for o in self.orders.values() if o.invoice_id == invoice_id), None)

    async def overwrite_order(self, order_id: str, draft: OrderDraft) -> None:
        existing = self.orders[order_id]
        fields = dict(draft.__dict__)
        fields["created_at"] = existing.created_at
        self.orders[order_id] = OrderRecord(id=order_id, reclassified_by=existing.reclassified_by, **fields)

    async def list_orders_without_seller(self) -> list[OrderRecord]:
        return [
            o
            for o in self.orders.values()
            if o.seller_id is None and o.order_type != OrderType.SUBSCRIPTION_CHANGE
        ]

    async def reclassify_order(self, order_id: str, change: OrderReclassification) -> None:
        order = self.orders[order_id]
        order.order_type = change.order_type
        order.title = change.title
        order.status = change.status
        order.seller_id = None
        order.seller_account_id = None
        order.reclassified_by = change.method
        if change.subscription_id:
            order.subscription_id = change.subscription_id
        if change.current_plan_type:
            order.current_plan_type = change.current_plan_type
        if change.new_plan_type:
            order.new_plan_type = change.new_plan_type

    # Legacy subscriptions

    async def upsert_legacy_subscription(self, record: LegacySubscriptionRecord) -> None:
        existing = self.legacy.get(record.subscription_id)
        stored = LegacySubscriptionRecord(**record.__dict__)
        if existing is not None:
            stored.id = existing.id
            if not stored.user_id:
                stored.user_id = existing.user_id
        elif not stored.id:
            stored.id = str(uuid.uuid4())
        self.legacy[record.subscription_id] = stored

    async def get_legacy_subscription(self, subscription_id: str) -> LegacySubscriptionRecord | None:
        record = self.legacy.get(subscription_id)
        return LegacySubscriptionRecord(**record.__dict__) if record else None

    async def reassign_legacy_subscription(self, subscription_id: str, user_id: str) -> ReassignmentResult:
        record = self.legacy.get(subscription_id)
        if record is None:
            return ReassignmentResult(matched=False, changed=False)
        changed = record.user_id != user_id
        record.user_id = user_id
        return ReassignmentResult(matched=True, changed=changed)

    async def list_legacy_subscriptions(
        self, user_id: str, statuses: Iterable[str] = ENTITLED_STATUSES
    ) -> list[LegacySubscriptionRecord]:
        wanted = set(statuses)
        return [r for r in self.legacy.values() if r.user_id == user_id and r.status in wanted]

    async def has_entitled_legacy_subscription(self, user_id: str, creator_id: str) -> bool:
        return any(
            r.user_id == user_id and r.creator_id == creator_id and r.status in ENTITLED_STATUSES
            for r in self.legacy.values()
        )

    # Creators

    def add_creator(self, creator_id: str, **fields) -> CreatorRecord:
        creator = CreatorRecord(id=creator_id, **fields)
        self.creators[creator_id] = creator
        return creator

    async def list_creators(self) -> list[CreatorRecord]:
        return [self.creators[k] for k in sorted(self.creators)]

    async def get_creator(self, creator_id: str) -> CreatorRecord | None:
        return self.creators.get(creator_id)

    # Pending claims

    async def create_pending_claim(self, claim: PendingClaimRecord) -> bool:
        if claim.session_id in self.claims:
            return False
        stored = PendingClaimRecord(**claim.__dict__)
        stored.email = normalize_email(claim.email)
        self.claims[claim.session_id] = stored
        return True

    async def consume_pending_claims(self, email: str, user_id: str) -> list[PendingClaimRecord]:
        normalized = normalize_email(email)
        consumed = []
        for claim in self.claims.values():
            if claim.email == normalized and not claim.claimed:
                claim.claimed = True
                claim.claimed_by = user_id
                consumed.append(claim)
        return consumed

    async def has_unclaimed_pending_claim(self, email: str) -> bool:
        normalized = normalize_email(email)
        return any(c.email == normalized and not c.claimed for c in self.claims.values())


async def _aiter(items: Iterable[dict]) -> AsyncIterator[dict]:
    for item in list(items):
        yield item


class FakeGateway:
    """ProcessorGateway over dicts; records every call in ``calls``.

    Operation names listed in ``unavailable`` raise ProcessorUnavailable.
    """

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.customers_by_email: dict[str, list[dict]] = {}
        self.customer_subscriptions: dict[str, list[dict]] = {}
        self.prices: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.preview: dict[str, Any] = {"amount_due": 0, "lines": {"data": []}}
        self.subscription_invoices: dict[str, list[dict]] = {}
        self.invoices: list[dict] = []
        self.accounts: list[dict] = []
        self.events_by_account: dict[str | None, list[dict]] = {}
        self.checkout_sessions: dict[str, dict] = {}
        self.payment_intents: dict[str, dict] = {}
        self.unavailable: set[str] = set()
        self.calls: list[tuple[str, dict]] = []
        self._ids = itertools.count(1)

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.unavailable:
            raise ProcessorUnavailable(operation)

    def called(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def add_subscription(
        self,
        subscription_id: str,
        *,
        price_id: str,
        status: str = "active",
        customer: str = "cus_1",
        metadata: dict | None = None,
        current_period_end: int | None = None,
        cancel_at_period_end: bool = False,
    ) -> dict:
        subscription = {
            "id": subscription_id,
            "status": status,
            "customer": customer,
            "metadata": metadata or {},
            "cancel_at_period_end": cancel_at_period_end,
            "items": {"data": [{"id": f"si_{subscription_id}", "price": {"id": price_id}}]},
        }
        if current_period_end is not None:
            subscription["current_period_end"] = current_period_end
        self.subscriptions[subscription_id] = subscription
        return subscription

    async def retrieve_subscription(self, subscription_id: str) -> dict | None:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions.get(subscription_id)

    def iter_customer_subscriptions(self, customer_id: str) -> AsyncIterator[dict]:
        self._record("list_subscriptions", customer_id=customer_id)
        return _aiter(self.customer_subscriptions.get(customer_id, []))

    def iter_customers_by_email(self, email: str) -> AsyncIterator[dict]:
        self._record("list_customers", email=email)
        return _aiter(self.customers_by_email.get(email, []))

    async def ensure_product(self, product_id: str, name: str) -> dict:
        self._record("ensure_product", product_id=product_id, name=name)
        return self.products.setdefault(product_id, {"id": product_id, "name": name})

    async def find_price_by_lookup_key(self, lookup_key: str) -> dict | None:
        self._record("find_price", lookup_key=lookup_key)
        return self.prices.get(lookup_key)

    async def create_price(
        self, *, product_id: str, lookup_key: str, unit_amount: int, currency: str, plan_type: str
    ) -> dict:
        self._record("create_price", lookup_key=lookup_key, unit_amount=unit_amount)
        price = {"id": f"price_{lookup_key}", "lookup_key": lookup_key, "unit_amount": unit_amount}
        self.prices[lookup_key] = price
        return price

    async def preview_price_swap(
        self, *, customer_id: str | None, subscription_id: str, item_id: str, price_id: str
    ) -> dict:
        self._record("preview_price_swap", subscription_id=subscription_id, price_id=price_id)
        return self.preview

    async def swap_subscription_price(
        self,
        *,
        subscription_id: str,
        item_id: str,
        price_id: str,
        proration_behavior: str,
        metadata: dict[str, str] | None = None,
    ) -> dict:
        self._record(
            "swap_subscription_price",
            subscription_id=subscription_id,
            item_id=item_id,
            price_id=price_id,
            proration_behavior=proration_behavior,
            metadata=metadata,
        )
        subscription = self.subscriptions[subscription_id]
        subscription["items"]["data"][0]["price"] = {"id": price_id}
        subscription["metadata"].update(metadata or {})
        return subscription

    async def set_cancel_at_period_end(self, subscription_id: str) -> dict:
        self._record("cancel_at_period_end", subscription_id=subscription_id)
        subscription = self.subscriptions.get(subscription_id, {"id": subscription_id})
        subscription["cancel_at_period_end"] = True
        return subscription

    async def create_payment_checkout(
        self,
        *,
        customer_id: str | None,
        amount: int,
        currency: str,
        product_name: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        client_reference_id: str | None = None,
    ) -> dict:
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            product_name=product_name,
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=client_reference_id,
        )
        session_id = f"cs_test_{next(self._ids)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    async def retrieve_checkout_session(self, session_id: str, account: str | None = None) -> dict | None:
        self._record("retrieve_checkout_session", session_id=session_id, account=account)
        return self.checkout_sessions.get(session_id)

    async def retrieve_payment_intent(self, payment_intent_id: str, account: str | None = None) -> dict | None:
        self._record("retrieve_payment_intent", payment_intent_id=payment_intent_id, account=account)
        return self.payment_intents.get(payment_intent_id)

    async def list_subscription_invoices(self, subscription_id: str, limit: int) -> list[dict]:
        self._record("list_subscription_invoices", subscription_id=subscription_id, limit=limit)
        return self.subscription_invoices.get(subscription_id, [])[:limit]

    def iter_invoices(self, created_gte: int) -> AsyncIterator[dict]:
        self._record("list_invoices", created_gte=created_gte)
        return _aiter(i for i in self.invoices if i.get("created", created_gte) >= created_gte)

    def iter_connected_accounts(self) -> AsyncIterator[dict]:
        self._record("list_accounts")
        return _aiter(self.accounts)

    def iter_events(self, event_type: str, created_gte: int, account: str | None = None) -> AsyncIterator[dict]:
        self._record("list_events", event_type=event_type, account=account)
        return _aiter(e for e in self.events_by_account.get(account, []) if e.get("type") == event_type)


def make_settings(**overrides) -> Settings:
    values = {
        "stripe_secret_key": "sk_test_dummy",
        "stripe_webhook_secret": TEST_WEBHOOK_SECRET,
        "frontend_url": "https://app.example.test",
        "backfill_account_delay_seconds": 0.0,
        "auth_jwks_url": "https://idp.example.test/.well-known/jwks.json",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryEntitlementStore:
    return InMemoryEntitlementStore()


@pytest.fixture
def ledger() -> InMemoryEventLedger:
    return InMemoryEventLedger()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings_factory():
    """Build Settings with overrides on top of the test defaults."""
    return make_settings
