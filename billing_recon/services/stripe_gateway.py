"""ProcessorGateway: the only module that talks to Stripe.

One ``stripe.StripeClient`` is built at startup (``build_stripe_client``) and
injected here. Every call has a bounded HTTP timeout and the SDK's own network
retries are disabled. Reads retry a few times on rate limiting and server errors
(tenacity); timeouts, connection failures and every mutation fail fast and
surface as ``ProcessorUnavailable``. Requests Stripe refuses outright become
``ProcessorRejected``. Responses are returned as plain dicts.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing_recon.core.config import Settings
from billing_recon.core.exceptions import ProcessorRejected, ProcessorUnavailable

logger = structlog.get_logger(__name__)

PAGE_SIZE = 100

_RETRYABLE_READ_ERRORS = (stripe.RateLimitError, stripe.APIError)
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def build_stripe_client(settings: Settings) -> stripe.StripeClient:
    """Create the process-wide Stripe client with a bounded async HTTP client."""
    return stripe.StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=0,
    )


def _plain(obj: Any) -> Any:
    if obj is None:
        return None
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


def _options(account: str | None = None, idempotency_key: str | None = None) -> dict[str, str]:
    options: dict[str, str] = {}
    if account:
        options["stripe_account"] = account
    if idempotency_key:
        options["idempotency_key"] = idempotency_key
    return options


def _rejected(operation: str, exc: stripe.StripeError) -> ProcessorRejected:
    logger.error(
        "stripe_request_rejected",
        operation=operation,
        code=exc.code,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return ProcessorRejected(operation, exc.code)


class ProcessorGateway(Protocol):
    async def retrieve_subscription(self, subscription_id: str) -> dict | None: ...

    def iter_customer_subscriptions(self, customer_id: str) -> AsyncIterator[dict]: ...

    def iter_customers_by_email(self, email: str) -> AsyncIterator[dict]: ...

    async def ensure_product(self, product_id: str, name: str) -> dict: ...

    async def find_price_by_lookup_key(self, lookup_key: str) -> dict | None: ...

    async def create_price(
        self, *, product_id: str, lookup_key: str, unit_amount: int, currency: str, plan_type: str
    ) -> dict: ...

    async def preview_price_swap(
        self, *, customer_id: str, subscription_id: str, item_id: str, price_id: str
    ) -> dict: ...

    async def swap_subscription_price(
        self,
        *,
        subscription_id: str,
        item_id: str,
        price_id: str,
        proration_behavior: str,
        metadata: dict[str, str],
    ) -> dict: ...

    async def set_cancel_at_period_end(self, subscription_id: str) -> dict: ...

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
    ) -> dict: ...

    async def retrieve_checkout_session(self, session_id: str, account: str | None = None) -> dict | None: ...

    async def retrieve_payment_intent(self, payment_intent_id: str, account: str | None = None) -> dict | None: ...

    async def list_subscription_invoices(self, subscription_id: str, limit: int) -> list[dict]: ...

    def iter_invoices(self, created_gte: int) -> AsyncIterator[dict]: ...

    def iter_connected_accounts(self) -> AsyncIterator[dict]: ...

    def iter_events(self, event_type: str, created_gte: int, account: str | None = None) -> AsyncIterator[dict]: ...


class StripeGateway:
    """ProcessorGateway over an injected StripeClient."""

    def __init__(self, client: stripe.StripeClient, read_attempts: int = 3):
        self.client = client
        self.read_attempts = read_attempts

    # ── Call wrappers ───────────────────────────────────────────────

    async def _read(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a read with bounded retries; missing resources come back as None."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RETRYABLE_READ_ERRORS),
                stop=stop_after_attempt(self.read_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=True,
                before_sleep=lambda rs: logger.warning(
                    "stripe_read_retrying",
                    operation=operation,
                    attempt=rs.attempt_number,
                    sleep_seconds=rs.next_action.sleep,
                ),
            ):
                with attempt:
                    return _plain(await call())
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                return None
            raise _rejected(operation, exc) from exc
        except _TRANSIENT_ERRORS as exc:
            logger.warning("stripe_read_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise ProcessorUnavailable(operation, exc) from exc
        except stripe.StripeError as exc:
            raise _rejected(operation, exc) from exc

    async def _mutate(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a mutation exactly once."""
        try:
            return _plain(await call())
        except _TRANSIENT_ERRORS as exc:
            logger.error("stripe_mutation_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise ProcessorUnavailable(operation, exc) from exc
        except stripe.StripeError as exc:
            raise _rejected(operation, exc) from exc

    async def _paginate(
        self,
        operation: str,
        list_call: Callable[..., Awaitable[Any]],
        params: dict[str, Any],
        options: dict[str, str] | None = None,
    ) -> AsyncIterator[dict]:
        params = {"limit": PAGE_SIZE, **params}
        while True:
            page = await self._read(operation, lambda: list_call(params=dict(params), options=options or {}))
            items = (page or {}).get("data") or []
            for item in items:
                yield item
            if not (page or {}).get("has_more") or not items:
                return
            params["starting_after"] = items[-1]["id"]

    # ── Subscriptions and customers ─────────────────────────────────

    async def retrieve_subscription(self, subscription_id: str) -> dict | None:
        return await self._read(
            "retrieve_subscription",
            lambda: self.client.v1.subscriptions.retrieve_async(subscription_id),
        )

    def iter_customer_subscriptions(self, customer_id: str) -> AsyncIterator[dict]:
        return self._paginate(
            "list_subscriptions",
            self.client.v1.subscriptions.list_async,
            {"customer": customer_id, "status": "all"},
        )

    def iter_customers_by_email(self, email: str) -> AsyncIterator[dict]:
        return self._paginate("list_customers", self.client.v1.customers.list_async, {"email": email})

    async def set_cancel_at_period_end(self, subscription_id: str) -> dict:
        return await self._mutate(
            "cancel_at_period_end",
            lambda: self.client.v1.subscriptions.update_async(
                subscription_id, params={"cancel_at_period_end": True}
            ),
        )

    async def swap_subscription_price(
        self,
        *,
        subscription_id: str,
        item_id: str,
        price_id: str,
        proration_behavior: str,
        metadata: dict[str, str],
    ) -> dict:
        return await self._mutate(
            "swap_subscription_price",
            lambda: self.client.v1.subscriptions.update_async(
                subscription_id,
                params={
                    "items": [{"id": item_id, "price": price_id}],
                    "proration_behavior": proration_behavior,
                    "metadata": metadata,
                },
            ),
        )

    # ── Catalog ─────────────────────────────────────────────────────

    async def ensure_product(self, product_id: str, name: str) -> dict:
        product = await self._read(
            "retrieve_product",
            lambda: self.client.v1.products.retrieve_async(product_id),
        )
        if product is not None:
            return product
        logger.info("stripe_product_created", product_id=product_id)
        return await self._mutate(
            "create_product",
            lambda: self.client.v1.products.create_async(
                params={"id": product_id, "name": name},
                options=_options(idempotency_key=f"product-create:{product_id}"),
            ),
        )

    async def find_price_by_lookup_key(self, lookup_key: str) -> dict | None:
        page = await self._read(
            "find_price",
            lambda: self.client.v1.prices.list_async(
                params={"lookup_keys": [lookup_key], "active": True, "limit": 1}
            ),
        )
        data = (page or {}).get("data") or []
        return data[0] if data else None

    async def create_price(
        self, *, product_id: str, lookup_key: str, unit_amount: int, currency: str, plan_type: str
    ) -> dict:
        # Same lookup key and amount -> same idempotency key, so concurrent creators get one price
        return await self._mutate(
            "create_price",
            lambda: self.client.v1.prices.create_async(
                params={
                    "product": product_id,
                    "unit_amount": unit_amount,
                    "currency": currency,
                    "recurring": {"interval": "month"},
                    "lookup_key": lookup_key,
                    "metadata": {"planType": plan_type},
                },
                options=_options(idempotency_key=f"price-create:{lookup_key}:{unit_amount}:{currency}"),
            ),
        )

    # ── Invoices ────────────────────────────────────────────────────

    async def preview_price_swap(
        self, *, customer_id: str, subscription_id: str, item_id: str, price_id: str
    ) -> dict:
        return await self._read(
            "preview_invoice",
            lambda: self.client.v1.invoices.create_preview_async(
                params={
                    "customer": customer_id,
                    "subscription": subscription_id,
                    "subscription_details": {
                        "items": [{"id": item_id, "price": price_id}],
                        "proration_behavior": "always_invoice",
                    },
                }
            ),
        )

    async def list_subscription_invoices(self, subscription_id: str, limit: int) -> list[dict]:
        page = await self._read(
            "list_subscription_invoices",
            lambda: self.client.v1.invoices.list_async(params={"subscription": subscription_id, "limit": limit}),
        )
        return list((page or {}).get("data") or [])

    def iter_invoices(self, created_gte: int) -> AsyncIterator[dict]:
        return self._paginate(
            "list_invoices",
            self.client.v1.invoices.list_async,
            {"created": {"gte": created_gte}},
        )

    # ── Checkout ────────────────────────────────────────────────────

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
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        return await self._mutate(
            "create_checkout_session",
            lambda: self.client.v1.checkout.sessions.create_async(params=params),
        )

    async def retrieve_checkout_session(self, session_id: str, account: str | None = None) -> dict | None:
        return await self._read(
            "retrieve_checkout_session",
            lambda: self.client.v1.checkout.sessions.retrieve_async(
                session_id, params={"expand": ["payment_intent"]}, options=_options(account)
            ),
        )

    async def retrieve_payment_intent(self, payment_intent_id: str, account: str | None = None) -> dict | None:
        return await self._read(
            "retrieve_payment_intent",
            lambda: self.client.v1.payment_intents.retrieve_async(payment_intent_id, options=_options(account)),
        )

    # ── Connect history ─────────────────────────────────────────────

    def iter_connected_accounts(self) -> AsyncIterator[dict]:
        return self._paginate("list_accounts", self.client.v1.accounts.list_async, {})

    def iter_events(self, event_type: str, created_gte: int, account: str | None = None) -> AsyncIterator[dict]:
        return self._paginate(
            "list_events",
            self.client.v1.events.list_async,
            {"type": event_type, "created": {"gte": created_gte}},
            _options(account),
        )
