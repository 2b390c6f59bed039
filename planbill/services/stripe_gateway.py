"""Stripe API gateway.

``BillingProvider`` is the contract the catalog synchronizer and the
subscription reconciler consume. ``StripeGateway`` implements it with the
Stripe SDK; every SDK call goes through ``RetryingCaller`` which runs the
blocking call in a worker thread and retries rate-limited responses.
"""

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import stripe
import structlog

from planbill.config import StripeConfig
from planbill.errors import InvalidRemoteDataError, RateLimitExhaustedError

logger = structlog.get_logger(__name__)

Page = dict[str, Any]
PAGE_LIMIT = 100


class BillingProvider(Protocol):
    """Remote billing operations used by planbill. List calls return one page."""

    async def list_products(self, **params) -> Page: ...
    async def create_product(self, **params) -> dict: ...
    async def update_product(self, product_id: str, **params) -> dict: ...

    async def list_prices(self, **params) -> Page: ...
    async def create_price(self, **params) -> dict: ...
    async def update_price(self, price_id: str, **params) -> dict: ...

    async def list_customers(self, **params) -> Page: ...
    async def create_customer(self, **params) -> dict: ...
    async def update_customer(self, customer_id: str, **params) -> dict: ...

    async def list_subscriptions(self, **params) -> Page: ...
    async def create_subscription(self, **params) -> dict: ...
    async def update_subscription(self, subscription_id: str, **params) -> dict: ...
    async def cancel_subscription(self, subscription_id: str, **params) -> dict: ...

    async def list_subscription_items(self, **params) -> Page: ...
    async def create_usage_record(self, subscription_item_id: str, **params) -> dict: ...
    async def list_usage_record_summaries(self, subscription_item_id: str, **params) -> Page: ...

    async def create_checkout_session(self, **params) -> dict: ...
    async def list_checkout_sessions(self, **params) -> Page: ...
    async def expire_checkout_session(self, session_id: str) -> dict: ...

    async def list_payment_methods(self, **params) -> Page: ...
    async def update_payment_method(self, payment_method_id: str, **params) -> dict: ...
    async def detach_payment_method(self, payment_method_id: str) -> dict: ...

    async def list_invoices(self, **params) -> Page: ...
    async def retrieve_invoice(self, invoice_id: str) -> dict: ...
    async def retrieve_upcoming_invoice(self, **params) -> dict: ...

    async def find_secret(self, name: str, scope: dict) -> dict | None: ...
    async def create_secret(self, name: str, scope: dict, payload: str) -> dict: ...
    async def delete_secret(self, name: str, scope: dict) -> dict: ...


async def list_all(list_method: Callable[..., Awaitable[Page]], **params) -> list[dict]:
    """Follow ``starting_after`` cursors until the last page and return every record."""
    records: list[dict] = []
    query = {"limit": PAGE_LIMIT, **params}
    while True:
        page = await list_method(**query)
        data = page.get("data") or []
        records.extend(data)
        if not page.get("has_more") or not data:
            return records
        query["starting_after"] = data[-1]["id"]


def to_plain(obj: Any) -> Any:
    """Convert a StripeObject (or list object) into plain dicts."""
    if obj is None:
        return None
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class RetryingCaller:
    """Runs blocking SDK calls off the event loop, retrying on HTTP 429.

    After a rate-limited attempt it sleeps ``wait`` ms and grows the wait by a
    random factor in [1.5, 2.0). A call that returns ``None`` is retried right
    away. At most ``attempts + 1`` calls are made.
    """

    def __init__(
        self,
        name: str = "stripe",
        attempts: int = 5,
        initial_wait_ms: int = 10,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        self.name = name
        self.attempts = attempts
        self.initial_wait_ms = initial_wait_ms
        self._sleep = sleep
        self._random = random_source

    async def call(self, method: Callable[..., Any], *args, **kwargs) -> Any:
        label = f"{self.name}.{getattr(method, '__qualname__', repr(method))}"
        wait = self.initial_wait_ms
        rate_limited = False
        tries = 0
        while tries <= self.attempts:
            tries += 1
            try:
                result = await asyncio.to_thread(method, *args, **kwargs)
            except stripe.StripeError as exc:
                if getattr(exc, "http_status", None) != 429:
                    raise
                rate_limited = True
                logger.warning("stripe_rate_limited", call=label, attempt=tries, wait_ms=wait)
                await self._sleep(wait / 1000)
                wait = math.ceil(wait * (1.5 + 0.5 * self._random()))
                continue
            rate_limited = False
            if result is not None:
                return result
            logger.warning("stripe_empty_result", call=label, attempt=tries)

        if rate_limited:
            raise RateLimitExhaustedError(f"{label} still rate limited after {tries} attempts")
        raise InvalidRemoteDataError(f"{label} invalid data after {tries} attempts")


class StripeGateway:
    """``BillingProvider`` backed by the Stripe SDK."""

    def __init__(self, config: StripeConfig, caller: RetryingCaller | None = None) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")
        self.config = config
        self._caller = caller or RetryingCaller(
            attempts=config.max_attempts,
            initial_wait_ms=config.initial_backoff_ms,
        )

    async def _call(self, method: Callable[..., Any], *args, **params) -> Any:
        result = await self._caller.call(method, *args, api_key=self.config.secret_key, **params)
        return to_plain(result)

    # Products

    async def list_products(self, **params) -> Page:
        return await self._call(stripe.Product.list, **params)

    async def create_product(self, **params) -> dict:
        return await self._call(stripe.Product.create, **params)

    async def update_product(self, product_id: str, **params) -> dict:
        return await self._call(stripe.Product.modify, product_id, **params)

    # Prices

    async def list_prices(self, **params) -> Page:
        return await self._call(stripe.Price.list, **params)

    async def create_price(self, **params) -> dict:
        return await self._call(stripe.Price.create, **params)

    async def update_price(self, price_id: str, **params) -> dict:
        return await self._call(stripe.Price.modify, price_id, **params)

    # Customers

    async def list_customers(self, **params) -> Page:
        return await self._call(stripe.Customer.list, **params)

    async def create_customer(self, **params) -> dict:
        return await self._call(stripe.Customer.create, **params)

    async def update_customer(self, customer_id: str, **params) -> dict:
        return await self._call(stripe.Customer.modify, customer_id, **params)

    # Subscriptions

    async def list_subscriptions(self, **params) -> Page:
        return await self._call(stripe.Subscription.list, **params)

    async def create_subscription(self, **params) -> dict:
        return await self._call(stripe.Subscription.create, **params)

    async def update_subscription(self, subscription_id: str, **params) -> dict:
        return await self._call(stripe.Subscription.modify, subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str, **params) -> dict:
        return await self._call(stripe.Subscription.cancel, subscription_id, **params)

    async def list_subscription_items(self, **params) -> Page:
        return await self._call(stripe.SubscriptionItem.list, **params)

    async def create_usage_record(self, subscription_item_id: str, **params) -> dict:
        return await self._call(stripe.SubscriptionItem.create_usage_record, subscription_item_id, **params)

    async def list_usage_record_summaries(self, subscription_item_id: str, **params) -> Page:
        return await self._call(
            stripe.SubscriptionItem.list_usage_record_summaries, subscription_item_id, **params
        )

    # Checkout

    async def create_checkout_session(self, **params) -> dict:
        return await self._call(stripe.checkout.Session.create, **params)

    async def list_checkout_sessions(self, **params) -> Page:
        return await self._call(stripe.checkout.Session.list, **params)

    async def expire_checkout_session(self, session_id: str) -> dict:
        return await self._call(stripe.checkout.Session.expire, session_id)

    # Payment methods

    async def list_payment_methods(self, **params) -> Page:
        return await self._call(stripe.PaymentMethod.list, **params)

    async def update_payment_method(self, payment_method_id: str, **params) -> dict:
        return await self._call(stripe.PaymentMethod.modify, payment_method_id, **params)

    async def detach_payment_method(self, payment_method_id: str) -> dict:
        return await self._call(stripe.PaymentMethod.detach, payment_method_id)

    # Invoices

    async def list_invoices(self, **params) -> Page:
        return await self._call(stripe.Invoice.list, **params)

    async def retrieve_invoice(self, invoice_id: str) -> dict:
        return await self._call(stripe.Invoice.retrieve, invoice_id)

    async def retrieve_upcoming_invoice(self, **params) -> dict:
        return await self._call(stripe.Invoice.upcoming, **params)

    # Secret store

    async def find_secret(self, name: str, scope: dict) -> dict | None:
        try:
            return await self._call(stripe.apps.Secret.find, name=name, scope=scope, expand=["payload"])
        except stripe.InvalidRequestError as exc:
            if "No such secret" in str(exc):
                return None
            raise

    async def create_secret(self, name: str, scope: dict, payload: str) -> dict:
        return await self._call(stripe.apps.Secret.create, name=name, scope=scope, payload=payload)

    async def delete_secret(self, name: str, scope: dict) -> dict:
        return await self._call(stripe.apps.Secret.delete_where, name=name, scope=scope)
