"""
Customer record synchronized with Stripe.

A customer is identified by email. The Stripe customer planbill manages is
the one tagged ``{<prefix>: "true"}``; older untagged customers are adopted
when their currency is usd or unset. Extension values live in the customer
metadata as ``ext:<name>`` keys holding JSON.
"""

import asyncio
import json
from collections.abc import Sequence
from functools import partial
from typing import Any

import structlog

from planbill.errors import (
    AmbiguousRemoteStateError,
    InvalidCustomerError,
    InvalidPlanError,
    PaymentMethodError,
    URLPairIncompleteError,
)
from planbill.models.catalog import CurrentPlan, LineItemType, Plan, StripeData, free_plan_for
from planbill.services.stripe_gateway import BillingProvider, list_all

logger = structlog.get_logger(__name__)

ALLOWED_DETAILS = ("name", "description", "phone", "shipping")
SANITIZED_PAYMENT_METHOD_FIELDS = ("id", "billing_details", "card", "metadata", "created")
MAX_INVOICES = 100


def sanitize_payment_method(payment_method: dict) -> dict:
    return {key: payment_method.get(key) for key in SANITIZED_PAYMENT_METHOD_FIELDS}


def require_url_pair(success_url: str | None, cancel_url: str | None) -> None:
    if not success_url or not cancel_url:
        raise URLPairIncompleteError("You must provide both success_url and cancel_url")


class Customer:
    """A billing customer and its cached Stripe state."""

    def __init__(self, provider: BillingProvider, email: str, *, prefix: str = "planbill") -> None:
        if not isinstance(email, str):
            raise InvalidCustomerError('Customer "email" must be a string')
        if not email:
            raise InvalidCustomerError('Customer "email" must be non-empty')
        if "@" not in email:
            raise InvalidCustomerError('Customer "email" must be valid')
        self.provider = provider
        self.email = email
        self.prefix = prefix
        self.stripe_id: str | None = None
        self.stripe_details: dict[str, Any] = {}
        self.stripe_metadata: dict[str, str] = {}
        self.stripe_data: dict[str, dict | None] = {"customer": None, "subscription": None}
        self._log = logger.bind(email=email)

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "stripeData": {key: value for key, value in self.stripe_data.items() if value},
        }

    # Metadata

    def serialize_stripe_metadata(self) -> dict[str, str]:
        return {**self.stripe_metadata, self.prefix: "true"}

    def set_stripe_metadata(self, name: str, value: Any) -> str:
        if not value:
            raise ValueError("Cannot set metadata to empty value")
        encoded = json.dumps(value)
        self.stripe_metadata[f"ext:{name}"] = encoded
        return encoded

    def clear_stripe_metadata(self, name: str) -> bool:
        self.stripe_metadata.pop(f"ext:{name}", None)
        return True

    def get_stripe_metadata(self, name: str, default: Any = None) -> Any:
        value = self.stripe_metadata.get(f"ext:{name}")
        return json.loads(value) if value else default

    def set_stripe_details(self, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise InvalidCustomerError("Customer details must be an object")
        disallowed = [key for key in data if key not in ALLOWED_DETAILS]
        if disallowed:
            raise InvalidCustomerError(
                f'Customer details disallowed properties: "{", ".join(disallowed)}"\n'
                f'Only supports: "{", ".join(ALLOWED_DETAILS)}"'
            )
        self.stripe_details = {key: data.get(key) or None for key in ALLOWED_DETAILS}
        return self.stripe_details

    async def update_stripe_details(self, data: dict[str, Any]) -> "Customer":
        self.set_stripe_details(data)
        return await self.sync_to_stripe()

    # Synchronization

    async def sync_from_stripe(self) -> "Customer":
        """Load the managed Stripe customer for this email, if any."""
        customers = await list_all(self.provider.list_customers, email=self.email)
        customer = (
            next((c for c in customers if (c.get("metadata") or {}).get(self.prefix) == "true"), None)
            or next((c for c in customers if c.get("currency") == "usd"), None)
            or next((c for c in customers if not c.get("currency")), None)
        )
        if customer:
            self.stripe_id = customer["id"]
            self.stripe_data["customer"] = customer
            self.stripe_metadata = dict(customer.get("metadata") or {})
        else:
            self.stripe_id = None
            self.stripe_data = {"customer": None, "subscription": None}
            self.stripe_metadata = {}
        return self

    async def sync_to_stripe(self, force: bool = False) -> "Customer":
        """Create or update the Stripe customer from local state."""
        customer = self.stripe_data["customer"]
        if not customer or force:
            await self.sync_from_stripe()
            customer = self.stripe_data["customer"]

        params = {"email": self.email, **self.stripe_details, "metadata": self.serialize_stripe_metadata()}
        if customer is None:
            customer = await self.provider.create_customer(**params)
            self._log.info("stripe_customer_created", customer_id=customer["id"])
        else:
            customer = await self.provider.update_customer(customer["id"], **params)
        self.stripe_id = customer["id"]
        self.stripe_data["customer"] = customer
        return self

    async def ensure_in_stripe(self) -> "Customer":
        if self.stripe_id:
            return self
        return await self.sync_to_stripe()

    # Subscription and plan

    async def get_subscription(self) -> dict | None:
        """The live subscription planbill manages for this customer."""
        if self.stripe_data["subscription"]:
            return self.stripe_data["subscription"]
        await self.ensure_in_stripe()
        subscriptions = await list_all(self.provider.list_subscriptions, customer=self.stripe_id)
        subscription = next((sub for sub in subscriptions if self._is_managed_subscription(sub)), None)
        if subscription is None or not subscription.get("default_payment_method"):
            # Promotes a default payment method when none is set yet
            await self.list_payment_methods()
        if subscription is not None:
            self.stripe_data["subscription"] = subscription
        return subscription

    def _is_managed_subscription(self, subscription: dict) -> bool:
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            return False
        return bool(((items[0].get("price") or {}).get("metadata") or {}).get(self.prefix))

    def _tag(self, record: dict, key: str) -> str | None:
        return ((record.get("price") or {}).get("metadata") or {}).get(f"{self.prefix}_{key}")

    async def _load_usage_summaries(self, item: dict) -> dict:
        if ((item.get("price") or {}).get("recurring") or {}).get("usage_type") != "metered":
            return item
        summaries = await list_all(partial(self.provider.list_usage_record_summaries, item["id"]))
        return {**item, "usage_records": summaries}

    async def get_current_plan(
        self, plans: Sequence[Plan], subscription: dict | None = None, *, account_type: str | None = None
    ) -> CurrentPlan:
        """
        Resolve the customer's effective plan from their subscription items.

        Customers without a subscription, or whose subscription has no plan
        item, are on the free plan of ``account_type`` (any free plan when
        no type is given).

        Raises:
            AmbiguousRemoteStateError: More than one plan item is subscribed.
            InvalidPlanError: The subscribed plan or a line item is unknown.
        """
        await self.ensure_in_stripe()
        subscription = subscription or await self.get_subscription()

        plan_item = None
        line_sub_items: list[dict] = []
        if subscription is not None:
            items = await list_all(self.provider.list_subscription_items, subscription=subscription["id"])
            plan_items = [item for item in items if self._tag(item, "product_type") == "plan"]
            line_sub_items = [item for item in items if self._tag(item, "product_type") == "line_item"]
            if len(plan_items) > 1:
                raise AmbiguousRemoteStateError(f'Customer "{self.email}" has duplicate plans')
            if plan_items:
                plan_item = plan_items[0]

        if plan_item is None:
            plan = free_plan_for(plans, account_type)
            if plan is None:
                raise InvalidPlanError(f'Customer "{self.email}" has no plan, and no free plan found')
        else:
            plan_name = self._tag(plan_item, "name")
            plan = next((p for p in plans if p.name == plan_name), None)
            if plan is None:
                raise InvalidPlanError(f'Customer "{self.email}" has outdated plan: "{plan_name}"')

        status: dict[str, Any] = {"is_billable": False, "is_incomplete": False, "is_past_due": False, "invoice_url": None}
        stripe_data = plan.stripe_data
        if subscription is not None:
            status["is_billable"] = True
            status["is_incomplete"] = subscription.get("status") == "incomplete"
            status["is_past_due"] = subscription.get("status") == "past_due"
            if status["is_incomplete"] or status["is_past_due"]:
                invoice = await self.get_latest_invoice(subscription)
                status["invoice_url"] = invoice.get("hosted_invoice_url") if invoice else None
            stripe_data = stripe_data.model_copy(
                update={"subscription": subscription, "subscription_item": plan_item or stripe_data.subscription_item}
            )

        line_sub_items = list(await asyncio.gather(*(self._load_usage_summaries(item) for item in line_sub_items)))
        by_name = {self._tag(item, "name"): item for item in line_sub_items}
        for item in line_sub_items:
            self._check_line_item_scope(plan, item)

        line_items = []
        for line_item in plan.line_items:
            sub_item = by_name.get(line_item.name)
            update: dict[str, Any] = {}
            if sub_item is not None:
                update["stripe_data"] = (line_item.stripe_data or StripeData()).model_copy(
                    update={"subscription_item": sub_item}
                )
            if line_item.type == LineItemType.CAPACITY:
                update["purchased_count"] = (sub_item or {}).get("quantity") or 0
            line_items.append(line_item.model_copy(update=update) if update else line_item)

        return CurrentPlan.model_validate(
            {**dict(plan), "line_items": line_items, "stripe_data": stripe_data, **status}
        )

    def _check_line_item_scope(self, plan: Plan, item: dict) -> None:
        name = self._tag(item, "name")
        owner = self._tag(item, "line_item_plan")
        prefix = f'Customer "{self.email}" ({self.stripe_id}) has line item "{name}"'
        line_item = plan.line_item(name)
        if line_item is None:
            raise InvalidPlanError(
                f'{prefix} belonging to "{owner}" that does not match an existing line item in config'
            )
        if line_item.is_template and owner != "*":
            raise InvalidPlanError(
                f'{prefix} belonging to plan "{owner}" but they should be using the template line item '
                f'for their current plan "{plan.name}"'
            )
        if not line_item.is_template and owner != plan.name:
            raise InvalidPlanError(
                f'{prefix} belonging to plan "{owner}" but they should be using the line item '
                f'for their current plan "{plan.name}"'
            )

    # Checkout

    async def create_payment_method_session(self, success_url: str | None, cancel_url: str | None) -> dict:
        require_url_pair(success_url, cancel_url)
        await self.ensure_in_stripe()
        session = await self.provider.create_checkout_session(
            customer=self.stripe_id,
            mode="setup",
            currency="usd",
            payment_method_types=["card"],
            metadata={self.prefix: "true"},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return {"stripe_checkout_session_id": session["id"]}

    async def create_checkout_session(
        self,
        items: Sequence[dict],
        subscription_data: dict,
        success_url: str | None,
        cancel_url: str | None,
    ) -> dict:
        require_url_pair(success_url, cancel_url)
        await self.ensure_in_stripe()
        session = await self.provider.create_checkout_session(
            line_items=[{key: value for key, value in item.items() if key != "metadata"} for item in items],
            subscription_data=subscription_data,
            customer=self.stripe_id,
            mode="subscription",
            currency="usd",
            payment_method_types=["card"],
            metadata={self.prefix: "true"},
            success_url=success_url,
            cancel_url=cancel_url,
        )
        self._log.info("checkout_session_created", session_id=session["id"])
        return {"stripe_checkout_session_id": session["id"]}

    async def expire_open_checkout_sessions(self) -> int:
        await self.ensure_in_stripe()
        sessions = await list_all(self.provider.list_checkout_sessions, customer=self.stripe_id)
        open_sessions = [session for session in sessions if session.get("status") == "open"]
        for session in open_sessions:
            await self.provider.expire_checkout_session(session["id"])
        if open_sessions:
            self._log.info("checkout_sessions_expired", count=len(open_sessions))
        return len(open_sessions)

    # Payment methods

    async def _payment_methods(self) -> list[dict]:
        return await list_all(self.provider.list_payment_methods, customer=self.stripe_id)

    @staticmethod
    def _is_default(payment_method: dict) -> bool:
        return (payment_method.get("metadata") or {}).get("is_default_method") == "true"

    async def list_payment_methods(self, sanitize: bool = False) -> list[dict]:
        """Payment methods with the default first. Promotes the first one when none is default."""
        await self.ensure_in_stripe()
        payment_methods = await self._payment_methods()
        default = next((pm for pm in payment_methods if self._is_default(pm)), None)
        if default is None and payment_methods:
            await self.set_default_payment_method(payment_methods[0]["id"])
            payment_methods = await self._payment_methods()
            default = next((pm for pm in payment_methods if self._is_default(pm)), None)
        if default is not None:
            payment_methods = [default] + [pm for pm in payment_methods if pm is not default]
        return [sanitize_payment_method(pm) for pm in payment_methods] if sanitize else payment_methods

    async def set_default_payment_method(self, payment_method_id: str, sanitize: bool = False) -> dict:
        await self.ensure_in_stripe()
        payment_methods = await self._payment_methods()
        if not any(pm["id"] == payment_method_id for pm in payment_methods):
            raise PaymentMethodError(f'No corresponding payment method found for Customer "{self.email}"')

        subscriptions = await list_all(self.provider.list_subscriptions, customer=self.stripe_id)
        managed = [sub for sub in subscriptions if (sub.get("metadata") or {}).get(self.prefix) == "true"]
        await asyncio.gather(
            *(
                self.provider.update_subscription(sub["id"], default_payment_method=payment_method_id)
                for sub in managed
            )
        )
        updated = await asyncio.gather(
            *(
                self.provider.update_payment_method(
                    pm["id"],
                    metadata={"is_default_method": "true" if pm["id"] == payment_method_id else "false"},
                )
                for pm in payment_methods
            )
        )
        self.stripe_data["subscription"] = None
        payment_method = next(pm for pm in updated if pm["id"] == payment_method_id)
        self._log.info("default_payment_method_set", payment_method_id=payment_method_id)
        return sanitize_payment_method(payment_method) if sanitize else payment_method

    async def remove_payment_method(self, payment_method_id: str, sanitize: bool = False) -> list[dict]:
        subscription = await self.get_subscription()
        payment_methods = await self.list_payment_methods()
        if not any(pm["id"] == payment_method_id for pm in payment_methods):
            raise PaymentMethodError(
                f'No corresponding payment method found for Customer "{self.email}", could not remove.'
            )
        if subscription is not None and len(payment_methods) == 1:
            raise PaymentMethodError(
                f'Customer "{self.email}" can not remove the last payment method on account with an '
                "active subscription.\nPlease cancel your active subscription before removing this payment method."
            )
        await self.provider.detach_payment_method(payment_method_id)
        self._log.info("payment_method_removed", payment_method_id=payment_method_id)
        return await self.list_payment_methods(sanitize)

    # Invoices

    async def get_upcoming_invoice(self, subscription: dict | None = None) -> dict | None:
        subscription = subscription or await self.get_subscription()
        if subscription is None:
            return None
        return await self.provider.retrieve_upcoming_invoice(
            customer=self.stripe_id, subscription=subscription["id"], expand=["subscription"]
        )

    async def get_latest_invoice(self, subscription: dict | None = None) -> dict | None:
        subscription = subscription or await self.get_subscription()
        if subscription is None or not subscription.get("latest_invoice"):
            return None
        return await self.provider.retrieve_invoice(subscription["latest_invoice"])

    async def list_invoices(self, count: int = 10) -> list[dict]:
        """Finalized invoices, newest first, at most ``count`` (clamped to 1..100)."""
        try:
            count = int(count)
        except (TypeError, ValueError):
            count = 0
        count = max(1, min(count, MAX_INVOICES))
        await self.ensure_in_stripe()
        invoices = await list_all(self.provider.list_invoices, customer=self.stripe_id)
        invoices = [invoice for invoice in invoices if invoice.get("status") != "draft"]
        invoices.sort(key=lambda invoice: invoice.get("created") or 0, reverse=True)
        return invoices[:count]

    # Account status

    async def requires_payment(self, subscription: dict | None = None) -> bool:
        """True when an amount is due and no payment method is attached to the subscription."""
        subscription = subscription or self.stripe_data["subscription"]
        if subscription is None:
            return False
        invoice = await self.get_upcoming_invoice(subscription)
        amount_due = bool(invoice and (invoice.get("amount_remaining") or 0) > 0)
        return not subscription.get("default_payment_method") and amount_due

    async def should_lock(
        self, plans: Sequence[Plan], subscription: dict | None = None, *, account_type: str | None = None
    ) -> bool:
        plan = await self.get_current_plan(plans, subscription, account_type=account_type)
        return not plan.price and await self.requires_payment(self.stripe_data["subscription"])
