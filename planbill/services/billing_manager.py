"""
Billing manager.

Drives subscription changes against Stripe using the rules in
``planbill.services.reconciler``, stores per-customer secrets, and records
metered usage through the usage accumulator.
"""

import asyncio
import json
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import structlog

from planbill.config import BillingConfig
from planbill.errors import (
    InvalidCustomerError,
    InvalidLineItemError,
    InvalidPlanError,
    NoPaymentMethodError,
    TooFrequentError,
    URLPairIncompleteError,
)
from planbill.models.billing import UsageRecord, UsageRecordResult, UsageState
from planbill.models.catalog import CurrentPlan, LineItemType, Plan, free_plan_for
from planbill.services import reconciler
from planbill.services.customer import Customer
from planbill.services.stripe_gateway import BillingProvider
from planbill.services.usage import add_usage, calculate_usage

logger = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BillingManager:
    """Customer-facing billing operations over a synchronized catalog."""

    def __init__(
        self,
        provider: BillingProvider,
        plans: Sequence[Plan],
        config: BillingConfig | None = None,
        now_provider: Callable[[], int] | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or BillingConfig()
        self.all_plans = list(plans)
        self._now = now_provider or _now_ms
        if not self.plans:
            raise InvalidPlanError(f'No plans available for account type "{self.config.account_type}"')

    @property
    def prefix(self) -> str:
        return self.config.metadata_prefix

    @property
    def plans(self) -> list[Plan]:
        if self.config.account_type is None:
            return self.all_plans
        return [plan for plan in self.all_plans if plan.account_type == self.config.account_type]

    @property
    def free_plan(self) -> Plan:
        return self.free_plan_for(self.config.account_type)

    def free_plan_for(self, account_type: str | None) -> Plan:
        plan = free_plan_for(self.plans, account_type)
        if plan is None:
            raise InvalidPlanError(
                f'No free plan found for account type "{account_type}"' if account_type else "No free plan found"
            )
        return plan

    def get_plan(self, name: str) -> Plan | None:
        return next((plan for plan in self.plans if plan.name == name), None)

    async def find_customer(self, email: str) -> Customer:
        """Look up (or create) the Stripe customer for ``email``."""
        customer = Customer(self.provider, email, prefix=self.prefix)
        await customer.sync_to_stripe()
        return customer

    async def get_current_plan(self, customer: Customer) -> CurrentPlan:
        return await customer.get_current_plan(self.plans, account_type=self.config.account_type)

    # Subscriptions

    async def unsubscribe_customer(
        self, customer: Customer, existing_line_item_counts: Mapping[str, Any] | None = None
    ) -> dict | None:
        return await self.subscribe_customer(customer, None, None, existing_line_item_counts)

    def _resolve_plan(self, plan_name: str, line_item_counts: Mapping[str, Any] | None) -> Plan:
        plan = self.get_plan(plan_name)
        if plan is None:
            valid = '", "'.join(p.name for p in self.plans)
            raise InvalidPlanError(f'Invalid plan: "{plan_name}"\nValid plans are: "{valid}"')
        if not plan.enabled:
            action = "subscribe to" if not line_item_counts else "alter subscription to"
            raise InvalidPlanError(
                f'Can not {action}: "{plan.display_name}" ({plan.name})\n'
                "It is not enabled by the platform administrators."
            )
        return plan

    async def _cancel(self, subscription: dict) -> dict:
        logger.info("subscription_cancelling", subscription_id=subscription["id"])
        return await self.provider.cancel_subscription(subscription["id"], invoice_now=True, prorate=True)

    async def subscribe_customer(
        self,
        customer: Customer,
        plan_name: str | None,
        line_item_counts: Mapping[str, Any] | None = None,
        existing_line_item_counts: Mapping[str, Any] | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict | None:
        """
        Move ``customer`` to ``plan_name`` (None unsubscribes to the free plan).

        Returns:
            The created or updated subscription, the checkout session when a
            first subscription goes through hosted checkout, or None when
            nothing needed to be sent.

        Raises:
            URLPairIncompleteError, InvalidPlanError, InvalidLineItemError,
            MissingRequiredLineItemsError, RedundantSubscribeRequestError,
            OverLimitOnDowngradeError, NoPaymentMethodError
        """
        if not isinstance(customer, Customer):
            raise InvalidCustomerError("subscribe_customer requires a valid customer")
        if bool(success_url) != bool(cancel_url):
            raise URLPairIncompleteError("You must provide both success_url and cancel_url if one is provided")

        log = logger.bind(email=customer.email, plan=plan_name)
        if plan_name is None:
            if line_item_counts is not None:
                raise InvalidLineItemError(
                    "Cannot unsubscribe and provide line_item_counts.\n"
                    "If you wish to subscribe to a free plan with line items, please use the plan name"
                )
        else:
            plan = self._resolve_plan(plan_name, line_item_counts)

        # Stale checkout sessions must not complete after this change
        await customer.expire_open_checkout_sessions()

        current_plan = await self.get_current_plan(customer)
        if plan_name is None:
            # Unsubscribing moves to the free plan of the same account type
            plan = self.free_plan_for(current_plan.account_type)
            line_item_counts = reconciler.unsubscribe_counts(plan)
        counts = None
        if line_item_counts is not None:
            counts = reconciler.validate_line_item_counts(plan, line_item_counts, self.config.max_line_item_count)
            reconciler.check_required_line_items(plan, counts, customer.email)
        if plan_name is not None:
            reconciler.check_redundant_request(current_plan, plan_name, counts, customer.email)

        limit_errors = (
            reconciler.check_existing_counts(plan, existing_line_item_counts) if existing_line_item_counts else {}
        )
        currency = self.config.policy_currency
        subscription = current_plan.stripe_data.subscription

        if plan_name is None:
            if subscription is None:
                log.info("customer_already_unsubscribed")
                return None
            if existing_line_item_counts:
                limit_errors.update(reconciler.included_count_errors(plan, existing_line_item_counts))
            reconciler.enforce_limits(current_plan, plan, limit_errors, currency)
            return await self._cancel(subscription)

        change = reconciler.build_subscription_change(
            plan, current_plan, counts, existing_line_item_counts, limit_errors, currency
        )
        reconciler.enforce_limits(current_plan, plan, change.limit_errors, currency)

        if not change.add_items:
            if subscription is not None:
                # Every subscription keeps at least its plan item, so this is a fallback
                return await self._cancel(subscription)
            return None

        payment_methods = await customer.list_payment_methods()
        metadata = customer.serialize_stripe_metadata()

        if subscription is not None:
            if not payment_methods:
                raise NoPaymentMethodError(
                    f'You must add a default payment method for "{customer.email}" before changing your subscription'
                )
            params: dict[str, Any] = {
                "default_payment_method": payment_methods[0]["id"],
                "description": plan.name,
                "items": change.items,
                "proration_behavior": "always_invoice",
                "metadata": metadata,
            }
            if current_plan.name != plan.name:
                params["billing_cycle_anchor"] = "now"
            result = await self.provider.update_subscription(subscription["id"], **params)
            log.info("subscription_updated", subscription_id=result["id"], previous_plan=current_plan.name)
            return result

        if success_url and cancel_url:
            return await customer.create_checkout_session(
                change.items, {"description": plan.name, "metadata": metadata}, success_url, cancel_url
            )
        if not payment_methods:
            raise NoPaymentMethodError(
                f'You must add a default payment method for "{customer.email}" before changing your subscription.'
            )
        result = await self.provider.create_subscription(
            customer=customer.stripe_id,
            default_payment_method=payment_methods[0]["id"],
            description=plan.name,
            items=change.add_items,
            metadata=metadata,
        )
        log.info("subscription_created", subscription_id=result["id"])
        return result

    # Secret store

    def _secret_name(self, name: str) -> str:
        return f"{self.prefix}_secret:{name}"

    @staticmethod
    def _secret_scope(customer: Customer) -> dict[str, str]:
        return {"type": "user", "user": f"stripe:{customer.stripe_id}"}

    async def get_secret(self, customer: Customer, name: str, default: Any = None) -> Any:
        secret = await self.provider.find_secret(self._secret_name(name), self._secret_scope(customer))
        if secret is None:
            return default
        return json.loads(secret["payload"])

    async def set_secret(self, customer: Customer, name: str, value: Any) -> dict:
        if value is None:
            raise ValueError("Cannot set a secret to None, use clear_secret instead")
        return await self.provider.create_secret(
            self._secret_name(name), self._secret_scope(customer), json.dumps(value)
        )

    async def clear_secret(self, customer: Customer, name: str) -> dict:
        return await self.provider.delete_secret(self._secret_name(name), self._secret_scope(customer))

    # Usage

    def _usage_secret(self, line_item_name: str) -> str:
        return f"{self.prefix}_usage_remainder:{line_item_name}"

    async def record_usage(
        self,
        customer: Customer,
        line_item_name: str,
        quantity: Any,
        log10_scale: int = 0,
        log2_scale: int = 0,
    ) -> UsageRecordResult:
        """
        Report metered usage for ``line_item_name``.

        Whole units of the new quantity plus the carried remainder are sent to
        Stripe; the rest is stored for the next call.

        Raises:
            InvalidLineItemError: Unknown, non-usage or unsubscribed line item.
            TooFrequentError: Called again before the minimum interval.
        """
        plan, raw_state = await asyncio.gather(
            self.get_current_plan(customer),
            self.get_secret(customer, self._usage_secret(line_item_name)),
        )
        state = UsageState.model_validate(raw_state) if raw_state else UsageState()

        line_item = plan.line_item(line_item_name)
        if line_item is None:
            raise InvalidLineItemError(f'record_usage: Line item "{line_item_name}" could not be found')
        if line_item.type != LineItemType.USAGE:
            raise InvalidLineItemError(
                f'record_usage: Line item "{line_item_name}" is of type "{line_item.type.value}", '
                'but must be of type "usage"'
            )
        if line_item.stripe_data is None:
            raise InvalidLineItemError(f'record_usage: Line item "{line_item_name}" has no matching billing data')
        if line_item.stripe_data.subscription_item is None:
            raise InvalidLineItemError(
                f'record_usage: Line item "{line_item_name}" has no matching subscription data'
            )

        interval_ms = int(self.config.usage_record_interval_seconds * 1000)
        elapsed = self._now() - state.time
        if elapsed < interval_ms:
            raise TooFrequentError(
                f'record_usage: Line item "{line_item_name}" can only be updated every {interval_ms} ms. '
                f"Please try again in {interval_ms - elapsed} ms.",
                retry_after_ms=interval_ms - elapsed,
            )

        new_record = calculate_usage(quantity, log10_scale, log2_scale)
        rollover_record = UsageRecord(units=0, remainder=state.remainder)
        merged_record = add_usage(new_record, rollover_record)

        usage_record = None
        if merged_record.units:
            usage_record = await self.provider.create_usage_record(
                line_item.stripe_data.subscription_item["id"], quantity=merged_record.units
            )
        await self.set_secret(
            customer,
            self._usage_secret(line_item_name),
            UsageState(time=self._now(), remainder=merged_record.remainder).model_dump(by_alias=True),
        )
        logger.info(
            "usage_recorded",
            email=customer.email,
            line_item=line_item_name,
            units=merged_record.units,
            remainder=merged_record.remainder.quantity,
        )
        return UsageRecordResult(
            new_record=new_record,
            rollover_record=rollover_record,
            merged_record=merged_record,
            stripe_data={"usage_record": usage_record},
        )
