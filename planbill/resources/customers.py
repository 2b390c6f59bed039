"""payments.customers: find customers and manage their subscriptions."""

from collections.abc import Mapping
from typing import Any

from planbill.resources.base import Resource


class Customers(Resource):
    async def find(self, email: str) -> dict[str, Any]:
        """Find or create the customer with ``email``."""
        customer = await self._customer(email)
        return customer.to_dict()

    async def subscribe(
        self,
        email: str,
        plan_name: str,
        line_item_counts: Mapping[str, Any] | None = None,
        existing_line_item_counts: Mapping[str, Any] | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, Any]:
        """
        Subscribe to ``plan_name``.

        ``line_item_counts`` maps capacity line items to *purchased*
        quantities; when omitted they follow the plan change automatically.
        ``existing_line_item_counts`` maps line items to what the customer
        currently consumes and blocks downgrades that would exceed limits.
        """
        customer = await self._customer(email)
        response = await self.manager.subscribe_customer(
            customer, plan_name, line_item_counts, existing_line_item_counts, success_url, cancel_url
        )
        return {"stripe_publish_key": self.publishable_key, **(response or {})}

    async def unsubscribe(self, email: str, existing_line_item_counts: Mapping[str, Any] | None = None) -> bool:
        customer = await self._customer(email)
        await self.manager.unsubscribe_customer(customer, existing_line_item_counts)
        return True
