"""payments.plans: available plans and the customer's current plan."""

from typing import Any

from planbill.models.billing import BillingStatus
from planbill.resources.base import Resource


class Plans(Resource):
    async def list(self) -> list[dict[str, Any]]:
        return [plan.to_cache() for plan in self.manager.plans]

    async def current(self, email: str) -> dict[str, Any]:
        customer = await self._customer(email)
        plan = await self.manager.get_current_plan(customer)
        return {
            "currentPlan": plan.model_dump(mode="json", by_alias=True),
            "plans": await self.list(),
        }

    async def billing_status(self, email: str) -> dict[str, Any]:
        """Billable summary of the customer's subscription."""
        customer = await self._customer(email)
        subscription = await customer.get_subscription()
        status = BillingStatus(
            is_billable=subscription is not None,
            is_incomplete=bool(subscription) and subscription.get("status") == "incomplete",
            is_past_due=bool(subscription) and subscription.get("status") == "past_due",
        )
        if status.is_incomplete or status.is_past_due:
            invoice = await customer.get_latest_invoice(subscription)
            status.invoice_url = invoice.get("hosted_invoice_url") if invoice else None
        return {"currentPlan": status.model_dump()}
