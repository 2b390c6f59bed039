"""payments.payment_methods: add, list and manage payment methods."""

from typing import Any

from planbill.resources.base import Resource


class PaymentMethods(Resource):
    async def create(self, email: str, success_url: str | None, cancel_url: str | None) -> dict[str, Any]:
        """Start a hosted checkout session that adds a payment method."""
        customer = await self._customer(email)
        session = await customer.create_payment_method_session(success_url, cancel_url)
        return {"stripe_publish_key": self.publishable_key, **session}

    async def remove(self, email: str, payment_method_id: str) -> list[dict[str, Any]]:
        """Detach a payment method and return the remaining ones."""
        customer = await self._customer(email)
        return await customer.remove_payment_method(payment_method_id, sanitize=True)

    async def set_default(self, email: str, payment_method_id: str) -> dict[str, Any]:
        customer = await self._customer(email)
        return await customer.set_default_payment_method(payment_method_id, sanitize=True)

    async def list(self, email: str) -> list[dict[str, Any]]:
        customer = await self._customer(email)
        return await customer.list_payment_methods(sanitize=True)
