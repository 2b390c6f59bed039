"""payments.invoices"""

from typing import Any

from planbill.resources.base import Resource


class Invoices(Resource):
    async def list(self, email: str, count: int = 10) -> list[dict[str, Any]]:
        customer = await self._customer(email)
        return await customer.list_invoices(count)

    async def upcoming(self, email: str) -> dict[str, Any] | None:
        customer = await self._customer(email)
        return await customer.get_upcoming_invoice()
