"""payments.usage_records"""

from typing import Any

from planbill.models.billing import UsageRecordResult
from planbill.resources.base import Resource


class UsageRecords(Resource):
    async def create(
        self,
        email: str,
        line_item_name: str,
        quantity: Any,
        log10_scale: int = 0,
        log2_scale: int = 0,
    ) -> UsageRecordResult:
        """Record ``quantity * 10^log10_scale * 2^log2_scale`` units of usage."""
        customer = await self._customer(email)
        return await self.manager.record_usage(customer, line_item_name, quantity, log10_scale, log2_scale)
