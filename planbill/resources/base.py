"""Shared plumbing for the resource façades."""

from planbill.services.billing_manager import BillingManager
from planbill.services.customer import Customer


class Resource:
    def __init__(self, manager: BillingManager, publishable_key: str) -> None:
        self.manager = manager
        self.publishable_key = publishable_key

    async def _customer(self, email: str) -> Customer:
        return await self.manager.find_customer(email)
