"""
Top-level entry point.

    payments = Payments(secret_key, publishable_key, Payments.read_cache(path, "production"))
    await payments.customers.subscribe("ada@example.com", "standard_plan", {...})
"""

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from planbill.config import BillingConfig, StripeConfig
from planbill.errors import CatalogValidationError
from planbill.models.catalog import Plan, plans_adapter
from planbill.resources.customers import Customers
from planbill.resources.invoices import Invoices
from planbill.resources.payment_methods import PaymentMethods
from planbill.resources.plans import Plans
from planbill.resources.usage_records import UsageRecords
from planbill.services import catalog_cache
from planbill.services.billing_manager import BillingManager
from planbill.services.catalog_sync import SyncCache, bootstrap_catalog
from planbill.services.stripe_gateway import BillingProvider, StripeGateway

PlansSource = str | Path | Sequence[Plan | dict[str, Any]]


def _load_plans(plans: PlansSource, environment: str | None) -> list[Plan]:
    if isinstance(plans, (str, Path)):
        path = Path(plans).expanduser()
        if environment is not None:
            return catalog_cache.read_cache(path, environment)
        if not path.exists():
            raise CatalogValidationError(f'Could not find .json file for plans in "{path}": does not exist')
        if path.is_dir():
            raise CatalogValidationError(f'Could not find .json file for plans in "{path}": is a directory')
        try:
            plans = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CatalogValidationError(f'Invalid JSON in "{path}": {e}') from e
    if isinstance(plans, (str, bytes)) or not isinstance(plans, Sequence):
        raise CatalogValidationError("Must provide valid JSON for plans or a valid JSON file path")
    return plans_adapter.validate_python(
        [plan.to_cache() if isinstance(plan, Plan) else plan for plan in plans]
    )


class Payments:
    """Billing surfaces over one synchronized catalog."""

    def __init__(
        self,
        secret_key: str,
        publishable_key: str,
        plans: PlansSource,
        environment: str | None = None,
        *,
        config: BillingConfig | None = None,
        stripe_config: StripeConfig | None = None,
        provider: BillingProvider | None = None,
        now_provider=None,
    ) -> None:
        if not secret_key or not isinstance(secret_key, str):
            raise ValueError("secret_key must be a valid Stripe Secret Key")
        if not publishable_key or not isinstance(publishable_key, str):
            raise ValueError("publishable_key must be a valid Stripe Publishable Key")

        stripe_config = (stripe_config or StripeConfig()).model_copy(
            update={"secret_key": secret_key, "publishable_key": publishable_key}
        )
        self.publishable_key = publishable_key
        self.manager = BillingManager(
            provider or StripeGateway(stripe_config),
            _load_plans(plans, environment),
            config,
            now_provider=now_provider,
        )

        self.customers = Customers(self.manager, publishable_key)
        self.invoices = Invoices(self.manager, publishable_key)
        self.payment_methods = PaymentMethods(self.manager, publishable_key)
        self.plans = Plans(self.manager, publishable_key)
        self.usage_records = UsageRecords(self.manager, publishable_key)

    @classmethod
    async def bootstrap(
        cls,
        secret_key: str,
        plans: Any,
        line_items: Any,
        *,
        prefix: str = "planbill",
        provider: BillingProvider | None = None,
        stripe_config: StripeConfig | None = None,
    ) -> list[Plan]:
        """Validate catalog definitions and synchronize them with Stripe."""
        if provider is None:
            if not secret_key or not isinstance(secret_key, str):
                raise ValueError("secret_key must be a valid Stripe Secret Key")
            provider = StripeGateway((stripe_config or StripeConfig()).model_copy(update={"secret_key": secret_key}))
        return await bootstrap_catalog(provider, plans, line_items, prefix=prefix, cache=SyncCache())

    @classmethod
    def write_cache(cls, path: str | Path, environment: str, plans: Sequence[Plan]) -> Path:
        return catalog_cache.write_cache(path, environment, plans)

    @classmethod
    def read_cache(cls, path: str | Path, environment: str) -> list[Plan]:
        return catalog_cache.read_cache(path, environment)
