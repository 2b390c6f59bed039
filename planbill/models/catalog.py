"""Catalog models: plans, line items and their Stripe linkage.

Every stage of the catalog pipeline (template -> plan-scoped instance ->
Stripe-enriched -> runtime-annotated) produces a new frozen value.
"""

from collections.abc import Sequence
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

CurrencyAmounts = dict[str, int]


class LineItemType(str, Enum):
    """Supported line item kinds."""

    CAPACITY = "capacity"
    USAGE = "usage"
    FLAG = "flag"


class CatalogModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class StripeData(CatalogModel):
    """Snapshots of the Stripe records linked to a plan or line item."""

    product: dict[str, Any] | None = None
    prices: list[dict[str, Any]] = Field(default_factory=list)
    subscription: dict[str, Any] | None = None
    subscription_item: dict[str, Any] | None = Field(default=None, alias="subscriptionItem")

    def price_for(self, currency: str) -> dict[str, Any] | None:
        return next((price for price in self.prices if price.get("currency") == currency), None)


class CapacitySettings(CatalogModel):
    price: CurrencyAmounts | None
    included_count: int = Field(ge=0)


class UsageSettings(CatalogModel):
    price: CurrencyAmounts | None
    units: int = Field(ge=1)
    free_units: int = Field(ge=0)
    unit_name: str


class FlagSettings(CatalogModel):
    value: Any
    display_value: str


class LineItemBase(CatalogModel):
    name: str
    display_name: str
    description: str
    category: str
    # Set when the item is instantiated for a plan
    plan_name: str | None = None
    is_template: bool = True
    stripe_data: StripeData | None = Field(default=None, alias="stripeData")

    @property
    def price(self) -> CurrencyAmounts | None:
        return getattr(self.settings, "price", None)

    @property
    def scope_key(self) -> str:
        """Pricing scope: shared by every plan when templated, else plan-specific."""
        if self.is_template:
            return f"*.{self.name}"
        return f"{self.plan_name}.{self.name}"

    def is_template_of(self, template: "LineItemBase") -> bool:
        return self.name == template.name and self.price == template.price

    def instantiate(self, plan_name: str, overrides: dict[str, Any] | None = None):
        """Build the plan-scoped copy of this template with ``overrides`` merged in."""
        settings = type(self.settings).model_validate(
            {**self.settings.model_dump(), **(overrides or {})}
        )
        instance = self.model_copy(update={"settings": settings, "plan_name": plan_name})
        return instance.model_copy(update={"is_template": instance.is_template_of(self)})


class CapacityLineItem(LineItemBase):
    type: Literal[LineItemType.CAPACITY] = LineItemType.CAPACITY
    settings: CapacitySettings
    # Filled from the live subscription at runtime
    purchased_count: int | None = None


class UsageLineItem(LineItemBase):
    type: Literal[LineItemType.USAGE] = LineItemType.USAGE
    settings: UsageSettings

    def is_template_of(self, template: LineItemBase) -> bool:
        return (
            super().is_template_of(template)
            and self.settings.units == template.settings.units
            and self.settings.free_units == template.settings.free_units
        )


class FlagLineItem(LineItemBase):
    type: Literal[LineItemType.FLAG] = LineItemType.FLAG
    settings: FlagSettings


LineItem = Annotated[
    CapacityLineItem | UsageLineItem | FlagLineItem,
    Field(discriminator="type"),
]

line_item_adapter: TypeAdapter[LineItem] = TypeAdapter(LineItem)
line_items_adapter: TypeAdapter[list[LineItem]] = TypeAdapter(list[LineItem])


class PlanTemplate(CatalogModel):
    """A plan as written in the catalog definitions."""

    name: str
    display_name: str
    account_type: str
    enabled: bool
    visible: bool
    price: CurrencyAmounts | None
    line_items_settings: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Plan(CatalogModel):
    """A synchronized plan with its resolved line items."""

    name: str
    display_name: str
    account_type: str
    enabled: bool
    visible: bool
    price: CurrencyAmounts | None
    line_items: list[LineItem] = Field(default_factory=list, alias="lineItems")
    stripe_data: StripeData = Field(default_factory=StripeData, alias="stripeData")

    @property
    def is_free(self) -> bool:
        return not self.price

    def line_item(self, name: str) -> LineItem | None:
        return next((item for item in self.line_items if item.name == name), None)

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CurrentPlan(Plan):
    """A customer's effective plan, annotated with live billing state."""

    is_billable: bool = False
    is_incomplete: bool = False
    is_past_due: bool = False
    invoice_url: str | None = None


plans_adapter: TypeAdapter[list[Plan]] = TypeAdapter(list[Plan])


def free_plan_for(plans: Sequence[Plan], account_type: str | None = None) -> Plan | None:
    """The free plan of ``account_type``, or the first free plan when no type is given."""
    return next(
        (plan for plan in plans if plan.is_free and account_type in (None, plan.account_type)),
        None,
    )
