"""
Catalog synchronizer.

Finds or creates the Stripe products and prices backing every plan and
billable line item, and returns the plans with their line items resolved
per plan and the Stripe records attached.

Remote records are located by metadata tags written by planbill:
    {<prefix>: "true", <prefix>_product_type: plan|line_item, <prefix>_name: name}
Prices additionally carry ``<prefix>_line_item_plan`` ("*" for prices shared
by every plan that keeps the template settings).
"""

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from planbill.catalog.loader import CatalogSource, load_catalog
from planbill.errors import AmbiguousRemoteStateError
from planbill.models.catalog import (
    LineItem,
    LineItemType,
    Plan,
    PlanTemplate,
    StripeData,
)
from planbill.services.stripe_gateway import BillingProvider, list_all

logger = structlog.get_logger(__name__)

DEFAULT_PLAN_PRICE = {"usd": 0}
AMOUNT_PRECISION = Decimal("1e-12")

PRODUCT_TYPE_PLAN = "plan"
PRODUCT_TYPE_LINE_ITEM = "line_item"


class SyncCache:
    """Results of one synchronization run, keyed by (record_type, unique_name)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], Any] = {}

    def get(self, record_type: str, unique_name: str) -> Any:
        return self._records.get((record_type, unique_name))

    def set(self, record_type: str, unique_name: str, value: Any) -> Any:
        self._records[(record_type, unique_name)] = value
        return value

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def metadata_tags(
    prefix: str, product_type: str, name: str, line_item_plan: str | None = None
) -> dict[str, str]:
    """Deterministic tag set identifying a managed product or price."""
    tags = {
        prefix: "true",
        f"{prefix}_product_type": product_type,
        f"{prefix}_name": name,
    }
    if line_item_plan is not None:
        tags[f"{prefix}_line_item_plan"] = line_item_plan
    return tags


def matches_tags(record: Mapping[str, Any], tags: Mapping[str, str]) -> bool:
    metadata = record.get("metadata") or {}
    return all(metadata.get(key) == value for key, value in tags.items())


def filter_tagged(records: Iterable[Mapping[str, Any]], tags: Mapping[str, str]) -> list[dict]:
    return [dict(record) for record in records if matches_tags(record, tags)]


def select_unique(records: Iterable[Mapping[str, Any]], tags: Mapping[str, str], label: str) -> dict | None:
    """Return the single record carrying ``tags``, None if absent.

    Raises:
        AmbiguousRemoteStateError: More than one record matches.
    """
    matches = filter_tagged(records, tags)
    if len(matches) > 1:
        raise AmbiguousRemoteStateError(
            f'Duplicate products (x{len(matches)}) found for "{label}"',
            details={"name": label, "ids": [record.get("id") for record in matches]},
        )
    return matches[0] if matches else None


def format_unit_amount(amount: Decimal | int | float | str) -> str:
    """Fixed 12-place decimal string with trailing zeros stripped."""
    value = Decimal(str(amount)).quantize(AMOUNT_PRECISION, rounding=ROUND_HALF_UP)
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _normalize_tiers(tiers: Sequence[Mapping[str, Any]] | None) -> list[tuple] | None:
    if not tiers:
        return None
    normalized = []
    for tier in tiers:
        amount = tier.get("unit_amount_decimal")
        if amount is None:
            amount = tier.get("unit_amount")
        up_to = tier.get("up_to")
        normalized.append((_decimal_or_none(amount), None if up_to in (None, "inf") else int(up_to)))
    return normalized


def build_price_data(
    product_id: str,
    currency: str,
    amount: int,
    nickname: str,
    metadata: Mapping[str, str],
    line_item: LineItem | None = None,
) -> dict[str, Any]:
    """Price parameters for a plan or line item in one currency."""
    data: dict[str, Any] = {
        "product": product_id,
        "currency": currency,
        "nickname": nickname,
        "metadata": dict(metadata),
    }
    if line_item is not None and line_item.type == LineItemType.USAGE:
        settings = line_item.settings
        tiers = [
            {
                "unit_amount_decimal": format_unit_amount(Decimal(amount) / Decimal(settings.units)),
                "up_to": "inf",
            }
        ]
        if settings.free_units:
            tiers.insert(0, {"unit_amount_decimal": format_unit_amount(0), "up_to": settings.free_units})
        data.update(
            billing_scheme="tiered",
            tiers_mode="graduated",
            tiers=tiers,
            recurring={"interval": "month", "usage_type": "metered"},
        )
    else:
        data.update(
            unit_amount_decimal=format_unit_amount(amount),
            billing_scheme="per_unit",
            recurring={"interval": "month", "usage_type": "licensed"},
        )
    return data


def price_differs(price: Mapping[str, Any], target: Mapping[str, Any]) -> bool:
    """True when an existing price does not bill the way ``target`` would."""
    recurring = price.get("recurring") or {}
    target_recurring = target.get("recurring") or {}
    return (
        price.get("currency") != target.get("currency")
        or _decimal_or_none(price.get("unit_amount_decimal")) != _decimal_or_none(target.get("unit_amount_decimal"))
        or price.get("billing_scheme") != target.get("billing_scheme")
        or _normalize_tiers(price.get("tiers")) != _normalize_tiers(target.get("tiers"))
        or (price.get("tiers_mode") or None) != (target.get("tiers_mode") or None)
        or recurring.get("interval") != target_recurring.get("interval")
        or recurring.get("usage_type") != target_recurring.get("usage_type")
    )


def resolve_line_items(plan: PlanTemplate, line_items: Sequence[LineItem]) -> list[LineItem]:
    """Instantiate every line item template for ``plan``."""
    return [
        template.instantiate(plan.name, plan.line_items_settings.get(template.name))
        for template in line_items
    ]


# ---------------------------------------------------------------------------
# Remote find-or-create
# ---------------------------------------------------------------------------


async def find_or_create_product(
    provider: BillingProvider,
    cache: SyncCache,
    *,
    name: str,
    display_name: str,
    tags: dict[str, str],
) -> dict:
    log = logger.bind(product=name)
    product = cache.get("products", name)
    if product:
        log.debug("stripe_product_cached")
    else:
        products = await list_all(provider.list_products, active=True)
        product = select_unique(products, tags, name)
        if product:
            log.info("stripe_product_found", product_id=product["id"])

    if product is None:
        log.info("stripe_product_creating")
        product = await provider.create_product(name=display_name, metadata=tags)
    elif product.get("name") != display_name or (product.get("metadata") or {}) != tags:
        log.info("stripe_product_updating", product_id=product["id"])
        product = await provider.update_product(product["id"], name=display_name, metadata=tags)

    return cache.set("products", name, product)


async def _deactivate_duplicates(provider: BillingProvider, prices: list[dict], label: str) -> None:
    logger.error("stripe_duplicate_prices", price=label, count=len(prices) + 1)
    results = await asyncio.gather(
        *(provider.update_price(price["id"], active=False) for price in prices),
        return_exceptions=True,
    )
    for price, result in zip(prices, results):
        if isinstance(result, Exception):
            logger.error("stripe_duplicate_price_cleanup_failed", price=label, price_id=price["id"], error=str(result))
        else:
            logger.info("stripe_duplicate_price_deactivated", price=label, price_id=price["id"])


async def find_or_create_prices(
    provider: BillingProvider,
    cache: SyncCache,
    *,
    product: Mapping[str, Any],
    scope_key: str,
    pricing: Mapping[str, int] | None,
    tags: dict[str, str],
    line_item: LineItem | None = None,
) -> list[dict]:
    """Find or create one price per currency of ``pricing`` under ``scope_key``."""
    prices: list[dict] = []
    for currency, amount in (pricing or {}).items():
        label = f"{scope_key}:{currency}"
        log = logger.bind(price=label)
        price = cache.get("prices", label)
        if price:
            log.debug("stripe_price_cached")
        else:
            listed = await list_all(
                provider.list_prices,
                product=product["id"],
                currency=currency,
                active=True,
                expand=["data.tiers"],
            )
            matches = filter_tagged(listed, tags)
            if len(matches) > 1:
                await _deactivate_duplicates(provider, matches[1:], label)
            price = matches[0] if matches else None
            if price:
                log.info("stripe_price_found", price_id=price["id"])

        target = build_price_data(product["id"], currency, amount, scope_key, tags, line_item)
        if price is None:
            log.info("stripe_price_creating")
            price = await provider.create_price(**target)
        elif price_differs(price, target):
            log.info("stripe_price_replacing", price_id=price["id"])
            await provider.update_price(price["id"], active=False)
            price = await provider.create_price(**target)

        prices.append(cache.set("prices", label, price))
    return prices


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def synchronize_catalog(
    provider: BillingProvider,
    plan_templates: Sequence[PlanTemplate],
    line_item_templates: Sequence[LineItem],
    *,
    prefix: str = "planbill",
    cache: SyncCache | None = None,
) -> list[Plan]:
    """
    Synchronize validated templates with Stripe.

    Products for every plan and every non-flag line item are resolved
    concurrently. Prices are resolved afterwards, one plan at a time.

    Returns:
        Plans with resolved ``line_items`` and ``stripe_data`` attached.

    Raises:
        AmbiguousRemoteStateError: A product is duplicated in Stripe.
    """
    if cache is None:
        cache = SyncCache()
    billable = [item for item in line_item_templates if item.type != LineItemType.FLAG]
    logger.info("catalog_sync_started", plans=len(plan_templates), line_items=len(line_item_templates))

    product_list = await asyncio.gather(
        *(
            find_or_create_product(
                provider,
                cache,
                name=plan.name,
                display_name=f"Plan: {plan.display_name}",
                tags=metadata_tags(prefix, PRODUCT_TYPE_PLAN, plan.name),
            )
            for plan in plan_templates
        ),
        *(
            find_or_create_product(
                provider,
                cache,
                name=item.name,
                display_name=item.display_name,
                tags=metadata_tags(prefix, PRODUCT_TYPE_LINE_ITEM, item.name),
            )
            for item in billable
        ),
    )
    plan_products = dict(zip((plan.name for plan in plan_templates), product_list[: len(plan_templates)]))
    item_products = dict(zip((item.name for item in billable), product_list[len(plan_templates) :]))

    plans: list[Plan] = []
    for template in plan_templates:
        product = plan_products[template.name]
        plan_prices = await find_or_create_prices(
            provider,
            cache,
            product=product,
            scope_key=template.name,
            pricing=template.price or DEFAULT_PLAN_PRICE,
            tags=metadata_tags(prefix, PRODUCT_TYPE_PLAN, template.name),
        )

        line_items: list[LineItem] = []
        for item in resolve_line_items(template, line_item_templates):
            item_product = item_products.get(item.name)
            if item_product is not None:
                item_prices = await find_or_create_prices(
                    provider,
                    cache,
                    product=item_product,
                    scope_key=item.scope_key,
                    pricing=item.price,
                    tags=metadata_tags(
                        prefix,
                        PRODUCT_TYPE_LINE_ITEM,
                        item.name,
                        line_item_plan="*" if item.is_template else template.name,
                    ),
                    line_item=item,
                )
                item = item.model_copy(update={"stripe_data": StripeData(product=item_product, prices=item_prices)})
            line_items.append(item)

        plans.append(
            Plan(
                name=template.name,
                display_name=template.display_name,
                account_type=template.account_type,
                enabled=template.enabled,
                visible=template.visible,
                price=template.price,
                line_items=line_items,
                stripe_data=StripeData(product=product, prices=plan_prices),
            )
        )

    logger.info("catalog_sync_completed", plans=len(plans), cached_records=len(cache))
    return plans


async def bootstrap_catalog(
    provider: BillingProvider,
    plans: CatalogSource,
    line_items: CatalogSource,
    *,
    prefix: str = "planbill",
    cache: SyncCache | None = None,
) -> list[Plan]:
    """Validate raw definitions, then synchronize them. Nothing remote happens on invalid input."""
    plan_templates, line_item_templates = load_catalog(plans, line_items)
    return await synchronize_catalog(
        provider, plan_templates, line_item_templates, prefix=prefix, cache=cache
    )
