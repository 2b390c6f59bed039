"""
Subscription reconciliation rules.

Pure functions that turn a customer's current plan and a requested plan
(plus optional line item counts) into the subscription items to send to
Stripe, enforcing the billing rules along the way. Nothing here talks to
Stripe; ``BillingManager.subscribe_customer`` drives these steps.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from planbill.errors import (
    InvalidLineItemError,
    InvalidPlanError,
    MissingRequiredLineItemsError,
    OverLimitOnDowngradeError,
    RedundantSubscribeRequestError,
)
from planbill.models.catalog import CurrentPlan, LineItem, LineItemType, Plan

LimitErrors = dict[str, dict[str, Any]]


@dataclass
class SubscriptionChange:
    """Items for a single subscription create/update call."""

    add_items: list[dict[str, Any]] = field(default_factory=list)
    remove_items: list[dict[str, Any]] = field(default_factory=list)
    limit_errors: LimitErrors = field(default_factory=dict)

    @property
    def items(self) -> list[dict[str, Any]]:
        return self.add_items + self.remove_items


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def unsubscribe_counts(free_plan: Plan) -> dict[str, int]:
    """Every capacity line item of the free plan reset to zero."""
    return {item.name: 0 for item in free_plan.line_items if item.type == LineItemType.CAPACITY}


def validate_line_item_counts(
    plan: Plan, line_item_counts: Mapping[str, Any], max_count: int = 1000
) -> dict[str, int]:
    """
    Check requested capacity counts against ``plan``.

    Raises:
        InvalidLineItemError: Unknown or non-capacity item, bad count, or a
            non-zero count for a free item.
        MissingRequiredLineItemsError: A priced capacity item has no count.
    """
    counts: dict[str, int] = {}
    for name, count in line_item_counts.items():
        line_item = plan.line_item(name)
        if line_item is None:
            raise InvalidLineItemError(f'line_item_counts: Invalid line item "{name}"')
        if line_item.type != LineItemType.CAPACITY:
            raise InvalidLineItemError(
                f'line_item_counts: Line item "{name}" invalid type "{line_item.type.value}" to supply count for'
            )
        if not _is_number(count):
            raise InvalidLineItemError(f'line_item_counts: Line item "{name}" count must be a number')
        if not float(count).is_integer():
            raise InvalidLineItemError(f'line_item_counts: Line item "{name}" count must be an integer')
        if count < 0 or count > max_count:
            raise InvalidLineItemError(
                f'line_item_counts: Line item "{name}" count must be between 0 and {max_count}'
            )
        if not line_item.price and count > 0:
            raise InvalidLineItemError(f'line_item_counts: Line item "{name}" is free, should not supply count')
        counts[name] = int(count)
    return counts


def missing_required_line_items(plan: Plan, line_item_counts: Mapping[str, Any]) -> list[str]:
    return [
        item.name
        for item in plan.line_items
        if item.type == LineItemType.CAPACITY and item.price and item.name not in line_item_counts
    ]


def check_required_line_items(plan: Plan, line_item_counts: Mapping[str, Any], email: str) -> None:
    missing = missing_required_line_items(plan, line_item_counts)
    if missing:
        raise MissingRequiredLineItemsError(
            f'line_item_counts: Customer "{email}" must provide line items "{", ".join(missing)}"',
            missing=missing,
        )


def check_redundant_request(
    current_plan: CurrentPlan,
    plan_name: str | None,
    line_item_counts: Mapping[str, int] | None,
    email: str,
) -> None:
    """Reject re-subscribing to the plan and counts the customer already has."""
    if current_plan.stripe_data.subscription is None or plan_name != current_plan.name:
        return
    if line_item_counts is None:
        raise RedundantSubscribeRequestError(f'Customer "{email}" is already subscribed to "{plan_name}"')
    changed = [
        name
        for name, count in line_item_counts.items()
        if count != getattr(current_plan.line_item(name), "purchased_count", None)
    ]
    if not changed:
        raise RedundantSubscribeRequestError(
            f'line_item_counts: Customer "{email}" is already subscribed to "{plan_name}" with those line items'
        )


def check_existing_counts(plan: Plan, existing_line_item_counts: Mapping[str, Any]) -> LimitErrors:
    """
    Validate consumed resource counts and collect flag limit violations.

    Capacity limits depend on the purchased quantity and are collected later.
    """
    errors: LimitErrors = {}
    for name, existing in existing_line_item_counts.items():
        line_item = plan.line_item(name)
        if line_item is None:
            raise InvalidLineItemError(f'existing_line_item_counts: Invalid line item "{name}"')
        if line_item.type == LineItemType.FLAG:
            allowed = line_item.settings.value
            if _is_number(allowed):
                if not _is_number(existing):
                    raise InvalidLineItemError(
                        f'existing_line_item_counts: Line item "{name}" (flag) expects a number'
                    )
                if existing > allowed:
                    errors[name] = {"expected": allowed, "actual": existing}
            elif existing != allowed:
                errors[name] = {"expected": allowed, "actual": existing}
        elif line_item.type == LineItemType.CAPACITY:
            if not _is_number(existing):
                raise InvalidLineItemError(
                    f'existing_line_item_counts: Line item "{name}" (capacity) expects a number'
                )
        else:
            raise InvalidLineItemError(
                f'existing_line_item_counts: Can not provide value for line item "{name}", '
                'must be type "capacity" or "flag"'
            )
    return errors


def included_count_errors(plan: Plan, existing_line_item_counts: Mapping[str, Any]) -> LimitErrors:
    """Capacity counts above what ``plan`` includes for free."""
    errors: LimitErrors = {}
    for line_item in plan.line_items:
        if line_item.type != LineItemType.CAPACITY or line_item.name not in existing_line_item_counts:
            continue
        existing = existing_line_item_counts[line_item.name]
        if existing > line_item.settings.included_count:
            errors[line_item.name] = {"expected": line_item.settings.included_count, "actual": existing}
    return errors


def is_downgrade(current_plan: Plan, plan: Plan, currency: str = "usd") -> bool:
    """True for downgrades and lateral moves; upgrades return False."""
    if not current_plan.price or not plan.price:
        return True
    return current_plan.price.get(currency, 0) >= plan.price.get(currency, 0)


def over_limit_error(plan: Plan, errors: LimitErrors) -> OverLimitOnDowngradeError:
    lines = []
    for name, diff in errors.items():
        verb = "reduced" if _is_number(diff["expected"]) else "modified"
        lines.append(f' - "{name}" must be {verb} from {diff["actual"]} to {diff["expected"]}')
    return OverLimitOnDowngradeError(
        f'existing_line_item_counts: You are over plan "{plan.name}" limits.\n'
        "To change your subscription you must adjust your capacities:\n" + "\n".join(lines),
        details=errors,
    )


def enforce_limits(current_plan: Plan, plan: Plan, errors: LimitErrors, currency: str = "usd") -> None:
    """Raise on limit violations unless the change is an upgrade."""
    if errors and is_downgrade(current_plan, plan, currency):
        raise over_limit_error(plan, errors)


def capacity_quantity(
    line_item: LineItem, current_line_item: LineItem | None, line_item_counts: Mapping[str, int] | None
) -> int:
    """
    Purchased quantity of a capacity item on the new plan.

    Explicit counts win. On a plan switch, extra free capacity granted by the
    new plan absorbs purchased units first; a smaller free allotment leaves
    the purchased quantity unchanged.
    """
    if line_item_counts is not None:
        return line_item_counts[line_item.name]
    if not line_item.price:
        return 0
    quantity = getattr(current_line_item, "purchased_count", None) or 0
    if current_line_item is None:
        return quantity
    delta = line_item.settings.included_count - current_line_item.settings.included_count
    if delta >= 0:
        quantity = max(0, quantity - delta)
    return quantity


def _subscription_item_id(line_item: Any) -> str | None:
    stripe_data = getattr(line_item, "stripe_data", None)
    item = stripe_data.subscription_item if stripe_data else None
    return item.get("id") if item else None


def plan_entry(plan: Plan, current_plan: CurrentPlan, currency: str = "usd") -> dict[str, Any]:
    price = plan.stripe_data.price_for(currency)
    if price is None:
        raise InvalidPlanError(f'No price data found for plan "{plan.name}" + "{currency}" combination')
    entry: dict[str, Any] = {"price": price["id"], "quantity": 1, "metadata": dict(price.get("metadata") or {})}
    subscription_item = current_plan.stripe_data.subscription_item
    if subscription_item:
        entry["id"] = subscription_item["id"]
    return entry


def line_item_entry(
    plan: Plan,
    line_item: LineItem,
    current_line_item: LineItem | None,
    line_item_counts: Mapping[str, int] | None,
    existing_line_item_counts: Mapping[str, Any] | None,
    limit_errors: LimitErrors,
    currency: str = "usd",
) -> dict[str, Any]:
    """Subscription item for one billable line item of the new plan."""
    if line_item.stripe_data is None:
        raise InvalidPlanError(f'Missing core price data for "{plan.name}" + "{line_item.name}"')

    price = line_item.stripe_data.price_for(currency)
    if line_item.price and price is None:
        raise InvalidPlanError(
            f'No price data found for new plan "{plan.name}" + "{line_item.name}" + "{currency}" combination'
        )

    if not line_item.price:
        # Free on the new plan: drop whatever the customer was paying for
        current_price = None
        if current_line_item is not None and current_line_item.stripe_data is not None:
            current_price = current_line_item.stripe_data.price_for(currency)
            if current_price is None and current_line_item.price:
                raise InvalidPlanError(
                    f'No price data found for current plan "{plan.name}" + "{current_line_item.name}" '
                    f'+ "{currency}" combination'
                )
        entry = {
            "price": current_price["id"] if current_price else None,
            "quantity": 0,
            "metadata": dict(current_price.get("metadata") or {}) if current_price else {},
        }
    elif line_item.type == LineItemType.CAPACITY:
        quantity = capacity_quantity(line_item, current_line_item, line_item_counts)
        entry = {"price": price["id"], "quantity": quantity, "metadata": dict(price.get("metadata") or {})}
    else:
        # Metered items carry no quantity
        entry = {"price": price["id"], "metadata": dict(price.get("metadata") or {})}

    if line_item.type == LineItemType.CAPACITY:
        # Consumed capacity must fit the purchased plus included count
        existing = (existing_line_item_counts or {}).get(line_item.name)
        allowed = entry["quantity"] + line_item.settings.included_count
        if existing and existing > allowed:
            limit_errors[line_item.name] = {"expected": allowed, "actual": existing}

    subscription_item_id = _subscription_item_id(current_line_item)
    if subscription_item_id:
        entry["id"] = subscription_item_id
    return entry


def split_items(items: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Separate items to add or update from existing priced items to delete."""
    remove_items = [
        {**item, "deleted": True}
        for item in items
        if item.get("quantity") == 0 and item.get("price") and item.get("id")
    ]
    add_items = [item for item in items if item.get("quantity") != 0]
    return add_items, remove_items


def build_subscription_change(
    plan: Plan,
    current_plan: CurrentPlan,
    line_item_counts: Mapping[str, int] | None,
    existing_line_item_counts: Mapping[str, Any] | None,
    limit_errors: LimitErrors | None = None,
    currency: str = "usd",
) -> SubscriptionChange:
    """Compute the subscription items that move ``current_plan`` to ``plan``."""
    limit_errors = dict(limit_errors or {})
    entries = [plan_entry(plan, current_plan, currency)]
    for line_item in plan.line_items:
        if line_item.type == LineItemType.FLAG:
            continue
        entries.append(
            line_item_entry(
                plan,
                line_item,
                current_plan.line_item(line_item.name),
                line_item_counts,
                existing_line_item_counts,
                limit_errors,
                currency,
            )
        )
    add_items, remove_items = split_items(entries)
    return SubscriptionChange(add_items=add_items, remove_items=remove_items, limit_errors=limit_errors)
