"""Loads and validates plan and line item definitions."""

import json
from collections import Counter, defaultdict
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from planbill.catalog.rules import LINE_ITEM_RULES, PLAN_RULES
from planbill.catalog.schema import validate_records
from planbill.errors import CatalogValidationError
from planbill.models.catalog import LineItem, PlanTemplate, line_items_adapter

CatalogSource = str | Path | Sequence[Mapping[str, Any]]


def read_definitions(source: CatalogSource, label: str) -> list[dict[str, Any]]:
    """Return raw definitions from a JSON file path or an in-memory list."""
    if isinstance(source, (str, Path)):
        path = Path(source).expanduser()
        if not path.exists():
            raise CatalogValidationError(f'Could not find .json file for {label} in "{path}": does not exist')
        if path.is_dir():
            raise CatalogValidationError(f'Could not find .json file for {label} in "{path}": is a directory')
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CatalogValidationError(f'Invalid JSON in "{path}": {e}') from e
    else:
        data = source
    if not isinstance(data, list):
        raise CatalogValidationError(f"{label} must be a list of definitions")
    return [dict(entry) if isinstance(entry, Mapping) else entry for entry in data]


def _check_unique_names(item_name: str, records: list[dict[str, Any]]) -> None:
    duplicates = [name for name, count in Counter(r["name"] for r in records).items() if count > 1]
    if duplicates:
        raise CatalogValidationError(
            f'Duplicate {item_name} names: "{", ".join(sorted(duplicates))}"',
            details={"duplicates": sorted(duplicates)},
        )


def _check_free_plans(plans: list[dict[str, Any]]) -> None:
    free_plans: dict[str, list[str]] = defaultdict(list)
    for plan in plans:
        names = free_plans[plan["account_type"]]
        if plan["price"] is None:
            names.append(plan["name"])
    invalid = {account_type: names for account_type, names in free_plans.items() if len(names) != 1}
    if invalid:
        lines = [
            f'  account type "{account_type}" has {len(names)} free plans'
            + (f': "{", ".join(names)}"' if names else "")
            for account_type, names in invalid.items()
        ]
        raise CatalogValidationError(
            "Exactly one plan with `price: null` is required per account type\n" + "\n".join(lines),
            details={"free_plans": invalid},
        )


def load_catalog(
    plans: CatalogSource, line_items: CatalogSource
) -> tuple[list[PlanTemplate], list[LineItem]]:
    """
    Validate raw definitions and build typed templates.

    Raises:
        CatalogValidationError: On any malformed definition.
    """
    raw_line_items = read_definitions(line_items, "line items")
    raw_plans = read_definitions(plans, "plans")

    validate_records("LineItems", raw_line_items, LINE_ITEM_RULES)
    _check_unique_names("line item", raw_line_items)
    validate_records("Plan", raw_plans, PLAN_RULES, {"line_items": raw_line_items})
    _check_unique_names("plan", raw_plans)
    _check_free_plans(raw_plans)

    return (
        [PlanTemplate.model_validate(plan) for plan in raw_plans],
        line_items_adapter.validate_python(raw_line_items),
    )
