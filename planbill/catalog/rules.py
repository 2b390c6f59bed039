"""Field rules for plan and line item definitions."""

import re
from collections.abc import Mapping
from typing import Any

from planbill.catalog.schema import FieldRule, validate_records
from planbill.errors import CatalogValidationError
from planbill.models.catalog import LineItemType

SUPPORTED_CURRENCIES = ("usd", "eur")
NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$", re.IGNORECASE)


def is_non_negative_integer(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return float(value).is_integer() and value >= 0


def is_price(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, Mapping) or not value:
        return False
    return all(
        currency in SUPPORTED_CURRENCIES and is_non_negative_integer(amount)
        for currency, amount in value.items()
    )


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _is_name(value: Any) -> bool:
    return isinstance(value, str) and bool(NAME_PATTERN.match(value))


NAME = FieldRule(
    message="Must be a string, start with a letter, and only contain A-z, 0-9, - and _",
    validate=lambda value, *_: _is_name(value),
)
TEXT = FieldRule(message="Must be a string and be > 0 in length", validate=lambda value, *_: _is_text(value))
STRING = FieldRule(message="Must be a string", validate=lambda value, *_: isinstance(value, str))
BOOLEAN = FieldRule(message="Must be true or false", validate=lambda value, *_: isinstance(value, bool))
ANY = FieldRule(message="Must be provided", validate=lambda *_: True)
NON_NEGATIVE_INTEGER = FieldRule(
    message="Must be a positive integer or 0",
    validate=lambda value, *_: is_non_negative_integer(value),
)
POSITIVE_INTEGER = FieldRule(
    message="Must be a positive integer",
    validate=lambda value, *_: is_non_negative_integer(value) and value > 0,
)
PRICE = FieldRule(
    message=(
        "Must be either `null` or a non-empty object of currency amounts, "
        f'currently only "{", ".join(SUPPORTED_CURRENCIES)}" are supported'
    ),
    validate=lambda value, *_: is_price(value),
)

SETTINGS_RULES: dict[str, dict[str, FieldRule]] = {
    LineItemType.CAPACITY.value: {
        "price": PRICE,
        "included_count": NON_NEGATIVE_INTEGER,
    },
    LineItemType.USAGE.value: {
        "price": PRICE,
        "units": POSITIVE_INTEGER,
        "free_units": NON_NEGATIVE_INTEGER,
        "unit_name": STRING,
    },
    LineItemType.FLAG.value: {
        "value": ANY,
        "display_value": STRING,
    },
}

SETTINGS_MESSAGE = "Must be a valid line item settings object"


def validate_settings(
    settings: Any,
    line_item: Mapping[str, Any],
    *,
    all_fields_required: bool = True,
    raise_errors: bool = True,
) -> bool:
    """Validate ``settings`` against the sub-schema of the parent line item's type."""
    item_type = line_item.get("type")
    rules = SETTINGS_RULES.get(item_type)
    if rules is None:
        raise CatalogValidationError(f'No settings rules for line item type: "{item_type}"')
    if not isinstance(settings, Mapping):
        return False
    if not settings:
        # An empty override keeps the template settings untouched
        return not all_fields_required
    return validate_records(
        f'Line Item Settings (type: "{item_type}")',
        [settings],
        rules,
        raise_errors=raise_errors,
        all_fields_required=all_fields_required,
    )


def _validate_line_items_settings(value: Any, _plan: Mapping[str, Any], extra: Mapping[str, Any] | None) -> bool:
    if not isinstance(value, Mapping):
        return False
    line_items = {item.get("name"): item for item in (extra or {}).get("line_items", [])}
    for name, overrides in value.items():
        line_item = line_items.get(name)
        if line_item is None:
            raise CatalogValidationError(f'Could not find Line Item "{name}"')
        if not validate_settings(overrides, line_item, all_fields_required=False, raise_errors=False):
            raise CatalogValidationError(f'Error in Line Item Settings "{name}": {SETTINGS_MESSAGE}')
    return True


LINE_ITEM_RULES: dict[str, FieldRule] = {
    "name": NAME,
    "category": TEXT,
    "display_name": TEXT,
    "description": TEXT,
    "type": FieldRule(
        message='Must be one of: "capacity", "usage", "flag"',
        validate=lambda value, *_: value in {item_type.value for item_type in LineItemType},
    ),
    "settings": FieldRule(
        message=SETTINGS_MESSAGE,
        validate=lambda value, record, _extra: (
            isinstance(value, Mapping)
            and record.get("type") in SETTINGS_RULES
            and validate_settings(value, record)
        ),
    ),
}

PLAN_RULES: dict[str, FieldRule] = {
    "name": NAME,
    "display_name": TEXT,
    "account_type": TEXT,
    "enabled": BOOLEAN,
    "visible": BOOLEAN,
    "price": PRICE,
    "line_items_settings": FieldRule(
        message="Must be an object of line item settings overrides",
        validate=_validate_line_items_settings,
    ),
}
