"""Declarative validation of catalog records against named field rules."""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from planbill.errors import CatalogValidationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FieldRule:
    """A field requirement: ``validate(value, record, extra)`` must return True."""

    message: str
    validate: Callable[[Any, Mapping[str, Any], Mapping[str, Any] | None], bool]


def _format_errors(item_name: str, record: Mapping[str, Any], errors: dict[str, Any]) -> str:
    name = record.get("name")
    lines = [f"Error in {item_name}" + (f' "{name}"' if isinstance(name, str) and name else "")]
    for block, content in errors.items():
        lines.append(f"  {block}:")
        if isinstance(content, dict):
            lines.extend(f"    {key}: {message}" for key, message in content.items())
        else:
            lines.append("    " + ", ".join(f'"{key}"' for key in content))
    return "\n".join(lines)


def validate_records(
    item_name: str,
    records: Sequence[Mapping[str, Any]],
    rules: Mapping[str, FieldRule],
    extra: Mapping[str, Any] | None = None,
    *,
    raise_errors: bool = True,
    all_fields_required: bool = True,
) -> bool:
    """
    Check every record against ``rules``.

    A record fails when a present field does not pass its rule, when it has
    fields no rule knows about, or (with ``all_fields_required``) when a ruled
    field is absent.

    Returns:
        True when all records pass. False when one fails and ``raise_errors``
        is off.

    Raises:
        ValueError: The call itself is malformed.
        CatalogValidationError: A record failed and ``raise_errors`` is on.
    """
    if not item_name or not isinstance(item_name, str):
        raise ValueError('Validation requires a valid "item_name" string')
    if isinstance(records, (str, bytes)) or not isinstance(records, Sequence) or not records:
        raise ValueError('Validation requires a non-empty "records" list')
    if not isinstance(rules, Mapping) or not rules:
        raise ValueError('Validation requires a non-empty "rules" mapping')
    for key, rule in rules.items():
        if not callable(getattr(rule, "validate", None)):
            raise ValueError(f'"rules"."{key}" must have a callable "validate"')
        if not isinstance(getattr(rule, "message", None), str) or not rule.message:
            raise ValueError(f'"rules"."{key}" must have a "message" describing the requirement')

    all_valid = True
    for record in records:
        if not isinstance(record, Mapping):
            raise CatalogValidationError(f"Error in {item_name}: every entry must be an object")

        key_errors: dict[str, str] = {}
        invalid_keys: list[str] = []
        for key, value in record.items():
            rule = rules.get(key)
            if rule is None:
                invalid_keys.append(key)
                continue
            try:
                if not rule.validate(value, record, extra):
                    key_errors[key] = rule.message
            except (CatalogValidationError, ValueError, TypeError) as exc:
                key_errors[key] = str(exc)

        errors: dict[str, Any] = {}
        if key_errors:
            errors["key_errors"] = key_errors
        if invalid_keys:
            errors["invalid_keys"] = invalid_keys
        missing_keys = [key for key in rules if key not in record]
        if all_fields_required and missing_keys:
            errors["missing_keys"] = missing_keys

        if not errors:
            continue

        message = _format_errors(item_name, record, errors)
        logger.error("catalog_record_invalid", item_name=item_name, record=record.get("name"), errors=errors)
        if raise_errors:
            raise CatalogValidationError(message, details=errors)
        all_valid = False

    return all_valid
