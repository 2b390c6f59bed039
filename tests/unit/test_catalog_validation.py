"""Unit tests for catalog definition validation."""

import json

import pytest

from planbill.catalog.loader import load_catalog, read_definitions
from planbill.catalog.rules import LINE_ITEM_RULES, PLAN_RULES, is_price, validate_settings
from planbill.catalog.schema import FieldRule, validate_records
from planbill.errors import CatalogValidationError
from planbill.models.catalog import CapacityLineItem, FlagLineItem, UsageLineItem

POSITIVE = FieldRule(message="Must be positive", validate=lambda value, *_: value > 0)
ANY_NAME = FieldRule(message="Must be provided", validate=lambda *_: True)


def _explode(*_):
    raise ValueError("boom")


class TestValidateRecords:
    def test_valid_records_pass(self):
        assert validate_records("Widgets", [{"size": 1}, {"size": 2}], {"size": POSITIVE}) is True

    def test_key_error_names_record_and_rule_message(self):
        with pytest.raises(CatalogValidationError) as exc_info:
            validate_records("Widgets", [{"name": "bolt", "size": -1}], {"name": ANY_NAME, "size": POSITIVE})

        message = exc_info.value.message
        assert 'Error in Widgets "bolt"' in message
        assert "key_errors:" in message
        assert "size: Must be positive" in message
        assert exc_info.value.details["key_errors"] == {"size": "Must be positive"}

    def test_unknown_and_missing_keys(self):
        with pytest.raises(CatalogValidationError) as exc_info:
            validate_records("Widgets", [{"colour": "red"}], {"size": POSITIVE})

        assert exc_info.value.details == {"invalid_keys": ["colour"], "missing_keys": ["size"]}

    def test_missing_keys_allowed_when_not_required(self):
        assert validate_records("Widgets", [{}], {"size": POSITIVE}, all_fields_required=False) is True

    def test_returns_false_instead_of_raising(self):
        assert validate_records("Widgets", [{"size": 0}], {"size": POSITIVE}, raise_errors=False) is False

    def test_rule_exceptions_become_key_errors(self):
        exploding = FieldRule(message="unused", validate=_explode)

        with pytest.raises(CatalogValidationError) as exc_info:
            validate_records("Widgets", [{"size": 1}], {"size": exploding})

        assert exc_info.value.details["key_errors"] == {"size": "boom"}

    @pytest.mark.parametrize(
        "item_name, records, rules",
        [
            ("", [{}], {"size": POSITIVE}),
            ("Widgets", [], {"size": POSITIVE}),
            ("Widgets", "not a list", {"size": POSITIVE}),
            ("Widgets", [{}], {}),
            ("Widgets", [{}], {"size": FieldRule(message="", validate=lambda *_: True)}),
        ],
    )
    def test_malformed_calls_raise_value_error(self, item_name, records, rules):
        with pytest.raises(ValueError):
            validate_records(item_name, records, rules)

    def test_non_object_record(self):
        with pytest.raises(CatalogValidationError, match="every entry must be an object"):
            validate_records("Widgets", ["size"], {"size": POSITIVE})


class TestRules:
    @pytest.mark.parametrize("value", [None, {"usd": 0}, {"usd": 500, "eur": 450}])
    def test_valid_prices(self, value):
        assert is_price(value)

    @pytest.mark.parametrize("value", [{}, {"gbp": 100}, {"usd": -1}, {"usd": 1.5}, {"usd": True}, 100])
    def test_invalid_prices(self, value):
        assert not is_price(value)

    def test_line_item_definitions_pass(self, line_item_definitions):
        assert validate_records("LineItems", line_item_definitions, LINE_ITEM_RULES)

    def test_usage_settings_require_positive_units(self, line_item_definitions):
        execution_time = line_item_definitions[0]

        assert not validate_settings({**execution_time["settings"], "units": 0}, execution_time, raise_errors=False)

    def test_empty_settings_override_is_allowed_for_plans(self, line_item_definitions):
        assert validate_settings({}, line_item_definitions[0], all_fields_required=False)

    def test_settings_for_unknown_type(self):
        with pytest.raises(CatalogValidationError, match="No settings rules"):
            validate_settings({}, {"type": "bundle"})

    def test_plan_referencing_unknown_line_item(self, plan_definitions, line_item_definitions):
        plan = {**plan_definitions[0], "line_items_settings": {"gpu_hours": {}}}

        with pytest.raises(CatalogValidationError) as exc_info:
            validate_records("Plan", [plan], PLAN_RULES, {"line_items": line_item_definitions})

        assert exc_info.value.details["key_errors"]["line_items_settings"] == 'Could not find Line Item "gpu_hours"'

    def test_plan_with_bad_override(self, plan_definitions, line_item_definitions):
        plan = {**plan_definitions[0], "line_items_settings": {"projects": {"included_count": -2}}}

        with pytest.raises(CatalogValidationError) as exc_info:
            validate_records("Plan", [plan], PLAN_RULES, {"line_items": line_item_definitions})

        assert exc_info.value.details["key_errors"]["line_items_settings"].startswith(
            'Error in Line Item Settings "projects"'
        )

    def test_plan_names_must_start_with_a_letter(self, plan_definitions, line_item_definitions):
        plan = {**plan_definitions[0], "name": "1st_plan"}

        assert not validate_records(
            "Plan", [plan], PLAN_RULES, {"line_items": line_item_definitions}, raise_errors=False
        )


class TestLoadCatalog:
    def test_builds_typed_templates(self, plan_definitions, line_item_definitions):
        plans, line_items = load_catalog(plan_definitions, line_item_definitions)

        assert [plan.name for plan in plans] == ["free_plan", "standard_plan", "business_plan", "legacy_plan"]
        assert isinstance(line_items[0], UsageLineItem)
        assert isinstance(line_items[1], FlagLineItem)
        assert isinstance(line_items[2], CapacityLineItem)
        assert plans[1].line_items_settings["collaborator_seats"] == {"price": {"usd": 5000}, "included_count": 2}

    def test_reads_json_files(self, tmp_path, plan_definitions, line_item_definitions):
        plans_path = tmp_path / "plans.json"
        line_items_path = tmp_path / "line_items.json"
        plans_path.write_text(json.dumps(plan_definitions))
        line_items_path.write_text(json.dumps(line_item_definitions))

        plans, line_items = load_catalog(plans_path, str(line_items_path))

        assert len(plans) == 4
        assert len(line_items) == 10

    def test_duplicate_line_item_names(self, plan_definitions, line_item_definitions):
        line_item_definitions.append(dict(line_item_definitions[-1]))

        with pytest.raises(CatalogValidationError, match='Duplicate line item names: "support"'):
            load_catalog(plan_definitions, line_item_definitions)

    def test_duplicate_plan_names(self, plan_definitions, line_item_definitions):
        plan_definitions.append({**plan_definitions[1]})

        with pytest.raises(CatalogValidationError, match='Duplicate plan names: "standard_plan"'):
            load_catalog(plan_definitions, line_item_definitions)

    def test_requires_one_free_plan_per_account_type(self, plan_definitions, line_item_definitions):
        plan_definitions.append({**plan_definitions[0], "name": "other_free_plan"})
        plan_definitions.append({**plan_definitions[1], "name": "team_plan", "account_type": "organization"})

        with pytest.raises(CatalogValidationError) as exc_info:
            load_catalog(plan_definitions, line_item_definitions)

        assert exc_info.value.details["free_plans"] == {
            "user": ["free_plan", "other_free_plan"],
            "organization": [],
        }

    def test_invalid_line_item_stops_before_plans(self, plan_definitions, line_item_definitions):
        line_item_definitions[0]["type"] = "metered"

        with pytest.raises(CatalogValidationError, match='Error in LineItems "execution_time"'):
            load_catalog(plan_definitions, line_item_definitions)


class TestReadDefinitions:
    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogValidationError, match="does not exist"):
            read_definitions(tmp_path / "plans.json", "plans")

    def test_directory(self, tmp_path):
        with pytest.raises(CatalogValidationError, match="is a directory"):
            read_definitions(tmp_path, "plans")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text("{not json")

        with pytest.raises(CatalogValidationError, match="Invalid JSON"):
            read_definitions(path, "plans")

    def test_must_be_a_list(self):
        with pytest.raises(CatalogValidationError, match="must be a list"):
            read_definitions({"name": "free_plan"}, "plans")
