"""Unit tests for the catalog synchronizer, run against the in-memory Stripe fake."""

from decimal import Decimal

import pytest

from planbill.errors import AmbiguousRemoteStateError, CatalogValidationError
from planbill.models.catalog import line_item_adapter
from planbill.services.catalog_sync import (
    SyncCache,
    bootstrap_catalog,
    build_price_data,
    format_unit_amount,
    matches_tags,
    metadata_tags,
    price_differs,
    select_unique,
)
from tests.fakes import FakeStripe, catalog_records


def _plan(plans, name):
    return next(plan for plan in plans if plan.name == name)


class TestMetadataTags:
    def test_product_tags(self):
        assert metadata_tags("planbill", "plan", "free_plan") == {
            "planbill": "true",
            "planbill_product_type": "plan",
            "planbill_name": "free_plan",
        }

    def test_price_tags_carry_owning_plan(self):
        tags = metadata_tags("acme", "line_item", "projects", line_item_plan="*")

        assert tags["acme_line_item_plan"] == "*"

    def test_matching_requires_every_tag(self):
        tags = metadata_tags("planbill", "plan", "free_plan")

        assert matches_tags({"metadata": {**tags, "extra": "1"}}, tags)
        assert not matches_tags({"metadata": {**tags, "planbill_name": "other"}}, tags)
        assert not matches_tags({"metadata": None}, tags)

    def test_select_unique_rejects_duplicates(self):
        tags = metadata_tags("planbill", "plan", "free_plan")
        records = [{"id": "prod_1", "metadata": tags}, {"id": "prod_2", "metadata": tags}]

        with pytest.raises(AmbiguousRemoteStateError) as exc_info:
            select_unique(records, tags, "free_plan")

        assert exc_info.value.message == 'Duplicate products (x2) found for "free_plan"'
        assert exc_info.value.details["ids"] == ["prod_1", "prod_2"]

    def test_select_unique_returns_none_when_absent(self):
        assert select_unique([], metadata_tags("planbill", "plan", "free_plan"), "free_plan") is None


class TestPriceData:
    @pytest.mark.parametrize(
        "amount, expected",
        [
            (0, "0"),
            (500, "500"),
            (Decimal(500) / Decimal(1000), "0.5"),
            (Decimal(50) / Decimal(3), "16.666666666667"),
            ("0.000000000004000", "0.000000000004"),
            ("0.0000000000004", "0"),
        ],
    )
    def test_format_unit_amount(self, amount, expected):
        assert format_unit_amount(amount) == expected

    def test_licensed_price(self):
        data = build_price_data("prod_1", "usd", 1900, "standard_plan", {"planbill": "true"})

        assert data == {
            "product": "prod_1",
            "currency": "usd",
            "nickname": "standard_plan",
            "metadata": {"planbill": "true"},
            "unit_amount_decimal": "1900",
            "billing_scheme": "per_unit",
            "recurring": {"interval": "month", "usage_type": "licensed"},
        }

    def test_metered_price_with_free_tier(self, line_item_definitions):
        execution_time = line_item_adapter.validate_python(line_item_definitions[0])

        data = build_price_data("prod_1", "usd", 500, execution_time.scope_key, {}, execution_time)

        assert data["nickname"] == "*.execution_time"
        assert data["billing_scheme"] == "tiered"
        assert data["tiers_mode"] == "graduated"
        assert data["recurring"] == {"interval": "month", "usage_type": "metered"}
        assert data["tiers"] == [
            {"unit_amount_decimal": "0", "up_to": 100},
            {"unit_amount_decimal": "0.5", "up_to": "inf"},
        ]
        assert "unit_amount_decimal" not in data

    def test_remote_price_matches_equivalent_target(self, line_item_definitions):
        execution_time = line_item_adapter.validate_python(line_item_definitions[0])
        target = build_price_data("prod_1", "usd", 500, "*.execution_time", {}, execution_time)
        remote = {
            **target,
            "unit_amount_decimal": None,
            "tiers": [
                {"unit_amount": 0, "unit_amount_decimal": "0.000000000000", "up_to": 100},
                {"unit_amount": None, "unit_amount_decimal": "0.500000000000", "up_to": None},
            ],
        }

        assert not price_differs(remote, target)

    @pytest.mark.parametrize(
        "change",
        [
            {"unit_amount_decimal": "2000"},
            {"currency": "eur"},
            {"recurring": {"interval": "year", "usage_type": "licensed"}},
            {"billing_scheme": "tiered"},
        ],
    )
    def test_remote_price_differs(self, change):
        target = build_price_data("prod_1", "usd", 1900, "standard_plan", {})

        assert price_differs({**target, **change}, target)


class TestSynchronizeCatalog:
    async def test_creates_products_and_prices(self, fake_stripe, plan_definitions, line_item_definitions):
        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        # 4 plans + 6 billable line items; flags have no product
        assert len(fake_stripe.products) == 10
        # 4 plan prices, 6 shared line item prices, 2 plan-specific ones per paid plan
        assert len(fake_stripe.prices) == 14
        assert [plan.name for plan in plans] == ["free_plan", "standard_plan", "business_plan", "legacy_plan"]

    async def test_plans_carry_stripe_records(self, synced_plans):
        standard = _plan(synced_plans, "standard_plan")

        assert standard.stripe_data.product["name"] == "Plan: Standard"
        assert standard.stripe_data.price_for("usd")["unit_amount_decimal"] == "1900"
        assert _plan(synced_plans, "free_plan").stripe_data.price_for("usd")["unit_amount_decimal"] == "0"

    async def test_line_item_price_scopes(self, synced_plans):
        free = _plan(synced_plans, "free_plan")
        standard = _plan(synced_plans, "standard_plan")

        shared = free.line_item("collaborator_seats")
        scoped = standard.line_item("collaborator_seats")

        assert shared.is_template
        assert shared.stripe_data.prices[0]["nickname"] == "*.collaborator_seats"
        assert shared.stripe_data.prices[0]["metadata"]["planbill_line_item_plan"] == "*"
        assert not scoped.is_template
        assert scoped.stripe_data.prices[0]["nickname"] == "standard_plan.collaborator_seats"
        assert scoped.stripe_data.prices[0]["metadata"]["planbill_line_item_plan"] == "standard_plan"
        assert shared.stripe_data.product["id"] == scoped.stripe_data.product["id"]

    async def test_free_line_items_have_no_prices(self, synced_plans):
        projects = _plan(synced_plans, "standard_plan").line_item("projects")

        assert projects.price is None
        assert projects.stripe_data.prices == []

    async def test_flags_have_no_stripe_data(self, synced_plans):
        assert _plan(synced_plans, "business_plan").line_item("support").stripe_data is None

    async def test_shared_prices_are_resolved_once_per_run(self, fake_stripe, plan_definitions, line_item_definitions):
        cache = SyncCache()

        await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions, cache=cache)

        assert cache.get("prices", "*.projects:usd") is not None
        assert fake_stripe.count("create_price") == 14

    async def test_second_run_is_idempotent(self, fake_stripe, plan_definitions, line_item_definitions):
        first = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        before = catalog_records(fake_stripe)
        fake_stripe.calls.clear()

        second = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        assert catalog_records(fake_stripe) == before
        assert fake_stripe.count("create_product") == 0
        assert fake_stripe.count("create_price") == 0
        assert fake_stripe.count("update_product") == 0
        assert fake_stripe.count("update_price") == 0
        assert [plan.to_cache() for plan in second] == [plan.to_cache() for plan in first]

    async def test_follows_pagination(self, plan_definitions, line_item_definitions):
        fake = FakeStripe(page_size=2)
        await bootstrap_catalog(fake, plan_definitions, line_item_definitions)
        before = catalog_records(fake)

        await bootstrap_catalog(fake, plan_definitions, line_item_definitions)

        assert catalog_records(fake) == before

    async def test_changed_price_is_replaced(self, fake_stripe, plan_definitions, line_item_definitions):
        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        old_price = _plan(plans, "standard_plan").stripe_data.price_for("usd")
        plan_definitions[1]["price"] = {"usd": 2900}

        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        new_price = _plan(plans, "standard_plan").stripe_data.price_for("usd")
        assert new_price["id"] != old_price["id"]
        assert new_price["unit_amount_decimal"] == "2900"
        assert next(p for p in fake_stripe.prices if p["id"] == old_price["id"])["active"] is False

    async def test_renamed_plan_updates_product(self, fake_stripe, plan_definitions, line_item_definitions):
        await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        plan_definitions[1]["display_name"] = "Standard Plus"
        fake_stripe.calls.clear()

        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        assert fake_stripe.count("update_product") == 1
        assert fake_stripe.count("create_product") == 0
        assert _plan(plans, "standard_plan").stripe_data.product["name"] == "Plan: Standard Plus"

    async def test_duplicate_products_are_fatal(self, fake_stripe, plan_definitions, line_item_definitions):
        await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        original = next(p for p in fake_stripe.products if p["name"] == "Plan: Standard")
        fake_stripe.products.append({**original, "id": "prod_copy"})

        with pytest.raises(AmbiguousRemoteStateError, match='Duplicate products \\(x2\\) found for "standard_plan"'):
            await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

    async def test_duplicate_prices_are_deactivated(self, fake_stripe, plan_definitions, line_item_definitions):
        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        original = _plan(plans, "standard_plan").stripe_data.price_for("usd")
        fake_stripe.prices.append({**original, "id": "price_copy"})

        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        assert _plan(plans, "standard_plan").stripe_data.price_for("usd")["id"] == original["id"]
        assert next(p for p in fake_stripe.prices if p["id"] == "price_copy")["active"] is False

    async def test_failed_duplicate_cleanup_does_not_abort(self, fake_stripe, plan_definitions, line_item_definitions):
        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)
        original = _plan(plans, "standard_plan").stripe_data.price_for("usd")
        fake_stripe.prices.append({**original, "id": "price_copy"})
        fake_stripe.failing_price_updates.add("price_copy")

        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        assert _plan(plans, "standard_plan").stripe_data.price_for("usd")["id"] == original["id"]
        assert next(p for p in fake_stripe.prices if p["id"] == "price_copy")["active"] is True

    async def test_custom_prefix(self, fake_stripe, plan_definitions, line_item_definitions):
        plans = await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions, prefix="acme")

        metadata = _plan(plans, "free_plan").stripe_data.product["metadata"]
        assert metadata == {"acme": "true", "acme_product_type": "plan", "acme_name": "free_plan"}

    async def test_invalid_definitions_make_no_remote_calls(self, fake_stripe, plan_definitions, line_item_definitions):
        plan_definitions[0]["price"] = {"usd": -1}

        with pytest.raises(CatalogValidationError):
            await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)

        assert fake_stripe.calls == []
