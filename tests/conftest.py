"""
Shared test fixtures for the planbill test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

from planbill.payments import Payments
from planbill.services.catalog_sync import bootstrap_catalog
from tests.fakes import SERVICE_KEY, FakeStripe

LINE_ITEMS = [
    {
        "name": "execution_time",
        "display_name": "Execution time",
        "description": "Time your functions run for, in GB of RAM multiplied by seconds.",
        "category": "compute",
        "type": "usage",
        "settings": {"price": {"usd": 500}, "unit_name": "GB-s", "units": 1000, "free_units": 100},
    },
    {
        "name": "ai_agent",
        "display_name": "AI Agent",
        "description": "Included messages with the AI assistant.",
        "category": "features",
        "type": "flag",
        "settings": {"value": 5, "display_value": "5 messages per month"},
    },
    {
        "name": "collaborator_seats",
        "display_name": "Team seats",
        "description": "Team members that can collaborate on projects.",
        "category": "team",
        "type": "capacity",
        "settings": {"price": {"usd": 2000}, "included_count": 1},
    },
    {
        "name": "projects",
        "display_name": "Projects",
        "description": "Active projects you can work on at a time.",
        "category": "resources",
        "type": "capacity",
        "settings": {"price": {"usd": 500}, "included_count": 10},
    },
    {
        "name": "environments",
        "display_name": "Environments per project",
        "description": "Development environments per project.",
        "category": "resources",
        "type": "capacity",
        "settings": {"price": {"usd": 500}, "included_count": 1},
    },
    {
        "name": "linked_apps",
        "display_name": "Linked resources per app",
        "description": "Active resources you can link per app.",
        "category": "resources",
        "type": "capacity",
        "settings": {"price": {"usd": 500}, "included_count": 1},
    },
    {
        "name": "hostnames",
        "display_name": "Hostnames",
        "description": "Route domains like api.example.com to your APIs.",
        "category": "resources",
        "type": "capacity",
        "settings": {"price": {"usd": 200}, "included_count": 0},
    },
    {
        "name": "timeout",
        "display_name": "Timeout maximum",
        "description": "Maximum time your endpoints can execute for.",
        "category": "compute",
        "type": "flag",
        "settings": {"value": 30000, "display_value": "30s"},
    },
    {
        "name": "memory",
        "display_name": "Maximum RAM",
        "description": "Maximum RAM available for your endpoint.",
        "category": "compute",
        "type": "flag",
        "settings": {"value": 512, "display_value": "512 MB"},
    },
    {
        "name": "support",
        "display_name": "Support",
        "description": "The level of support you have from the team.",
        "category": "features",
        "type": "flag",
        "settings": {"value": 0, "display_value": "Community support"},
    },
]

PLANS = [
    {
        "name": "free_plan",
        "display_name": "Limited",
        "account_type": "user",
        "enabled": True,
        "visible": True,
        "price": None,
        "line_items_settings": {
            "execution_time": {},
            "collaborator_seats": {"included_count": 2},
            "linked_apps": {"included_count": 1},
            "hostnames": {"included_count": 0},
        },
    },
    {
        "name": "standard_plan",
        "display_name": "Standard",
        "account_type": "user",
        "enabled": True,
        "visible": True,
        "price": {"usd": 1900},
        "line_items_settings": {
            "execution_time": {"price": {"usd": 50}, "units": 1000, "free_units": 0},
            "ai_agent": {"value": 1000000, "display_value": "Unlimited"},
            "collaborator_seats": {"price": {"usd": 5000}, "included_count": 2},
            "projects": {"price": None},
            "environments": {"price": None},
            "linked_apps": {"price": None},
            "hostnames": {"price": None},
            "timeout": {"value": 120000, "display_value": "120s"},
            "memory": {"value": 3096, "display_value": "3 GB"},
        },
    },
    {
        "name": "business_plan",
        "display_name": "Business",
        "account_type": "user",
        "enabled": True,
        "visible": True,
        "price": {"usd": 24900},
        "line_items_settings": {
            "execution_time": {"price": {"usd": 20}, "units": 1000, "free_units": 0},
            "ai_agent": {"value": 1000000, "display_value": "Unlimited"},
            "collaborator_seats": {"price": {"usd": 5000}, "included_count": 5},
            "projects": {"price": None},
            "environments": {"price": None},
            "linked_apps": {"price": None},
            "hostnames": {"price": None},
            "timeout": {"value": 600000, "display_value": "600s"},
            "support": {"value": 2, "display_value": "Dedicated support"},
            "memory": {"value": 10240, "display_value": "10 GB"},
        },
    },
    {
        "name": "legacy_plan",
        "display_name": "Legacy",
        "account_type": "user",
        "enabled": False,
        "visible": False,
        "price": {"usd": 900},
        "line_items_settings": {},
    },
]


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setenv("STRIPE_PUBLISHABLE_KEY", "pk_test_fake")
    monkeypatch.setenv("API_KEY", SERVICE_KEY)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def line_item_definitions() -> list[dict]:
    import copy

    return copy.deepcopy(LINE_ITEMS)


@pytest.fixture
def plan_definitions() -> list[dict]:
    import copy

    return copy.deepcopy(PLANS)


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
async def synced_plans(fake_stripe, plan_definitions, line_item_definitions):
    """Catalog synchronized into the fake Stripe account."""
    return await bootstrap_catalog(fake_stripe, plan_definitions, line_item_definitions)


@pytest.fixture
def clock() -> dict:
    """Mutable epoch-ms clock injected into billing managers."""
    return {"now": 1_700_000_000_000}


@pytest.fixture
def payments(fake_stripe, synced_plans, clock) -> Payments:
    return Payments(
        "sk_test_fake",
        "pk_test_fake",
        synced_plans,
        provider=fake_stripe,
        now_provider=lambda: clock["now"],
    )


@pytest.fixture
def client(payments) -> TestClient:
    """FastAPI TestClient wrapping the main application, wired to the fake Stripe account."""
    # Clear the lru_cache so settings pick up test env vars
    from planbill.config import get_settings

    get_settings.cache_clear()

    from planbill.main import app

    app.state.payments = payments
    app.state.api_key = SERVICE_KEY
    return TestClient(app)
