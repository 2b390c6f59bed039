"""
planbill command line.

Usage:
    planbill bootstrap <environment>

Reads ``.env`` for the development environment and ``.env.<environment>``
otherwise, synchronizes the catalog definitions with Stripe and writes the
result to the plan cache under that environment name.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from planbill.config import Settings
from planbill.errors import BillingError
from planbill.logging_config import setup_logging
from planbill.payments import Payments

logger = structlog.get_logger(__name__)


def env_file_for(environment: str) -> Path:
    return Path(".env" if environment == "development" else f".env.{environment}")


def load_environment_settings(environment: str) -> Settings:
    """Settings for ``environment`` read from its env file."""
    env_file = env_file_for(environment)
    if not env_file.exists():
        raise BillingError(f'Missing env file "{env_file}" for environment "{environment}"')
    if env_file.is_dir():
        raise BillingError(f'Env file "{env_file}" for environment "{environment}" is invalid: is a directory')

    settings = Settings(_env_file=env_file, environment=environment)
    if not settings.stripe_secret_key:
        raise BillingError(f'Missing "STRIPE_SECRET_KEY" in "{env_file}" for environment "{environment}"')
    if not settings.stripe_publishable_key:
        raise BillingError(f'Missing "STRIPE_PUBLISHABLE_KEY" in "{env_file}" for environment "{environment}"')
    return settings


async def bootstrap(environment: str) -> Path:
    settings = load_environment_settings(environment)
    cache_path = settings.catalog.cache_path
    logger.info("bootstrap_started", environment=environment, cache_path=cache_path)
    plans = await Payments.bootstrap(
        settings.stripe_secret_key,
        settings.catalog.plans_path,
        settings.catalog.line_items_path,
        prefix=settings.billing.metadata_prefix,
        stripe_config=settings.stripe_config(),
    )
    path = Payments.write_cache(cache_path, environment, plans)
    logger.info("bootstrap_completed", environment=environment, cache_path=str(path), plans=len(plans))
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planbill", description="Subscription billing tools")
    commands = parser.add_subparsers(dest="command", required=True)
    bootstrap_parser = commands.add_parser("bootstrap", help="Synchronize plans with Stripe and write the plan cache")
    bootstrap_parser.add_argument("environment", help='Environment name, e.g. "development" or "production"')
    parser.add_argument("--debug", action="store_true", help="Human readable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, stream=sys.stderr)

    try:
        path = asyncio.run(bootstrap(args.environment))
    except BillingError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(f'Success! Wrote Stripe plans for environment "{args.environment}" to "{path}"')
    return 0


if __name__ == "__main__":
    sys.exit(main())
