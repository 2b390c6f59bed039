"""Persisted synchronized catalog, one entry per environment."""

import json
from collections.abc import Sequence
from pathlib import Path

import structlog

from planbill.errors import CatalogValidationError
from planbill.models.catalog import Plan, plans_adapter

logger = structlog.get_logger(__name__)


def _read_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as e:
        raise CatalogValidationError(f'Invalid plan cache in "{path}": {e}') from e
    if not isinstance(data, dict):
        raise CatalogValidationError(f'Invalid plan cache in "{path}": expected an object of environments')
    return data


def write_cache(path: str | Path, environment: str, plans: Sequence[Plan]) -> Path:
    """Store ``plans`` under ``environment``, keeping the other environments."""
    if not environment:
        raise ValueError("Cache environment name is required")
    path = Path(path).expanduser()
    data = _read_file(path)
    data[environment] = [plan.to_cache() for plan in plans]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("plan_cache_written", path=str(path), environment=environment, plans=len(plans))
    return path


def read_cache(path: str | Path, environment: str) -> list[Plan]:
    """Load the synchronized plans stored for ``environment``."""
    path = Path(path).expanduser()
    if not path.exists():
        raise CatalogValidationError(f'No plan cache found at "{path}"')
    data = _read_file(path)
    if environment not in data:
        raise CatalogValidationError(
            f'No cached plans for environment "{environment}" in "{path}"',
            details={"environments": sorted(data)},
        )
    return plans_adapter.validate_python(data[environment])
