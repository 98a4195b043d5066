"""Default rate registry loader."""
from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping

from ..errors import InvalidRateTable
from .rates import RateTable, RateTier, VehicleClass

__all__ = [
    "default_rate_table",
    "default_rates_for",
]

_DEFAULT_REGISTRY_PATH = Path(__file__).with_name("default_rates.json")


def _resolve_registry_path(path: str | os.PathLike[str] | None) -> Path:
    if path is not None:
        return Path(path)
    override = os.getenv("PARKFLOW_RATES_PATH")
    if override:
        return Path(override)
    return _DEFAULT_REGISTRY_PATH


@lru_cache(maxsize=None)
def _load_registry(path_str: str) -> Dict[str, Any]:
    path = Path(path_str)
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise ValueError("rates registry must be a mapping of vehicle class to bracket prices")
    return dict(data)


def default_rate_table(
    *, registry_path: str | os.PathLike[str] | None = None
) -> RateTable:
    """Return the fallback rate table used when a quote is requested without contractor rates."""

    path = _resolve_registry_path(registry_path)
    table = RateTable.from_mapping(_load_registry(str(path)))
    if table is None:
        raise InvalidRateTable(f"default rates registry {path.name} defines no rates")
    return table


def default_rates_for(
    vehicle_class: VehicleClass | str,
    *,
    registry_path: str | os.PathLike[str] | None = None,
) -> RateTier:
    return default_rate_table(registry_path=registry_path).tier_for(vehicle_class)
