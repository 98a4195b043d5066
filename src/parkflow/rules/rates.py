# src/parkflow/rules/rates.py
"""Contractor rate tables.

A contractor prices parking with four flat brackets per vehicle class
(up to 2, 6, 12 and 24 hours). The backend hands these over as loosely
shaped JSON, sometimes double-encoded as a string, so everything entering
the fee calculator goes through the validating constructors here.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import InvalidRateTable, InvalidVehicleClass

logger = logging.getLogger(__name__)

__all__ = [
    "TIER_FIELDS",
    "RateTable",
    "RateTier",
    "VehicleClass",
]


class VehicleClass(Enum):
    TWO_WHEELER = "2-wheeler"
    FOUR_WHEELER = "4-wheeler"

    @classmethod
    def parse(cls, value: Any) -> "VehicleClass":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            member = _VEHICLE_ALIASES.get(value)
            if member is not None:
                return member
        raise InvalidVehicleClass(value)

    @property
    def label(self) -> str:
        return "Two-wheeler" if self is VehicleClass.TWO_WHEELER else "Four-wheeler"


_VEHICLE_ALIASES: Dict[str, VehicleClass] = {
    "2-wheeler": VehicleClass.TWO_WHEELER,
    "two-wheeler": VehicleClass.TWO_WHEELER,
    "4-wheeler": VehicleClass.FOUR_WHEELER,
    "four-wheeler": VehicleClass.FOUR_WHEELER,
}

# (wire key, attribute name), in bracket order
TIER_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("upTo2Hours", "up_to_2_hours"),
    ("upTo6Hours", "up_to_6_hours"),
    ("upTo12Hours", "up_to_12_hours"),
    ("upTo24Hours", "up_to_24_hours"),
)


def _price(field_name: str, value: Any) -> Decimal:
    """Coerce one bracket price, rejecting anything that is not a finite, non-negative number."""

    if value is None:
        raise InvalidRateTable(f"Rate field '{field_name}' is missing", field=field_name)
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise InvalidRateTable(
            f"Rate field '{field_name}' must be numeric, got {type(value).__name__}",
            field=field_name,
        )
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidRateTable(
            f"Rate field '{field_name}' is not a number: {value!r}", field=field_name
        ) from None
    if not price.is_finite():
        raise InvalidRateTable(f"Rate field '{field_name}' must be finite", field=field_name)
    if price < 0:
        raise InvalidRateTable(
            f"Rate field '{field_name}' must not be negative (got {price})", field=field_name
        )
    return price


@dataclass(frozen=True)
class RateTier:
    """Flat price per duration bracket for one vehicle class."""

    up_to_2_hours: Decimal
    up_to_6_hours: Decimal
    up_to_12_hours: Decimal
    up_to_24_hours: Decimal

    def __post_init__(self) -> None:
        for wire_key, attr in TIER_FIELDS:
            object.__setattr__(self, attr, _price(wire_key, getattr(self, attr)))

    @classmethod
    def from_mapping(cls, data: Any) -> "RateTier":
        if isinstance(data, cls):
            return data
        if not isinstance(data, Mapping):
            raise InvalidRateTable(
                f"Rate table must be a mapping of bracket prices, got {type(data).__name__}"
            )
        values: Dict[str, Any] = {}
        for wire_key, attr in TIER_FIELDS:
            if wire_key in data:
                values[attr] = data[wire_key]
            elif attr in data:
                values[attr] = data[attr]
            else:
                raise InvalidRateTable(f"Rate field '{wire_key}' is missing", field=wire_key)
        tier = cls(**values)
        tier.log_anomalies()
        return tier

    def prices(self) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
        return (self.up_to_2_hours, self.up_to_6_hours, self.up_to_12_hours, self.up_to_24_hours)

    @property
    def is_ascending(self) -> bool:
        p = self.prices()
        return all(a <= b for a, b in zip(p, p[1:]))

    @property
    def is_all_zero(self) -> bool:
        return all(price == 0 for price in self.prices())

    def log_anomalies(self) -> None:
        # Both are legal configurations (promotions, flat pricing); just surface them.
        if self.is_all_zero:
            logger.warning("All parking rates are zero; checkout will require payment method 'free'")
        elif not self.is_ascending:
            logger.warning("Parking rates are not ascending across brackets: %s", self.to_dict())

    def to_dict(self) -> Dict[str, str]:
        return {wire_key: str(getattr(self, attr)) for wire_key, attr in TIER_FIELDS}


def _decode(value: Any, field_name: str) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            raise InvalidRateTable(f"{field_name} is not valid JSON", field=field_name) from None
    return value


@dataclass(frozen=True)
class RateTable:
    """Contractor rate configuration: one tier per vehicle class."""

    two_wheeler: RateTier
    four_wheeler: RateTier

    @classmethod
    def from_mapping(cls, data: Any) -> Optional["RateTable"]:
        """Build from ``{rates_2wheeler, rates_4wheeler}``; None when neither is configured."""

        if data is None:
            return None
        if isinstance(data, cls):
            return data
        if not isinstance(data, Mapping):
            raise InvalidRateTable(f"Rate lookup must be a mapping, got {type(data).__name__}")

        raw_2w = _decode(data.get("rates_2wheeler"), "rates_2wheeler")
        raw_4w = _decode(data.get("rates_4wheeler"), "rates_4wheeler")
        if raw_2w is None and raw_4w is None:
            return None
        if raw_2w is None:
            raise InvalidRateTable("rates_2wheeler is missing", field="rates_2wheeler")
        if raw_4w is None:
            raise InvalidRateTable("rates_4wheeler is missing", field="rates_4wheeler")
        return cls(
            two_wheeler=RateTier.from_mapping(raw_2w),
            four_wheeler=RateTier.from_mapping(raw_4w),
        )

    def tier_for(self, vehicle_class: VehicleClass | str) -> RateTier:
        vc = VehicleClass.parse(vehicle_class)
        return self.two_wheeler if vc is VehicleClass.TWO_WHEELER else self.four_wheeler

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {
            "rates_2wheeler": self.two_wheeler.to_dict(),
            "rates_4wheeler": self.four_wheeler.to_dict(),
        }
