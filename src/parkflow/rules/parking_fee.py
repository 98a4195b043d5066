# src/parkflow/rules/parking_fee.py
"""Parking fee calculation.

Pricing is tiered but not additive: exactly one bracket's flat price
applies for stays up to a day. Beyond 24 hours every full day costs the
24-hour price and the tail is pro-rated at ``upTo24Hours / 24`` per hour.

Durations are measured in whole milliseconds so bracket boundaries
(exactly 2h, 6h, ...) compare exactly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping

from ..errors import CalculationFailed, InvalidDuration, InvalidTimestamp
from .rates import RateTier, VehicleClass

logger = logging.getLogger(__name__)

SECOND_MS = 1_000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

DEFAULT_MAX_DURATION = timedelta(days=365)
DEFAULT_CURRENCY = "₹"

# (upper bound in ms, tier key, rate attribute, label)
_BRACKETS = (
    (2 * HOUR_MS, "upTo2Hours", "up_to_2_hours", "Up to 2 hours"),
    (6 * HOUR_MS, "upTo6Hours", "up_to_6_hours", "Up to 6 hours"),
    (12 * HOUR_MS, "upTo12Hours", "up_to_12_hours", "Up to 12 hours"),
    (24 * HOUR_MS, "upTo24Hours", "up_to_24_hours", "Up to 24 hours"),
)

MULTI_DAY_TIER = "multiDay"


def _money(x: Decimal | int | float | str) -> Decimal:
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ParkingDuration:
    hours: int
    minutes: int
    seconds: int
    total_hours: float
    formatted: str  # HH:MM:SS

    @classmethod
    def from_milliseconds(cls, duration_ms: int) -> "ParkingDuration":
        duration_ms = max(0, int(duration_ms))
        hours = max(0, duration_ms // HOUR_MS)
        remainder_ms = duration_ms % HOUR_MS
        minutes = max(0, remainder_ms // MINUTE_MS)
        seconds = max(0, (remainder_ms // SECOND_MS) % 60)
        total_hours = max(0.0, duration_ms / HOUR_MS)
        return cls(
            hours=hours,
            minutes=minutes,
            seconds=seconds,
            total_hours=total_hours,
            formatted=f"{hours:02d}:{minutes:02d}:{seconds:02d}",
        )

    @property
    def human(self) -> str:
        return format_duration_human(self.hours, self.minutes, self.seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hours": self.hours,
            "minutes": self.minutes,
            "seconds": self.seconds,
            "total_hours": self.total_hours,
            "formatted": self.formatted,
        }


@dataclass(frozen=True)
class FeeCalculation:
    """Result of one fee calculation. Recomputed on demand, never stored."""

    duration: ParkingDuration
    amount: Decimal
    breakdown: str
    tier: str
    vehicle_class: VehicleClass
    check_in_time: datetime
    check_out_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration.to_dict(),
            "amount": str(self.amount),
            "breakdown": self.breakdown,
            "tier": self.tier,
            "vehicle_type": self.vehicle_class.value,
            "check_in_time": self.check_in_time.isoformat(),
            "check_out_time": self.check_out_time.isoformat(),
        }


def format_duration_human(hours: int, minutes: int, seconds: int) -> str:
    """Render a duration as ``1h 2m 3s``, dropping leading zero units."""

    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def parse_timestamp(value: Any, which: str) -> datetime:
    """Parse a datetime or ISO-8601 string. Naive values are taken as UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidTimestamp(which, value) from None
    else:
        raise InvalidTimestamp(which, value)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_milliseconds(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * SECOND_MS + delta.microseconds // 1_000


def calculate_parking_fee(
    check_in_time: datetime | str,
    check_out_time: datetime | str,
    vehicle_class: VehicleClass | str,
    rates: RateTier | Mapping[str, Any],
    *,
    currency: str = DEFAULT_CURRENCY,
    max_duration: timedelta = DEFAULT_MAX_DURATION,
) -> FeeCalculation:
    """
    Price one parking stay.

    Validates in order (vehicle class, rates, timestamps, duration) and raises
    the first failure as a ParkFlowError subclass. Never returns a degraded
    result.
    """
    vc = VehicleClass.parse(vehicle_class)
    tier = RateTier.from_mapping(rates)
    check_in = parse_timestamp(check_in_time, "check-in")
    check_out = parse_timestamp(check_out_time, "check-out")

    delta = check_out - check_in
    if delta < timedelta(0):
        raise InvalidDuration(
            "Invalid duration: checkout before checkin "
            f"(check-in {check_in.isoformat()}, check-out {check_out.isoformat()})"
        )
    if delta > max_duration:
        raise InvalidDuration(
            f"Invalid duration: suspicious duration of {delta.days} days "
            f"(limit {max_duration.days} days); check the check-in time"
        )

    duration_ms = _to_milliseconds(delta)
    duration = ParkingDuration.from_milliseconds(duration_ms)

    if duration_ms < MINUTE_MS:
        tier_key = "upTo2Hours"
        raw_amount = tier.up_to_2_hours
        breakdown = f"Minimum charge (under 1 minute): {currency}{_money(raw_amount)}"
    elif duration_ms <= DAY_MS:
        tier_key, raw_amount, breakdown = _flat_bracket(duration_ms, tier, currency)
    else:
        tier_key = MULTI_DAY_TIER
        days = duration_ms // DAY_MS
        remainder_hours = Decimal(duration_ms % DAY_MS) / Decimal(HOUR_MS)
        daily = tier.up_to_24_hours
        hourly = daily / Decimal(24)
        raw_amount = Decimal(days) * daily + remainder_hours * hourly
        breakdown = (
            f"{days} day(s) × {currency}{_money(daily)} + "
            f"{remainder_hours:.1f}h × {currency}{hourly:.2f}/h = {currency}{_money(raw_amount)}"
        )

    if not raw_amount.is_finite() or raw_amount < 0:
        raise CalculationFailed(f"Calculated amount is invalid: {raw_amount}")
    amount = _money(raw_amount)
    if not amount.is_finite() or amount < 0:
        raise CalculationFailed(f"Rounded amount is invalid: {amount}")

    logger.debug(
        "Fee calculated class=%s duration=%s tier=%s amount=%s",
        vc.value,
        duration.formatted,
        tier_key,
        amount,
    )
    return FeeCalculation(
        duration=duration,
        amount=amount,
        breakdown=breakdown,
        tier=tier_key,
        vehicle_class=vc,
        check_in_time=check_in,
        check_out_time=check_out,
    )


def _flat_bracket(duration_ms: int, tier: RateTier, currency: str) -> tuple[str, Decimal, str]:
    for upper_ms, key, attr, label in _BRACKETS:
        if duration_ms <= upper_ms:
            price: Decimal = getattr(tier, attr)
            return key, price, f"{label}: {currency}{_money(price)}"
    raise CalculationFailed(f"No rate bracket covers a duration of {duration_ms} ms")
