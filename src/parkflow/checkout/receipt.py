"""Checkout receipts."""
from __future__ import annotations

import random
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..models import PaymentMethod, Vehicle
from ..rules.parking_fee import FeeCalculation

_RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def generate_receipt_id(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Client-side fallback id: ``RCPT-YYYYMMDD-HHMMSS-XXXXXX``."""

    now = now or datetime.now(timezone.utc)
    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(_RECEIPT_ALPHABET) for _ in range(6))
    return f"RCPT-{now:%Y%m%d}-{now:%H%M%S}-{suffix}"


@dataclass(frozen=True)
class Receipt:
    receipt_id: str
    plate_number: str
    vehicle_type: str
    check_in_time: datetime
    check_out_time: datetime
    duration: str
    payment_method: PaymentMethod
    payment_amount: Decimal
    calculated_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "plate_number": self.plate_number,
            "vehicle_type": self.vehicle_type,
            "check_in_time": self.check_in_time.isoformat(),
            "check_out_time": self.check_out_time.isoformat(),
            "duration": self.duration,
            "payment_method": self.payment_method.value,
            "payment_amount": str(self.payment_amount),
            "calculated_amount": str(self.calculated_amount),
        }


def build_receipt(
    vehicle: Vehicle,
    calculation: FeeCalculation,
    payment_method: PaymentMethod,
    payment_amount: Decimal,
    response: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Receipt:
    """Assemble the receipt shown after a successful checkout.

    The backend's closed record wins for plate number and receipt id when it
    carries them; otherwise the local vehicle and a generated id are used.
    """
    record = response or {}
    receipt_id = record.get("receipt_id") or generate_receipt_id(now or calculation.check_out_time)
    return Receipt(
        receipt_id=str(receipt_id),
        plate_number=str(record.get("plate_number") or vehicle.plate_number),
        vehicle_type=vehicle.vehicle_type,
        check_in_time=vehicle.check_in_time,
        check_out_time=calculation.check_out_time,
        duration=calculation.duration.formatted,
        payment_method=payment_method,
        payment_amount=payment_amount,
        calculated_amount=calculation.amount,
    )
