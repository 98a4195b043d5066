from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidPaymentMethod, InvalidTimestamp
from .rules.parking_fee import parse_timestamp
from .rules.rates import VehicleClass


class PaymentMethod(Enum):
    CASH = "cash"
    CARD = "card"
    DIGITAL = "digital"
    FREE = "free"

    @classmethod
    def parse(cls, value: Any) -> "PaymentMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidPaymentMethod(value) from None


@dataclass(frozen=True)
class Vehicle:
    """A parked vehicle as the backend reports it at checkout time."""

    id: str
    plate_number: str
    vehicle_class: VehicleClass
    check_in_time: datetime
    contractor_id: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Vehicle":
        """Validate a backend vehicle record (``id, plate_number, vehicle_type, check_in_time``)."""

        vehicle_class = VehicleClass.parse(record.get("vehicle_type"))
        raw_check_in = record.get("check_in_time")
        if raw_check_in is None:
            raise InvalidTimestamp("check-in", raw_check_in)
        location = record.get("location") or record.get("parking_locations") or {}
        return cls(
            id=str(record.get("id") or ""),
            plate_number=str(record.get("plate_number") or "").strip().upper(),
            vehicle_class=vehicle_class,
            check_in_time=parse_timestamp(raw_check_in, "check-in"),
            contractor_id=record.get("contractor_id"),
            location_id=record.get("location_id"),
            location_name=location.get("locations_name") if isinstance(location, Mapping) else None,
        )

    @property
    def vehicle_type(self) -> str:
        return self.vehicle_class.value


@dataclass(frozen=True)
class CheckoutRequest:
    check_out_time: datetime
    payment_amount: Decimal
    payment_method: PaymentMethod

    def to_payload(self) -> Dict[str, Any]:
        # The backend only accepts these three fields on checkout.
        return {
            "check_out_time": self.check_out_time.isoformat().replace("+00:00", "Z"),
            "payment_amount": float(self.payment_amount),
            "payment_method": self.payment_method.value,
        }

