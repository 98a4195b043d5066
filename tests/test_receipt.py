import random
import re
from datetime import datetime, timezone
from decimal import Decimal

from parkflow.checkout.receipt import build_receipt, generate_receipt_id
from parkflow.models import PaymentMethod, Vehicle
from parkflow.rules.parking_fee import calculate_parking_fee

RATES = {"upTo2Hours": 5, "upTo6Hours": 10, "upTo12Hours": 18, "upTo24Hours": 30}


def _vehicle() -> Vehicle:
    return Vehicle.from_record(
        {
            "id": "veh-1",
            "plate_number": " ka01ab1234 ",
            "vehicle_type": "4-wheeler",
            "check_in_time": "2024-01-01T10:00:00Z",
        }
    )


def test_generated_receipt_id_shape():
    now = datetime(2024, 1, 1, 13, 30, 5, tzinfo=timezone.utc)

    receipt_id = generate_receipt_id(now, random.Random(7))

    assert re.fullmatch(r"RCPT-20240101-133005-[A-Z0-9]{6}", receipt_id)
    assert receipt_id == generate_receipt_id(now, random.Random(7))


def test_receipt_prefers_server_values():
    vehicle = _vehicle()
    calc = calculate_parking_fee(vehicle.check_in_time, "2024-01-01T13:30:00Z", "4-wheeler", RATES)

    receipt = build_receipt(
        vehicle,
        calc,
        PaymentMethod.DIGITAL,
        calc.amount,
        {"receipt_id": "SRV-77", "plate_number": "KA 01 AB 1234"},
    )

    assert receipt.receipt_id == "SRV-77"
    assert receipt.plate_number == "KA 01 AB 1234"
    assert receipt.to_dict() == {
        "receipt_id": "SRV-77",
        "plate_number": "KA 01 AB 1234",
        "vehicle_type": "4-wheeler",
        "check_in_time": "2024-01-01T10:00:00+00:00",
        "check_out_time": "2024-01-01T13:30:00+00:00",
        "duration": "03:30:00",
        "payment_method": "digital",
        "payment_amount": "10.00",
        "calculated_amount": "10.00",
    }


def test_receipt_falls_back_to_local_values():
    vehicle = _vehicle()
    calc = calculate_parking_fee(vehicle.check_in_time, "2024-01-01T10:20:00Z", "4-wheeler", RATES)

    receipt = build_receipt(vehicle, calc, PaymentMethod.FREE, Decimal("0.00"), None)

    assert receipt.plate_number == "KA01AB1234"
    assert receipt.receipt_id.startswith("RCPT-20240101-102000-")
    assert receipt.payment_amount == Decimal("0.00")
    assert receipt.calculated_amount == Decimal("5.00")
