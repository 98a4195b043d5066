"""Exception hierarchy for the ParkFlow checkout core."""

from __future__ import annotations


class ParkFlowError(Exception):
    """Base exception for all ParkFlow errors."""

    kind = "ParkFlowError"


class InvalidVehicleClass(ParkFlowError):
    """Vehicle type is not one of the two recognised classes."""

    kind = "InvalidVehicleClass"

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            f"Invalid vehicle type {value!r}: expected '2-wheeler' or '4-wheeler'"
        )


class InvalidRateTable(ParkFlowError):
    """Rate table is missing, has the wrong shape, or holds a bad price."""

    kind = "InvalidRateTable"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InvalidTimestamp(ParkFlowError):
    """Check-in or check-out time could not be parsed."""

    kind = "InvalidTimestamp"

    def __init__(self, which: str, value: object) -> None:
        self.which = which
        self.value = value
        super().__init__(f"Invalid {which} time: {value!r}")


class InvalidDuration(ParkFlowError):
    """Parking duration is negative or implausibly long."""

    kind = "InvalidDuration"


class CalculationFailed(ParkFlowError):
    """Computed amount failed the post-calculation sanity check."""

    kind = "CalculationFailed"


class RatesNotConfigured(ParkFlowError):
    """Contractor has no rate table at all."""

    kind = "RatesNotConfigured"

    def __init__(self, message: str = "Parking rates are not configured for this contractor") -> None:
        super().__init__(message)


class InvalidPaymentMethod(ParkFlowError):
    """Payment method is not cash, card, digital or free."""

    kind = "InvalidPaymentMethod"

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            f"Invalid payment method {value!r}: expected cash, card, digital or free"
        )


class BackendError(ParkFlowError):
    """Backend answered with an HTTP error or an unsuccessful envelope."""

    kind = "BackendError"

    def __init__(self, status_code: int, message: str) -> None:
        """Initialize with HTTP status code."""
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class BackendConnectionError(ParkFlowError):
    """Network-level error (timeout, DNS, connection refused)."""

    kind = "BackendConnectionError"


class PersistenceFailed(ParkFlowError):
    """Checkout confirmation could not be stored by the backend."""

    kind = "PersistenceFailed"
