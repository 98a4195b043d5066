# src/parkflow/checkout/session.py
"""
Checkout workflow for one vehicle's exit.

A ``CheckoutSession`` lives for as long as the attendant's checkout dialog
is open. It resolves the contractor's rates, prices the stay, keeps the
price current while the dialog stays open, and finally hands the payment
to the backend.

    IDLE -> RESOLVING_RATES -> CALCULATING -> READY | CALCULATION_ERROR
         -> CONFIRMING -> CLOSED

A dialog that cannot get a usable rate table or vehicle record at open
time ends in RATES_NOT_CONFIGURED and only offers Close.

Sessions share nothing: no module-level caches, no ambient user state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..errors import ParkFlowError, RatesNotConfigured
from ..models import CheckoutRequest, PaymentMethod, Vehicle
from ..rules.parking_fee import FeeCalculation, calculate_parking_fee
from ..rules.rates import RateTable
from ..settings import settings
from .receipt import Receipt, build_receipt

logger = logging.getLogger(__name__)

RateProvider = Callable[[Vehicle], Awaitable[Any]]
CheckoutPersistence = Callable[[Vehicle, CheckoutRequest], Awaitable[Optional[Mapping[str, Any]]]]
Clock = Callable[[], datetime]

UNABLE_TO_CALCULATE = "Unable to calculate the parking fee. Retry the calculation before confirming."
ZERO_AMOUNT_BLOCKED = (
    "Calculated amount is 0. The contractor's rates may be misconfigured; "
    "fix the rates or select payment method 'free' to continue."
)
NEGATIVE_AMOUNT_BLOCKED = "Calculated amount is negative; checkout cannot be confirmed."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutState(Enum):
    IDLE = "idle"
    RESOLVING_RATES = "resolving_rates"
    CALCULATING = "calculating"
    READY = "ready"
    CALCULATION_ERROR = "calculation_error"
    RATES_NOT_CONFIGURED = "rates_not_configured"
    CONFIRMING = "confirming"
    CLOSED = "closed"


# ---------- Events ----------
@dataclass(frozen=True)
class RecalculateRequested:
    reason: str = "manual"  # "manual" | "auto-refresh"


@dataclass(frozen=True)
class PaymentMethodSelected:
    method: Union[PaymentMethod, str]


@dataclass(frozen=True)
class ConfirmRequested:
    pass


@dataclass(frozen=True)
class CancelRequested:
    pass


CheckoutEvent = Union[RecalculateRequested, PaymentMethodSelected, ConfirmRequested, CancelRequested]


class CheckoutSession:
    def __init__(
        self,
        vehicle: Union[Vehicle, Mapping[str, Any]],
        rate_provider: RateProvider,
        persist: CheckoutPersistence,
        *,
        clock: Optional[Clock] = None,
        refresh_interval: Optional[timedelta] = None,
        currency: Optional[str] = None,
        max_duration: Optional[timedelta] = None,
        zero_amount_requires_free: Optional[bool] = None,
        attendant_id: Optional[str] = None,
    ) -> None:
        self._raw_vehicle = vehicle
        self._rate_provider = rate_provider
        self._persist = persist
        self._clock: Clock = clock or _utcnow
        self.refresh_interval = refresh_interval or settings.refresh_interval
        self.currency = settings.currency_symbol if currency is None else currency
        self.max_duration = max_duration or settings.max_duration
        self.zero_amount_requires_free = (
            settings.zero_amount_requires_free
            if zero_amount_requires_free is None
            else zero_amount_requires_free
        )
        self.attendant_id = attendant_id

        self.state = CheckoutState.IDLE
        self.vehicle: Optional[Vehicle] = vehicle if isinstance(vehicle, Vehicle) else None
        self.rate_table: Optional[RateTable] = None
        self.payment_method = PaymentMethod.CASH
        self.calculation: Optional[FeeCalculation] = None
        self.last_calculated_at: Optional[datetime] = None
        self.error: Optional[str] = None
        self.confirm_error: Optional[str] = None
        self.receipt: Optional[Receipt] = None
        self.outcome: Optional[str] = None  # "confirmed" | "cancelled"

        self._refresh_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_client(
        cls,
        client: Any,
        vehicle: Union[Vehicle, Mapping[str, Any]],
        contractor_id: Optional[str] = None,
        **kwargs: Any,
    ) -> "CheckoutSession":
        """Bind a session to a ``ParkFlowClient`` for rate lookup and checkout persistence."""

        async def rate_provider(v: Vehicle) -> Optional[RateTable]:
            owner = contractor_id or v.contractor_id
            if not owner:
                raise RatesNotConfigured(f"Vehicle {v.plate_number} is not linked to a contractor")
            return await client.get_contractor_rates(owner)

        async def persist(v: Vehicle, request: CheckoutRequest) -> Mapping[str, Any]:
            return await client.checkout_vehicle(v.id, request)

        return cls(vehicle, rate_provider, persist, **kwargs)

    # ------------- Lifecycle -------------

    async def __aenter__(self) -> "CheckoutSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def open(self) -> CheckoutState:
        if self.state is not CheckoutState.IDLE:
            raise RuntimeError(f"checkout session already opened (state={self.state.value})")
        self.state = CheckoutState.RESOLVING_RATES

        try:
            vehicle = (
                self._raw_vehicle
                if isinstance(self._raw_vehicle, Vehicle)
                else Vehicle.from_record(self._raw_vehicle)
            )
        except ParkFlowError as exc:
            return self._fail_open(f"Invalid vehicle record: {exc}")
        self.vehicle = vehicle

        try:
            raw_rates = await self._rate_provider(vehicle)
            table = RateTable.from_mapping(raw_rates)
        except RatesNotConfigured as exc:
            return self._fail_open(str(exc))
        except ParkFlowError as exc:
            return self._fail_open(f"Unable to load parking rates: {exc}")
        except Exception as exc:
            logger.exception("Rate lookup failed unexpectedly for %s", vehicle.plate_number)
            return self._fail_open(f"Unable to load parking rates: {exc}")

        if self.state is CheckoutState.CLOSED:
            logger.debug("Discarding rates for %s; session closed during lookup", vehicle.plate_number)
            return self.state
        if table is None:
            return self._fail_open(str(RatesNotConfigured()))

        self.rate_table = table
        self._recalculate("open")
        self._start_refresh()
        return self.state

    async def aclose(self) -> None:
        """Close the session (if still open) and wait for the refresh task to finish."""

        task = self._refresh_task
        if self.state is not CheckoutState.CLOSED:
            if self.state is CheckoutState.CONFIRMING:
                logger.warning(
                    "Closing checkout for %s while confirmation is in flight; its result will be ignored",
                    self.vehicle.plate_number if self.vehicle else "?",
                )
            self.outcome = self.outcome or "cancelled"
            self._close(discard=True)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _fail_open(self, message: str) -> CheckoutState:
        if self.state is CheckoutState.CLOSED:
            return self.state
        self.state = CheckoutState.RATES_NOT_CONFIGURED
        self.error = message
        logger.warning("Checkout cannot start: %s", message)
        return self.state

    def _close(self, *, discard: bool) -> None:
        self.state = CheckoutState.CLOSED
        self._stop_refresh()
        if discard:
            self.rate_table = None
            self.calculation = None
            self.last_calculated_at = None
            self.error = None
            self.confirm_error = None

    # ------------- Status -------------

    @property
    def is_closed(self) -> bool:
        return self.state is CheckoutState.CLOSED

    @property
    def can_retry(self) -> bool:
        return self.state in (CheckoutState.READY, CheckoutState.CALCULATION_ERROR)

    @property
    def can_confirm(self) -> bool:
        return self.state is CheckoutState.READY and self.calculation is not None

    @property
    def can_cancel(self) -> bool:
        return self.state not in (CheckoutState.CONFIRMING, CheckoutState.CLOSED)

    @property
    def payable_amount(self) -> Optional[Decimal]:
        """Amount that will be charged; the calculated amount stays available as a reference."""

        if self.calculation is None:
            return None
        if self.payment_method is PaymentMethod.FREE:
            return Decimal("0.00")
        return self.calculation.amount

    # ------------- Events -------------

    async def dispatch(self, event: CheckoutEvent) -> Any:
        if isinstance(event, RecalculateRequested):
            return self._handle_recalculate(event)
        if isinstance(event, PaymentMethodSelected):
            return self._handle_payment_method(event)
        if isinstance(event, ConfirmRequested):
            return await self._handle_confirm()
        if isinstance(event, CancelRequested):
            return self._handle_cancel()
        raise TypeError(f"unsupported checkout event: {event!r}")

    def retry(self) -> bool:
        return self._handle_recalculate(RecalculateRequested("manual"))

    def select_payment_method(self, method: Union[PaymentMethod, str]) -> bool:
        return self._handle_payment_method(PaymentMethodSelected(method))

    async def confirm(self) -> Optional[Receipt]:
        return await self._handle_confirm()

    def cancel(self) -> bool:
        return self._handle_cancel()

    def refresh_if_stale(self) -> bool:
        """Recalculate when the displayed figure is older than the refresh interval."""

        if self.state is not CheckoutState.READY or self.last_calculated_at is None:
            return False
        if self._clock() - self.last_calculated_at <= self.refresh_interval:
            return False
        return self._handle_recalculate(RecalculateRequested("auto-refresh"))

    def _handle_recalculate(self, event: RecalculateRequested) -> bool:
        if not self.can_retry:
            logger.debug("Ignoring %s recalculation in state %s", event.reason, self.state.value)
            return False
        self._recalculate(event.reason)
        return True

    def _handle_payment_method(self, event: PaymentMethodSelected) -> bool:
        method = PaymentMethod.parse(event.method)
        if self.state in (CheckoutState.CONFIRMING, CheckoutState.CLOSED):
            return False
        self.payment_method = method
        self.confirm_error = None
        return True

    def _handle_cancel(self) -> bool:
        if self.state is CheckoutState.CONFIRMING:
            logger.info("Cancel ignored; checkout confirmation is in flight")
            return False
        if self.state is not CheckoutState.CLOSED:
            self.outcome = "cancelled"
            self._close(discard=True)
        return True

    # ------------- Calculation -------------

    def _recalculate(self, reason: str) -> None:
        if self.vehicle is None or self.rate_table is None:
            raise RuntimeError("checkout session has no vehicle or rate table to calculate with")
        self.state = CheckoutState.CALCULATING
        now = self._clock()
        try:
            calculation = calculate_parking_fee(
                self.vehicle.check_in_time,
                now,
                self.vehicle.vehicle_class,
                self.rate_table.tier_for(self.vehicle.vehicle_class),
                currency=self.currency,
                max_duration=self.max_duration,
            )
        except ParkFlowError as exc:
            self._fail_calculation(str(exc))
            logger.warning(
                "Fee calculation failed for %s (%s): %s", self.vehicle.plate_number, reason, exc
            )
            return
        except Exception as exc:
            self._fail_calculation(f"Unexpected calculation error: {exc}")
            logger.exception("Unexpected fee calculation error for %s (%s)", self.vehicle.plate_number, reason)
            return

        self.calculation = calculation
        self.last_calculated_at = now
        self.error = None
        self.state = CheckoutState.READY
        logger.debug(
            "Fee %s for %s: %s over %s",
            reason,
            self.vehicle.plate_number,
            calculation.amount,
            calculation.duration.formatted,
        )

    def _fail_calculation(self, message: str) -> None:
        self.calculation = None
        self.error = message
        self.state = CheckoutState.CALCULATION_ERROR

    # ------------- Auto refresh -------------

    def _start_refresh(self) -> None:
        if self._refresh_task is not None or self.is_closed:
            return
        loop = asyncio.get_running_loop()
        name = f"checkout-refresh-{self.vehicle.id if self.vehicle else ''}"
        self._refresh_task = loop.create_task(self._refresh_loop(), name=name)

    def _stop_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _refresh_loop(self) -> None:
        interval = self.refresh_interval.total_seconds()
        while not self.is_closed:
            await asyncio.sleep(interval)
            self.refresh_if_stale()

    # ------------- Confirmation -------------

    async def _handle_confirm(self) -> Optional[Receipt]:
        if self.state is CheckoutState.CONFIRMING:
            logger.debug("Confirm ignored; already confirming")
            return None
        if self.state is not CheckoutState.READY or self.calculation is None:
            self.confirm_error = UNABLE_TO_CALCULATE
            return None

        calculation = self.calculation
        method = self.payment_method
        if calculation.amount < 0:
            self.confirm_error = NEGATIVE_AMOUNT_BLOCKED
            return None
        if calculation.amount == 0 and method is not PaymentMethod.FREE and self.zero_amount_requires_free:
            self.confirm_error = ZERO_AMOUNT_BLOCKED
            return None

        final_amount = Decimal("0.00") if method is PaymentMethod.FREE else calculation.amount
        request = CheckoutRequest(
            check_out_time=calculation.check_out_time,
            payment_amount=final_amount,
            payment_method=method,
        )
        vehicle = self.vehicle
        if vehicle is None:
            raise RuntimeError("checkout session has no vehicle to confirm")

        self.confirm_error = None
        self.state = CheckoutState.CONFIRMING
        try:
            response = await self._persist(vehicle, request)
        except Exception as exc:
            if isinstance(exc, ParkFlowError):
                logger.warning("Checkout persistence failed for %s: %s", vehicle.plate_number, exc)
            else:
                logger.exception("Unexpected checkout persistence error for %s", vehicle.plate_number)
            if self.state is CheckoutState.CONFIRMING:
                self.state = CheckoutState.READY
                self.confirm_error = f"Checkout failed: {exc}"
            return None

        if self.state is not CheckoutState.CONFIRMING:
            logger.info("Ignoring checkout result for %s; session was closed", vehicle.plate_number)
            return None

        receipt = build_receipt(vehicle, calculation, method, final_amount, response)
        self.receipt = receipt
        self.outcome = "confirmed"
        self._close(discard=False)
        logger.info(
            "Vehicle checked out plate=%s amount=%s calculated=%s method=%s receipt=%s attendant=%s",
            receipt.plate_number,
            final_amount,
            calculation.amount,
            method.value,
            receipt.receipt_id,
            self.attendant_id or "-",
        )
        return receipt
