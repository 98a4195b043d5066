import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from parkflow.checkout.session import (
    UNABLE_TO_CALCULATE,
    ZERO_AMOUNT_BLOCKED,
    CancelRequested,
    CheckoutSession,
    CheckoutState,
    ConfirmRequested,
    PaymentMethodSelected,
    RecalculateRequested,
)
from parkflow.errors import InvalidPaymentMethod, PersistenceFailed
from parkflow.models import CheckoutRequest, PaymentMethod, Vehicle
from parkflow.rules.rates import RateTable

FOUR_W = {"upTo2Hours": 5, "upTo6Hours": 10, "upTo12Hours": 18, "upTo24Hours": 30}
TWO_W = {"upTo2Hours": 2, "upTo6Hours": 5, "upTo12Hours": 8, "upTo24Hours": 12}
ZERO = {"upTo2Hours": 0, "upTo6Hours": 0, "upTo12Hours": 0, "upTo24Hours": 0}

VEHICLE_RECORD = {
    "id": "veh-1",
    "plate_number": "ka01ab1234",
    "vehicle_type": "4-wheeler",
    "check_in_time": "2024-01-01T10:00:00Z",
    "contractor_id": "ctr-1",
}


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _clock(hour=13, minute=30):
    return FakeClock(datetime(2024, 1, 1, hour, minute, tzinfo=timezone.utc))


def _table(two=TWO_W, four=FOUR_W):
    return RateTable.from_mapping({"rates_2wheeler": two, "rates_4wheeler": four})


def _session(rates=None, persist=None, clock=None, vehicle=VEHICLE_RECORD, **kwargs):
    provider = AsyncMock(return_value=_table() if rates is None else rates)
    persist = persist or AsyncMock(return_value={"id": "veh-1", "receipt_id": "R-1001"})
    return CheckoutSession(vehicle, provider, persist, clock=clock or _clock(), **kwargs)


@pytest.mark.asyncio
async def test_end_to_end_checkout():
    persist = AsyncMock(return_value={"id": "veh-1", "plate_number": "KA01AB1234", "receipt_id": "R-1001"})

    async with _session(persist=persist) as session:
        assert session.state is CheckoutState.READY
        assert session.calculation.duration.formatted == "03:30:00"
        assert session.calculation.amount == Decimal("10.00")
        assert "Up to 6 hours" in session.calculation.breakdown
        assert session.can_confirm

        receipt = await session.confirm()

    assert session.state is CheckoutState.CLOSED
    assert session.outcome == "confirmed"
    vehicle, request = persist.await_args.args
    assert isinstance(vehicle, Vehicle)
    assert vehicle.plate_number == "KA01AB1234"
    assert request == CheckoutRequest(
        check_out_time=datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc),
        payment_amount=Decimal("10.00"),
        payment_method=PaymentMethod.CASH,
    )
    assert receipt.receipt_id == "R-1001"
    assert receipt.duration == "03:30:00"
    assert receipt.payment_amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_two_wheeler_uses_its_own_tier():
    record = {**VEHICLE_RECORD, "vehicle_type": "2-wheeler"}

    async with _session(vehicle=record) as session:
        assert session.calculation.amount == Decimal("5.00")


@pytest.mark.asyncio
async def test_free_checkout_sends_zero_but_keeps_reference_amount():
    persist = AsyncMock(return_value={"receipt_id": "R-2"})

    async with _session(persist=persist) as session:
        assert session.select_payment_method("free")
        assert session.payable_amount == Decimal("0.00")
        assert session.calculation.amount == Decimal("10.00")

        receipt = await session.confirm()

    request = persist.await_args.args[1]
    assert request.payment_amount == Decimal("0.00")
    assert request.payment_method is PaymentMethod.FREE
    assert request.to_payload()["payment_amount"] == 0.0
    assert receipt.calculated_amount == Decimal("10.00")
    assert receipt.payment_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_zero_amount_requires_free_method():
    persist = AsyncMock(return_value={})

    async with _session(rates=_table(ZERO, ZERO), persist=persist) as session:
        assert session.calculation.amount == Decimal("0.00")

        assert await session.confirm() is None
        assert session.confirm_error == ZERO_AMOUNT_BLOCKED
        assert session.state is CheckoutState.READY
        persist.assert_not_awaited()

        session.select_payment_method(PaymentMethod.FREE)
        assert session.confirm_error is None

        receipt = await session.confirm()

    assert receipt is not None
    assert receipt.receipt_id.startswith("RCPT-20240101-133000-")
    assert persist.await_args.args[1].payment_amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_zero_amount_guard_can_be_disabled():
    persist = AsyncMock(return_value={})

    async with _session(rates=_table(ZERO, ZERO), persist=persist, zero_amount_requires_free=False) as session:
        assert await session.confirm() is not None

    assert persist.await_args.args[1].payment_method is PaymentMethod.CASH


@pytest.mark.asyncio
async def test_missing_rate_table_is_terminal():
    session = CheckoutSession(VEHICLE_RECORD, AsyncMock(return_value=None), AsyncMock(), clock=_clock())
    await session.open()

    assert session.state is CheckoutState.RATES_NOT_CONFIGURED
    assert "not configured" in session.error
    assert not session.can_retry
    assert not session.retry()
    assert await session.confirm() is None
    assert session.can_cancel
    assert session.cancel()
    assert session.state is CheckoutState.CLOSED


@pytest.mark.asyncio
async def test_malformed_rates_at_open_are_terminal():
    provider = AsyncMock(return_value={"rates_2wheeler": TWO_W, "rates_4wheeler": {"upTo2Hours": 5}})
    session = CheckoutSession(VEHICLE_RECORD, provider, AsyncMock(), clock=_clock())

    await session.open()

    assert session.state is CheckoutState.RATES_NOT_CONFIGURED
    assert "upTo6Hours" in session.error
    await session.aclose()


@pytest.mark.asyncio
async def test_rate_provider_crash_is_terminal():
    provider = AsyncMock(side_effect=ValueError("bad body"))
    session = CheckoutSession(VEHICLE_RECORD, provider, AsyncMock(), clock=_clock())

    assert await session.open() is CheckoutState.RATES_NOT_CONFIGURED
    assert session.error == "Unable to load parking rates: bad body"
    assert session.can_cancel
    assert session.cancel()
    assert session.state is CheckoutState.CLOSED


@pytest.mark.asyncio
async def test_invalid_vehicle_record_is_terminal():
    provider = AsyncMock()
    session = CheckoutSession({**VEHICLE_RECORD, "vehicle_type": "3-wheeler"}, provider, AsyncMock())

    await session.open()

    assert session.state is CheckoutState.RATES_NOT_CONFIGURED
    assert session.error.startswith("Invalid vehicle record")
    provider.assert_not_awaited()


@pytest.mark.asyncio
async def test_calculation_error_then_manual_retry():
    clock = _clock(hour=9, minute=0)  # before check-in

    async with _session(clock=clock) as session:
        assert session.state is CheckoutState.CALCULATION_ERROR
        assert "checkout before checkin" in session.error
        assert session.can_retry
        assert await session.confirm() is None
        assert session.confirm_error == UNABLE_TO_CALCULATE

        clock.advance(hours=2)
        assert session.retry()

        assert session.state is CheckoutState.READY
        assert session.error is None
        assert session.calculation.duration.formatted == "01:00:00"
        assert session.calculation.amount == Decimal("5.00")


@pytest.mark.asyncio
async def test_unexpected_calculation_error_is_recoverable(monkeypatch):
    async with _session() as session:
        monkeypatch.setattr(
            "parkflow.checkout.session.calculate_parking_fee", MagicMock(side_effect=ZeroDivisionError("boom"))
        )
        assert session.retry()

        assert session.state is CheckoutState.CALCULATION_ERROR
        assert session.calculation is None
        assert "boom" in session.error

        monkeypatch.undo()
        assert session.retry()
        assert session.state is CheckoutState.READY


def test_recalculate_before_open_raises():
    session = _session()

    with pytest.raises(RuntimeError, match="no vehicle or rate table"):
        session._recalculate("manual")
    assert session.state is CheckoutState.IDLE


@pytest.mark.asyncio
async def test_manual_retry_from_ready_recalculates_immediately():
    clock = _clock()

    async with _session(clock=clock) as session:
        clock.advance(seconds=5)
        assert await session.dispatch(RecalculateRequested())
        assert session.last_calculated_at == clock.now
        assert session.calculation.duration.formatted == "03:30:05"


@pytest.mark.asyncio
async def test_refresh_only_when_stale():
    clock = _clock()

    async with _session(clock=clock) as session:
        first = session.last_calculated_at

        clock.advance(seconds=10)
        assert not session.refresh_if_stale()
        assert session.last_calculated_at == first

        clock.advance(seconds=21)
        assert session.refresh_if_stale()
        assert session.last_calculated_at == clock.now
        assert session.calculation.duration.formatted == "03:30:31"


@pytest.mark.asyncio
async def test_refresh_task_runs_in_background():
    clock = _clock()

    async with _session(clock=clock, refresh_interval=timedelta(milliseconds=10)) as session:
        clock.advance(hours=3)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if session.calculation.amount == Decimal("18.00"):
                break

        assert session.calculation.duration.formatted == "06:30:00"
        assert session.calculation.amount == Decimal("18.00")

    assert session._refresh_task is None


@pytest.mark.asyncio
async def test_payment_method_change_does_not_recalculate():
    clock = _clock()

    async with _session(clock=clock) as session:
        before = session.last_calculated_at
        clock.advance(minutes=5)

        assert await session.dispatch(PaymentMethodSelected("card"))
        assert session.payment_method is PaymentMethod.CARD
        assert session.last_calculated_at == before

        with pytest.raises(InvalidPaymentMethod):
            session.select_payment_method("cheque")
        assert session.payment_method is PaymentMethod.CARD


@pytest.mark.asyncio
async def test_persistence_failure_is_recoverable():
    persist = AsyncMock(side_effect=[PersistenceFailed("HTTP 500: database unavailable"), {"receipt_id": "R-3"}])

    async with _session(persist=persist) as session:
        assert await session.dispatch(ConfirmRequested()) is None
        assert session.state is CheckoutState.READY
        assert session.confirm_error.startswith("Checkout failed")
        assert "database unavailable" in session.confirm_error

        receipt = await session.confirm()

    assert receipt.receipt_id == "R-3"
    assert persist.await_count == 2


@pytest.mark.asyncio
async def test_unexpected_persistence_error_is_recoverable():
    persist = AsyncMock(side_effect=[RuntimeError("response body could not be decoded"), {"receipt_id": "R-4"}])

    async with _session(persist=persist) as session:
        assert await session.confirm() is None
        assert session.state is CheckoutState.READY
        assert session.confirm_error == "Checkout failed: response body could not be decoded"
        assert session.can_cancel

        receipt = await session.confirm()

    assert receipt.receipt_id == "R-4"


@pytest.mark.asyncio
async def test_cancel_refused_while_confirming():
    release = asyncio.Event()

    async def persist(vehicle, request):
        await release.wait()
        return {"receipt_id": "R-4"}

    async with _session(persist=persist) as session:
        confirming = asyncio.create_task(session.confirm())
        await asyncio.sleep(0)

        assert session.state is CheckoutState.CONFIRMING
        assert not session.can_cancel
        assert not session.cancel()
        assert not session.retry()
        assert not session.refresh_if_stale()
        assert not session.select_payment_method("card")
        assert await session.confirm() is None

        release.set()
        receipt = await confirming

    assert receipt.receipt_id == "R-4"
    assert session.outcome == "confirmed"


@pytest.mark.asyncio
async def test_result_ignored_when_closed_during_confirm():
    release = asyncio.Event()

    async def persist(vehicle, request):
        await release.wait()
        return {"receipt_id": "R-5"}

    session = _session(persist=persist)
    await session.open()
    confirming = asyncio.create_task(session.confirm())
    await asyncio.sleep(0)

    await session.aclose()
    release.set()

    assert await confirming is None
    assert session.state is CheckoutState.CLOSED
    assert session.receipt is None


@pytest.mark.asyncio
async def test_cancel_during_rate_lookup_discards_rates():
    release = asyncio.Event()

    async def provider(vehicle):
        await release.wait()
        return _table()

    session = CheckoutSession(VEHICLE_RECORD, provider, AsyncMock(), clock=_clock())
    opening = asyncio.create_task(session.open())
    await asyncio.sleep(0)

    assert session.state is CheckoutState.RESOLVING_RATES
    assert session.cancel()
    release.set()

    assert await opening is CheckoutState.CLOSED
    assert session.rate_table is None
    assert session.calculation is None
    assert session._refresh_task is None


@pytest.mark.asyncio
async def test_cancel_discards_working_state():
    async with _session() as session:
        assert await session.dispatch(CancelRequested())

        assert session.state is CheckoutState.CLOSED
        assert session.outcome == "cancelled"
        assert session.calculation is None
        assert session.rate_table is None
        assert not session.retry()


@pytest.mark.asyncio
async def test_dispatch_rejects_unknown_events():
    async with _session() as session:
        with pytest.raises(TypeError):
            await session.dispatch(object())


@pytest.mark.asyncio
async def test_open_twice_is_an_error():
    async with _session() as session:
        with pytest.raises(RuntimeError):
            await session.open()


@pytest.mark.asyncio
async def test_sessions_are_independent():
    other = {**VEHICLE_RECORD, "id": "veh-2", "plate_number": "MH12ZZ0001", "check_in_time": "2024-01-01T13:00:00Z"}

    async with _session() as first, _session(vehicle=other) as second:
        first.select_payment_method("free")

        assert first.calculation.amount == Decimal("10.00")
        assert second.calculation.amount == Decimal("5.00")
        assert second.payment_method is PaymentMethod.CASH


@pytest.mark.asyncio
async def test_from_client_binds_rates_and_persistence():
    client = MagicMock()
    client.get_contractor_rates = AsyncMock(return_value=_table())
    client.checkout_vehicle = AsyncMock(return_value={"receipt_id": "R-6"})

    session = CheckoutSession.from_client(client, VEHICLE_RECORD, clock=_clock(), attendant_id="att-7")
    async with session:
        receipt = await session.confirm()

    client.get_contractor_rates.assert_awaited_once_with("ctr-1")
    vehicle_id, request = client.checkout_vehicle.await_args.args
    assert vehicle_id == "veh-1"
    assert request.payment_amount == Decimal("10.00")
    assert receipt.receipt_id == "R-6"


@pytest.mark.asyncio
async def test_from_client_without_contractor_is_terminal():
    client = MagicMock()
    client.get_contractor_rates = AsyncMock()
    record = {k: v for k, v in VEHICLE_RECORD.items() if k != "contractor_id"}

    session = CheckoutSession.from_client(client, record, clock=_clock())
    await session.open()

    assert session.state is CheckoutState.RATES_NOT_CONFIGURED
    assert "not linked to a contractor" in session.error
    client.get_contractor_rates.assert_not_awaited()
