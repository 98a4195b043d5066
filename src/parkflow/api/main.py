from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import ParkFlowError
from ..rules.parking_fee import calculate_parking_fee
from ..rules.rates import VehicleClass
from ..rules.rates_loader import default_rate_table
from ..settings import settings

# ---------------- Logging ----------------
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("parkflow-api")

API_VERSION = "1.0.0"

app = FastAPI(
    title="ParkFlow Fee Service",
    version=API_VERSION,
    description="Parking fee quotes for attendant checkout screens",
)


# ============ Pydantic Models ============

class DurationOut(BaseModel):
    hours: int
    minutes: int
    seconds: int
    total_hours: float
    formatted: str = Field(..., examples=["03:30:00"])


class FeeQuoteRequest(BaseModel):
    check_in_time: str = Field(..., examples=["2024-01-01T10:00:00Z"])
    check_out_time: Optional[str] = Field(
        None, description="Defaults to the current time", examples=["2024-01-01T13:30:00Z"]
    )
    vehicle_type: str = Field(..., examples=["4-wheeler"])
    rates: Optional[Dict[str, Any]] = Field(
        None,
        description="Bracket prices {upTo2Hours, upTo6Hours, upTo12Hours, upTo24Hours}; "
        "defaults to the built-in rates for the vehicle class",
    )


class FeeQuoteResponse(BaseModel):
    vehicle_type: str
    check_in_time: datetime
    check_out_time: datetime
    duration: DurationOut
    amount: str = Field(..., examples=["10.00"])
    breakdown: str
    tier: str


# ============ Error handling ============

@app.exception_handler(ParkFlowError)
async def parkflow_error_handler(request: Request, exc: ParkFlowError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content={"detail": {"error": exc.kind, "message": str(exc)}},
    )


# ============ Routes ============

@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "version": API_VERSION}


@app.get("/rates/defaults")
def default_rates() -> Dict[str, Dict[str, str]]:
    return default_rate_table().to_dict()


@app.post("/fees/calculate", response_model=FeeQuoteResponse)
def calculate_fee(req: FeeQuoteRequest) -> FeeQuoteResponse:
    vehicle_class = VehicleClass.parse(req.vehicle_type)
    rates = req.rates if req.rates is not None else default_rate_table().tier_for(vehicle_class)
    check_out = req.check_out_time or datetime.now(timezone.utc)

    calc = calculate_parking_fee(
        req.check_in_time,
        check_out,
        vehicle_class,
        rates,
        currency=settings.currency_symbol,
        max_duration=settings.max_duration,
    )
    return FeeQuoteResponse(
        vehicle_type=calc.vehicle_class.value,
        check_in_time=calc.check_in_time,
        check_out_time=calc.check_out_time,
        duration=DurationOut(**calc.duration.to_dict()),
        amount=str(calc.amount),
        breakdown=calc.breakdown,
        tier=calc.tier,
    )
