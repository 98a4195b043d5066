# src/parkflow/clients/backend_client.py
"""
ParkFlow backend client: thin async wrapper over the REST API.

The backend wraps every payload in an envelope
``{success, statusCode, message, data, timestamp}``. Only the calls the
checkout flow needs live here: the contractor's rate table, a vehicle
record, and the checkout itself.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import (
    BackendConnectionError,
    BackendError,
    ParkFlowError,
    PersistenceFailed,
)
from ..models import CheckoutRequest, Vehicle
from ..rules.rates import RateTable
from ..settings import settings

logger = logging.getLogger(__name__)

USER_AGENT = "ParkFlow-Checkout/1.0"


def _envelope_status(payload: Mapping[str, Any], fallback: int) -> int:
    try:
        return int(payload.get("statusCode") or fallback)
    except (TypeError, ValueError):
        return fallback


class ParkFlowClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.normalized_base_url).strip().rstrip("/")
        self.timeout = settings.request_timeout if timeout is None else timeout
        token = settings.api_token if token is None else token

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )
        logger.info("ParkFlow client initialized base_url=%s timeout=%ss", self.base_url, self.timeout)

    async def __aenter__(self) -> "ParkFlowClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---------------- HTTP core ----------------
    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise BackendConnectionError(f"Timeout calling {method} {path}: {exc}") from exc
        except httpx.TransportError as exc:
            raise BackendConnectionError(f"Connection error calling {method} {path}: {exc}") from exc
        except httpx.RequestError as exc:
            raise BackendConnectionError(f"Request to {method} {path} failed: {exc}") from exc

        payload: Any = None
        if "application/json" in resp.headers.get("content-type", ""):
            try:
                payload = resp.json()
            except ValueError:
                raise BackendError(
                    resp.status_code, f"Failed to parse response: {resp.reason_phrase}"
                ) from None

        if resp.is_error:
            message = resp.reason_phrase or "request failed"
            if isinstance(payload, Mapping) and payload.get("message"):
                message = str(payload["message"])
            raise BackendError(resp.status_code, message)

        if isinstance(payload, Mapping) and "success" in payload:
            if not payload.get("success"):
                raise BackendError(
                    _envelope_status(payload, resp.status_code),
                    str(payload.get("message") or "request was not successful"),
                )
            return payload.get("data")
        return payload

    # ---------------- Endpoints ----------------
    async def get_contractor(self, contractor_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/contractors/{contractor_id}")
        if not isinstance(data, Mapping):
            raise BackendError(404, f"Contractor {contractor_id} not found")
        return dict(data)

    async def get_contractor_rates(self, contractor_id: str) -> Optional[RateTable]:
        """Return the contractor's rate table, or None when no rates are configured."""

        contractor = await self.get_contractor(contractor_id)
        table = RateTable.from_mapping(contractor)
        if table is None:
            logger.warning("Contractor %s has no parking rates configured", contractor_id)
        return table

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        data = await self._request("GET", f"/vehicles/{vehicle_id}")
        if not isinstance(data, Mapping):
            raise BackendError(404, f"Vehicle {vehicle_id} not found")
        return Vehicle.from_record(data)

    async def checkout_vehicle(self, vehicle_id: str, request: CheckoutRequest) -> Dict[str, Any]:
        """Close a parking session. Any failure surfaces as PersistenceFailed."""

        try:
            data = await self._request(
                "POST", f"/vehicles/checkout/{vehicle_id}", json=request.to_payload()
            )
        except ParkFlowError as exc:
            raise PersistenceFailed(f"Checkout failed for vehicle {vehicle_id}: {exc}") from exc
        return dict(data) if isinstance(data, Mapping) else {}
