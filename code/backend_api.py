import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from LocationSample import LocationSample
from errors import ApiError

logger = logging.getLogger(__name__)


class BackendApi:
    """Blocking client for the trip/location REST endpoints."""

    def __init__(self, base_url: str, token: str = "", timeout_s: float = 10.0,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise ApiError(f"{method} {path} failed: {e}") from e

        if r.status_code >= 400:
            try:
                detail = r.json().get("message") or r.text
            except ValueError:
                detail = r.text
            raise ApiError(f"{method} {path} returned {r.status_code}: {detail}", r.status_code)

        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise ApiError(f"{method} {path} returned invalid JSON") from e

    # -------------------------
    # location
    # -------------------------
    def update_location(self, trip_id: str, sample: LocationSample) -> Dict[str, Any]:
        return self._call("POST", "/location/update", json=sample.to_payload(trip_id))

    def get_current_location(self, trip_id: str) -> Optional[LocationSample]:
        try:
            data = self._call("GET", f"/location/current/{trip_id}")
        except ApiError as e:
            # nothing published yet for this trip
            if e.status_code == 404:
                return None
            raise
        if not data.get("success") or not data.get("location"):
            return None
        return LocationSample.from_payload(data["location"])

    def get_history(self, trip_id: str, limit: int = 50) -> List[LocationSample]:
        data = self._call("GET", f"/location/history/{trip_id}", params={"limit": limit})
        return [LocationSample.from_payload(loc) for loc in data.get("locations", [])]

    # -------------------------
    # trips
    # -------------------------
    def get_trip(self, trip_id: str) -> Dict[str, Any]:
        data = self._call("GET", f"/trips/{trip_id}")
        return data.get("trip", data)

    def start_trip(self, trip_id: str) -> Dict[str, Any]:
        return self._call("PATCH", f"/trips/{trip_id}/start", json={})

    def complete_trip(self, trip_id: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._call("PATCH", f"/trips/{trip_id}/complete", json=payload or {})

    def update_employee_status(self, trip_id: str, employee_id: str, status: str) -> Dict[str, Any]:
        return self._call(
            "PATCH",
            f"/trips/{trip_id}/employees/{employee_id}/status",
            json={"status": status},
        )


class AsyncBackendApi:
    """Runs BackendApi calls in worker threads so the event loop never blocks."""

    def __init__(self, api: BackendApi) -> None:
        self.api = api

    async def update_location(self, trip_id: str, sample: LocationSample) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.update_location, trip_id, sample)

    async def get_current_location(self, trip_id: str) -> Optional[LocationSample]:
        return await asyncio.to_thread(self.api.get_current_location, trip_id)

    async def get_history(self, trip_id: str, limit: int = 50) -> List[LocationSample]:
        return await asyncio.to_thread(self.api.get_history, trip_id, limit)

    async def get_trip(self, trip_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.get_trip, trip_id)

    async def start_trip(self, trip_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.start_trip, trip_id)

    async def complete_trip(self, trip_id: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.complete_trip, trip_id, payload)

    async def update_employee_status(self, trip_id: str, employee_id: str, status: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.api.update_employee_status, trip_id, employee_id, status)


def completion_payload(actual_distance_km: float) -> Dict[str, Any]:
    return {
        "actualDistance": round(actual_distance_km, 3),
        "completedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
