from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def as_tuple(self) -> LatLng:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Coordinates":
        return Coordinates(float(d["lat"]), float(d["lng"]))


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> float:
    """Epoch seconds from an ISO string, epoch seconds/millis or datetime."""
    if value is None:
        return time.time()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        # browsers stamp positions in millis
        return value / 1000.0 if value > 1e11 else float(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def iso_timestamp(epoch_s: float) -> str:
    return datetime.fromtimestamp(epoch_s, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _opt_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class LocationSample:
    coordinates: Coordinates
    speed_mps: Optional[float] = None
    bearing_deg: Optional[float] = None
    accuracy_m: Optional[float] = None
    captured_at: float = field(default_factory=time.time)

    @property
    def lat(self) -> float:
        return self.coordinates.lat

    @property
    def lng(self) -> float:
        return self.coordinates.lng

    def with_bearing(self, bearing_deg: float) -> "LocationSample":
        return LocationSample(
            coordinates=self.coordinates,
            speed_mps=self.speed_mps,
            bearing_deg=bearing_deg,
            accuracy_m=self.accuracy_m,
            captured_at=self.captured_at,
        )

    def location_dict(self) -> Dict[str, Any]:
        return {
            "coordinates": self.coordinates.to_dict(),
            "speed": self.speed_mps or 0,
            "bearing": self.bearing_deg or 0,
            "accuracy": self.accuracy_m or 0,
            "timestamp": iso_timestamp(self.captured_at),
        }

    def to_payload(self, trip_id: str) -> Dict[str, Any]:
        """Body of POST /location/update."""
        return {"tripId": trip_id, "location": self.location_dict()}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "LocationSample":
        """
        Accepts the channel shape {tripId, location:{coordinates, speed, bearing,
        accuracy}, timestamp} as well as the REST shape
        {location:{coordinates, accuracy}, speed, timestamp}.
        """
        loc = data.get("location") or data
        coords = loc.get("coordinates") or data.get("coordinates")
        if coords is None and "lat" in data:
            coords = data
        if coords is None:
            raise ValueError(f"payload has no coordinates: {data!r}")

        speed = loc.get("speed", data.get("speed"))
        bearing = loc.get("bearing", data.get("bearing", data.get("heading")))
        accuracy = loc.get("accuracy", data.get("accuracy"))
        ts = data.get("timestamp") or loc.get("timestamp")

        return LocationSample(
            coordinates=Coordinates.from_dict(coords),
            speed_mps=_opt_float(speed),
            bearing_deg=_opt_float(bearing),
            accuracy_m=_opt_float(accuracy),
            captured_at=parse_timestamp(ts),
        )
