import logging
from typing import Any, Dict, List, Sequence

import polyline
import requests

from LocationSample import Coordinates, LatLng
from RoutePath import RoutePath
from errors import DirectionsFailed
from route_calculator import RouteResult, distance_meters, format_km

logger = logging.getLogger(__name__)

OSRM_DRIVE = "http://localhost:5000"


# -------------------------
# text helpers
# -------------------------
def distance_text(meters: float) -> str:
    if meters < 1000:
        return f"{int(round(meters))} m"
    return format_km(meters)


def duration_text(seconds: float) -> str:
    minutes = max(1, int(round(seconds / 60.0)))
    if minutes < 60:
        return f"{minutes} min" if minutes == 1 else f"{minutes} mins"
    hours, rest = divmod(minutes, 60)
    return f"{hours} h {rest} mins" if rest else f"{hours} h"


def instruction_text(step: Dict[str, Any]) -> str:
    maneuver = step.get("maneuver", {})
    kind = maneuver.get("type", "")
    modifier = maneuver.get("modifier", "")
    name = step.get("name") or ""
    onto = f" onto {name}" if name else ""

    if kind == "depart":
        return f"Head {_heading(maneuver.get('bearing_after'))}{(' on ' + name) if name else ''}"
    if kind == "arrive":
        return "You have arrived at your stop"
    if kind in ("turn", "end of road", "fork", "on ramp", "off ramp"):
        return f"Turn {modifier}{onto}".strip() if modifier else f"Continue{onto}"
    if kind in ("roundabout", "rotary"):
        exit_no = maneuver.get("exit")
        return f"At the roundabout take exit {exit_no}{onto}" if exit_no else f"Enter the roundabout{onto}"
    return f"Continue{onto}"


def _heading(bearing) -> str:
    if bearing is None:
        return "forward"
    names = ["north", "northeast", "east", "southeast", "south", "southwest", "west", "northwest"]
    return names[int(((bearing % 360) + 22.5) // 45) % 8]


def _segments(geometry: List[LatLng], total_time_s: float):
    seg_dist = [
        distance_meters(Coordinates(*a), Coordinates(*b))
        for a, b in zip(geometry, geometry[1:])
    ]
    total = sum(seg_dist)
    if total <= 0:
        return seg_dist, [0.0 for _ in seg_dist]
    return seg_dist, [total_time_s * d / total for d in seg_dist]


# -------------------------
# OSRM provider
# -------------------------
class OsrmDirections:
    """Driving directions from an OSRM server (public demo or local docker)."""

    def __init__(self, base_url: str = OSRM_DRIVE, profile: str = "driving", timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout_s = timeout_s

    def build_url(self, origin: Coordinates, destination: Coordinates,
                  waypoints: Sequence[Coordinates] = ()) -> str:
        points = [origin, *waypoints, destination]
        coords = ";".join(f"{p.lng},{p.lat}" for p in points)
        return (
            f"{self.base_url}/route/v1/{self.profile}/{coords}"
            "?overview=full&geometries=polyline&steps=true"
        )

    def route(self, origin: Coordinates, destination: Coordinates,
              waypoints: Sequence[Coordinates] = ()) -> RouteResult:
        url = self.build_url(origin, destination, waypoints)
        try:
            r = requests.get(url, timeout=self.timeout_s)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise DirectionsFailed(f"Directions request failed: {e}") from e

        if data.get("code") != "Ok" or not data.get("routes"):
            raise DirectionsFailed(f"Directions request failed: {data.get('code')} {data.get('message', '')}".strip())

        return self.parse(data)

    @staticmethod
    def parse(data: Dict[str, Any]) -> RouteResult:
        route = data["routes"][0]
        legs = route.get("legs") or []
        first_leg = legs[0] if legs else {"distance": route["distance"], "duration": route["duration"], "steps": []}

        geometry = [(lat, lon) for lat, lon in polyline.decode(route["geometry"])]
        seg_dist, seg_time = _segments(geometry, float(route["duration"]))

        steps = first_leg.get("steps") or []
        first_instruction = ""
        for step in steps:
            text = instruction_text(step)
            if text:
                first_instruction = text
                break

        leg_distance = float(first_leg["distance"])
        leg_duration = float(first_leg["duration"])
        return RouteResult(
            path=RoutePath(geometry_latlon=geometry, seg_dist_m=seg_dist, seg_time_s=seg_time),
            distance_m=leg_distance,
            duration_s=leg_duration,
            distance_text=distance_text(leg_distance),
            duration_text=duration_text(leg_duration),
            first_instruction=first_instruction,
            total_distance_m=sum(float(l["distance"]) for l in legs) if legs else leg_distance,
        )
