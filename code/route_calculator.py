import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence, Tuple

from LocationSample import Coordinates
from RoutePath import RoutePath
from errors import DirectionsFailed
from providers import DirectionsProvider

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


# -------------------------
# pure geo math
# -------------------------
def distance_meters(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance in metres."""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lng)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(x)))


def bearing_degrees(a: Coordinates, b: Coordinates) -> float:
    """Forward azimuth from a to b in [0, 360)."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlon = math.radians(b.lng - a.lng)
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def eta_minutes(distance_m: float, speed_mps: Optional[float]) -> int:
    """0 means unknown (stopped or no speed)."""
    if not speed_mps or speed_mps <= 0:
        return 0
    distance_km = distance_m / 1000.0
    speed_kmh = speed_mps * 3.6
    return max(1, _round_half_up(distance_km * 60 / speed_kmh))


def format_eta(minutes: int) -> str:
    if minutes <= 0:
        return "--"
    if minutes <= 2:
        return "Soon"
    return f"{minutes}min"


def format_km(meters: float) -> str:
    return f"{meters / 1000.0:.1f} km"


def format_clock(dt: datetime) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


# -------------------------
# routed result
# -------------------------
@dataclass(frozen=True)
class RouteResult:
    path: RoutePath
    distance_m: float          # first leg, to the next stop
    duration_s: float
    distance_text: str
    duration_text: str
    first_instruction: str = ""
    total_distance_m: float = 0.0   # all legs, incl. waypoints
    fetched_at: float = field(default_factory=time.time)

    def estimated_arrival(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        minutes = _round_half_up(self.duration_s / 60.0)
        return format_clock(now + timedelta(minutes=minutes))


class RouteCalculator:
    """
    Throttled front for a directions provider. The last good route survives
    provider failures.
    """

    def __init__(self, provider: DirectionsProvider, refresh_interval_s: float = 30.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.provider = provider
        self.refresh_interval_s = refresh_interval_s
        self._clock = clock
        self.route: Optional[RouteResult] = None
        self.last_error: Optional[str] = None
        self._last_attempt: Optional[float] = None
        self._last_targets: Optional[Tuple[Coordinates, ...]] = None
        self._lock = asyncio.Lock()

    def due(self, destination: Coordinates, now: Optional[float] = None,
            waypoints: Sequence[Coordinates] = ()) -> bool:
        """A new set of stops is always due, otherwise only once per interval."""
        if self._last_attempt is None or (*waypoints, destination) != self._last_targets:
            return True
        now = self._clock() if now is None else now
        return now - self._last_attempt >= self.refresh_interval_s

    async def request_route(self, origin: Coordinates, destination: Coordinates,
                            waypoints: Sequence[Coordinates] = ()) -> RouteResult:
        async with self._lock:
            self._last_attempt = self._clock()
            self._last_targets = (*waypoints, destination)
            try:
                result = await asyncio.to_thread(self.provider.route, origin, destination, list(waypoints))
            except DirectionsFailed as e:
                self.last_error = str(e)
                logger.warning("Directions request failed, keeping previous route: %s", e)
                raise
            self.route = result
            self.last_error = None
            logger.info("Route ready: %s, %s", result.distance_text, result.duration_text)
            return result

    async def maybe_refresh(self, origin: Coordinates, destination: Coordinates,
                            waypoints: Sequence[Coordinates] = (),
                            now: Optional[float] = None) -> Optional[RouteResult]:
        """Returns None when throttled. Raises DirectionsFailed like request_route."""
        if not self.due(destination, now, waypoints):
            return None
        return await self.request_route(origin, destination, waypoints)

    def reset(self) -> None:
        self.route = None
        self.last_error = None
        self._last_attempt = None
        self._last_targets = None
