"""
Live map state for one trip: bounded trace, current position, derived stats
and a folium snapshot of it all.

Nothing in here changes trip state, it only displays what it is fed.
"""
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

import folium

from LocationSample import LatLng, LocationSample
from RouteStep import RouteStep, first_incomplete
from geocode_cache import GeocodeCache, format_coordinates
from pulse import PulseAnimation
from route_calculator import (
    RouteCalculator,
    _round_half_up,
    bearing_degrees,
    distance_meters,
    eta_minutes,
    format_eta,
    format_km,
)

logger = logging.getLogger(__name__)

COMPASS_POINTS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]
DEFAULT_CENTER: LatLng = (12.9716, 77.5946)


def compass_bucket(bearing: Optional[float]) -> str:
    if bearing is None:
        return "--"
    return COMPASS_POINTS[_round_half_up((bearing % 360) / 45.0) % 8]


# -------------------------
# trace
# -------------------------
class TracePath:
    """Most recent positions, newest first, never more than `limit`."""

    def __init__(self, limit: int = 49) -> None:
        self.limit = limit
        self._points: List[LocationSample] = []

    def __len__(self) -> int:
        return len(self._points)

    @property
    def head(self) -> Optional[LocationSample]:
        return self._points[0] if self._points else None

    @property
    def points(self) -> List[LocationSample]:
        return list(self._points)

    def add(self, sample: LocationSample) -> bool:
        head = self.head
        if head is not None and sample.captured_at <= head.captured_at:
            return False
        self._points.insert(0, sample)
        del self._points[self.limit:]
        return True

    def load(self, samples: Iterable[LocationSample]) -> None:
        ordered = sorted(samples, key=lambda s: s.captured_at, reverse=True)
        self._points = ordered[:self.limit]

    def clear(self) -> None:
        self._points.clear()

    def coordinates(self) -> List[LatLng]:
        return [p.coordinates.as_tuple() for p in self._points]

    def total_distance_m(self) -> float:
        # only what is still in the trace; older hops are gone
        pts = self._points
        return sum(distance_meters(a.coordinates, b.coordinates) for a, b in zip(pts, pts[1:]))


# -------------------------
# stats
# -------------------------
@dataclass(frozen=True)
class TripStats:
    speed_kmh: int
    accuracy_m: int
    compass: str
    distance_text: str
    eta_text: str
    travelled_km: str
    address: str
    estimated_arrival: str = ""


EMPTY_STATS = TripStats(0, 0, "--", "--", "--", format_km(0.0), "Waiting for location...")


# -------------------------
# atomic write
# -------------------------
def write_atomic(path: str, text: str, retries: int = 30, sleep_s: float = 0.01) -> None:
    dir_name = os.path.dirname(os.path.abspath(path)) or "."
    last_err: Optional[BaseException] = None

    for _ in range(retries):
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(prefix="map_", suffix=".html", dir=dir_name)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, path)
            tmp_path = None
            return
        except PermissionError as e:
            # viewer has the file open (windows)
            last_err = e
            time.sleep(sleep_s)
        finally:
            if tmp_path is not None:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    raise last_err


# -------------------------
# renderer
# -------------------------
class LiveMapRenderer:
    def __init__(self, trace_limit: int = 49, geocoder: Optional[GeocodeCache] = None,
                 routes: Optional[RouteCalculator] = None,
                 pulse: Optional[PulseAnimation] = None) -> None:
        self.trace = TracePath(trace_limit)
        self.geocoder = geocoder
        self.routes = routes
        self.pulse = pulse
        self.current: Optional[LocationSample] = None
        self.current_source: Optional[str] = None
        self.steps: List[RouteStep] = []

    def set_steps(self, steps: List[RouteStep]) -> None:
        self.steps = steps

    @property
    def next_step(self) -> Optional[RouteStep]:
        i = first_incomplete(self.steps)
        return self.steps[i] if i < len(self.steps) else None

    def load_history(self, samples: Iterable[LocationSample]) -> None:
        samples = list(samples)
        self.trace.load(samples)
        for sample in sorted(samples, key=lambda s: s.captured_at):
            self._take(sample, "history")

    def ingest(self, sample: LocationSample, source: str = "channel") -> bool:
        """
        Feed one sample from any path (channel, rest, local device).
        Returns False when it is older than what is already shown.
        """
        if sample.bearing_deg is None:
            sample = self._with_trace_bearing(sample)
        self.trace.add(sample)
        return self._take(sample, source)

    def reset(self) -> None:
        self.trace.clear()
        self.current = None
        self.current_source = None

    def _take(self, sample: LocationSample, source: str) -> bool:
        if self.current is not None and sample.captured_at <= self.current.captured_at:
            logger.debug("Ignoring stale %s sample (%.3f <= %.3f)",
                         source, sample.captured_at, self.current.captured_at)
            return False
        self.current = sample
        self.current_source = source
        return True

    def _with_trace_bearing(self, sample: LocationSample) -> LocationSample:
        head = self.trace.head
        if head is None or head.captured_at >= sample.captured_at:
            return sample
        if distance_meters(head.coordinates, sample.coordinates) < 1.0:
            return sample.with_bearing(head.bearing_deg) if head.bearing_deg is not None else sample
        return sample.with_bearing(bearing_degrees(head.coordinates, sample.coordinates))

    # -------------------------
    # stats
    # -------------------------
    def stats(self, now: Optional[datetime] = None) -> TripStats:
        sample = self.current
        if sample is None:
            return EMPTY_STATS

        speed_mps = sample.speed_mps or 0.0
        step = self.next_step
        route = self.routes.route if self.routes is not None else None

        distance_text = "--"
        eta_text = "--"
        arrival = ""
        if step is not None and step.location is not None:
            distance_m = distance_meters(sample.coordinates, step.location)
            distance_text = route.distance_text if route is not None else format_km(distance_m)
            eta_text = format_eta(eta_minutes(distance_m, speed_mps))
            if route is not None:
                arrival = route.estimated_arrival(now)

        if self.geocoder is not None:
            address = self.geocoder.address_for("current", sample.coordinates)
        else:
            address = format_coordinates(sample.lat, sample.lng)

        return TripStats(
            speed_kmh=_round_half_up(speed_mps * 3.6),
            accuracy_m=_round_half_up(sample.accuracy_m or 0.0),
            compass=compass_bucket(sample.bearing_deg),
            distance_text=distance_text,
            eta_text=eta_text,
            travelled_km=format_km(self.trace.total_distance_m()),
            address=address,
            estimated_arrival=arrival,
        )

    # -------------------------
    # folium
    # -------------------------
    def _center(self) -> LatLng:
        if self.current is not None:
            return self.current.coordinates.as_tuple()
        for step in self.steps:
            if step.location is not None:
                return step.location.as_tuple()
        return DEFAULT_CENTER

    def build_map(self, zoom_start: int = 15) -> folium.Map:
        m = folium.Map(location=list(self._center()), zoom_start=zoom_start)

        route = self.routes.route if self.routes is not None else None
        if route is not None and len(route.path.geometry_latlon) >= 2:
            folium.PolyLine(route.path.geometry_latlon, color="blue", weight=5, opacity=0.6,
                            tooltip=f"{route.distance_text}, {route.duration_text}").add_to(m)

        trace = self.trace.coordinates()
        if len(trace) >= 2:
            folium.PolyLine(trace, color="#10b981", weight=4, opacity=0.8, tooltip="Travelled").add_to(m)

        current_idx = first_incomplete(self.steps)
        for i, step in enumerate(self.steps):
            if step.location is None:
                continue
            if step.completed:
                color = "green"
            elif i == current_idx:
                color = "red"
            else:
                color = "gray"
            folium.Marker(
                step.location.as_tuple(),
                tooltip=f"{step.marker}: {step.label}",
                icon=folium.Icon(color=color, icon="info-sign"),
            ).add_to(m)

        if self.current is not None:
            self._draw_current(m, self.current)

        return m

    def _draw_current(self, m: folium.Map, sample: LocationSample) -> None:
        loc = sample.coordinates.as_tuple()
        folium.Circle(loc, radius=sample.accuracy_m or 20, color="#3b82f6",
                      fill=True, fill_opacity=0.1, weight=1).add_to(m)

        phase = self.pulse.phase if self.pulse is not None else 0.0
        folium.CircleMarker(loc, radius=8 + 16 * phase, color="#10b981", weight=2,
                            fill=True, fill_opacity=0.4 * (1.0 - phase)).add_to(m)

        stats = self.stats()
        folium.Marker(
            loc,
            tooltip=f"{stats.speed_kmh} km/h {stats.compass}",
            popup=stats.address,
            icon=folium.Icon(color="green", icon="arrow-up", angle=int(sample.bearing_deg or 0)),
        ).add_to(m)

    def render(self, out_path: str) -> str:
        html = self.build_map().get_root().render()
        write_atomic(out_path, html)
        logger.debug("Map written to %s", out_path)
        return out_path
