import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from RouteStep import build_route_steps, route_targets
from Trip import StopStatus, Trip, TripStatus, trip_progress
from config import TrackingConfig
from errors import ApiError, DirectionsFailed
from geocode_cache import GeocodeCache
from live_channel import (
    ChatMessage,
    DriverStatusEvent,
    EmergencyAlert,
    EmployeeStatusEvent,
    LiveChannel,
    LocationEvent,
    TripStatusEvent,
)
from live_map import LiveMapRenderer, TripStats
from pulse import PulseAnimation
from route_calculator import RouteCalculator

logger = logging.getLogger(__name__)


# -------------------------
# shared by viewer and driver
# -------------------------
async def refresh_derived(renderer: LiveMapRenderer, geocoder: Optional[GeocodeCache],
                          routes: Optional[RouteCalculator], force_route: bool = False) -> Optional[str]:
    """
    Geocode the current position and refresh the route toward the next stops.
    Returns a user-facing notice when the route could not be refreshed.
    """
    sample = renderer.current
    if sample is None:
        return None

    if geocoder is not None:
        await geocoder.resolve(sample.lat, sample.lng, "current")

    targets = route_targets(renderer.steps)
    if routes is None or not targets:
        return None
    destination, waypoints = targets[-1], targets[:-1]
    try:
        if force_route:
            await routes.request_route(sample.coordinates, destination, waypoints)
        else:
            await routes.maybe_refresh(sample.coordinates, destination, waypoints)
    except DirectionsFailed as e:
        return str(e)
    return None


class BackgroundTasks:
    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel_all(self) -> List[asyncio.Task]:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        self._tasks.clear()
        return tasks

    async def drain(self) -> None:
        for t in self.cancel_all():
            try:
                await t
            except asyncio.CancelledError:
                pass


# -------------------------
# viewer
# -------------------------
class TripView:
    """
    One trip on screen for HR, dispatch or a rider.

    Location comes from the trip room; while the channel is down the view
    polls the REST current location instead. Whichever sample is newest wins.
    """

    def __init__(self, trip: Trip, channel: LiveChannel, api, geocoder: Optional[GeocodeCache] = None,
                 routes: Optional[RouteCalculator] = None, config: Optional[TrackingConfig] = None) -> None:
        self.trip = trip
        self.channel = channel
        self.api = api
        self.geocoder = geocoder
        self.routes = routes
        self.config = config or TrackingConfig()

        cfg = self.config
        self.pulse = PulseAnimation(cfg.pulse_period_ms, cfg.pulse_rise_fraction, cfg.animation_fps)
        self.renderer = LiveMapRenderer(cfg.trace_limit, geocoder, routes, self.pulse)
        self.renderer.set_steps(build_route_steps(trip))

        self.driver_status: Optional[str] = None
        self.alerts: List[EmergencyAlert] = []
        self.messages: List[ChatMessage] = []
        self.notice: Optional[str] = None
        self.is_open = False
        self._tasks = BackgroundTasks()
        self._poller: Optional[asyncio.Task] = None

    # -------------------------
    # lifecycle
    # -------------------------
    async def open(self) -> None:
        self.is_open = True
        self.channel.on_disconnect = self._start_polling
        self.channel.on_reconnect = self._on_reconnect
        await self.channel.subscribe(self.trip.id, self.handle_event)
        await self.load_from_rest()
        self.pulse.start()
        if not self.channel.connected:
            self._start_polling()
        self._tasks.spawn(self._refresh())
        logger.info("Viewing trip %s", self.trip.id)

    async def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        self.pulse.stop()
        self._stop_polling()
        await self._tasks.drain()
        if self.channel.on_disconnect == self._start_polling:
            self.channel.on_disconnect = None
            self.channel.on_reconnect = None
        await self.channel.unsubscribe(self.trip.id)
        logger.info("Closed trip view %s", self.trip.id)

    # -------------------------
    # inputs
    # -------------------------
    def handle_event(self, event) -> None:
        if not self.is_open:
            return
        if isinstance(event, LocationEvent):
            if self.renderer.ingest(event.sample, "channel"):
                self._tasks.spawn(self._refresh())
        elif isinstance(event, TripStatusEvent):
            self._apply_trip_status(event.status)
        elif isinstance(event, EmployeeStatusEvent):
            self._apply_employee_status(event.employee_id, event.status)
        elif isinstance(event, DriverStatusEvent):
            self.driver_status = event.status
        elif isinstance(event, EmergencyAlert):
            self.alerts.append(event)
            logger.warning("Emergency on trip %s: %s", event.trip_id, event.message)
        elif isinstance(event, ChatMessage):
            self.messages.append(event)

    async def load_from_rest(self) -> None:
        try:
            history = await self.api.get_history(self.trip.id, self.config.history_limit)
            current = await self.api.get_current_location(self.trip.id)
        except ApiError as e:
            logger.warning("Could not load location history for %s: %s", self.trip.id, e)
            return
        self.renderer.load_history(history)
        if current is not None:
            self.renderer.ingest(current, "rest")

    def _apply_trip_status(self, status: str) -> None:
        try:
            self.trip.status = TripStatus(status)
        except ValueError:
            logger.warning("Unknown trip status %r", status)
            return
        if self.trip.status is TripStatus.COMPLETED:
            self.renderer.set_steps(build_route_steps(self.trip))

    def _apply_employee_status(self, employee_id: str, status: str) -> None:
        try:
            entry = self.trip.entry_for(employee_id)
            new_status = StopStatus(status)
        except (KeyError, ValueError) as e:
            logger.warning("Ignoring employee status %r for %s: %s", status, employee_id, e)
            return
        # forward only, a late or repeated event never moves a stop back
        if new_status.rank <= entry.status.rank:
            return
        entry.status = new_status
        self.renderer.set_steps(build_route_steps(self.trip))

    # -------------------------
    # outputs
    # -------------------------
    def stats(self) -> TripStats:
        return self.renderer.stats()

    def progress(self):
        return trip_progress(self.trip)

    def render(self, out_path: str) -> str:
        return self.renderer.render(out_path)

    # -------------------------
    # internals
    # -------------------------
    async def _refresh(self) -> None:
        notice = await refresh_derived(self.renderer, self.geocoder, self.routes)
        if notice:
            self.notice = notice

    def _start_polling(self) -> None:
        if not self.is_open or (self._poller is not None and not self._poller.done()):
            return
        logger.info("Channel down, polling REST for trip %s", self.trip.id)
        self._poller = asyncio.ensure_future(self._poll_rest())

    def _stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    def _on_reconnect(self) -> None:
        self._stop_polling()
        # no replay on the relay, catch up from the backend log
        self._tasks.spawn(self.load_from_rest())

    async def _poll_rest(self) -> None:
        while self.is_open and not self.channel.connected:
            try:
                current = await self.api.get_current_location(self.trip.id)
            except ApiError as e:
                logger.warning("REST location poll failed for %s: %s", self.trip.id, e)
            else:
                if current is not None and self.renderer.ingest(current, "rest"):
                    self._tasks.spawn(self._refresh())
            await asyncio.sleep(self.config.location_push_interval_s)


class TripViewManager:
    """At most one open view; a new one only starts after the old one is torn down."""

    def __init__(self, factory: Callable[[Trip], TripView]) -> None:
        self.factory = factory
        self.current: Optional[TripView] = None
        self._lock = asyncio.Lock()

    async def open(self, trip: Trip) -> TripView:
        async with self._lock:
            if self.current is not None:
                await self.current.close()
                self.current = None
            view = self.factory(trip)
            await view.open()
            self.current = view
            return view

    async def close(self) -> None:
        async with self._lock:
            if self.current is not None:
                await self.current.close()
                self.current = None
