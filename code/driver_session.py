import asyncio
import logging
from typing import Any, Mapping, Optional, Union

from StopSequencer import AdvanceResult, StopSequencer
from Trip import StopStatus, Trip, TripStatus
from config import TrackingConfig
from errors import ApiError
from geo_sampler import GeoSampler, SamplerOptions
from geocode_cache import GeocodeCache
from live_channel import LiveChannel
from live_map import LiveMapRenderer, TripStats
from pulse import PulseAnimation
from route_calculator import RouteCalculator
from trip_view import BackgroundTasks, refresh_derived

logger = logging.getLogger(__name__)


class DriverSession:
    """
    Driver side of an active trip.

    Every device sample goes to the trip room right away; the REST store gets
    the latest one every location_push_interval_s as a backup path. Stop
    confirmations go through the StopSequencer and trigger an immediate route
    recalculation.
    """

    def __init__(self, trip: Trip, sampler: GeoSampler, channel: LiveChannel, api,
                 geocoder: Optional[GeocodeCache] = None, routes: Optional[RouteCalculator] = None,
                 config: Optional[TrackingConfig] = None) -> None:
        self.trip = trip
        self.sampler = sampler
        self.channel = channel
        self.api = api
        self.geocoder = geocoder
        self.routes = routes
        self.config = config or TrackingConfig()

        cfg = self.config
        self.pulse = PulseAnimation(cfg.pulse_period_ms, cfg.pulse_rise_fraction, cfg.animation_fps)
        self.renderer = LiveMapRenderer(cfg.trace_limit, geocoder, routes, self.pulse)
        self.sequencer = StopSequencer(trip, api, distance_km=self.travelled_km)
        self.sequencer.on_confirmed = self._announce_stop
        self.renderer.set_steps(self.sequencer.steps)

        self.notice: Optional[str] = None
        self.published = 0
        self.rest_writes = 0
        self._tasks = BackgroundTasks()
        self._running = False

    def travelled_km(self) -> float:
        return self.renderer.trace.total_distance_m() / 1000.0

    # -------------------------
    # lifecycle
    # -------------------------
    async def start(self, options: Union[SamplerOptions, Mapping[str, Any], None] = None) -> None:
        if self._running:
            return
        if self.trip.status is TripStatus.SCHEDULED:
            await self.sequencer.start_trip()
            await self.channel.publish_trip_status(self.trip.id, TripStatus.ACTIVE.value)

        self._running = True
        stream = self.sampler.samples()
        self.sampler.start_tracking(options)
        self.pulse.start()
        self._tasks.spawn(self._sample_loop(stream))
        self._tasks.spawn(self._push_loop())
        await self.channel.publish_driver_status(self.trip.id, "on_trip")
        logger.info("Driver session started for trip %s", self.trip.id)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.sampler.stop_tracking()
        self.pulse.stop()
        await self._tasks.drain()
        await self.channel.publish_driver_status(self.trip.id, "available")
        logger.info("Driver session stopped for trip %s", self.trip.id)

    # -------------------------
    # stop confirmations
    # -------------------------
    async def advance(self) -> AdvanceResult:
        """
        Confirm the current stop. StatusUpdatePersistFailed, TripCompleteFailed
        and AdvanceInProgress reach the caller untouched.
        """
        result = await self.sequencer.advance_current_stop()
        await self._announce(result)
        return result

    async def set_stop_status(self, employee_ref: str, status: StopStatus) -> AdvanceResult:
        result = await self.sequencer.set_stop_status(employee_ref, status)
        await self._announce(result)
        return result

    async def _announce_stop(self, result: AdvanceResult) -> None:
        # awaited by the sequencer before it completes the trip
        step = result.step
        if step is None or result.new_status is None:
            return
        if step.employee_ref is not None:
            await self.channel.publish_employee_status(self.trip.id, step.employee_ref, result.new_status.value)
        elif step.type.is_office:
            for entry in self.trip.employees:
                if entry.status is result.new_status:
                    await self.channel.publish_employee_status(self.trip.id, entry.employee_ref, entry.status.value)

    async def _announce(self, result: AdvanceResult) -> None:
        if result.trip_completed:
            await self.channel.publish_trip_status(self.trip.id, TripStatus.COMPLETED.value)
            return

        notice = await refresh_derived(self.renderer, self.geocoder, self.routes, force_route=True)
        if notice:
            self.notice = notice

    # -------------------------
    # outputs
    # -------------------------
    def stats(self) -> TripStats:
        return self.renderer.stats()

    def render(self, out_path: str) -> str:
        return self.renderer.render(out_path)

    # -------------------------
    # loops
    # -------------------------
    async def _sample_loop(self, stream) -> None:
        async for sample in stream:
            self.renderer.ingest(sample, "device")
            if await self.channel.publish_location(self.trip.id, sample):
                self.published += 1
            self._tasks.spawn(self._refresh())

    async def _refresh(self) -> None:
        notice = await refresh_derived(self.renderer, self.geocoder, self.routes)
        if notice:
            self.notice = notice

    async def _push_loop(self) -> None:
        while True:
            sample = self.sampler.current_location
            if sample is not None:
                try:
                    await self.api.update_location(self.trip.id, sample)
                    self.rest_writes += 1
                except ApiError as e:
                    logger.warning("REST location update failed for %s: %s", self.trip.id, e)
            await asyncio.sleep(self.config.location_push_interval_s)
