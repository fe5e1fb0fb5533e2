import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, fields
from typing import (Any, AsyncIterator, Callable, Deque, Iterable, List, Mapping,
                    Optional, Union)

from LocationSample import Coordinates, LocationSample
from RoutePath import RoutePath
from errors import PositionError, PositionTimeout, PositionUnavailable
from providers import PositionSource
from route_calculator import bearing_degrees, distance_meters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplerOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_sample_age_ms: int = 0

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]] = None) -> "SamplerOptions":
        options = dict(options or {})
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise TypeError(f"Unsupported sampler options: {', '.join(sorted(unknown))}")
        return cls(**options)


class GeoSampler:
    """
    Continuous device position for the local device.

    A failed fix records the error and keeps the last good location; the
    source keeps watching on its own, nothing here retries.
    """

    def __init__(self, source: PositionSource, history_limit: int = 100) -> None:
        self.source = source
        self.current_location: Optional[LocationSample] = None
        self.error: Optional[str] = None
        self.is_tracking = False
        self._history: Deque[LocationSample] = deque(maxlen=history_limit)
        self._listeners: List[Callable[[LocationSample], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._stream: Optional[asyncio.Queue] = None
        self._stream_taken = False

    # -------------------------
    # lifecycle
    # -------------------------
    def start_tracking(self, options: Union[SamplerOptions, Mapping[str, Any], None] = None) -> None:
        if self._task is not None and not self._task.done():
            return
        if not isinstance(options, SamplerOptions):
            options = SamplerOptions.from_mapping(options)
        self._task = asyncio.ensure_future(self._run(options))

    def stop_tracking(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.is_tracking = False
        self._end_stream()

    async def get_current_position(self, options: Union[SamplerOptions, Mapping[str, Any], None] = None) -> LocationSample:
        if not isinstance(options, SamplerOptions):
            options = SamplerOptions.from_mapping(options)
        try:
            return await asyncio.wait_for(self.source.current(options), options.timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise PositionTimeout() from e

    # -------------------------
    # consumers
    # -------------------------
    def add_listener(self, callback: Callable[[LocationSample], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[LocationSample], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def samples(self) -> AsyncIterator[LocationSample]:
        """The one and only sample stream. Ends when tracking stops."""
        if self._stream_taken:
            raise RuntimeError("sample stream already taken; it cannot be restarted")
        self._stream_taken = True
        queue: asyncio.Queue = asyncio.Queue()
        self._stream = queue
        return self._drain(queue)

    def get_location_history(self) -> List[LocationSample]:
        return list(self._history)

    def clear_location_history(self) -> None:
        self._history.clear()

    # -------------------------
    # internals
    # -------------------------
    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[LocationSample]:
        while True:
            item = await queue.get()
            if item is None:
                return
            yield item

    async def _run(self, options: SamplerOptions) -> None:
        try:
            first = await asyncio.wait_for(self.source.current(options), options.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._on_error(PositionTimeout())
        except PositionError as e:
            self._on_error(e)
        else:
            self._on_sample(first)

        try:
            async for item in self.source.watch(options):
                if isinstance(item, PositionError):
                    self._on_error(item)
                else:
                    self._on_sample(item)
        except PositionError as e:
            self._on_error(e)

        # the source is done, so is the stream
        self.is_tracking = False
        self._end_stream()

    def _end_stream(self) -> None:
        if self._stream is not None:
            self._stream.put_nowait(None)
            self._stream = None

    def _on_sample(self, sample: LocationSample) -> None:
        self.current_location = sample
        self.error = None
        self.is_tracking = True
        self._history.append(sample)
        if self._stream is not None:
            self._stream.put_nowait(sample)
        for cb in list(self._listeners):
            cb(sample)

    def _on_error(self, error: PositionError) -> None:
        # last good location stays, stale beats nothing
        self.error = str(error)
        self.is_tracking = False
        logger.warning("Location error: %s", error)


# -------------------------
# sources
# -------------------------
class ScriptedSource:
    """Emits a fixed script of samples and errors, one every interval_s."""

    def __init__(self, items: Iterable[Union[LocationSample, PositionError]], interval_s: float = 0.0) -> None:
        self.items = list(items)
        self.interval_s = interval_s

    async def current(self, options: SamplerOptions) -> LocationSample:
        for item in self.items:
            if isinstance(item, LocationSample):
                return item
        raise PositionUnavailable()

    async def watch(self, options: SamplerOptions) -> AsyncIterator[Union[LocationSample, PositionError]]:
        for item in self.items:
            await asyncio.sleep(self.interval_s)
            yield item


class RouteReplaySource:
    """
    Simulated device driving along a routed path. Position at wall time t is
    the path position at (t - start) * time_scale; parked at the end.
    """

    def __init__(self, path: RoutePath, time_scale: float = 1.0, interval_s: float = 1.0,
                 accuracy_m: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.path = path
        self.time_scale = time_scale
        self.interval_s = interval_s
        self.accuracy_m = accuracy_m
        self._clock = clock
        self._start: Optional[float] = None
        self._prev: Optional[Coordinates] = None
        self._prev_t: Optional[float] = None
        self._bearing = 0.0

    def set_path(self, path: RoutePath) -> None:
        """Start driving the next leg from its first point."""
        self.path = path
        self._start = None

    @property
    def done(self) -> bool:
        if self._start is None:
            return False
        return self._sim_time() >= self.path.duration

    def _sim_time(self) -> float:
        if self._start is None:
            self._start = self._clock()
        return (self._clock() - self._start) * self.time_scale

    def sample(self) -> LocationSample:
        t_rel = self._sim_time()
        lat, lng = self.path.position_at(t_rel)
        pos = Coordinates(lat, lng)

        speed = 0.0
        if self._prev is not None and self._prev_t is not None and t_rel > self._prev_t:
            moved = distance_meters(self._prev, pos)
            speed = moved / (t_rel - self._prev_t)
            if moved > 0.5:
                self._bearing = bearing_degrees(self._prev, pos)
        self._prev, self._prev_t = pos, t_rel

        return LocationSample(
            coordinates=pos,
            speed_mps=speed,
            bearing_deg=self._bearing,
            accuracy_m=self.accuracy_m,
            captured_at=time.time(),
        )

    async def current(self, options: SamplerOptions) -> LocationSample:
        return self.sample()

    async def watch(self, options: SamplerOptions) -> AsyncIterator[Union[LocationSample, PositionError]]:
        while True:
            await asyncio.sleep(self.interval_s)
            yield self.sample()
