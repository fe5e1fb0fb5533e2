import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def pulse_phase(elapsed_ms: float, period_ms: float = 2000.0, rise: float = 0.6) -> float:
    """
    Envelope of the "live" ring, in [0, 1].

    Linear rise over the first `rise` share of each period, then a linear fall
    over what is left of it, so the fall is proportionally steeper.
    """
    if period_ms <= 0 or elapsed_ms <= 0:
        return 0.0
    t = (elapsed_ms % period_ms) / period_ms
    if t < rise:
        return t / rise
    return max(0.0, min(1.0, 1.0 - (t - rise) / (1.0 - rise)))


class PulseAnimation:
    """
    Fixed-rate frame loop driven by wall-clock time only.

    Keeps ticking whether or not new locations arrive; stop() cancels the
    loop right away and resets phase to 0.
    """

    def __init__(self, period_ms: float = 2000.0, rise: float = 0.6, fps: float = 30.0,
                 on_frame: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.period_ms = period_ms
        self.rise = rise
        self.fps = fps
        self.on_frame = on_frame
        self._clock = clock
        self.phase = 0.0
        self.frames = 0
        self._started_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._started_at = self._clock()
        self._task = asyncio.ensure_future(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None
        self._started_at = None
        self.phase = 0.0

    async def aclose(self) -> None:
        """stop() and wait for the loop task to unwind."""
        task = self._task
        self.stop()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def tick(self) -> float:
        if self._started_at is None:
            self.phase = 0.0
            return self.phase
        elapsed_ms = (self._clock() - self._started_at) * 1000.0
        self.phase = pulse_phase(elapsed_ms, self.period_ms, self.rise)
        self.frames += 1
        if self.on_frame is not None:
            self.on_frame(self.phase)
        return self.phase

    async def _loop(self) -> None:
        interval = 1.0 / self.fps if self.fps > 0 else 0.033
        while True:
            self.tick()
            await asyncio.sleep(interval)
