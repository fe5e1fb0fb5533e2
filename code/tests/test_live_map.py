import asyncio
import os

import pytest

from LocationSample import Coordinates
from RoutePath import RoutePath
from RouteStep import build_route_steps
from live_map import EMPTY_STATS, LiveMapRenderer, TracePath, compass_bucket, write_atomic
from pulse import PulseAnimation, pulse_phase
from route_calculator import RouteCalculator, RouteResult
from helpers import make_trip, sample


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


# -------------------------
# pulse
# -------------------------
def test_pulse_phase_bounds_and_period():
    for ms in range(0, 10000, 37):
        p = pulse_phase(float(ms))
        assert 0.0 <= p <= 1.0
        assert pulse_phase(ms + 2000.0) == pytest.approx(p, abs=1e-9)

    assert pulse_phase(0.0) == 0.0
    assert pulse_phase(600.0) == pytest.approx(0.5)
    assert pulse_phase(1200.0) == pytest.approx(1.0)
    assert pulse_phase(1600.0) == pytest.approx(0.5)
    assert pulse_phase(500.0, period_ms=0) == 0.0


def test_pulse_falls_faster_than_it_rises():
    rise_step = pulse_phase(200.0) - pulse_phase(100.0)
    fall_step = pulse_phase(1400.0) - pulse_phase(1500.0)
    assert fall_step > rise_step > 0


def test_pulse_animation_stop_resets_phase():
    async def run():
        clock = FakeClock(10.0)
        frames = []
        pulse = PulseAnimation(fps=100.0, on_frame=frames.append, clock=clock)
        pulse.start()
        assert pulse.running

        clock.t = 10.6
        assert pulse.tick() == pytest.approx(0.5)
        await asyncio.sleep(0.05)
        assert frames

        pulse.stop()
        assert not pulse.running
        assert pulse.phase == 0.0
        assert pulse.tick() == 0.0

        pulse.start()
        await pulse.aclose()
        assert pulse.phase == 0.0

    asyncio.run(run())


# -------------------------
# trace
# -------------------------
def test_trace_is_bounded_newest_first():
    trace = TracePath(limit=49)
    for i in range(60):
        assert trace.add(sample(12.9 + i * 0.0001, 77.6, ts=100 + i))
    assert len(trace) == 49
    assert trace.head.captured_at == 159
    assert trace.points[-1].captured_at == 111

    assert not trace.add(sample(12.0, 77.0, ts=150))
    assert not trace.add(sample(12.0, 77.0, ts=159))
    assert trace.head.captured_at == 159


def test_trace_load_sorts_and_truncates():
    trace = TracePath(limit=3)
    trace.load([sample(12.9, 77.6, ts=t) for t in (5, 1, 4, 2, 3)])
    assert [p.captured_at for p in trace.points] == [5, 4, 3]


def test_trace_distance():
    trace = TracePath()
    trace.add(sample(0.0, 0.0, ts=1))
    trace.add(sample(0.0, 1.0, ts=2))
    assert trace.total_distance_m() == pytest.approx(111194.9, abs=1.0)


# -------------------------
# renderer
# -------------------------
def test_latest_sample_wins_across_sources():
    r = LiveMapRenderer()
    assert r.ingest(sample(12.90, 77.60, ts=10), "channel")
    assert not r.ingest(sample(12.80, 77.50, ts=9), "rest")
    assert not r.ingest(sample(12.80, 77.50, ts=10), "rest")
    assert r.current.lat == 12.90
    assert r.current_source == "channel"

    assert r.ingest(sample(12.91, 77.60, ts=11), "rest")
    assert r.current_source == "rest"


def test_history_then_live():
    r = LiveMapRenderer()
    r.load_history([sample(12.90 + i * 0.001, 77.60, ts=i) for i in range(5)])
    assert r.current.captured_at == 4
    assert r.current_source == "history"
    assert len(r.trace) == 5

    r.reset()
    assert r.current is None
    assert r.stats() is EMPTY_STATS


def test_compass_buckets():
    assert compass_bucket(None) == "--"
    assert compass_bucket(0) == "N"
    assert compass_bucket(22.4) == "N"
    assert compass_bucket(22.5) == "NE"
    assert compass_bucket(90) == "E"
    assert compass_bucket(200) == "S"
    assert compass_bucket(337.5) == "N"
    assert compass_bucket(-45) == "NW"
    assert compass_bucket(720) == "N"


def test_bearing_derived_from_trace():
    r = LiveMapRenderer()
    r.ingest(sample(12.90, 77.60, ts=1))
    r.ingest(sample(12.91, 77.60, ts=2))
    assert r.current.bearing_deg == pytest.approx(0.0, abs=0.01)
    assert r.stats().compass == "N"

    r.ingest(sample(12.91, 77.61, ts=3))
    assert r.stats().compass == "E"

    # device bearing is kept as-is
    r.ingest(sample(12.92, 77.61, ts=4, bearing=181.0))
    assert r.current.bearing_deg == 181.0


def test_stats_toward_next_stop():
    trip = make_trip(trip_type="login", n=1)
    r = LiveMapRenderer()
    r.set_steps(build_route_steps(trip))
    target = r.next_step.location

    r.ingest(sample(target.lat - 0.009, target.lng, ts=1, speed=30 / 3.6, accuracy=7.6))
    s = r.stats()
    assert s.speed_kmh == 30
    assert s.accuracy_m == 8
    assert s.distance_text == "1.0 km"
    assert s.eta_text == "Soon"
    assert s.address == f"{target.lat - 0.009:.4f}, {target.lng:.4f}"
    assert s.estimated_arrival == ""

    r.ingest(sample(target.lat - 0.009, target.lng, ts=2, speed=0.0))
    assert r.stats().eta_text == "--"


def test_stats_use_route_when_present():
    class NoDirections:
        def route(self, origin, destination, waypoints=()):
            raise AssertionError("not called")

    routes = RouteCalculator(NoDirections())
    routes.route = RouteResult(RoutePath([(12.9, 77.6), (12.91, 77.6)], [1100.0], [120.0]),
                               1100.0, 120.0, "1.1 km", "2 mins")
    r = LiveMapRenderer(routes=routes)
    r.set_steps(build_route_steps(make_trip(trip_type="login", n=1)))
    r.ingest(sample(12.9, 77.6, ts=1, speed=5.0))
    s = r.stats()
    assert s.distance_text == "1.1 km"
    assert s.estimated_arrival

    html = r.build_map().get_root().render()
    assert "1.1 km, 2 mins" in html


def test_render_writes_html_atomically(tmp_path):
    trip = make_trip(trip_type="logout", n=2)
    r = LiveMapRenderer(pulse=PulseAnimation())
    r.set_steps(build_route_steps(trip))
    for i in range(3):
        r.ingest(sample(12.93 + i * 0.001, 77.62, ts=i + 1, speed=8.0))

    out = tmp_path / "map.html"
    assert r.render(str(out)) == str(out)
    html = out.read_text(encoding="utf-8")
    assert "leaflet" in html.lower()
    assert "Travelled" in html
    assert "Office Pickup" in html
    assert os.listdir(tmp_path) == ["map.html"]


def test_write_atomic_replaces(tmp_path):
    out = tmp_path / "snap.html"
    write_atomic(str(out), "one")
    write_atomic(str(out), "two")
    assert out.read_text(encoding="utf-8") == "two"
    assert sorted(os.listdir(tmp_path)) == ["snap.html"]


def test_map_centers_without_location():
    r = LiveMapRenderer()
    assert r._center() == (12.9716, 77.5946)
    r.set_steps(build_route_steps(make_trip(trip_type="login", n=1)))
    assert r._center() == r.steps[0].location.as_tuple()
    assert r.stats().address == EMPTY_STATS.address
    assert r.next_step.location == Coordinates(12.93, 77.62)
