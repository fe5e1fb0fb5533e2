import asyncio
import time
from datetime import datetime

import polyline
import pytest

from LocationSample import Coordinates
from RoutePath import RoutePath
from errors import DirectionsFailed, GeocodeFailed
from geocode_cache import (
    GeocodeCache,
    GeocodeCacheEntry,
    MemoryCacheStore,
    is_plus_code,
    is_resolved,
    pick_best_address,
)
from local_osrm import OsrmDirections, distance_text, duration_text
from route_calculator import (
    RouteCalculator,
    RouteResult,
    distance_meters,
    eta_minutes,
    format_eta,
    format_km,
)

BLR = Coordinates(12.9716, 77.5946)
KORAMANGALA = Coordinates(12.9352, 77.6245)

LONG_ADDRESS = "12, MG Road, Ashok Nagar, Bengaluru, Karnataka 560001, India"


# -------------------------
# geo math
# -------------------------
def test_distance_symmetric_and_zero():
    pairs = [
        (BLR, KORAMANGALA),
        (Coordinates(0.0, 0.0), Coordinates(0.0, 1.0)),
        (Coordinates(51.2562, 7.1508), Coordinates(51.2277, 6.7735)),
        (Coordinates(-33.86, 151.21), Coordinates(40.71, -74.0)),
    ]
    for a, b in pairs:
        assert distance_meters(a, b) == pytest.approx(distance_meters(b, a))
        assert distance_meters(a, a) == 0.0
        assert distance_meters(b, b) == 0.0


def test_distance_one_degree_on_equator():
    assert distance_meters(Coordinates(0.0, 0.0), Coordinates(0.0, 1.0)) == pytest.approx(111194.9, abs=1.0)


def test_eta_speed_zero_is_unknown():
    assert eta_minutes(1000.0, 0.0) == 0
    assert eta_minutes(1000.0, None) == 0
    assert format_eta(eta_minutes(1000.0, 0.0)) == "--"


def test_eta_one_km_at_thirty_kmh_is_soon():
    minutes = eta_minutes(1000.0, 30 / 3.6)
    assert minutes == 2
    assert format_eta(minutes) == "Soon"


def test_eta_minimum_and_text():
    assert eta_minutes(5.0, 20.0) == 1
    assert format_eta(eta_minutes(10000.0, 30 / 3.6)) == "20min"
    assert format_eta(3) == "3min"


def test_km_and_text_formatting():
    assert format_km(12345.0) == "12.3 km"
    assert format_km(0.0) == "0.0 km"
    assert distance_text(850.4) == "850 m"
    assert distance_text(1500.0) == "1.5 km"
    assert duration_text(60.0) == "1 min"
    assert duration_text(1020.0) == "17 mins"
    assert duration_text(3900.0) == "1 h 5 mins"


def test_estimated_arrival_clock():
    result = RouteResult(RoutePath([(0.0, 0.0)]), 1000.0, 900.0, "1.0 km", "15 mins")
    assert result.estimated_arrival(datetime(2024, 1, 1, 9, 50)) == "10:05 AM"


# -------------------------
# osrm
# -------------------------
def _osrm_response():
    geometry = polyline.encode([(12.9716, 77.5946), (12.9600, 77.6050), (12.9352, 77.6245)])
    return {
        "code": "Ok",
        "routes": [{
            "geometry": geometry,
            "distance": 5200.0,
            "duration": 780.0,
            "legs": [
                {"distance": 1500.0, "duration": 300.0, "steps": [
                    {"name": "MG Road", "maneuver": {"type": "depart", "bearing_after": 130}},
                    {"name": "Hosur Road", "maneuver": {"type": "turn", "modifier": "left"}},
                ]},
                {"distance": 3700.0, "duration": 480.0, "steps": []},
            ],
        }],
    }


def test_osrm_parse():
    result = OsrmDirections.parse(_osrm_response())
    assert result.distance_text == "1.5 km"
    assert result.duration_text == "5 mins"
    assert result.first_instruction == "Head southeast on MG Road"
    assert result.total_distance_m == 5200.0
    assert len(result.path.geometry_latlon) == 3
    assert result.path.duration == pytest.approx(780.0)
    assert result.path.position_at(0.0) == pytest.approx((12.9716, 77.5946))


def test_osrm_url_puts_lng_first():
    osrm = OsrmDirections("http://osrm.local/")
    url = osrm.build_url(BLR, KORAMANGALA, [Coordinates(12.95, 77.61)])
    assert url == (
        "http://osrm.local/route/v1/driving/77.5946,12.9716;77.61,12.95;77.6245,12.9352"
        "?overview=full&geometries=polyline&steps=true"
    )


# -------------------------
# route calculator
# -------------------------
class FakeDirections:
    def __init__(self):
        self.calls = 0
        self.fail = False

    def route(self, origin, destination, waypoints=()):
        self.calls += 1
        if self.fail:
            raise DirectionsFailed("Directions request failed: NoRoute")
        return OsrmDirections.parse(_osrm_response())


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_route_refresh_is_throttled():
    async def run():
        provider, clock = FakeDirections(), FakeClock()
        calc = RouteCalculator(provider, refresh_interval_s=30.0, clock=clock)

        assert await calc.maybe_refresh(BLR, KORAMANGALA) is not None
        clock.t += 10
        assert await calc.maybe_refresh(BLR, KORAMANGALA) is None
        assert provider.calls == 1

        clock.t += 21
        assert await calc.maybe_refresh(BLR, KORAMANGALA) is not None
        assert provider.calls == 2

        # next stop changed: recalculated right away
        clock.t += 1
        assert await calc.maybe_refresh(BLR, Coordinates(12.95, 77.61)) is not None
        assert provider.calls == 3

    asyncio.run(run())


def test_route_failure_keeps_previous_route():
    async def run():
        provider = FakeDirections()
        calc = RouteCalculator(provider)
        good = await calc.request_route(BLR, KORAMANGALA)

        provider.fail = True
        with pytest.raises(DirectionsFailed):
            await calc.request_route(BLR, KORAMANGALA)
        assert calc.route is good
        assert "NoRoute" in calc.last_error

    asyncio.run(run())


# -------------------------
# geocode cache
# -------------------------
class CountingGeocoder:
    def __init__(self, results, delay=0.05):
        self.results = results
        self.delay = delay
        self.calls = 0
        self.fail = False

    def reverse(self, lat, lng):
        self.calls += 1
        time.sleep(self.delay)
        if self.fail:
            raise GeocodeFailed("Geocode failed: OVER_QUERY_LIMIT")
        return list(self.results)


def test_plus_codes_never_win():
    results = ["7J4VWHMV+XX Bengaluru, Karnataka, India long enough", LONG_ADDRESS, "Bengaluru, Karnataka, India"]
    assert is_plus_code(results[0])
    assert pick_best_address(results) == LONG_ADDRESS
    assert pick_best_address(["7J4VWHMV+XX"]) is None
    assert pick_best_address(["Bengaluru, Karnataka A", "Bengaluru, Karnataka B"]) == "Bengaluru, Karnataka A"
    assert not is_resolved("MG Road")
    assert is_resolved(LONG_ADDRESS)


def test_concurrent_lookups_coalesce():
    async def run():
        provider = CountingGeocoder(["Bengaluru, Karnataka, India", LONG_ADDRESS])
        cache = GeocodeCache(provider)
        results = await asyncio.gather(*[cache.resolve(12.9716, 77.5946, f"stop-{i}") for i in range(10)])
        assert provider.calls == 1
        assert set(results) == {LONG_ADDRESS}

        # resolved hit: no further lookup
        assert await cache.resolve(12.9716, 77.5946) == LONG_ADDRESS
        assert provider.calls == 1
        assert cache.lookups == 1

    asyncio.run(run())


def test_failure_falls_back_and_is_not_cached():
    async def run():
        provider = CountingGeocoder([LONG_ADDRESS], delay=0.0)
        provider.fail = True
        cache = GeocodeCache(provider)

        assert await cache.resolve(12.97161234, 77.59461234, "pickup-1") == "12.9716, 77.5946"
        assert len(cache.store) == 0

        provider.fail = False
        assert await cache.resolve(12.97161234, 77.59461234, "pickup-1") == LONG_ADDRESS
        assert provider.calls == 2
        assert cache.address_for("pickup-1") == LONG_ADDRESS

    asyncio.run(run())


def test_cached_address_only_replaced_by_better():
    async def run():
        store = MemoryCacheStore()
        provider = CountingGeocoder(["MG Rd"], delay=0.0)
        cache = GeocodeCache(provider, store=store)
        key = cache.quantize(12.9716, 77.5946)
        store.set(GeocodeCacheEntry(key, "MG Road, Blr"))

        assert await cache.resolve(12.9716, 77.5946) == "MG Road, Blr"
        assert store.get(key).address == "MG Road, Blr"

        provider.results = [LONG_ADDRESS]
        assert await cache.resolve(12.9716, 77.5946) == LONG_ADDRESS
        assert store.get(key).address == LONG_ADDRESS

    asyncio.run(run())


def test_current_purpose_notifies():
    async def run():
        seen = []
        cache = GeocodeCache(CountingGeocoder([LONG_ADDRESS], delay=0.0),
                             notifier=lambda address, duration: seen.append((address, duration)))
        await cache.resolve(12.9716, 77.5946, "pickup-1")
        assert seen == []
        await cache.resolve(12.9716, 77.5946, "current")
        assert seen == [(LONG_ADDRESS, 3.5)]

        # same place again: cache hit, no repeated notice
        await cache.resolve(12.9716, 77.5946, "current")
        assert len(seen) == 1

        other = "4th Block, Koramangala, Bengaluru, Karnataka 560034, India"
        cache.provider.results = [other]
        await cache.resolve(12.9352, 77.6245, "current")
        assert seen == [(LONG_ADDRESS, 3.5), (other, 3.5)]

    asyncio.run(run())


def test_quantize_precision_and_ttl():
    cache = GeocodeCache(CountingGeocoder([]), precision=4)
    assert cache.quantize(12.97161234, 77.59469999) == "12.9716,77.5947"
    assert cache.address_for("nothing-yet") == "Resolving..."
    assert cache.address_for("nothing-yet", BLR) == "12.9716, 77.5946"

    clock = FakeClock(0.0)
    store = MemoryCacheStore(ttl_s=60.0, clock=clock)
    store.set(GeocodeCacheEntry("k", LONG_ADDRESS, cached_at=0.0))
    assert store.get("k") is not None
    clock.t = 61.0
    assert store.get("k") is None
