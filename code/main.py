import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from aiohttp import web

from LocationSample import Coordinates
from RoutePath import RoutePath
from RouteStep import build_route_steps, route_targets
from Trip import Trip
from backend_api import AsyncBackendApi, BackendApi
from config import TrackingConfig
from driver_session import DriverSession
from errors import ApiError, DirectionsFailed, TrackingError
from geo_sampler import GeoSampler, RouteReplaySource
from geocode_cache import GeocodeCache, GoogleGeocoder
from live_channel import LiveChannel
from live_map import LiveMapRenderer
from local_osrm import OsrmDirections
from route_calculator import RouteCalculator
from ws_bus import create_relay_app

logger = logging.getLogger("triptrack")


def load_trip(path: str) -> Trip:
    with open(path, "r", encoding="utf-8") as f:
        return Trip.from_payload(json.load(f))


def _parse_point(text: Optional[str]) -> Optional[Coordinates]:
    if not text:
        return None
    lat, lng = (float(x) for x in text.split(","))
    return Coordinates(lat, lng)


def _geocoder(cfg: TrackingConfig) -> Optional[GeocodeCache]:
    if not cfg.geocode_api_key:
        return None
    provider = GoogleGeocoder(cfg.geocode_api_key, cfg.geocode_url, cfg.geocode_region,
                              cfg.geocode_language, cfg.request_timeout_s)
    return GeocodeCache(provider, precision=cfg.geocode_precision, notice_duration_s=cfg.notice_duration_s)


# -------------------------
# relay
# -------------------------
def run_relay(cfg: TrackingConfig, host: str, port: int) -> None:
    verifier = None
    if cfg.access_token:
        verifier = lambda token, user_id: token == cfg.access_token
    web.run_app(create_relay_app(verifier), host=host, port=port)


# -------------------------
# simulate
# -------------------------
async def simulate(cfg: TrackingConfig, trip: Trip, start: Optional[Coordinates],
                   time_scale: float, interval_s: float, map_out: Optional[str]) -> None:
    steps = build_route_steps(trip)
    targets = route_targets(steps, n=len(steps))
    if not targets:
        logger.info("Trip %s has nothing left to drive", trip.id)
        return
    start = start or targets[0]

    routes = RouteCalculator(OsrmDirections(cfg.osrm_url, timeout_s=cfg.request_timeout_s),
                             cfg.route_refresh_interval_s)
    source = RouteReplaySource(RoutePath([start.as_tuple()]), time_scale=time_scale, interval_s=interval_s)
    sampler = GeoSampler(source, cfg.local_history_limit)

    channel = LiveChannel(cfg.relay_url, cfg.access_token, cfg.user_id or "driver-sim", cfg.role,
                          cfg.reconnect_attempts, cfg.reconnect_delay_s, cfg.reconnect_delay_max_s)
    api = AsyncBackendApi(BackendApi(cfg.api_base_url, cfg.access_token, cfg.request_timeout_s))
    await channel.connect()
    session = DriverSession(trip, sampler, channel, api, _geocoder(cfg), routes, cfg)

    try:
        await session.start()
        while not session.sequencer.is_complete:
            step = session.sequencer.current_step
            if step is not None:
                here = sampler.current_location.coordinates if sampler.current_location else start
                leg = await routes.request_route(here, step.location or here)
                source.set_path(leg.path)
                logger.info("Driving to %s (%s, %s)", step.label, leg.distance_text, leg.duration_text)
                while not source.done:
                    await asyncio.sleep(interval_s)
                    if map_out:
                        session.render(map_out)
                    s = session.stats()
                    logger.info("%s km/h %s, %s to go, eta %s", s.speed_kmh, s.compass, s.distance_text, s.eta_text)
            await session.advance()
    finally:
        await session.stop()
        await channel.close()
    logger.info("Trip %s completed, %.2f km travelled", trip.id, session.travelled_km())


# -------------------------
# render
# -------------------------
async def render_snapshot(cfg: TrackingConfig, trip: Trip, out: str, with_route: bool, with_history: bool) -> str:
    routes = None
    if with_route:
        routes = RouteCalculator(OsrmDirections(cfg.osrm_url, timeout_s=cfg.request_timeout_s))
    renderer = LiveMapRenderer(cfg.trace_limit, _geocoder(cfg), routes)
    renderer.set_steps(build_route_steps(trip))

    if with_history:
        api = AsyncBackendApi(BackendApi(cfg.api_base_url, cfg.access_token, cfg.request_timeout_s))
        try:
            renderer.load_history(await api.get_history(trip.id, cfg.history_limit))
        except ApiError as e:
            logger.warning("No history for %s: %s", trip.id, e)

    targets = route_targets(renderer.steps)
    if routes is not None and targets:
        origin = renderer.current.coordinates if renderer.current else targets[0]
        try:
            await routes.request_route(origin, targets[-1], targets[:-1])
        except DirectionsFailed as e:
            logger.warning("Rendering without route: %s", e)

    return renderer.render(out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live trip tracking: relay, driver simulation, map snapshots")
    parser.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_relay = sub.add_parser("relay", help="run the websocket relay and REST stand-in")
    p_relay.add_argument("--host", default="127.0.0.1")
    p_relay.add_argument("--port", "-p", type=int, default=8000)

    p_sim = sub.add_parser("simulate", help="drive a trip along OSRM routes and publish to the relay")
    p_sim.add_argument("--trip", required=True, help="trip JSON file (backend shape)")
    p_sim.add_argument("--start", help="lat,lng of the vehicle (default: first stop)")
    p_sim.add_argument("--speed", type=float, default=10.0, help="time scale of the replay (default: 10x)")
    p_sim.add_argument("--interval", type=float, default=1.0, help="seconds between samples")
    p_sim.add_argument("--map", help="keep this HTML map file updated while driving")

    p_render = sub.add_parser("render", help="write a static map of a trip")
    p_render.add_argument("--trip", required=True, help="trip JSON file (backend shape)")
    p_render.add_argument("--out", default="map.html")
    p_render.add_argument("--route", action="store_true", help="draw the OSRM route through the open stops")
    p_render.add_argument("--history", action="store_true", help="draw the trace from the REST history")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    cfg = TrackingConfig.from_env()

    if args.command == "relay":
        run_relay(cfg, args.host, args.port)
        return 0

    try:
        trip = load_trip(args.trip)
    except (OSError, ValueError, KeyError) as e:
        logger.error("Could not load trip %s: %s", args.trip, e)
        return 2

    try:
        if args.command == "simulate":
            asyncio.run(simulate(cfg, trip, _parse_point(args.start), args.speed, args.interval, args.map))
        else:
            out = asyncio.run(render_snapshot(cfg, trip, args.out, args.route, args.history))
            logger.info("Map written to %s", out)
    except TrackingError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
