"""
Trip relay: websocket rooms keyed by trip plus a small in-memory stand-in
for the backend REST routes (location store, trip and stop status).

Every connection gets its own outbound queue drained by one sender task, so
events for a room reach each member in the order they were published.
"""
import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from aiohttp import WSCloseCode, WSMsgType, web

from LocationSample import LocationSample, iso_timestamp
from Trip import StopStatus

logger = logging.getLogger(__name__)

# inbound type -> type broadcast to the trip room
ROOM_BROADCASTS = {
    "driver-location-update": "location-update",
    "trip-status-update": "trip-status-update",
    "driver-status-update": "driver-status-update",
    "employee-status-update": "employee-status-update",
    "emergency-alert": "emergency-alert",
    "message": "message",
}

TokenVerifier = Callable[[str, str], bool]


def room_for(trip_id: str) -> str:
    return f"trip:{trip_id}"


def _any_token(token: str, user_id: str) -> bool:
    return bool(token)


# -------------------------
# connections
# -------------------------
class Connection:
    def __init__(self, ws: web.WebSocketResponse, user_id: str, role: str = "", maxsize: int = 256) -> None:
        self.ws = ws
        self.user_id = user_id
        self.role = role
        self.rooms: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def push(self, event: Dict[str, Any]) -> None:
        # keep only latest events if queue is full
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.queue.task_done()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def pump(self) -> None:
        while True:
            event = await self.queue.get()
            self.queue.task_done()
            if self.ws.closed:
                return
            try:
                await self.ws.send_str(json.dumps(event))
            except ConnectionResetError:
                return


async def publish_to_room(app: web.Application, room: str, event: Dict[str, Any]) -> int:
    members: Set[Connection] = app["rooms"].get(room, set())
    for conn in list(members):
        conn.push(event)
    return len(members)


def join_room(app: web.Application, conn: Connection, room: str) -> None:
    app["rooms"].setdefault(room, set()).add(conn)
    conn.rooms.add(room)


def leave_room(app: web.Application, conn: Connection, room: str) -> None:
    members = app["rooms"].get(room)
    if members is not None:
        members.discard(conn)
        if not members:
            del app["rooms"][room]
    conn.rooms.discard(room)


def drop_connection(app: web.Application, conn: Connection) -> None:
    for room in list(conn.rooms):
        leave_room(app, conn, room)
    app["connections"].discard(conn)


async def close_all(app: web.Application) -> None:
    for conn in list(app["connections"]):
        await conn.ws.close(code=WSCloseCode.GOING_AWAY, message=b"relay closing")


# -------------------------
# location store
# -------------------------
class LocationLog:
    """Recent locations per trip, newest last. REST-shaped entries."""

    def __init__(self, limit: int = 500) -> None:
        self.limit = limit
        self._by_trip: Dict[str, Deque[Dict[str, Any]]] = {}

    def record(self, trip_id: str, location: Dict[str, Any], driver_id: Optional[str] = None,
               timestamp: Any = None) -> Dict[str, Any]:
        sample = LocationSample.from_payload({"location": location, "timestamp": timestamp})
        entry = {
            "tripId": trip_id,
            "driverId": driver_id,
            "location": {
                "coordinates": sample.coordinates.to_dict(),
                "accuracy": sample.accuracy_m or 0,
            },
            "speed": sample.speed_mps or 0,
            "bearing": sample.bearing_deg or 0,
            "timestamp": iso_timestamp(sample.captured_at),
        }
        self._by_trip.setdefault(trip_id, deque(maxlen=self.limit)).append(entry)
        return entry

    def current(self, trip_id: str) -> Optional[Dict[str, Any]]:
        entries = self._by_trip.get(trip_id)
        return entries[-1] if entries else None

    def history(self, trip_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        entries = list(self._by_trip.get(trip_id, ()))
        return list(reversed(entries[-limit:])) if limit > 0 else []


def _location_event(trip_id: str, entry: Dict[str, Any], location: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "location-update",
        "tripId": trip_id,
        "data": {
            "tripId": trip_id,
            "location": location,
            "driverId": entry["driverId"],
            "timestamp": entry["timestamp"],
        },
    }


# -------------------------
# auth
# -------------------------
def _token(request: web.Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    return request.query.get("token", "")


def _user_id(request: web.Request) -> str:
    return request.headers.get("X-User-Id") or request.query.get("userId", "")


def _unauthorized() -> web.Response:
    return web.json_response({"success": False, "message": "Authentication error"}, status=401)


# -------------------------
# websocket
# -------------------------
async def handle_message(app: web.Application, conn: Connection, raw: str) -> None:
    try:
        msg = json.loads(raw)
    except ValueError:
        conn.push({"type": "error", "message": "invalid json"})
        return

    typ = msg.get("type")
    trip_id = msg.get("tripId")
    data = msg.get("data") or {}
    if not trip_id:
        conn.push({"type": "error", "message": "tripId required", "for": typ})
        return
    trip_id = str(trip_id)

    if typ == "join-trip":
        join_room(app, conn, room_for(trip_id))
        conn.push({"type": "joined", "tripId": trip_id})
        logger.info("%s joined %s", conn.user_id, room_for(trip_id))
        return

    if typ == "leave-trip":
        leave_room(app, conn, room_for(trip_id))
        conn.push({"type": "left", "tripId": trip_id})
        return

    if typ == "driver-location-update":
        location = data.get("location") or {}
        try:
            entry = app["location_log"].record(
                trip_id, location, data.get("driverId") or conn.user_id, data.get("timestamp")
            )
        except (KeyError, TypeError, ValueError) as e:
            conn.push({"type": "error", "message": f"bad location: {e}", "for": typ})
            return
        await publish_to_room(app, room_for(trip_id), _location_event(trip_id, entry, location))
        return

    if typ in ROOM_BROADCASTS:
        data = dict(data)
        data.setdefault("tripId", trip_id)
        data.setdefault("timestamp", iso_timestamp(time.time()))
        if typ in ("emergency-alert", "message"):
            data.setdefault("userId", conn.user_id)
        await publish_to_room(app, room_for(trip_id), {"type": ROOM_BROADCASTS[typ], "tripId": trip_id, "data": data})
        return

    conn.push({"type": "error", "message": f"unknown type {typ!r}"})


async def ws_handler(request: web.Request) -> web.StreamResponse:
    app = request.app
    token, user_id = _token(request), _user_id(request)
    if not token or not user_id or not app["verify_token"](token, user_id):
        logger.warning("Rejected websocket handshake from %s", request.remote)
        return _unauthorized()

    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    conn = Connection(ws, user_id, request.headers.get("X-User-Role", ""), app["queue_size"])
    app["connections"].add(conn)
    sender = asyncio.ensure_future(conn.pump())
    logger.info("Client connected: %s", user_id)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await handle_message(app, conn, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("Websocket error from %s: %s", user_id, ws.exception())
                break
    finally:
        drop_connection(app, conn)
        sender.cancel()
        logger.info("Client disconnected: %s", user_id)

    return ws


# -------------------------
# rest fallback
# -------------------------
async def handle_location_update(request: web.Request) -> web.Response:
    app = request.app
    token = _token(request)
    if not token or not app["verify_token"](token, _user_id(request)):
        return _unauthorized()
    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"success": False, "message": "invalid json"}, status=400)

    trip_id = body.get("tripId")
    location = body.get("location")
    if not trip_id or not isinstance(location, dict):
        return web.json_response({"success": False, "message": "tripId and location required"}, status=400)

    trip_id = str(trip_id)
    try:
        entry = app["location_log"].record(trip_id, location, _user_id(request) or None, location.get("timestamp"))
    except (KeyError, TypeError, ValueError) as e:
        return web.json_response({"success": False, "message": f"bad location: {e}"}, status=400)

    await publish_to_room(app, room_for(trip_id), _location_event(trip_id, entry, location))
    return web.json_response({"success": True, "location": entry})


async def handle_current_location(request: web.Request) -> web.Response:
    if not _token(request):
        return _unauthorized()
    entry = request.app["location_log"].current(request.match_info["tripId"])
    if entry is None:
        return web.json_response({"success": False, "message": "No location data available"}, status=404)
    return web.json_response({"success": True, "location": entry})


async def handle_location_history(request: web.Request) -> web.Response:
    if not _token(request):
        return _unauthorized()
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return web.json_response({"success": False, "message": "limit must be an integer"}, status=400)
    locations = request.app["location_log"].history(request.match_info["tripId"], limit)
    return web.json_response({"success": True, "count": len(locations), "locations": locations})


# -------------------------
# trip lifecycle
# -------------------------
async def handle_trip_start(request: web.Request) -> web.Response:
    return _set_trip_status(request, "active", ("scheduled",))


async def handle_trip_complete(request: web.Request) -> web.Response:
    return _set_trip_status(request, "completed", ("scheduled", "active"))


def _set_trip_status(request: web.Request, status: str, allowed_from) -> web.Response:
    if not _token(request):
        return _unauthorized()
    trip_id = request.match_info["tripId"]
    trips: Dict[str, str] = request.app["trip_status"]
    current = trips.get(trip_id, "scheduled")
    if current == status:
        return web.json_response({"success": True, "trip": {"_id": trip_id, "status": status}})
    if current not in allowed_from:
        return web.json_response(
            {"success": False, "message": f"Trip is {current}, cannot become {status}"}, status=409
        )
    trips[trip_id] = status
    logger.info("Trip %s is now %s", trip_id, status)
    return web.json_response({"success": True, "trip": {"_id": trip_id, "status": status}})


async def handle_employee_status(request: web.Request) -> web.Response:
    if not _token(request):
        return _unauthorized()
    trip_id = request.match_info["tripId"]
    employee_id = request.match_info["employeeId"]
    try:
        body = await request.json()
        new_status = StopStatus(body.get("status"))
    except (ValueError, AttributeError):
        return web.json_response({"success": False, "message": "status must be picked_up or dropped"}, status=400)

    stops: Dict[str, StopStatus] = request.app["stop_status"]
    key = f"{trip_id}/{employee_id}"
    current = stops.get(key, StopStatus.NOT_STARTED)
    if not current.can_advance_to(new_status):
        return web.json_response(
            {"success": False, "message": f"Cannot move from {current.value} to {new_status.value}"}, status=409
        )
    stops[key] = new_status
    return web.json_response({"success": True, "employeeId": employee_id, "status": new_status.value})


def create_relay_app(verifier: Optional[TokenVerifier] = None, api_prefix: str = "/api",
                     history_limit: int = 500, queue_size: int = 256) -> web.Application:
    app = web.Application()
    app["verify_token"] = verifier or _any_token
    app["rooms"] = {}
    app["connections"] = set()
    app["location_log"] = LocationLog(history_limit)
    app["queue_size"] = queue_size
    app["trip_status"] = {}
    app["stop_status"] = {}

    app.router.add_get("/ws", ws_handler)
    app.router.add_post(f"{api_prefix}/location/update", handle_location_update)
    app.router.add_get(f"{api_prefix}/location/current/{{tripId}}", handle_current_location)
    app.router.add_get(f"{api_prefix}/location/history/{{tripId}}", handle_location_history)
    app.router.add_patch(f"{api_prefix}/trips/{{tripId}}/start", handle_trip_start)
    app.router.add_patch(f"{api_prefix}/trips/{{tripId}}/complete", handle_trip_complete)
    app.router.add_patch(f"{api_prefix}/trips/{{tripId}}/employees/{{employeeId}}/status", handle_employee_status)

    app.on_shutdown.append(close_all)
    return app
