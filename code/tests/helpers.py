# helpers.py
import asyncio
import json
import socket
import time

import aiohttp
from aiohttp import web

from LocationSample import Coordinates, LocationSample
from Trip import Trip
from errors import ApiError
from ws_bus import create_relay_app

TOKEN = "test-token"


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def start_relay(verifier=None):
    app = create_relay_app(verifier)
    runner = web.AppRunner(app)
    await runner.setup()
    port = free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return app, runner, port


def ws_url(port):
    return f"ws://127.0.0.1:{port}/ws"


def api_url(port):
    return f"http://127.0.0.1:{port}/api"


def auth_headers(user_id):
    return {"Authorization": f"Bearer {TOKEN}", "X-User-Id": user_id}


async def recvj(ws, t=5):
    m = await asyncio.wait_for(ws.receive(), t)
    if m.type != aiohttp.WSMsgType.TEXT:
        raise RuntimeError(m.type)
    return json.loads(m.data)


async def wait_type(ws, typ, t=5, n=50):
    for _ in range(n):
        o = await recvj(ws, t)
        if o.get("type") == typ:
            return o
    raise RuntimeError(f"no {typ}")


async def wait_until(pred, t=5.0, step=0.01):
    deadline = time.monotonic() + t
    while time.monotonic() < deadline:
        if pred():
            return
        await asyncio.sleep(step)
    raise RuntimeError("condition not met in time")


def sample(lat, lng, ts, speed=None, bearing=None, accuracy=5.0):
    return LocationSample(Coordinates(lat, lng), speed, bearing, accuracy, ts)


def trip_doc(trip_type="login", status="active", n=2, trip_id="trip-1"):
    return {
        "_id": trip_id,
        "tripType": trip_type,
        "status": status,
        "officeLocation": {"coordinates": {"lat": 12.9716, "lng": 77.5946}},
        "employees": [
            {
                "employee": {"_id": f"emp-{i + 1}", "user": {"name": f"Rider {i + 1}"}},
                "pickupLocation": {"coordinates": {"lat": 12.93 + i * 0.01, "lng": 77.62}},
                "dropLocation": {"coordinates": {"lat": 12.95 + i * 0.01, "lng": 77.64}},
                "status": "not_started",
            }
            for i in range(n)
        ],
    }


def make_trip(**kw):
    return Trip.from_payload(trip_doc(**kw))


class FakeApi:
    """In-memory stand-in for AsyncBackendApi."""

    def __init__(self, fail_status=False, fail_complete=False, gate=None):
        self.fail_status = fail_status
        self.fail_complete = fail_complete
        self.gate = gate
        self.calls = []
        self.history = []
        self.current = None

    async def update_employee_status(self, trip_id, employee_id, status):
        if self.gate is not None:
            await self.gate.wait()
        self.calls.append(("status", employee_id, status))
        if self.fail_status:
            raise ApiError("PATCH status returned 500", 500)
        return {"success": True}

    async def complete_trip(self, trip_id, payload=None):
        self.calls.append(("complete", payload))
        if self.fail_complete:
            raise ApiError("PATCH complete returned 500", 500)
        return {"success": True}

    async def start_trip(self, trip_id):
        self.calls.append(("start", trip_id))
        return {"success": True}

    async def update_location(self, trip_id, s):
        self.calls.append(("location", s))
        return {"success": True}

    async def get_history(self, trip_id, limit=50):
        return list(self.history)

    async def get_current_location(self, trip_id):
        return self.current


class RecordingChannel:
    """Stand-in for LiveChannel that keeps what was published, in order."""

    def __init__(self):
        self.sent = []
        self.connected = True

    async def publish_location(self, trip_id, s):
        self.sent.append(("location", s.captured_at))
        return True

    async def publish_trip_status(self, trip_id, status):
        self.sent.append(("trip", status))
        return True

    async def publish_driver_status(self, trip_id, status):
        self.sent.append(("driver", status))
        return True

    async def publish_employee_status(self, trip_id, employee_id, status):
        self.sent.append(("emp", employee_id, status))
        return True
