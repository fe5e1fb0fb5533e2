"""
Client side of the trip relay.

Publishing is fire and forget. Subscriptions are per trip room; after a
dropped connection the client reconnects with a growing delay and joins every
room it was in again. Missed events are not replayed, callers recover from the
REST history (see on_disconnect / on_reconnect).
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

import aiohttp

from LocationSample import Coordinates, LocationSample, iso_timestamp, parse_timestamp
from errors import ChannelDisconnected
from ws_bus import room_for

logger = logging.getLogger(__name__)


# -------------------------
# typed events
# -------------------------
@dataclass
class LocationEvent:
    EVENT: ClassVar[str] = "location-update"
    OUTBOUND: ClassVar[str] = "driver-location-update"

    trip_id: str
    sample: LocationSample
    driver_id: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.OUTBOUND,
            "tripId": self.trip_id,
            "data": {
                "tripId": self.trip_id,
                "location": self.sample.location_dict(),
                "driverId": self.driver_id,
                "timestamp": iso_timestamp(self.sample.captured_at),
            },
        }

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "LocationEvent":
        data = msg.get("data") or {}
        return cls(
            trip_id=str(msg.get("tripId") or data.get("tripId")),
            sample=LocationSample.from_payload(data),
            driver_id=data.get("driverId"),
        )


@dataclass
class TripStatusEvent:
    EVENT: ClassVar[str] = "trip-status-update"

    trip_id: str
    status: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.EVENT, "tripId": self.trip_id,
                "data": {"status": self.status, "timestamp": iso_timestamp(self.timestamp)}}

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "TripStatusEvent":
        data = msg.get("data") or {}
        return cls(str(msg["tripId"]), data.get("status", ""), parse_timestamp(data.get("timestamp")))


@dataclass
class DriverStatusEvent:
    EVENT: ClassVar[str] = "driver-status-update"

    trip_id: str
    driver_id: str
    status: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.EVENT, "tripId": self.trip_id,
                "data": {"driverId": self.driver_id, "status": self.status,
                         "timestamp": iso_timestamp(self.timestamp)}}

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "DriverStatusEvent":
        data = msg.get("data") or {}
        return cls(str(msg["tripId"]), data.get("driverId", ""), data.get("status", ""),
                   parse_timestamp(data.get("timestamp")))


@dataclass
class EmployeeStatusEvent:
    EVENT: ClassVar[str] = "employee-status-update"

    trip_id: str
    employee_id: str
    status: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.EVENT, "tripId": self.trip_id,
                "data": {"employeeId": self.employee_id, "status": self.status,
                         "timestamp": iso_timestamp(self.timestamp)}}

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "EmployeeStatusEvent":
        data = msg.get("data") or {}
        return cls(str(msg["tripId"]), data.get("employeeId", ""), data.get("status", ""),
                   parse_timestamp(data.get("timestamp")))


@dataclass
class EmergencyAlert:
    EVENT: ClassVar[str] = "emergency-alert"

    trip_id: str
    message: str
    user_id: Optional[str] = None
    location: Optional[Coordinates] = None
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "timestamp": iso_timestamp(self.timestamp)}
        if self.user_id:
            data["userId"] = self.user_id
        if self.location is not None:
            data["location"] = self.location.to_dict()
        return {"type": self.EVENT, "tripId": self.trip_id, "data": data}

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "EmergencyAlert":
        data = msg.get("data") or {}
        loc = data.get("location")
        return cls(
            trip_id=str(msg["tripId"]),
            message=data.get("message", ""),
            user_id=data.get("userId"),
            location=Coordinates.from_dict(loc) if loc else None,
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class ChatMessage:
    EVENT: ClassVar[str] = "message"

    trip_id: str
    text: str
    sender_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"text": self.text, "timestamp": iso_timestamp(self.timestamp)}
        if self.sender_id:
            data["userId"] = self.sender_id
        return {"type": self.EVENT, "tripId": self.trip_id, "data": data}

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "ChatMessage":
        data = msg.get("data") or {}
        return cls(str(msg["tripId"]), data.get("text", ""), data.get("userId"),
                   parse_timestamp(data.get("timestamp")))


EVENT_TYPES: Dict[str, Type] = {
    cls.EVENT: cls
    for cls in (LocationEvent, TripStatusEvent, DriverStatusEvent,
                EmployeeStatusEvent, EmergencyAlert, ChatMessage)
}


def parse_event(msg: Dict[str, Any]):
    """Typed event for a relay message, or None for control/unknown frames."""
    cls = EVENT_TYPES.get(msg.get("type"))
    if cls is None:
        return None
    return cls.from_message(msg)


Handler = Callable[[Any], None]


# -------------------------
# client
# -------------------------
class LiveChannel:
    def __init__(self, url: str, token: str, user_id: str, role: str = "driver",
                 reconnect_attempts: int = 5, reconnect_delay_s: float = 1.0,
                 reconnect_delay_max_s: float = 5.0, join_timeout_s: float = 5.0,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self.token = token
        self.user_id = user_id
        self.role = role
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay_s = reconnect_delay_s
        self.reconnect_delay_max_s = reconnect_delay_max_s
        self.join_timeout_s = join_timeout_s

        self.on_disconnect: Optional[Callable[[], None]] = None
        self.on_reconnect: Optional[Callable[[], None]] = None
        self.connected = False
        self.reconnects = 0

        self._session = session
        self._own_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._handlers: Dict[str, List[Handler]] = {}
        self._joined: Dict[str, asyncio.Event] = {}

    @property
    def rooms(self) -> List[str]:
        return [room_for(t) for t in self._handlers]

    # -------------------------
    # connection
    # -------------------------
    async def connect(self) -> None:
        self._closing = False
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            await self._open()
        except (aiohttp.ClientError, OSError) as e:
            raise ChannelDisconnected(f"Could not connect to {self.url}: {e}") from e
        self._reader = asyncio.ensure_future(self._read_loop())

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self.connected = False
        if self._own_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _open(self) -> None:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "X-User-Id": self.user_id,
            "X-User-Role": self.role,
        }
        self._ws = await self._session.ws_connect(self.url, headers=headers, heartbeat=30.0)
        self.connected = True
        logger.info("Connected to relay %s as %s", self.url, self.user_id)
        for trip_id in list(self._handlers):
            self._joined[trip_id] = asyncio.Event()
            await self._send({"type": "join-trip", "tripId": trip_id})

    async def _read_loop(self) -> None:
        while True:
            ws = self._ws
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Relay connection error: %s", ws.exception())
                    break

            self.connected = False
            if self._closing:
                return
            logger.warning("Relay connection lost")
            if self.on_disconnect is not None:
                self.on_disconnect()

            if not await self._reconnect():
                logger.error("Giving up on relay after %d attempts", self.reconnect_attempts)
                return
            self.reconnects += 1
            if self.on_reconnect is not None:
                self.on_reconnect()

    async def _reconnect(self) -> bool:
        delay = self.reconnect_delay_s
        for attempt in range(1, self.reconnect_attempts + 1):
            await asyncio.sleep(delay)
            if self._closing:
                return False
            try:
                await self._open()
                logger.info("Reconnected on attempt %d, rejoined %d room(s)", attempt, len(self._handlers))
                return True
            except (aiohttp.ClientError, OSError) as e:
                logger.warning("Reconnect attempt %d failed: %s", attempt, e)
                delay = min(delay * 2, self.reconnect_delay_max_s)
        return False

    async def _send(self, message: Dict[str, Any]) -> bool:
        if not self.connected or self._ws is None or self._ws.closed:
            logger.debug("Not connected, dropping %s", message.get("type"))
            return False
        try:
            await self._ws.send_str(json.dumps(message))
        except (ConnectionResetError, aiohttp.ClientError) as e:
            logger.debug("Send failed, dropping %s: %s", message.get("type"), e)
            return False
        return True

    def _dispatch(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-json frame from relay")
            return

        typ = msg.get("type")
        if typ == "joined":
            ev = self._joined.get(str(msg.get("tripId")))
            if ev is not None:
                ev.set()
            return
        if typ == "error":
            logger.warning("Relay error: %s", msg.get("message"))
            return

        try:
            event = parse_event(msg)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Bad %s frame: %s", typ, e)
            return
        if event is None:
            return

        for handler in list(self._handlers.get(event.trip_id, ())):
            handler(event)

    # -------------------------
    # rooms
    # -------------------------
    async def subscribe(self, trip_id: str, handler: Handler) -> None:
        trip_id = str(trip_id)
        first = trip_id not in self._handlers
        self._handlers.setdefault(trip_id, []).append(handler)
        if not first or not self.connected:
            return

        joined = self._joined[trip_id] = asyncio.Event()
        await self._send({"type": "join-trip", "tripId": trip_id})
        try:
            await asyncio.wait_for(joined.wait(), self.join_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("No join ack for %s", room_for(trip_id))

    async def unsubscribe(self, trip_id: str) -> None:
        trip_id = str(trip_id)
        if self._handlers.pop(trip_id, None) is None:
            return
        self._joined.pop(trip_id, None)
        await self._send({"type": "leave-trip", "tripId": trip_id})

    # -------------------------
    # publishing (fire and forget)
    # -------------------------
    async def publish_location(self, trip_id: str, sample: LocationSample) -> bool:
        return await self._send(LocationEvent(str(trip_id), sample, self.user_id).to_message())

    async def publish_trip_status(self, trip_id: str, status: str) -> bool:
        return await self._send(TripStatusEvent(str(trip_id), status).to_message())

    async def publish_driver_status(self, trip_id: str, status: str) -> bool:
        return await self._send(DriverStatusEvent(str(trip_id), self.user_id, status).to_message())

    async def publish_employee_status(self, trip_id: str, employee_id: str, status: str) -> bool:
        return await self._send(EmployeeStatusEvent(str(trip_id), employee_id, status).to_message())

    async def send_emergency_alert(self, trip_id: str, message: str,
                                   location: Optional[Coordinates] = None) -> bool:
        return await self._send(EmergencyAlert(str(trip_id), message, self.user_id, location).to_message())

    async def send_message(self, trip_id: str, text: str) -> bool:
        return await self._send(ChatMessage(str(trip_id), text, self.user_id).to_message())
