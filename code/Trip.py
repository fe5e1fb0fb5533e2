from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from LocationSample import Coordinates


class TripType(Enum):
    LOGIN = "login"     # home -> office
    LOGOUT = "logout"   # office -> home


class TripStatus(Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopStatus(Enum):
    NOT_STARTED = "not_started"
    PICKED_UP = "picked_up"
    DROPPED = "dropped"

    @property
    def rank(self) -> int:
        return _STOP_ORDER.index(self)

    def can_advance_to(self, nxt: "StopStatus") -> bool:
        # strictly one step forward, never back, never skipping picked_up
        return nxt.rank == self.rank + 1


_STOP_ORDER = [StopStatus.NOT_STARTED, StopStatus.PICKED_UP, StopStatus.DROPPED]


def _ref(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return str(value)


def _coords(location: Optional[Dict[str, Any]]) -> Optional[Coordinates]:
    if not location:
        return None
    coords = location.get("coordinates", location)
    if not coords or "lat" not in coords:
        return None
    return Coordinates.from_dict(coords)


@dataclass
class StopEntry:
    employee_ref: str
    pickup_location: Optional[Coordinates] = None
    drop_location: Optional[Coordinates] = None
    status: StopStatus = StopStatus.NOT_STARTED
    name: Optional[str] = None

    @staticmethod
    def from_payload(d: Dict[str, Any]) -> "StopEntry":
        employee = d.get("employee")
        name = None
        if isinstance(employee, dict):
            user = employee.get("user")
            if isinstance(user, dict):
                name = user.get("name")
        return StopEntry(
            employee_ref=_ref(employee) or _ref(d.get("employeeRef")) or "",
            pickup_location=_coords(d.get("pickupLocation")),
            drop_location=_coords(d.get("dropLocation")),
            status=StopStatus(d.get("status") or StopStatus.NOT_STARTED.value),
            name=name,
        )


@dataclass
class Trip:
    id: str
    trip_type: TripType
    office_location: Optional[Coordinates]
    status: TripStatus = TripStatus.SCHEDULED
    employees: List[StopEntry] = field(default_factory=list)
    assigned_driver: Optional[str] = None
    assigned_vehicle: Optional[str] = None
    schedule: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    def entry_for(self, employee_ref: str) -> StopEntry:
        for entry in self.employees:
            if entry.employee_ref == employee_ref:
                return entry
        raise KeyError(f"employee {employee_ref} is not on trip {self.id}")

    @staticmethod
    def from_payload(d: Dict[str, Any]) -> "Trip":
        """Parse the backend trip document (``_id``/``id``, camelCase fields)."""
        return Trip(
            id=str(d.get("_id") or d["id"]),
            trip_type=TripType(d["tripType"]),
            office_location=_coords(d.get("officeLocation")),
            status=TripStatus(d.get("status") or TripStatus.SCHEDULED.value),
            employees=[StopEntry.from_payload(e) for e in d.get("employees") or []],
            assigned_driver=_ref(d.get("assignedDriver")),
            assigned_vehicle=_ref(d.get("assignedVehicle")),
            schedule=dict(d.get("schedule") or {}),
            name=d.get("tripName"),
        )


def trip_progress(trip: Trip) -> Dict[str, int]:
    """Counters shown on the viewer overlay."""
    return {
        "total": len(trip.employees),
        "picked_up": sum(1 for e in trip.employees if e.status is StopStatus.PICKED_UP),
        "dropped": sum(1 for e in trip.employees if e.status is StopStatus.DROPPED),
    }
