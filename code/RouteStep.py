from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from LocationSample import Coordinates
from Trip import StopStatus, Trip, TripStatus, TripType


class StepType(Enum):
    PICKUP = "pickup"
    DROP = "drop"
    OFFICE_PICKUP = "office_pickup"
    OFFICE_DROP = "office_drop"

    @property
    def is_office(self) -> bool:
        return self in (StepType.OFFICE_PICKUP, StepType.OFFICE_DROP)

    @property
    def target_status(self) -> StopStatus:
        if self in (StepType.PICKUP, StepType.OFFICE_PICKUP):
            return StopStatus.PICKED_UP
        return StopStatus.DROPPED


@dataclass
class RouteStep:
    type: StepType
    location: Optional[Coordinates]
    employee_ref: Optional[str] = None
    completed: bool = False
    label: str = ""

    @property
    def marker(self) -> str:
        if self.type is StepType.PICKUP:
            return "P"
        if self.type is StepType.DROP:
            return "D"
        return "O"


def all_boarded(trip: Trip) -> bool:
    """True once every passenger has left not_started (a trip with nobody on it never boards)."""
    return bool(trip.employees) and all(e.status is not StopStatus.NOT_STARTED for e in trip.employees)


def build_route_steps(trip: Trip) -> List[RouteStep]:
    """
    Project a trip into its navigable sequence.

    login:  pickup per passenger (list order), then the office drop-off.
    logout: the office pickup, then drop per passenger (list order).
    """
    steps: List[RouteStep] = []
    finished = trip.status is TripStatus.COMPLETED

    if trip.trip_type is TripType.LOGIN:
        for idx, emp in enumerate(trip.employees):
            steps.append(RouteStep(
                type=StepType.PICKUP,
                location=emp.pickup_location,
                employee_ref=emp.employee_ref,
                completed=emp.status in (StopStatus.PICKED_UP, StopStatus.DROPPED),
                label=emp.name or f"P{idx + 1}",
            ))
        steps.append(RouteStep(
            type=StepType.OFFICE_DROP,
            location=trip.office_location,
            completed=finished,
            label="Office Drop-off",
        ))
    else:
        # done only once nobody is left waiting at the office
        boarded = all_boarded(trip)
        steps.append(RouteStep(
            type=StepType.OFFICE_PICKUP,
            location=trip.office_location,
            completed=finished or boarded,
            label="Office Pickup",
        ))
        for idx, emp in enumerate(trip.employees):
            steps.append(RouteStep(
                type=StepType.DROP,
                location=emp.drop_location,
                employee_ref=emp.employee_ref,
                completed=emp.status is StopStatus.DROPPED,
                label=emp.name or f"D{idx + 1}",
            ))

    return steps


def first_incomplete(steps: List[RouteStep]) -> int:
    """Index of the current target, or len(steps) when everything is done."""
    for i, step in enumerate(steps):
        if not step.completed:
            return i
    return len(steps)


def route_targets(steps: List[RouteStep], n: int = 3) -> List[Coordinates]:
    """
    Locations of the current stop and the ones after it, at most n.
    The first one is the next stop; the rest are routed through as waypoints.
    """
    start = first_incomplete(steps)
    out: List[Coordinates] = []
    for step in steps[start:]:
        if len(out) >= n:
            break
        if not step.completed and step.location is not None:
            out.append(step.location)
    return out
