from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from LocationSample import Coordinates
from RouteStep import RouteStep, StepType, all_boarded, build_route_steps, first_incomplete
from Trip import StopStatus, Trip, TripStatus, trip_progress
from backend_api import completion_payload
from errors import (
    AdvanceInProgress,
    ApiError,
    InvalidTransition,
    StatusUpdatePersistFailed,
    TripCompleteFailed,
)

logger = logging.getLogger(__name__)


class TripApi(Protocol):
    async def update_employee_status(self, trip_id: str, employee_id: str, status: str) -> Any: ...

    async def complete_trip(self, trip_id: str, payload: Optional[Dict[str, Any]] = None) -> Any: ...

    async def start_trip(self, trip_id: str) -> Any: ...


@dataclass
class AdvanceResult:
    step: Optional[RouteStep]
    new_status: Optional[StopStatus]
    next_step: Optional[RouteStep]
    trip_completed: bool


class StopSequencer:
    """
    Forward-only pickup/drop state machine for one trip.

    The current target is always the first incomplete RouteStep. Only one
    status change per trip may be in flight; a second request while one is
    pending raises AdvanceInProgress.
    """

    def __init__(self, trip: Trip, api: TripApi,
                 distance_km: Callable[[], float] = lambda: 0.0) -> None:
        self.trip = trip
        self.api = api
        self.distance_km = distance_km
        self.steps: List[RouteStep] = build_route_steps(trip)
        self.index = first_incomplete(self.steps)
        self.listeners: List[Callable[[AdvanceResult], None]] = []
        # awaited after each confirmed stop, before any completion call
        self.on_confirmed: Optional[Callable[[AdvanceResult], Awaitable[None]]] = None
        self._busy = False
        self._completion_sent = trip.status is TripStatus.COMPLETED

    # -------------------------
    # read-only views
    # -------------------------
    @property
    def current_step(self) -> Optional[RouteStep]:
        if 0 <= self.index < len(self.steps):
            return self.steps[self.index]
        return None

    @property
    def is_complete(self) -> bool:
        return self.trip.status is TripStatus.COMPLETED

    @property
    def in_flight(self) -> bool:
        return self._busy

    def next_steps(self, n: int = 2) -> List[RouteStep]:
        """Incomplete steps after the current one (route waypoints)."""
        return [s for s in self.steps[self.index + 1:] if not s.completed][:n]

    def pending_locations(self) -> List[Coordinates]:
        return [s.location for s in self.steps if not s.completed and s.location is not None]

    def progress(self) -> Dict[str, int]:
        return trip_progress(self.trip)

    # -------------------------
    # transitions
    # -------------------------
    async def start_trip(self) -> None:
        if self.trip.status is not TripStatus.SCHEDULED:
            raise InvalidTransition(self.trip.status.value, TripStatus.ACTIVE.value)
        await self.api.start_trip(self.trip.id)
        self.trip.status = TripStatus.ACTIVE
        logger.info("Trip %s started", self.trip.id)

    async def advance_current_stop(self) -> AdvanceResult:
        if self._busy:
            raise AdvanceInProgress(self.trip.id)
        self._busy = True
        try:
            if self.is_complete:
                return AdvanceResult(None, None, None, True)

            # every stop confirmed earlier but completion failed: retry only that
            if self.index >= len(self.steps):
                await self._complete()
                return AdvanceResult(None, None, None, True)

            step = self.steps[self.index]
            new_status = step.type.target_status
            await self._persist_step(step, new_status)

            step.completed = True
            self.index = first_incomplete(self.steps)
            result = AdvanceResult(step, new_status, self.current_step, False)
            logger.info("Trip %s: %s %s confirmed", self.trip.id, step.type.value, step.label)
            await self._confirmed(result)

            if self.current_step is None:
                await self._complete()
                result.trip_completed = True
            return result
        finally:
            self._busy = False

    async def set_stop_status(self, employee_ref: str, status: StopStatus) -> AdvanceResult:
        """Confirm one passenger directly, outside of the step order."""
        if self._busy:
            raise AdvanceInProgress(self.trip.id)
        self._busy = True
        try:
            entry = self.trip.entry_for(employee_ref)
            await self._persist_entry(entry.employee_ref, entry.status, status)
            entry.status = status
            self._sync_steps()
            self.index = first_incomplete(self.steps)

            step = next((s for s in self.steps if s.employee_ref == employee_ref), None)
            result = AdvanceResult(step, status, self.current_step, False)
            await self._confirmed(result)

            if self.current_step is None:
                await self._complete()
                result.trip_completed = True
            return result
        finally:
            self._busy = False

    # -------------------------
    # internals
    # -------------------------
    async def _persist_step(self, step: RouteStep, new_status: StopStatus) -> None:
        if step.type is StepType.OFFICE_DROP:
            return

        if step.type is StepType.OFFICE_PICKUP:
            # passengers board at the office
            for entry in self.trip.employees:
                if entry.status is StopStatus.NOT_STARTED:
                    await self._persist_entry(entry.employee_ref, entry.status, new_status)
                    entry.status = new_status
            return

        if step.employee_ref is None:
            return
        entry = self.trip.entry_for(step.employee_ref)
        await self._persist_entry(entry.employee_ref, entry.status, new_status)
        entry.status = new_status

    async def _persist_entry(self, employee_ref: str, current: StopStatus, new_status: StopStatus) -> None:
        if not current.can_advance_to(new_status):
            raise InvalidTransition(current.value, new_status.value)
        try:
            await self.api.update_employee_status(self.trip.id, employee_ref, new_status.value)
        except ApiError as e:
            logger.error("Trip %s: persisting %s for %s failed: %s",
                         self.trip.id, new_status.value, employee_ref, e)
            raise StatusUpdatePersistFailed(employee_ref, new_status.value, e) from e

    async def _complete(self) -> None:
        if self._completion_sent:
            return
        try:
            await self.api.complete_trip(self.trip.id, completion_payload(self.distance_km()))
        except ApiError as e:
            logger.error("Trip %s: completion failed: %s", self.trip.id, e)
            raise TripCompleteFailed(self.trip.id, e) from e
        self._completion_sent = True
        self.trip.status = TripStatus.COMPLETED
        logger.info("Trip %s completed", self.trip.id)
        self._emit(AdvanceResult(None, None, None, True))

    def _sync_steps(self) -> None:
        by_ref = {e.employee_ref: e for e in self.trip.employees}
        for step in self.steps:
            if step.type is StepType.OFFICE_PICKUP:
                step.completed = step.completed or all_boarded(self.trip)
                continue
            entry = by_ref.get(step.employee_ref) if step.employee_ref else None
            if entry is None:
                continue
            if step.type is StepType.PICKUP:
                step.completed = entry.status is not StopStatus.NOT_STARTED
            elif step.type is StepType.DROP:
                step.completed = entry.status is StopStatus.DROPPED

    async def _confirmed(self, result: AdvanceResult) -> None:
        self._emit(result)
        if self.on_confirmed is not None:
            await self.on_confirmed(result)

    def _emit(self, result: AdvanceResult) -> None:
        for listener in list(self.listeners):
            listener(result)
