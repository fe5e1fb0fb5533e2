from typing import Optional


class TrackingError(Exception):
    """Base for every non-fatal tracking failure. str(err) is user-facing."""


# -------------------------
# sampling
# -------------------------
class PositionError(TrackingError):
    pass


class PermissionDenied(PositionError):
    def __init__(self, message: str = "Location permission denied. Please enable location access."):
        super().__init__(message)


class PositionUnavailable(PositionError):
    def __init__(self, message: str = "Location information unavailable."):
        super().__init__(message)


class PositionTimeout(PositionError):
    def __init__(self, message: str = "Location request timed out."):
        super().__init__(message)


# -------------------------
# providers
# -------------------------
class GeocodeFailed(TrackingError):
    pass


class DirectionsFailed(TrackingError):
    pass


# -------------------------
# stop sequencing
# -------------------------
class StatusUpdatePersistFailed(TrackingError):
    def __init__(self, employee_ref: str, status: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to update status to {status}. Please try again.")
        self.employee_ref = employee_ref
        self.status = status
        self.cause = cause


class TripCompleteFailed(TrackingError):
    def __init__(self, trip_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Stops confirmed but trip {trip_id} could not be completed. Please try again.")
        self.trip_id = trip_id
        self.cause = cause


class InvalidTransition(TrackingError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move stop from {current} to {requested}")
        self.current = current
        self.requested = requested


class AdvanceInProgress(TrackingError):
    def __init__(self, trip_id: str):
        super().__init__(f"A stop update for trip {trip_id} is already in progress")
        self.trip_id = trip_id


# -------------------------
# transport
# -------------------------
class ChannelDisconnected(TrackingError):
    pass


class ApiError(TrackingError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
