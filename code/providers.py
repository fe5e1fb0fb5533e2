from typing import TYPE_CHECKING, AsyncIterator, List, Protocol, Sequence, Union

from LocationSample import Coordinates, LocationSample
from errors import PositionError

if TYPE_CHECKING:
    from geo_sampler import SamplerOptions
    from route_calculator import RouteResult


class DirectionsProvider(Protocol):
    def route(self, origin: Coordinates, destination: Coordinates,
              waypoints: Sequence[Coordinates] = ()) -> "RouteResult":
        """Blocking call; raises DirectionsFailed."""


class GeocodeProvider(Protocol):
    def reverse(self, lat: float, lng: float) -> List[str]:
        """Blocking call returning formatted addresses in provider order; raises GeocodeFailed."""


class PositionSource(Protocol):
    def watch(self, options: "SamplerOptions") -> AsyncIterator[Union[LocationSample, PositionError]]:
        """
        Continuous fixes. A yielded PositionError is recorded and the watch goes
        on; a raised one is recorded and ends it, as does the iterator running out.
        """

    async def current(self, options: "SamplerOptions") -> LocationSample:
        """Single fix; raises PositionError."""
