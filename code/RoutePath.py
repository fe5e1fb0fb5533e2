from bisect import bisect_right
from dataclasses import dataclass, field
from typing import List

from LocationSample import LatLng


def cum_array(values: List[float]) -> List[float]:
    cum = [0.0]
    s = 0.0
    for v in values:
        s += v
        cum.append(s)
    return cum


@dataclass(frozen=True)
class RoutePath:
    """
    A routed polyline with per-segment distance/time.
    geometry_latlon[i] -> geometry_latlon[i + 1] takes seg_time_s[i] seconds.
    """
    geometry_latlon: List[LatLng]
    seg_dist_m: List[float] = field(default_factory=list)
    seg_time_s: List[float] = field(default_factory=list)

    @property
    def cum_time_s(self) -> List[float]:
        return cum_array(self.seg_time_s)

    @property
    def cum_dist_m(self) -> List[float]:
        return cum_array(self.seg_dist_m)

    @property
    def duration(self) -> float:
        return sum(self.seg_time_s)

    @property
    def dist(self) -> float:
        return sum(self.seg_dist_m)

    def position_at(self, t_s: float) -> LatLng:
        if not self.geometry_latlon:
            raise ValueError("geometry_latlon is empty")

        if t_s <= 0.0 or len(self.geometry_latlon) == 1:
            return self.geometry_latlon[0]

        cum_time = self.cum_time_s
        if t_s >= cum_time[-1]:
            return self.geometry_latlon[-1]

        if len(self.geometry_latlon) != len(self.seg_time_s) + 1:
            raise ValueError("Length mismatch: geometry_latlon must be seg_time_s + 1")

        i = bisect_right(cum_time, t_s) - 1
        seg_t = self.seg_time_s[i]
        if seg_t <= 0.0:
            return self.geometry_latlon[i + 1]

        alpha = (t_s - cum_time[i]) / seg_t
        lat1, lon1 = self.geometry_latlon[i]
        lat2, lon2 = self.geometry_latlon[i + 1]
        return (lat1 + alpha * (lat2 - lat1), lon1 + alpha * (lon2 - lon1))
