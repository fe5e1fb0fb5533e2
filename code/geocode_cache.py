"""
Reverse-geocode memoization keyed by quantized coordinates.

Lookups for the same key are coalesced onto one in-flight task, failures fall
back to formatted coordinates and are never cached, and a cached address is
only replaced by a strictly better one.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

import requests

from LocationSample import Coordinates
from errors import GeocodeFailed
from providers import GeocodeProvider

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
RESOLVED_MIN_LENGTH = 20
PLUS_CODE = re.compile(r"[0-9A-Z]{2,8}\+[0-9A-Z]{2,}", re.IGNORECASE)

Notifier = Callable[[str, float], None]


def is_plus_code(address: str) -> bool:
    return bool(PLUS_CODE.search(address))


def is_resolved(address: Optional[str]) -> bool:
    return bool(address) and len(address) > RESOLVED_MIN_LENGTH and not is_plus_code(address)


def pick_best_address(candidates: List[str]) -> Optional[str]:
    """Longest non-plus-code address; ties keep provider order."""
    best: Optional[str] = None
    for addr in candidates:
        if not addr or is_plus_code(addr):
            continue
        if best is None or len(addr) > len(best):
            best = addr
    return best


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


# -------------------------
# stores
# -------------------------
@dataclass(frozen=True)
class GeocodeCacheEntry:
    key: str
    address: str
    cached_at: float = field(default_factory=time.time)


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[GeocodeCacheEntry]: ...

    def set(self, entry: GeocodeCacheEntry) -> None: ...

    def clear(self) -> None: ...


class MemoryCacheStore:
    """Session-lifetime store; pass ttl_s to expire entries earlier."""

    def __init__(self, ttl_s: Optional[float] = None, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, GeocodeCacheEntry] = {}

    def get(self, key: str) -> Optional[GeocodeCacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.ttl_s is not None and self._clock() - entry.cached_at > self.ttl_s:
            del self._entries[key]
            return None
        return entry

    def set(self, entry: GeocodeCacheEntry) -> None:
        self._entries[entry.key] = entry

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# -------------------------
# provider
# -------------------------
class GoogleGeocoder:
    def __init__(self, api_key: str, url: str = GEOCODE_URL, region: str = "IN",
                 language: str = "en", timeout_s: float = 10.0) -> None:
        self.api_key = api_key
        self.url = url
        self.region = region
        self.language = language
        self.timeout_s = timeout_s

    def reverse(self, lat: float, lng: float) -> List[str]:
        params = {
            "latlng": f"{lat},{lng}",
            "region": self.region,
            "language": self.language,
            "key": self.api_key,
        }
        try:
            r = requests.get(self.url, params=params, timeout=self.timeout_s)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise GeocodeFailed(f"Geocode request failed: {e}") from e

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return []
        if status != "OK":
            raise GeocodeFailed(f"Geocode failed: {status}")
        return [res.get("formatted_address", "") for res in data.get("results", [])]


# -------------------------
# cache
# -------------------------
class GeocodeCache:
    def __init__(self, provider: GeocodeProvider, store: Optional[CacheStore] = None,
                 precision: int = 6, notifier: Optional[Notifier] = None,
                 notice_duration_s: float = 3.5) -> None:
        self.provider = provider
        self.store: CacheStore = store if store is not None else MemoryCacheStore()
        self.precision = precision
        self.notifier = notifier
        self.notice_duration_s = notice_duration_s
        self.addresses: Dict[str, str] = {}
        self.lookups = 0
        self._inflight: Dict[str, asyncio.Task] = {}

    def quantize(self, lat: float, lng: float) -> str:
        return f"{lat:.{self.precision}f},{lng:.{self.precision}f}"

    async def resolve(self, lat: float, lng: float, purpose_key: str = "") -> str:
        key = self.quantize(lat, lng)
        entry = self.store.get(key)
        if entry is not None and is_resolved(entry.address):
            return self._remember(purpose_key, entry.address)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(key, lat, lng))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        address = await asyncio.shield(task)
        return self._remember(purpose_key, address)

    def address_for(self, purpose_key: str, coords: Optional[Coordinates] = None) -> str:
        if purpose_key in self.addresses:
            return self.addresses[purpose_key]
        if coords is not None:
            return format_coordinates(coords.lat, coords.lng)
        return "Resolving..."

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _lookup(self, key: str, lat: float, lng: float) -> str:
        self.lookups += 1
        try:
            results = await asyncio.to_thread(self.provider.reverse, lat, lng)
        except GeocodeFailed as e:
            logger.warning("Geocode failed for %s, using coordinates: %s", key, e)
            return format_coordinates(lat, lng)

        best = pick_best_address(results)
        current = self.store.get(key)
        if best is None:
            return current.address if current else format_coordinates(lat, lng)

        if current is None or len(best) > len(current.address):
            self.store.set(GeocodeCacheEntry(key=key, address=best))
            return best
        return current.address

    def _remember(self, purpose_key: str, address: str) -> str:
        if purpose_key:
            previous = self.addresses.get(purpose_key)
            self.addresses[purpose_key] = address
            is_current = purpose_key == "current" or purpose_key.startswith("current-")
            # only a changed address is worth a notice
            if is_current and address != previous:
                self._notify(address)
        return address

    def _notify(self, address: str) -> None:
        if self.notifier is None:
            logger.info("Current location: %s", address)
            return
        self.notifier(address, self.notice_duration_s)
