import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

API_BASE_URL = "http://127.0.0.1:8000/api"
RELAY_URL = "ws://127.0.0.1:8000/ws"
OSRM_DRIVE = "http://localhost:5000"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

ENV_PREFIX = "TRIPTRACK_"


@dataclass
class TrackingConfig:
    # backend / relay
    api_base_url: str = API_BASE_URL
    relay_url: str = RELAY_URL
    access_token: str = ""
    user_id: str = ""
    role: str = "driver"
    request_timeout_s: float = 10.0

    # providers
    osrm_url: str = OSRM_DRIVE
    geocode_url: str = GEOCODE_URL
    geocode_api_key: str = ""
    geocode_region: str = "IN"
    geocode_language: str = "en"
    geocode_precision: int = 6

    # cadences
    location_push_interval_s: float = 5.0
    route_refresh_interval_s: float = 30.0

    # rendering
    trace_limit: int = 49
    pulse_period_ms: float = 2000.0
    pulse_rise_fraction: float = 0.6
    animation_fps: float = 30.0
    notice_duration_s: float = 3.5

    # history
    history_limit: int = 50
    local_history_limit: int = 100

    # channel reconnect
    reconnect_attempts: int = 5
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "TrackingConfig":
        """
        Build a config from TRIPTRACK_* variables, e.g. TRIPTRACK_ACCESS_TOKEN.
        Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        values.update(overrides)
        return cls(**values)
