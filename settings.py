"""
Runtime settings for the aggregation pipeline.

One frozen PipelineSettings instance is built at startup (usually via
``PipelineSettings.from_env()``) and handed to the pipeline and its
clients.  No module reads the environment on its own after that.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from nr_classifier import DEFAULT_DENSITY_DIVISOR

DEFAULT_OVERPASS_URL = "https://overpass-api.de/api/interpreter"
DEFAULT_TRAFFIC_URL = (
    "https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json"
)
DEFAULT_RADIUS_M = 5000


@dataclass(frozen=True)
class PipelineSettings:
    overpass_url: str = DEFAULT_OVERPASS_URL
    traffic_url: str = DEFAULT_TRAFFIC_URL
    traffic_api_key: str = field(default="", repr=False)
    radius_m: int = DEFAULT_RADIUS_M
    density_divisor: float = DEFAULT_DENSITY_DIVISOR

    # Per-query deadline enforced by the pipeline; None waits indefinitely.
    query_timeout_s: Optional[float] = None
    # requests-level timeout on each HTTP call.
    http_timeout_s: float = 30.0

    geo_max_retries: int = 1
    traffic_max_retries: int = 0
    retry_backoff_s: float = 2.0

    # Process-local spacing between Overpass requests.
    min_request_spacing_s: float = 1.0

    # Orchestration threads; stale runs waiting here exit without work.
    max_concurrent_runs: int = 2

    # Point loaded when the pipeline is first built; None starts idle.
    default_point: Optional[Tuple[float, float]] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineSettings":
        """Build settings from environment variables.

        Unset variables keep their defaults.  Malformed numbers raise
        ValueError naming the offending variable.
        """
        env = os.environ if environ is None else environ

        return cls(
            overpass_url=env.get("OVERPASS_BASE_URL", DEFAULT_OVERPASS_URL),
            traffic_url=env.get("TOMTOM_FLOW_URL", DEFAULT_TRAFFIC_URL),
            traffic_api_key=env.get("TOMTOM_API_KEY", ""),
            radius_m=_env_number(env, "NR_SEARCH_RADIUS_M", DEFAULT_RADIUS_M, int),
            density_divisor=_env_number(
                env, "NR_DENSITY_DIVISOR", DEFAULT_DENSITY_DIVISOR, float
            ),
            query_timeout_s=_env_number(env, "NR_QUERY_TIMEOUT_S", None, float),
            http_timeout_s=_env_number(env, "NR_HTTP_TIMEOUT_S", 30.0, float),
            geo_max_retries=_env_number(env, "NR_GEO_MAX_RETRIES", 1, int),
            traffic_max_retries=_env_number(env, "NR_TRAFFIC_MAX_RETRIES", 0, int),
            retry_backoff_s=_env_number(env, "NR_RETRY_BACKOFF_S", 2.0, float),
            min_request_spacing_s=_env_number(
                env, "NR_MIN_REQUEST_SPACING_S", 1.0, float
            ),
            max_concurrent_runs=_env_number(env, "NR_MAX_CONCURRENT_RUNS", 2, int),
            default_point=_env_point(env, "NR_DEFAULT_POINT"),
        )


def _env_number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_point(env: Mapping[str, str], name: str) -> Optional[Tuple[float, float]]:
    """Parse ``"lat,lon"``; blank or unset means no point."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    parts = raw.split(",")
    if len(parts) != 2:
        raise ValueError(f"{name} must be 'lat,lon', got {raw!r}")
    try:
        return float(parts[0]), float(parts[1])
    except ValueError:
        raise ValueError(f"{name} must be 'lat,lon', got {raw!r}")
