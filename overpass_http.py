"""
Overpass API feature queries.

All Overpass HTTP requests go through OverpassHTTPClient.  It provides:
- Query construction for the three feature kinds (roads, buildings,
  residential land use) around a point
- Process-local rate limiting: minimum spacing between requests
- Thread-safe request execution (fresh requests.Session per request)
- Error classification into SourceUnavailable / MalformedResponse
- nr_trace and health_monitor integration for observability

No retries happen here.  The pipeline decides whether a SourceUnavailable
is worth another attempt (see ``retryable``).

Rate limiting is per-client.  When self-hosting Overpass, set
OVERPASS_BASE_URL and NR_MIN_REQUEST_SPACING_S=0.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from health_monitor import record_call
from models import (
    FeatureElement,
    FeatureKind,
    FeatureSet,
    MalformedResponse,
    PointOfInterest,
    SourceUnavailable,
)
from nr_trace import get_trace
from settings import DEFAULT_OVERPASS_URL, DEFAULT_RADIUS_M

logger = logging.getLogger(__name__)

SERVICE = "overpass"

# Server-side limit embedded in every query (seconds).
QUERY_TIMEOUT_S = 25

# Overpass reports some failures as HTTP 200 with a remark in the body.
_RATE_LIMIT_REMARKS = ("too many requests", "rate_limited")
_SERVER_ERROR_REMARKS = ("runtime error", "timed out", "out of memory")


def build_query(kind: FeatureKind, point: PointOfInterest, radius_m: int) -> str:
    """Overpass QL selecting ways of *kind* around *point*, with geometry."""
    return (
        f"[out:json][timeout:{QUERY_TIMEOUT_S}];"
        f"way{kind.tag_filter}(around:{int(radius_m)},{point.lat},{point.lon});"
        "out geom;"
    )


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 30  # seconds
    MIN_SPACING = 1.0  # seconds between HTTP requests

    def __init__(
        self,
        base_url: str = DEFAULT_OVERPASS_URL,
        timeout: Optional[float] = None,
        min_spacing: Optional[float] = None,
        radius_m: int = DEFAULT_RADIUS_M,
    ):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self.base_url = base_url
        self.timeout = self.DEFAULT_TIMEOUT if timeout is None else timeout
        self.min_spacing = self.MIN_SPACING if min_spacing is None else min_spacing
        self.radius_m = radius_m

    @classmethod
    def from_settings(cls, settings) -> "OverpassHTTPClient":
        return cls(
            base_url=settings.overpass_url,
            timeout=settings.http_timeout_s,
            min_spacing=settings.min_request_spacing_s,
            radius_m=settings.radius_m,
        )

    def fetch_features(
        self,
        point: PointOfInterest,
        kind: FeatureKind,
        radius_m: Optional[int] = None,
    ) -> FeatureSet:
        """Run one feature query and return the parsed FeatureSet.

        Elements without geometry are kept; drawing code filters them.

        Raises:
            SourceUnavailable: transport failure, HTTP error, or an
                Overpass server error reported in the body.
            MalformedResponse: body is not JSON or does not match the
                expected ``elements`` shape.
        """
        radius = self.radius_m if radius_m is None else radius_m
        data = self.query(build_query(kind, point, radius), source=kind.value)

        raw_elements = data.get("elements")
        if not isinstance(raw_elements, list):
            raise MalformedResponse(
                kind.value, "Overpass response has no 'elements' array"
            )
        elements = tuple(
            FeatureElement.from_overpass(raw, source=kind.value) for raw in raw_elements
        )
        logger.debug(
            "[overpass] %s: %d elements around (%.4f, %.4f)",
            kind.value, len(elements), point.lat, point.lon,
        )
        return FeatureSet(kind=kind, point=point, elements=elements)

    def query(self, overpass_ql: str, source: str = "overpass") -> Dict[str, Any]:
        """Execute one Overpass QL query and return the decoded JSON object."""
        self._wait_for_slot()

        start = time.monotonic()
        trace = get_trace()

        def _fail(exc, status_code, provider_status):
            elapsed_ms = int((time.monotonic() - start) * 1000)
            if trace:
                trace.record_api_call(
                    service=SERVICE,
                    endpoint=source,
                    elapsed_ms=elapsed_ms,
                    status_code=status_code,
                    provider_status=provider_status,
                )
            _record_health(False, elapsed_ms, str(exc))
            return exc

        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.get(
                self.base_url,
                params={"data": overpass_ql},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise _fail(
                SourceUnavailable(
                    source,
                    f"Overpass request timeout after {self.timeout}s",
                    retryable=True,
                ),
                0, "timeout",
            )
        except requests.exceptions.RequestException as e:
            raise _fail(
                SourceUnavailable(source, f"Overpass request failed: {e}", retryable=True),
                0, "exception",
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            raise _fail(
                SourceUnavailable(source, "Overpass 429 Too Many Requests", retryable=True),
                status_code, "rate_limit",
            )
        if status_code >= 400:
            raise _fail(
                SourceUnavailable(
                    source,
                    f"Overpass HTTP {status_code}",
                    retryable=status_code >= 500,
                ),
                status_code, "http_error",
            )

        try:
            data = resp.json()
        except ValueError:
            raise _fail(
                MalformedResponse(
                    source, f"Overpass returned non-JSON response (HTTP {status_code})"
                ),
                status_code, "parse_error",
            )
        if not isinstance(data, dict):
            raise _fail(
                MalformedResponse(source, "Overpass response is not a JSON object"),
                status_code, "parse_error",
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        osm3s = data.get("osm3s") or {}
        remark = str(osm3s.get("remark") or "") if isinstance(osm3s, dict) else ""
        remark = remark or str(data.get("remark") or "")
        remark_lower = remark.lower()
        if any(indicator in remark_lower for indicator in _RATE_LIMIT_REMARKS):
            raise _fail(
                SourceUnavailable(source, "Overpass rate limit in response body", retryable=True),
                status_code, "rate_limit",
            )
        if any(indicator in remark_lower for indicator in _SERVER_ERROR_REMARKS):
            raise _fail(
                SourceUnavailable(
                    source,
                    f"Overpass server error in response body: {remark[:100]}",
                    retryable=True,
                ),
                status_code, "body_error",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if trace:
            trace.record_api_call(
                service=SERVICE,
                endpoint=source,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
            )
        _record_health(True, elapsed_ms)
        return data

    def _wait_for_slot(self) -> None:
        """Enforce minimum spacing between requests from this client."""
        if self.min_spacing <= 0:
            return
        with self._lock:
            elapsed_since_last = time.monotonic() - self._last_request_time
            if elapsed_since_last < self.min_spacing:
                time.sleep(self.min_spacing - elapsed_since_last)
            self._last_request_time = time.monotonic()


def _record_health(success: bool, elapsed_ms: int, error: Optional[str] = None) -> None:
    try:
        record_call(SERVICE, success, elapsed_ms, error)
    except Exception:
        logger.debug("[overpass] health tracking failed", exc_info=True)
