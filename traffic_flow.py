"""
Traffic Flow: current vehicle speed at a point.

Queries the TomTom Traffic Flow Segment Data API for the road segment
closest to the point and returns its current speed in km/h.

Data source:
  - TomTom Traffic API, flowSegmentData/absolute/10 (10-minute absolute
    flow segment, zoom 10)

Limitations:
  - Points far from any tracked road get no flowSegmentData at all; that
    is reported as NoData, an expected outcome rather than an outage.
  - Speed is the segment's current average, not a per-lane or peak value.
"""

import logging
import math
import time
from typing import Optional

import requests

from health_monitor import record_call
from models import MalformedResponse, NoData, PointOfInterest, SourceUnavailable
from nr_trace import get_trace
from settings import DEFAULT_TRAFFIC_URL

logger = logging.getLogger(__name__)

SERVICE = "tomtom"
SOURCE = "traffic"
_ENDPOINT = "flow_segment"
_SPEED_UNIT = "KMPH"
_API_TIMEOUT = 15  # seconds


class TrafficFlowClient:
    """Fetches current speed for a point.  Stateless and thread-safe."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_TRAFFIC_URL,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = _API_TIMEOUT if timeout is None else timeout

    @classmethod
    def from_settings(cls, settings) -> "TrafficFlowClient":
        if not settings.traffic_api_key:
            logger.warning("[traffic] TOMTOM_API_KEY is not set; traffic queries will fail")
        return cls(
            api_key=settings.traffic_api_key,
            base_url=settings.traffic_url,
            timeout=settings.http_timeout_s,
        )

    def fetch_speed(self, point: PointOfInterest) -> float:
        """Return the current speed (km/h) of the segment nearest *point*.

        Raises:
            SourceUnavailable: transport or HTTP failure.
            MalformedResponse: body is not JSON, or currentSpeed is not a
                non-negative number.
            NoData: the response has no flowSegmentData for this point.
        """
        params = {
            "point": f"{point.lat},{point.lon}",
            "unit": _SPEED_UNIT,
            "key": self.api_key,
        }
        trace = get_trace()
        t0 = time.monotonic()

        def _done(status_code: int, provider_status: str, error: Optional[str] = None):
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service=SERVICE,
                    endpoint=_ENDPOINT,
                    elapsed_ms=elapsed_ms,
                    status_code=status_code,
                    provider_status=provider_status,
                )
            try:
                # NoData is a healthy upstream answering "no segment here"
                record_call(SERVICE, error is None or provider_status == "no_data", elapsed_ms, error)
            except Exception:
                logger.debug("[traffic] health tracking failed", exc_info=True)

        try:
            resp = requests.get(self.base_url, params=params, timeout=self.timeout)
        except requests.Timeout:
            logger.warning("[traffic] TomTom timed out for (%.4f, %.4f)", point.lat, point.lon)
            _done(0, "timeout", "timeout")
            raise SourceUnavailable(
                SOURCE, f"TomTom request timeout after {self.timeout}s", retryable=True
            )
        except requests.RequestException as e:
            # Exception text can embed the request URL, which carries the key
            logger.warning(
                "[traffic] TomTom request failed for (%.4f, %.4f): %s",
                point.lat, point.lon, type(e).__name__,
            )
            _done(0, "exception", type(e).__name__)
            raise SourceUnavailable(
                SOURCE, f"TomTom request failed: {type(e).__name__}", retryable=True
            ) from None

        if not resp.ok:
            logger.warning(
                "[traffic] TomTom returned %d for (%.4f, %.4f)",
                resp.status_code, point.lat, point.lon,
            )
            _done(resp.status_code, "http_error", f"HTTP {resp.status_code}")
            raise SourceUnavailable(
                SOURCE,
                f"TomTom HTTP {resp.status_code}",
                retryable=resp.status_code == 429 or resp.status_code >= 500,
            )

        try:
            data = resp.json()
        except ValueError:
            _done(resp.status_code, "parse_error", "non-JSON response")
            raise MalformedResponse(SOURCE, "TomTom returned non-JSON response")
        if not isinstance(data, dict):
            _done(resp.status_code, "parse_error", "non-object response")
            raise MalformedResponse(SOURCE, "TomTom response is not a JSON object")

        segment = data.get("flowSegmentData")
        if not segment:
            _done(resp.status_code, "no_data", "no flowSegmentData")
            raise NoData(SOURCE, "No flow segment data for this point")
        if not isinstance(segment, dict):
            _done(resp.status_code, "parse_error", "flowSegmentData is not an object")
            raise MalformedResponse(SOURCE, "flowSegmentData is not an object")

        speed = segment.get("currentSpeed")
        if isinstance(speed, bool) or not isinstance(speed, (int, float)) \
                or not math.isfinite(speed) or speed < 0:
            _done(resp.status_code, "parse_error", "bad currentSpeed")
            raise MalformedResponse(
                SOURCE, f"currentSpeed is not a non-negative number: {speed!r}"
            )

        _done(resp.status_code, "OK")
        return float(speed)
