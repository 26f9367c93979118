"""Unit tests for overpass_http.py: Overpass feature queries.

Tests cover: query construction, element parsing, error classification,
response-body remarks, rate limiting, and trace recording.
"""

from unittest.mock import patch, MagicMock

import pytest
import requests

from models import FeatureKind, MalformedResponse, PointOfInterest, SourceUnavailable
from nr_trace import TraceContext, clear_trace, set_trace
from overpass_http import OverpassHTTPClient, build_query
from settings import PipelineSettings

POINT = PointOfInterest(47.5103, 6.7984)


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None, text=""):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


def _client():
    return OverpassHTTPClient(min_spacing=0)


def _way(osm_id, geometry=None, tags=None):
    el = {"type": "way", "id": osm_id, "tags": tags or {}}
    if geometry is not None:
        el["geometry"] = geometry
    return el


# =========================================================================
# Query construction
# =========================================================================

class TestBuildQuery:
    def test_roads(self):
        q = build_query(FeatureKind.ROADS, POINT, 5000)
        assert 'way["highway"](around:5000,47.5103,6.7984);' in q
        assert q.startswith("[out:json]")
        assert q.endswith("out geom;")

    def test_residential_filter(self):
        q = build_query(FeatureKind.RESIDENTIAL, POINT, 5000)
        assert 'way["landuse"="residential"]' in q

    def test_buildings_filter(self):
        q = build_query(FeatureKind.BUILDINGS, POINT, 250)
        assert 'way["building"](around:250,' in q

    def test_sends_query_as_data_param(self):
        client = _client()
        mock_resp = _mock_response(200, {"elements": []})
        with patch.object(requests.Session, "get", return_value=mock_resp) as mock_get:
            client.fetch_features(POINT, FeatureKind.ROADS)

        _, kwargs = mock_get.call_args
        assert set(kwargs["params"]) == {"data"}
        assert "around:5000," in kwargs["params"]["data"]

    def test_from_settings(self):
        settings = PipelineSettings(
            overpass_url="http://localhost:12345/api/interpreter",
            radius_m=1200,
            min_request_spacing_s=0,
            http_timeout_s=5,
        )
        client = OverpassHTTPClient.from_settings(settings)
        assert client.base_url == "http://localhost:12345/api/interpreter"
        assert client.radius_m == 1200
        assert client.timeout == 5


# =========================================================================
# Parsing
# =========================================================================

class TestFetchFeatures:
    def test_parses_elements(self):
        body = {"elements": [
            _way(1, [{"lat": 47.51, "lon": 6.79}, {"lat": 47.52, "lon": 6.80}], {"highway": "primary"}),
            _way(2),
        ]}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, body)):
            fs = _client().fetch_features(POINT, FeatureKind.ROADS)

        assert fs.kind == FeatureKind.ROADS
        assert fs.point == POINT
        assert len(fs) == 2
        assert fs.elements[0].geometry == ((47.51, 6.79), (47.52, 6.80))
        assert fs.elements[0].tags == {"highway": "primary"}

    def test_elements_without_geometry_are_kept(self):
        body = {"elements": [_way(1), _way(2, [])]}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, body)):
            fs = _client().fetch_features(POINT, FeatureKind.RESIDENTIAL)

        assert len(fs) == 2
        assert fs.with_geometry() == []

    def test_missing_elements_is_malformed(self):
        with patch.object(requests.Session, "get", return_value=_mock_response(200, {"version": 0.6})):
            with pytest.raises(MalformedResponse) as exc_info:
                _client().fetch_features(POINT, FeatureKind.BUILDINGS)
        assert exc_info.value.source == "buildings"

    def test_bad_geometry_is_malformed(self):
        body = {"elements": [_way(1, [{"lat": "north"}])]}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, body)):
            with pytest.raises(MalformedResponse):
                _client().fetch_features(POINT, FeatureKind.ROADS)

    def test_non_json_is_malformed(self):
        mock_resp = _mock_response(200, json_data=None, text="<html>error</html>")
        with patch.object(requests.Session, "get", return_value=mock_resp):
            with pytest.raises(MalformedResponse, match="non-JSON"):
                _client().fetch_features(POINT, FeatureKind.ROADS)

    def test_json_array_is_malformed(self):
        with patch.object(requests.Session, "get", return_value=_mock_response(200, [1, 2])):
            with pytest.raises(MalformedResponse):
                _client().fetch_features(POINT, FeatureKind.ROADS)


# =========================================================================
# HTTP error handling
# =========================================================================

class TestHTTPErrors:
    def test_429_is_retryable_unavailable(self):
        with patch.object(requests.Session, "get", return_value=_mock_response(429)):
            with pytest.raises(SourceUnavailable) as exc_info:
                _client().fetch_features(POINT, FeatureKind.ROADS)
        assert exc_info.value.retryable is True
        assert exc_info.value.source == "roads"

    def test_504_is_retryable_unavailable(self):
        with patch.object(requests.Session, "get", return_value=_mock_response(504)):
            with pytest.raises(SourceUnavailable, match="504") as exc_info:
                _client().fetch_features(POINT, FeatureKind.ROADS)
        assert exc_info.value.retryable is True

    def test_400_is_not_retryable(self):
        with patch.object(requests.Session, "get", return_value=_mock_response(400)):
            with pytest.raises(SourceUnavailable, match="400") as exc_info:
                _client().fetch_features(POINT, FeatureKind.ROADS)
        assert exc_info.value.retryable is False

    def test_timeout(self):
        with patch.object(
            requests.Session, "get", side_effect=requests.exceptions.Timeout("timed out")
        ):
            with pytest.raises(SourceUnavailable, match="timeout") as exc_info:
                _client().fetch_features(POINT, FeatureKind.ROADS)
        assert exc_info.value.retryable is True

    def test_connection_error(self):
        with patch.object(
            requests.Session, "get", side_effect=requests.exceptions.ConnectionError("refused")
        ):
            with pytest.raises(SourceUnavailable, match="request failed"):
                _client().fetch_features(POINT, FeatureKind.ROADS)


# =========================================================================
# Response body error detection
# =========================================================================

class TestResponseBodyErrors:
    def test_rate_limit_in_body(self):
        body = {"osm3s": {"remark": "Too many requests"}, "elements": []}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, body)):
            with pytest.raises(SourceUnavailable, match="rate limit"):
                _client().fetch_features(POINT, FeatureKind.ROADS)

    def test_runtime_error_in_body(self):
        body = {"remark": "runtime error: Query timed out", "elements": []}
        with patch.object(requests.Session, "get", return_value=_mock_response(200, body)):
            with pytest.raises(SourceUnavailable, match="server error") as exc_info:
                _client().fetch_features(POINT, FeatureKind.ROADS)
        assert exc_info.value.retryable is True


# =========================================================================
# Rate limiting
# =========================================================================

class TestRateLimiting:
    @patch("overpass_http.time.sleep")
    def test_back_to_back_requests_are_spaced(self, mock_sleep):
        client = OverpassHTTPClient(min_spacing=1.0)
        with patch.object(requests.Session, "get", return_value=_mock_response(200, {"elements": []})):
            client.fetch_features(POINT, FeatureKind.ROADS)
            client.fetch_features(POINT, FeatureKind.BUILDINGS)

        assert mock_sleep.call_count == 1
        assert 0 < mock_sleep.call_args[0][0] <= 1.0

    @patch("overpass_http.time.sleep")
    def test_zero_spacing_never_sleeps(self, mock_sleep):
        client = _client()
        with patch.object(requests.Session, "get", return_value=_mock_response(200, {"elements": []})):
            client.fetch_features(POINT, FeatureKind.ROADS)
            client.fetch_features(POINT, FeatureKind.BUILDINGS)

        mock_sleep.assert_not_called()


# =========================================================================
# Trace recording
# =========================================================================

class TestTraceRecording:
    def test_success_and_failure_are_traced(self):
        ctx = TraceContext(trace_id="test-1", generation=1)
        set_trace(ctx)
        try:
            client = _client()
            with patch.object(requests.Session, "get", return_value=_mock_response(200, {"elements": []})):
                client.fetch_features(POINT, FeatureKind.ROADS)
            with patch.object(requests.Session, "get", return_value=_mock_response(429)):
                with pytest.raises(SourceUnavailable):
                    client.fetch_features(POINT, FeatureKind.BUILDINGS)
        finally:
            clear_trace()

        assert [(c.service, c.endpoint) for c in ctx.api_calls] == [
            ("overpass", "roads"),
            ("overpass", "buildings"),
        ]
        assert ctx.api_calls[1].provider_status == "rate_limit"
