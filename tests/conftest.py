"""Shared fixtures for the NRCheck test suite.

Provides fake Overpass / TomTom clients that the pipeline can drive
deterministically, plus settings with retries and rate limiting turned off.
"""

import threading

import pytest

from aggregation_pipeline import AggregationPipeline
from models import FeatureElement, FeatureSet
from settings import PipelineSettings


class FakeGeoClient:
    """Stands in for OverpassHTTPClient.

    ``counts`` maps a feature kind to how many elements to return.
    ``errors`` maps a feature kind to an exception (always raised) or a
    list of exceptions consumed one per call (None entries succeed).
    ``gates`` maps a PointOfInterest to a threading.Event the call waits on.
    """

    def __init__(self, counts=None, errors=None):
        self.counts = {"roads": 3, "buildings": 4, "residential": 250}
        self.counts.update(counts or {})
        self.errors = dict(errors or {})
        self.gates = {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch_features(self, point, kind, radius_m=None):
        with self._lock:
            self.calls.append((point, kind.value))
            err = self.errors.get(kind.value)
            if isinstance(err, list):
                err = err.pop(0) if err else None
        gate = self.gates.get(point)
        if gate is not None:
            gate.wait(timeout=5)
        if err is not None:
            raise err
        elements = tuple(
            FeatureElement(
                osm_type="way",
                osm_id=i,
                geometry=((point.lat, point.lon), (point.lat + 0.001, point.lon + 0.001)),
            )
            for i in range(self.counts[kind.value])
        )
        return FeatureSet(kind=kind, point=point, elements=elements)


class FakeTrafficClient:
    """Stands in for TrafficFlowClient; same error/gate conventions."""

    def __init__(self, speed=71.0, error=None):
        self.speed = speed
        self.error = error
        self.gates = {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch_speed(self, point):
        with self._lock:
            self.calls.append(point)
            err = self.error
            if isinstance(err, list):
                err = err.pop(0) if err else None
        gate = self.gates.get(point)
        if gate is not None:
            gate.wait(timeout=5)
        if err is not None:
            raise err
        return self.speed


@pytest.fixture
def fast_settings():
    return PipelineSettings(
        traffic_api_key="test-key",
        geo_max_retries=0,
        traffic_max_retries=0,
        retry_backoff_s=0,
        min_request_spacing_s=0,
    )


@pytest.fixture
def geo_client():
    return FakeGeoClient()


@pytest.fixture
def traffic_client():
    return FakeTrafficClient()


@pytest.fixture
def make_pipeline(fast_settings, geo_client, traffic_client):
    """Factory for pipelines wired to the fake clients; closed after the test."""
    created = []

    def _make(settings=None, geo=None, traffic=None, **kwargs):
        pipeline = AggregationPipeline(
            settings or fast_settings,
            geo_client=geo or geo_client,
            traffic_client=traffic or traffic_client,
            **kwargs,
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()
