"""
Data model for the NR configuration pipeline.

Everything that crosses a module boundary lives here:
  - PointOfInterest: normalized lat/lon, value-equal and immutable
  - FeatureElement / FeatureSet: typed Overpass ways, validated at parse time
  - PipelineResult: the one externally visible state per generation
  - SourceError taxonomy: SourceUnavailable, MalformedResponse, NoData

Results are frozen and replaced wholesale by the pipeline; nothing in this
module is ever mutated after construction.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from nr_classifier import NetworkConfig

# The original map drew the density circle at 100 m per density point.
DENSITY_RADIUS_M_PER_POINT = 100.0


# =============================================================================
# Error taxonomy
# =============================================================================

class SourceError(Exception):
    """Base class for a single data source failing to produce a value."""

    def __init__(self, source: str, message: str):
        super().__init__(message)
        self.source = source


class SourceUnavailable(SourceError):
    """Transport or HTTP failure talking to a data source.

    ``retryable`` is True for failures that may clear on their own (429,
    5xx, timeouts, connection errors, server-side query errors).
    """

    def __init__(self, source: str, message: str, retryable: bool = False):
        super().__init__(source, message)
        self.retryable = retryable


class MalformedResponse(SourceError):
    """Response body could not be parsed into the expected shape."""


class NoData(SourceError):
    """Well-formed response that carries no usable value for this point."""


# =============================================================================
# Point of interest
# =============================================================================

@dataclass(frozen=True)
class PointOfInterest:
    """A normalized coordinate. Build it with ``PointOfInterest.normalized``."""
    lat: float  # [-90, 90]
    lon: float  # (-180, 180]

    @classmethod
    def normalized(cls, lat: Any, lon: Any) -> "PointOfInterest":
        """Clamp latitude and wrap longitude into (-180, 180].

        Raises ValueError for anything that is not a finite number.
        """
        lat_f = _finite_float(lat, "lat")
        lon_f = _finite_float(lon, "lon")

        lat_f = max(-90.0, min(90.0, lat_f))
        if not -180.0 < lon_f <= 180.0:
            lon_f = math.fmod(lon_f + 180.0, 360.0)
            if lon_f <= 0:
                lon_f += 360.0
            lon_f -= 180.0
        return cls(lat=lat_f, lon=lon_f)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


def _finite_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(result):
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result


# =============================================================================
# Features
# =============================================================================

class FeatureKind(str, Enum):
    """The three logical feature queries, with their Overpass tag filters."""
    ROADS = "roads"
    BUILDINGS = "buildings"
    RESIDENTIAL = "residential"

    @property
    def tag_filter(self) -> str:
        return _TAG_FILTERS[self]


_TAG_FILTERS = {
    FeatureKind.ROADS: '["highway"]',
    FeatureKind.BUILDINGS: '["building"]',
    FeatureKind.RESIDENTIAL: '["landuse"="residential"]',
}


@dataclass(frozen=True)
class FeatureElement:
    """One Overpass element. Empty geometry means nothing to draw."""
    osm_type: str
    osm_id: int
    tags: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    geometry: Tuple[Tuple[float, float], ...] = ()

    @property
    def has_geometry(self) -> bool:
        return bool(self.geometry)

    @classmethod
    def from_overpass(cls, raw: Any, source: str = "overpass") -> "FeatureElement":
        """Validate one element of an Overpass ``elements`` array.

        Raises MalformedResponse on any shape mismatch.  A missing or null
        ``geometry`` is not an error.
        """
        if not isinstance(raw, dict):
            raise MalformedResponse(source, f"element is not an object: {type(raw).__name__}")

        osm_id = raw.get("id")
        if isinstance(osm_id, bool) or not isinstance(osm_id, int):
            raise MalformedResponse(source, f"element id is not an integer: {osm_id!r}")

        tags = raw.get("tags") or {}
        if not isinstance(tags, dict):
            raise MalformedResponse(source, f"element {osm_id} tags is not an object")

        vertices: List[Tuple[float, float]] = []
        geometry = raw.get("geometry")
        if geometry is not None:
            if not isinstance(geometry, list):
                raise MalformedResponse(source, f"element {osm_id} geometry is not a list")
            for vertex in geometry:
                # Overpass emits null vertices for nodes outside the bbox
                if vertex is None:
                    continue
                if not isinstance(vertex, dict):
                    raise MalformedResponse(source, f"element {osm_id} has a non-object vertex")
                lat, lon = vertex.get("lat"), vertex.get("lon")
                if not _is_number(lat) or not _is_number(lon):
                    raise MalformedResponse(source, f"element {osm_id} has a vertex without lat/lon")
                vertices.append((float(lat), float(lon)))

        return cls(
            osm_type=str(raw.get("type", "way")),
            osm_id=osm_id,
            tags={str(k): str(v) for k, v in tags.items()},
            geometry=tuple(vertices),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class FeatureSet:
    """Elements returned by one feature query for one point."""
    kind: FeatureKind
    point: PointOfInterest
    elements: Tuple[FeatureElement, ...] = ()

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self) -> Iterator[FeatureElement]:
        return iter(self.elements)

    def with_geometry(self) -> List[FeatureElement]:
        return [e for e in self.elements if e.has_geometry]

    def to_dict(self) -> Dict[str, Any]:
        drawable = self.with_geometry()
        return {
            "kind": self.kind.value,
            "count": len(self.elements),
            "polygons": [[list(v) for v in e.geometry] for e in drawable],
        }


# =============================================================================
# Pipeline result
# =============================================================================

class PipelineStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"


SOURCE_ROADS = FeatureKind.ROADS.value
SOURCE_BUILDINGS = FeatureKind.BUILDINGS.value
SOURCE_RESIDENTIAL = FeatureKind.RESIDENTIAL.value
SOURCE_TRAFFIC = "traffic"
ALL_SOURCES = (SOURCE_ROADS, SOURCE_BUILDINGS, SOURCE_RESIDENTIAL, SOURCE_TRAFFIC)


@dataclass(frozen=True)
class PipelineResult:
    """Externally visible state of the pipeline for one generation.

    Only ``complete`` and ``partial`` results can carry a config, and a
    config is present only when both density and speed were obtained.
    """
    status: PipelineStatus
    generation: int = 0
    point: Optional[PointOfInterest] = None
    roads: Optional[FeatureSet] = None
    buildings: Optional[FeatureSet] = None
    density_score: Optional[float] = None
    traffic_speed: Optional[float] = None
    config: Optional[NetworkConfig] = None
    failed_sources: FrozenSet[str] = frozenset()
    skipped_sources: FrozenSet[str] = frozenset()
    errors: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    reason: Optional[str] = None

    @classmethod
    def idle(cls) -> "PipelineResult":
        return cls(status=PipelineStatus.IDLE)

    @classmethod
    def loading(cls, point: PointOfInterest, generation: int) -> "PipelineResult":
        return cls(status=PipelineStatus.LOADING, generation=generation, point=point)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            PipelineStatus.PARTIAL,
            PipelineStatus.COMPLETE,
            PipelineStatus.FAILED,
        )

    @property
    def density_radius_m(self) -> Optional[float]:
        if self.density_score is None:
            return None
        return self.density_score * DENSITY_RADIUS_M_PER_POINT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "generation": self.generation,
            "point": self.point.to_dict() if self.point else None,
            "roads": self.roads.to_dict() if self.roads is not None else None,
            "buildings": self.buildings.to_dict() if self.buildings is not None else None,
            "density_score": self.density_score,
            "density_radius_m": self.density_radius_m,
            "traffic_speed": self.traffic_speed,
            "config": self.config.to_dict() if self.config else None,
            "failed_sources": sorted(self.failed_sources),
            "skipped_sources": sorted(self.skipped_sources),
            "errors": dict(self.errors),
            "reason": self.reason,
        }
