"""Canonical polygon rings for the GeoJSON shapes a site can arrive as."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Point, Polygon
from shapely.validation import make_valid

from .errors import GeometryError
from .utils.logging import get_logger

logger = get_logger(__name__)

Coord = Tuple[float, float]
Ring = List[Coord]

# Unit steps for the label hill-climb: N, NE, E, SE, S, SW, W, NW.
_COMPASS = (
    (0.0, 1.0), (1.0, 1.0), (1.0, 0.0), (1.0, -1.0),
    (0.0, -1.0), (-1.0, -1.0), (-1.0, 0.0), (-1.0, 1.0),
)
VISUAL_CENTER_ITERATIONS = 30
VISUAL_CENTER_DIVISIONS = 20.0


@dataclass
class SiteShape:
    """One polygon (or point) of a site, tagged with the feature it came from."""

    kind: str  # polygon | point
    rings: List[Ring]
    feature_index: int
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def exterior(self) -> Ring:
        return self.rings[0]

    @property
    def holes(self) -> List[Ring]:
        return self.rings[1:]


def _coerce_coord(value: Any) -> Optional[Coord]:
    try:
        x, y = float(value[0]), float(value[1])
    except (TypeError, ValueError, IndexError):
        return None
    if x != x or y != y:
        return None
    return (x, y)


def clean_ring(raw: Any) -> Optional[Ring]:
    """Drop bad vertices and the closing duplicate; None if fewer than 3 distinct remain."""
    if not isinstance(raw, (list, tuple)):
        return None
    ring: Ring = []
    for value in raw:
        coord = _coerce_coord(value)
        if coord is None:
            continue
        if ring and ring[-1] == coord:
            continue
        ring.append(coord)
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    if len(set(ring)) < 3:
        return None
    return ring


def _polygon_rings(coordinates: Any) -> Optional[List[Ring]]:
    if not isinstance(coordinates, (list, tuple)) or not coordinates:
        return None
    exterior = clean_ring(coordinates[0])
    if exterior is None:
        return None
    holes = [ring for ring in (clean_ring(raw) for raw in coordinates[1:]) if ring]
    return [exterior] + holes


def _looks_like_ring(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and bool(value)
        and _coerce_coord(value[0]) is not None
        and isinstance(value[0], (list, tuple))
    )


def _shapes_from_geometry(geometry: Any, index: int, properties: Dict[str, Any]) -> List[SiteShape]:
    if not isinstance(geometry, dict):
        return []
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates")
    shapes: List[SiteShape] = []

    if geom_type == "Polygon":
        rings = _polygon_rings(coordinates)
        if rings:
            shapes.append(SiteShape("polygon", rings, index, properties))
    elif geom_type == "MultiPolygon":
        for polygon in coordinates or []:
            rings = _polygon_rings(polygon)
            if rings:
                shapes.append(SiteShape("polygon", rings, index, properties))
    elif geom_type == "Point":
        coord = _coerce_coord(coordinates or ())
        if coord:
            shapes.append(SiteShape("point", [[coord]], index, properties))
    elif geom_type == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            shapes.extend(_shapes_from_geometry(member, index, properties))
    return shapes


def normalize_shapes(obj: Any) -> List[SiteShape]:
    """Flatten a Feature, FeatureCollection, bare geometry or bare ring into shapes.

    Unusable members are skipped rather than raised; an empty list means the
    input held nothing drawable.
    """
    if obj is None:
        return []

    if _looks_like_ring(obj):
        ring = clean_ring(obj)
        return [SiteShape("polygon", [ring], 0)] if ring else []

    if not isinstance(obj, dict):
        return []

    obj_type = obj.get("type")
    if obj_type == "FeatureCollection":
        shapes: List[SiteShape] = []
        for index, feature in enumerate(obj.get("features") or []):
            if not isinstance(feature, dict):
                continue
            properties = feature.get("properties") or {}
            shapes.extend(_shapes_from_geometry(feature.get("geometry"), index, properties))
        return shapes
    if obj_type == "Feature":
        return _shapes_from_geometry(obj.get("geometry"), 0, obj.get("properties") or {})
    return _shapes_from_geometry(obj, 0, {})


def feature_count(obj: Any) -> int:
    if isinstance(obj, dict) and obj.get("type") == "FeatureCollection":
        return len(obj.get("features") or [])
    return 1 if obj else 0


def group_by_feature(shapes: Iterable[SiteShape]) -> Dict[int, List[SiteShape]]:
    grouped: Dict[int, List[SiteShape]] = {}
    for shape in shapes:
        grouped.setdefault(shape.feature_index, []).append(shape)
    return grouped


def to_polygon(rings: Sequence[Ring]) -> Polygon:
    try:
        return Polygon(rings[0], list(rings[1:]))
    except (ShapelyError, ValueError, TypeError, IndexError) as exc:
        raise GeometryError(f"Unusable polygon rings: {exc}") from exc


def _largest_part(geom) -> Optional[Polygon]:
    if isinstance(geom, Polygon):
        return geom
    parts = [part for part in getattr(geom, "geoms", []) if isinstance(part, (Polygon, MultiPolygon))]
    flat: List[Polygon] = []
    for part in parts:
        flat.extend(part.geoms if isinstance(part, MultiPolygon) else [part])
    if not flat:
        return None
    return max(flat, key=lambda poly: poly.area)


def visual_center(rings: Sequence[Ring], iterations: int = VISUAL_CENTER_ITERATIONS) -> Optional[Coord]:
    """Approximate the pole of inaccessibility by hill-climbing from an interior point.

    Each step tries the eight compass neighbours and keeps a move only when the
    point stays inside and its distance to the boundary grows. Returns None for
    degenerate input instead of raising.
    """
    try:
        polygon = to_polygon(rings)
        if not polygon.is_valid:
            polygon = _largest_part(make_valid(polygon))
        if polygon is None or polygon.is_empty or polygon.area <= 0:
            return None

        best = polygon.representative_point()
        if not polygon.contains(best):
            return None
        boundary = polygon.boundary
        best_distance = boundary.distance(best)

        minx, miny, maxx, maxy = polygon.bounds
        step = max(maxx - minx, maxy - miny) / VISUAL_CENTER_DIVISIONS

        for _ in range(iterations):
            moved = False
            for dx, dy in _COMPASS:
                candidate = Point(best.x + dx * step, best.y + dy * step)
                if not polygon.contains(candidate):
                    continue
                distance = boundary.distance(candidate)
                if distance > best_distance:
                    best, best_distance, moved = candidate, distance, True
            if not moved:
                step /= 2.0
        return (best.x, best.y)
    except (GeometryError, ShapelyError, ValueError, TypeError, IndexError) as exc:
        logger.debug("Visual center failed: %s", exc)
        return None
