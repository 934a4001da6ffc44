from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .geometry import SiteShape, normalize_shapes
from .projection import MercatorParams, degree_bbox, mercator_params
from .utils.logging import get_logger

logger = get_logger(__name__)

# Sydney CBD, used whenever no usable geometry was supplied.
FALLBACK_CENTER = (151.2093, -33.8688)
FALLBACK_SIZE = 0.05
POINT_HALF_EXTENT = 0.001


@dataclass(frozen=True)
class Bounds:
    center_x: float
    center_y: float
    size: float
    fallback: bool = False

    def mercator(self) -> MercatorParams:
        return mercator_params(self.center_x, self.center_y, self.size)

    def degree_bbox(self) -> str:
        return degree_bbox(self.center_x, self.center_y, self.size)

    def cache_key(self) -> Tuple[float, float, float]:
        return (self.center_x, self.center_y, self.size)


def fallback_bounds() -> Bounds:
    return Bounds(FALLBACK_CENTER[0], FALLBACK_CENTER[1], FALLBACK_SIZE, fallback=True)


def _extent(shapes: List[SiteShape]) -> Optional[Tuple[float, float, float, float]]:
    xs: List[float] = []
    ys: List[float] = []
    for shape in shapes:
        if shape.kind == "point":
            x, y = shape.exterior[0]
            xs.extend((x - POINT_HALF_EXTENT, x + POINT_HALF_EXTENT))
            ys.extend((y - POINT_HALF_EXTENT, y + POINT_HALF_EXTENT))
        else:
            # Holes never widen the viewport.
            xs.extend(x for x, _ in shape.exterior)
            ys.extend(y for _, y in shape.exterior)
    if not xs:
        return None
    return min(xs), min(ys), max(xs), max(ys)


def calculate_bounds(
    feature: Any,
    padding: float = 0.0,
    developable_area: Any = None,
    use_developable_area_for_bounds: bool = False,
) -> Bounds:
    """Square viewport around the site, inflated by ``padding``.

    The developable area only drives the viewport when
    ``use_developable_area_for_bounds`` is set and it holds at least one
    usable polygon; otherwise it never affects the result.
    """
    shapes: List[SiteShape] = []
    if use_developable_area_for_bounds and developable_area:
        shapes = normalize_shapes(developable_area)
    if not shapes:
        shapes = normalize_shapes(feature)

    extent = _extent(shapes)
    if extent is None:
        logger.warning("No usable geometry for bounds; using fallback viewport")
        return fallback_bounds()

    minx, miny, maxx, maxy = extent
    span = max(maxx - minx, maxy - miny)
    size = span * (1 + padding)
    if not size > 0:
        logger.warning("Degenerate geometry extent; using fallback viewport")
        return fallback_bounds()

    return Bounds(
        center_x=(minx + maxx) / 2,
        center_y=(miny + maxy) / 2,
        size=size,
    )
