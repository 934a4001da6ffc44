"""Site regularity: how closely the site fills its minimum rotated rectangle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

from pyproj import Geod
from shapely.errors import ShapelyError
from shapely.geometry import Polygon
from shapely.ops import transform as shp_transform

from ..errors import GeometryError
from ..geometry import Coord, normalize_shapes, to_polygon
from ..projection import WEB_MERCATOR, from_mercator, get_transformer
from ..utils.logging import get_logger
from .canvas import PixelProjector, RasterSurface, StrokeStyle
from .legend import draw_caption

logger = get_logger(__name__)

RECTANGLE_STYLE = StrokeStyle(stroke="#00FF00", width=3, dash=(10, 10))

_GEOD = Geod(ellps="GRS80")


@dataclass(frozen=True)
class Regularity:
    percent: int
    rectangle: List[Coord]
    site_area_m2: float

    @property
    def caption(self) -> str:
        return f"Regularity: {self.percent}%"


def _primary_polygon(site: Any) -> Optional[Polygon]:
    polygons = []
    for shape in normalize_shapes(site):
        if shape.kind != "polygon":
            continue
        try:
            polygons.append(to_polygon(shape.rings))
        except GeometryError:
            continue
    polygons = [poly for poly in polygons if poly.is_valid and poly.area > 0]
    if not polygons:
        return None
    return max(polygons, key=lambda poly: poly.area)


def compute_regularity(site: Any) -> Optional[Regularity]:
    """Ratio of site area to its minimum rotated rectangle, both in Mercator metres."""
    polygon = _primary_polygon(site)
    if polygon is None:
        return None

    transformer = get_transformer(4326, WEB_MERCATOR)
    projected = shp_transform(lambda x, y, z=None: transformer.transform(x, y), polygon)
    try:
        rectangle = projected.minimum_rotated_rectangle
    except ShapelyError as exc:
        logger.warning("Minimum rectangle failed", extra={'error': str(exc)})
        return None
    if rectangle.area <= 0:
        return None

    percent = int(round(projected.area / rectangle.area * 100))
    corners = [from_mercator(x, y) for x, y in list(rectangle.exterior.coords)[:-1]]
    area, _ = _GEOD.geometry_area_perimeter(polygon)
    return Regularity(percent=min(percent, 100), rectangle=corners, site_area_m2=abs(area))


def draw_regularity(surface: RasterSurface, site: Any, projector: PixelProjector) -> Optional[Regularity]:
    result = compute_regularity(site)
    if result is None:
        logger.info("Regularity unavailable for this site geometry")
        return None
    surface.draw_boundary(result.rectangle, projector, RECTANGLE_STYLE)
    draw_caption(surface, result.caption, position="top-left")
    logger.debug(
        "Drew regularity overlay",
        extra={'regularity': result.percent, 'site_area_m2': round(result.site_area_m2, 1)},
    )
    return result
