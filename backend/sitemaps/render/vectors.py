from __future__ import annotations

from typing import Any, Dict, Iterable, List

from ..geometry import normalize_shapes
from ..themes.colors import resolve_feature_color
from ..themes.config import VectorStyle
from .canvas import PixelProjector, RasterSurface, StrokeStyle
from .labels import draw_text_box

POINT_LABEL_OFFSET = 28


def _line_parts(geometry: Dict[str, Any]) -> Iterable[List[Any]]:
    geom_type = geometry.get("type")
    coordinates = geometry.get("coordinates") or []
    if geom_type == "LineString":
        yield coordinates
    elif geom_type == "MultiLineString":
        yield from coordinates
    elif geom_type == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            yield from _line_parts(member)


def _point_parts(geometry: Dict[str, Any]) -> Iterable[Any]:
    if geometry.get("type") == "MultiPoint":
        yield from geometry.get("coordinates") or []


def _feature_color(style: VectorStyle, props: Dict[str, Any], static: str) -> str:
    return resolve_feature_color(
        style.color_strategy,
        props,
        static=static,
        field=style.color_field,
        lookup=dict(style.color_map) if style.color_map else None,
        default=style.default_color or static,
    ) or static


def draw_vector_features(
    surface: RasterSurface,
    collection: Dict[str, Any],
    projector: PixelProjector,
    style: VectorStyle,
) -> int:
    """Paint a FeatureCollection by geometry type; returns how many features were drawn."""
    drawn = 0
    with surface.overlay() as draw:
        for feature in collection.get("features") or []:
            geometry = feature.get("geometry") or {}
            props = feature.get("properties") or {}
            painted = False

            for shape in normalize_shapes({"type": "Feature", "geometry": geometry, "properties": props}):
                if shape.kind == "polygon":
                    fill = _feature_color(style, props, style.fill) if (style.fill or style.color_map) else None
                    stroke = StrokeStyle(stroke=style.stroke, width=style.width, dash=style.dash, fill=fill)
                    surface.draw_boundary(shape.exterior, projector, stroke, holes=shape.holes)
                    painted = True
                else:
                    painted = _draw_marker(surface, draw, shape.exterior[0], projector, style, props) or painted

            for coord in _point_parts(geometry):
                painted = _draw_marker(surface, draw, coord, projector, style, props) or painted

            line_style = StrokeStyle(
                stroke=_feature_color(style, props, style.stroke),
                width=style.width,
                dash=style.dash,
            )
            for part in _line_parts(geometry):
                if surface.draw_polyline(part, projector, line_style):
                    painted = True

            if painted:
                drawn += 1
    return drawn


def _draw_marker(surface, draw, coord, projector, style: VectorStyle, props: Dict[str, Any]) -> bool:
    fill = style.point_fill or style.stroke
    pixel = surface.draw_point(
        coord, projector, radius=style.point_radius, fill=fill, stroke=style.point_stroke or style.stroke
    )
    if pixel is None:
        return False
    label = props.get(style.label_field) if style.label_field else None
    if label:
        draw_text_box(
            draw,
            (pixel[0], pixel[1] - style.point_radius - POINT_LABEL_OFFSET),
            str(label),
            background=style.label_fill,
            text_color=style.label_stroke,
            font_size=16,
            padding=6,
        )
    return projector.contains(pixel)

