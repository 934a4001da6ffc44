"""Site and developable-area outlines with their letter badges and name boxes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from PIL import ImageDraw

from ..errors import GeometryError
from ..geometry import SiteShape, feature_count, group_by_feature, normalize_shapes, to_polygon, visual_center
from ..themes.colors import parse_color
from ..themes.config import DEVELOPABLE_BOUNDARY, SITE_BOUNDARY, BoundaryStyle
from ..utils.logging import get_logger
from .canvas import Pixel, PixelProjector, RasterSurface, StrokeStyle
from .fonts import load_font

logger = get_logger(__name__)

BADGE_RADIUS = 40
BADGE_STROKE_WIDTH = 3
BADGE_FONT_SIZE = 48
TEXT_BOX_FONT_SIZE = 14
TEXT_BOX_PADDING = 10
TEXT_BOX_RADIUS = 5


@dataclass
class PlacedLabel:
    text: str
    x: float
    y: float


@dataclass
class BoundaryResult:
    boundaries: int = 0
    visible: bool = False
    labels: List[PlacedLabel] = field(default_factory=list)


def label_for_index(index: int) -> str:
    """A, B, ... Z, AA, AB, ..."""
    letters = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def draw_badge(draw: ImageDraw.ImageDraw, center: Pixel, text: str, color: str) -> None:
    x, y = center
    draw.ellipse(
        (x - BADGE_RADIUS, y - BADGE_RADIUS, x + BADGE_RADIUS, y + BADGE_RADIUS),
        fill=(255, 255, 255, 255),
        outline=parse_color(color),
        width=BADGE_STROKE_WIDTH,
    )
    draw.text((x, y), text, fill=parse_color(color), font=load_font(BADGE_FONT_SIZE, bold=True), anchor="mm")


def draw_text_box(
    draw: ImageDraw.ImageDraw,
    center: Pixel,
    text: str,
    background: str = "rgba(0, 0, 0, 0.7)",
    text_color: str = "#FFFFFF",
    font_size: int = TEXT_BOX_FONT_SIZE,
    padding: int = TEXT_BOX_PADDING,
    radius: int = TEXT_BOX_RADIUS,
    bold: bool = False,
) -> Tuple[float, float, float, float]:
    font = load_font(font_size, bold=bold)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    box_width = (right - left) + padding * 2
    box_height = max(bottom - top, font_size * 1.2) + padding * 2
    x, y = center
    box = (x - box_width / 2, y - box_height / 2, x + box_width / 2, y + box_height / 2)
    draw.rounded_rectangle(box, radius=radius, fill=parse_color(background))
    draw.text((x, y), text, fill=parse_color(text_color), font=font, anchor="mm")
    return box


def _anchor_shape(shapes: List[SiteShape]) -> Optional[SiteShape]:
    polygons = [shape for shape in shapes if shape.kind == "polygon"]
    if not polygons:
        return None
    if len(polygons) == 1:
        return polygons[0]
    try:
        return max(polygons, key=lambda shape: to_polygon(shape.rings).area)
    except GeometryError:
        return polygons[0]


def _label_position(shapes: List[SiteShape], projector: PixelProjector) -> Optional[Pixel]:
    shape = _anchor_shape(shapes)
    if shape is None:
        return None
    center = visual_center(shape.rings)
    if center is None:
        return None
    return projector.project(*center)


def _draw_outlines(
    surface: RasterSurface,
    shapes: List[SiteShape],
    projector: PixelProjector,
    style: StrokeStyle,
    result: BoundaryResult,
) -> None:
    for shape in shapes:
        if shape.kind != "polygon":
            continue
        visible = surface.draw_boundary(shape.exterior, projector, style, holes=shape.holes)
        result.boundaries += 1
        result.visible = result.visible or visible


def _draw_boundaries(
    surface: RasterSurface,
    collection: Any,
    projector: PixelProjector,
    boundary: BoundaryStyle,
    show_labels: bool,
    single_label: bool,
    single_text_field: str,
    single_text_default: str,
    fill: Optional[str] = None,
) -> BoundaryResult:
    result = BoundaryResult()
    shapes = normalize_shapes(collection)
    if not shapes:
        return result

    style = StrokeStyle(stroke=boundary.stroke, width=boundary.width, dash=boundary.dash, fill=fill)
    grouped = group_by_feature(shapes)
    multiple = feature_count(collection) > 1 and len(grouped) > 1

    with surface.overlay() as draw:
        for index, feature_shapes in sorted(grouped.items()):
            _draw_outlines(surface, feature_shapes, projector, style, result)

            if multiple and show_labels:
                position = _label_position(feature_shapes, projector)
                if position is None:
                    logger.debug("Skipping label for degenerate polygon", extra={'feature_index': index})
                    continue
                text = label_for_index(index)
                draw_badge(draw, position, text, boundary.stroke)
                result.labels.append(PlacedLabel(text, *position))

        if not multiple and single_label:
            first = next(iter(grouped.values()))
            position = _label_position(first, projector)
            if position is not None:
                text = str(first[0].properties.get(single_text_field) or single_text_default)
                draw_text_box(draw, position, text, background=boundary.label_fill)
                result.labels.append(PlacedLabel(text, *position))

    return result


def draw_feature_boundaries(
    surface: RasterSurface,
    feature: Any,
    projector: PixelProjector,
    style: BoundaryStyle = SITE_BOUNDARY,
    show_labels: bool = True,
    single_label: bool = False,
    fill: Optional[str] = None,
) -> BoundaryResult:
    """Outline every site polygon; letter each feature when there are several.

    A lone feature may instead get a text box with its address.
    """
    return _draw_boundaries(
        surface, feature, projector, style, show_labels, single_label,
        "address", "Subject Site", fill,
    )


def draw_developable_area_boundaries(
    surface: RasterSurface,
    developable_area: Any,
    projector: PixelProjector,
    style: BoundaryStyle = DEVELOPABLE_BOUNDARY,
    show_labels: bool = True,
    single_label: bool = False,
) -> BoundaryResult:
    return _draw_boundaries(
        surface, developable_area, projector, style, show_labels, single_label,
        "name", "Developable Area",
    )
