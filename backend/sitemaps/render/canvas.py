"""Raster surface and the single geographic-to-pixel projection used for drawing."""
from __future__ import annotations

import base64
import io
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from ..bounds import Bounds
from ..geometry import Coord
from ..projection import to_mercator
from ..themes.colors import RGBA, parse_color

Pixel = Tuple[float, float]


@dataclass(frozen=True)
class StrokeStyle:
    stroke: str = "#FF0000"
    width: Optional[float] = None
    dash: Optional[Tuple[int, ...]] = None
    fill: Optional[str] = None


class PixelProjector:
    """Maps GDA94 degrees onto a surface covering ``bounds``."""

    def __init__(self, bounds: Bounds, width: int, height: Optional[int] = None):
        self.bounds = bounds
        self.width = width
        self.height = height or width
        params = bounds.mercator()
        self._size = params.size_in_meters
        self._left = params.center_merc_x - self._size / 2
        self._top = params.center_merc_y + self._size / 2

    def project(self, lon: float, lat: float) -> Pixel:
        merc_x, merc_y = to_mercator(lon, lat)
        px = (merc_x - self._left) / self._size * self.width
        # Pixel rows grow downwards while northings grow upwards.
        py = (self._top - merc_y) / self._size * self.height
        return px, py

    def project_all(self, coords: Sequence[Coord]) -> List[Pixel]:
        pixels = []
        for coord in coords:
            px, py = self.project(coord[0], coord[1])
            if math.isfinite(px) and math.isfinite(py):
                pixels.append((px, py))
        return pixels

    def contains(self, pixel: Pixel) -> bool:
        return 0 <= pixel[0] <= self.width and 0 <= pixel[1] <= self.height

    def default_line_width(self) -> float:
        return max(self.width / 256, 5)


def dash_segments(points: Sequence[Pixel], pattern: Sequence[float]) -> List[List[Pixel]]:
    """Split a path into the 'on' runs of a dash pattern."""
    if len(points) < 2 or not pattern or sum(pattern) <= 0:
        return [list(points)] if len(points) > 1 else []

    segments: List[List[Pixel]] = []
    index = 0
    remaining = float(pattern[0])
    drawing = True
    current: List[Pixel] = [points[0]]

    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        length = math.hypot(x1 - x0, y1 - y0)
        position = 0.0
        while length - position > remaining:
            position += remaining
            t = position / length
            point = (x0 + (x1 - x0) * t, y0 + (y1 - y0) * t)
            if drawing:
                current.append(point)
                segments.append(current)
            else:
                current = [point]
            drawing = not drawing
            index = (index + 1) % len(pattern)
            remaining = float(pattern[index])
        remaining -= length - position
        if drawing:
            current.append((x1, y1))

    if drawing and len(current) > 1:
        segments.append(current)
    return segments


class RasterSurface:
    """RGBA pixel buffer owned by one screenshot run.

    Every filled shape, line and marker is painted on its own transparent
    layer and alpha-composited over the surface, so translucent fills blend
    with whatever is underneath. ``overlay()`` batches text and badges.
    """

    def __init__(self, width: int, height: int, background: Optional[str] = None):
        if width <= 0 or height <= 0:
            raise ValueError("Surface dimensions must be positive")
        fill = parse_color(background) if background else (0, 0, 0, 0)
        self.image = Image.new("RGBA", (width, height), fill)
        self._batch: Optional[Image.Image] = None
        self._active: Optional[ImageDraw.ImageDraw] = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @contextmanager
    def overlay(self) -> Iterator[ImageDraw.ImageDraw]:
        """Batch several text and badge draws into one composite."""
        if self._active is not None:
            yield self._active
            return
        self._batch = Image.new("RGBA", self.image.size, (0, 0, 0, 0))
        self._active = ImageDraw.Draw(self._batch)
        try:
            yield self._active
        finally:
            self._flush()
            self._active = None
            self._batch = None

    def _flush(self) -> None:
        # Whatever the open batch holds goes down before the next shape.
        if self._batch is None:
            return
        box = self._batch.getbbox()
        if box is None:
            return
        self.image.alpha_composite(self._batch.crop(box), dest=box[:2])
        self._batch.paste((0, 0, 0, 0), box)

    def _region(self, pixels: Sequence[Pixel], pad: float = 0) -> Optional[Tuple[int, int, int, int]]:
        xs = [pixel[0] for pixel in pixels]
        ys = [pixel[1] for pixel in pixels]
        left = max(0, int(math.floor(min(xs) - pad)))
        top = max(0, int(math.floor(min(ys) - pad)))
        right = min(self.width, int(math.ceil(max(xs) + pad)) + 1)
        bottom = min(self.height, int(math.ceil(max(ys) + pad)) + 1)
        if right <= left or bottom <= top:
            return None
        return left, top, right, bottom

    @contextmanager
    def _shape_layer(self, region: Tuple[int, int, int, int]) -> Iterator[ImageDraw.ImageDraw]:
        """A private layer over ``region``, composited alone once drawn.

        Callers draw in layer coordinates, i.e. shifted by the region's
        top-left corner.
        """
        left, top, right, bottom = region
        layer = Image.new("RGBA", (right - left, bottom - top), (0, 0, 0, 0))
        yield ImageDraw.Draw(layer)
        self._flush()
        self.image.alpha_composite(layer, dest=(left, top))

    def draw_image(self, source: Image.Image, opacity: float = 1.0) -> None:
        opacity = max(0.0, min(1.0, opacity))
        if opacity <= 0:
            return
        layer = source.convert("RGBA")
        if layer.size != self.image.size:
            layer = layer.resize(self.image.size, Image.Resampling.BILINEAR)
        if opacity < 1.0:
            pixels = np.array(layer)
            pixels[..., 3] = np.round(pixels[..., 3].astype(np.float32) * opacity).astype(np.uint8)
            layer = Image.fromarray(pixels, "RGBA")
        self._flush()
        self.image = Image.alpha_composite(self.image, layer)

    def _stroke(self, paths: Sequence[List[Pixel]], color: RGBA, width: float,
                dash: Optional[Sequence[float]]) -> None:
        line_width = max(1, int(round(width)))
        runs = []
        for path in paths:
            runs.extend(dash_segments(path, dash) if dash else [path])
        runs = [run for run in runs if len(run) > 1]
        if not runs:
            return
        region = self._region([pixel for run in runs for pixel in run], pad=line_width)
        if region is None:
            return
        with self._shape_layer(region) as draw:
            for run in runs:
                draw.line(_shift(run, region), fill=color, width=line_width, joint="curve")

    def _fill(self, exterior: List[Pixel], holes: Sequence[List[Pixel]], color: RGBA) -> None:
        region = self._region(exterior)
        if region is None:
            return
        with self._shape_layer(region) as draw:
            draw.polygon(_shift(exterior, region), fill=color)
            # Holes are cut from this shape only; earlier draws show through.
            for hole in holes:
                draw.polygon(_shift(hole, region), fill=(0, 0, 0, 0))

    def draw_boundary(
        self,
        ring: Sequence[Coord],
        projector: PixelProjector,
        style: Optional[StrokeStyle] = None,
        holes: Sequence[Sequence[Coord]] = (),
    ) -> bool:
        """Fill (optionally) and stroke a closed ring; True if any vertex lands on the surface."""
        style = style or StrokeStyle()
        pixels = projector.project_all(ring)
        if len(pixels) < 2:
            return False
        width = style.width if style.width is not None else projector.default_line_width()
        hole_pixels = [projector.project_all(hole) for hole in holes]

        if style.fill and len(pixels) >= 3:
            self._fill(pixels, [hole for hole in hole_pixels if len(hole) >= 3], parse_color(style.fill))
        outlines = [pixels + [pixels[0]]]
        outlines.extend(hole + [hole[0]] for hole in hole_pixels if len(hole) >= 2)
        self._stroke(outlines, parse_color(style.stroke), width, style.dash)

        return any(projector.contains(pixel) for pixel in pixels)

    def draw_polyline(
        self,
        coords: Sequence[Coord],
        projector: PixelProjector,
        style: Optional[StrokeStyle] = None,
    ) -> bool:
        style = style or StrokeStyle()
        pixels = projector.project_all(coords)
        if len(pixels) < 2:
            return False
        width = style.width if style.width is not None else projector.default_line_width()
        self._stroke([pixels], parse_color(style.stroke), width, style.dash)
        return any(projector.contains(pixel) for pixel in pixels)

    def draw_point(
        self,
        coord: Coord,
        projector: PixelProjector,
        radius: float = 8,
        fill: str = "#FFBD33",
        stroke: Optional[str] = None,
        stroke_width: int = 2,
    ) -> Optional[Pixel]:
        pixels = projector.project_all([coord])
        if not pixels:
            return None
        x, y = pixels[0]
        region = self._region(pixels, pad=radius + stroke_width)
        if region is not None:
            cx, cy = _shift(pixels, region)[0]
            with self._shape_layer(region) as draw:
                draw.ellipse(
                    (cx - radius, cy - radius, cx + radius, cy + radius),
                    fill=parse_color(fill),
                    outline=parse_color(stroke) if stroke else None,
                    width=stroke_width if stroke else 0,
                )
        return x, y

    def to_png(self) -> bytes:
        self._flush()
        buffer = io.BytesIO()
        self.image.save(buffer, format="PNG")
        return buffer.getvalue()

    def to_data_uri(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.to_png()).decode("ascii")


def _shift(pixels: Sequence[Pixel], region: Tuple[int, int, int, int]) -> List[Pixel]:
    left, top = region[0], region[1]
    return [(x - left, y - top) for x, y in pixels]


def create_surface(width: int, height: int, background: Optional[str] = None) -> RasterSurface:
    return RasterSurface(width, height, background)
