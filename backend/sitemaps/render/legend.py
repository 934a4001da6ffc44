from __future__ import annotations

from typing import Optional, Sequence, Tuple

from PIL import Image, ImageDraw

from ..themes.colors import parse_color, with_alpha
from ..themes.config import LegendEntry
from .canvas import RasterSurface, dash_segments
from .fonts import load_font
from .labels import draw_text_box

TITLE_FONT_SIZE = 20
ITEM_FONT_SIZE = 16
SWATCH_SIZE = 20
LINE_HEIGHT = 28
LEGEND_PADDING = 20
SURFACE_MARGIN = 20
SWATCH_GAP = 12


def legend_size(title: Optional[str], entries: Sequence[LegendEntry]) -> Tuple[int, int]:
    draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    title_font = load_font(TITLE_FONT_SIZE, bold=True)
    item_font = load_font(ITEM_FONT_SIZE)
    widths = []
    if title:
        left, _, right, _ = draw.textbbox((0, 0), title, font=title_font)
        widths.append(right - left)
    for entry in entries:
        left, _, right, _ = draw.textbbox((0, 0), entry.label, font=item_font)
        widths.append(SWATCH_SIZE * 2 + SWATCH_GAP + (right - left))
    width = int(max(widths or [0]) + LEGEND_PADDING * 2)
    height = int(LEGEND_PADDING * 2 + (TITLE_FONT_SIZE + 14 if title else 0) + LINE_HEIGHT * len(entries))
    return width, height


def draw_legend(
    surface: RasterSurface,
    title: Optional[str],
    entries: Sequence[LegendEntry],
    position: str = "bottom-right",
) -> Optional[Tuple[int, int, int, int]]:
    """Static legend box anchored to a surface corner; returns its pixel box."""
    if not entries:
        return None

    width, height = legend_size(title, entries)
    left = surface.width - width - SURFACE_MARGIN if position.endswith("right") else SURFACE_MARGIN
    top = SURFACE_MARGIN if position.startswith("top") else surface.height - height - SURFACE_MARGIN
    box = (left, top, left + width, top + height)

    with surface.overlay() as draw:
        draw.rectangle(box, fill=with_alpha((255, 255, 255, 255), 0.95), outline=(0, 0, 0, 255), width=2)
        cursor_y = top + LEGEND_PADDING
        if title:
            draw.text((left + LEGEND_PADDING, cursor_y), title, fill=(0, 0, 0, 255),
                      font=load_font(TITLE_FONT_SIZE, bold=True))
            cursor_y += TITLE_FONT_SIZE + 14

        item_font = load_font(ITEM_FONT_SIZE)
        swatch_left = left + LEGEND_PADDING
        for entry in entries:
            middle = cursor_y + SWATCH_SIZE / 2
            color = parse_color(entry.color)
            outline = parse_color(entry.stroke) if entry.stroke else (0, 0, 0, 255)
            if entry.kind == "line":
                draw.line([(swatch_left, middle), (swatch_left + SWATCH_SIZE * 2, middle)], fill=color, width=4)
            elif entry.kind == "dashed-line":
                for run in dash_segments([(swatch_left, middle), (swatch_left + SWATCH_SIZE * 2, middle)], (15, 10)):
                    draw.line(run, fill=color, width=4)
            elif entry.kind == "point":
                radius = SWATCH_SIZE / 2 - 2
                cx = swatch_left + SWATCH_SIZE
                draw.ellipse((cx - radius, middle - radius, cx + radius, middle + radius),
                             fill=color, outline=outline, width=2)
            else:
                draw.rectangle(
                    (swatch_left, cursor_y, swatch_left + SWATCH_SIZE, cursor_y + SWATCH_SIZE),
                    fill=color, outline=outline, width=1,
                )
            draw.text((swatch_left + SWATCH_SIZE * 2 + SWATCH_GAP, middle), entry.label,
                      fill=(0, 0, 0, 255), font=item_font, anchor="lm")
            cursor_y += LINE_HEIGHT
    return box


def draw_caption(surface: RasterSurface, text: str, position: str = "bottom-left") -> None:
    """Small boxed caption, used for imagery attribution and site metrics."""
    with surface.overlay() as draw:
        font_size = 18
        font = load_font(font_size)
        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        half_w = (right - left) / 2 + 12
        half_h = max(bottom - top, font_size) / 2 + 10
        cx = SURFACE_MARGIN + half_w if position.endswith("left") else surface.width - SURFACE_MARGIN - half_w
        cy = SURFACE_MARGIN + half_h if position.startswith("top") else surface.height - SURFACE_MARGIN - half_h
        draw_text_box(draw, (cx, cy), text, background="rgba(255, 255, 255, 0.9)",
                      text_color="#000000", font_size=font_size, padding=10)
