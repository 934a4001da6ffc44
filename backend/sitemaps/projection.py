"""Conversions between GDA94 degrees and Web Mercator metres.

GDA94 and WGS84 are treated as the same datum here, so points go through the
EPSG:4326 to EPSG:3857 transformer. The viewport size uses a fixed
metres-per-degree factor taken at the equator.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from pyproj import Transformer

ORIGIN_SHIFT = 20037508.34
METERS_PER_DEGREE = ORIGIN_SHIFT / 180.0

GDA94 = 4283
WEB_MERCATOR = 3857
# Esri's legacy code for Web Mercator.
ESRI_WEB_MERCATOR = 102100
GEOGRAPHIC_SRS = frozenset({GDA94, 4326, 7844})
MERCATOR_SRS = frozenset({WEB_MERCATOR, ESRI_WEB_MERCATOR, 900913})


@dataclass(frozen=True)
class MercatorParams:
    center_merc_x: float
    center_merc_y: float
    size_in_meters: float

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        half = self.size_in_meters / 2
        return (
            self.center_merc_x - half,
            self.center_merc_y - half,
            self.center_merc_x + half,
            self.center_merc_y + half,
        )

    @property
    def bbox(self) -> str:
        return ",".join(repr(value) for value in self.extent)


def to_mercator(lon: float, lat: float) -> Tuple[float, float]:
    x, y = get_transformer(4326, WEB_MERCATOR).transform(lon, lat)
    if not math.isfinite(y):
        # Latitudes at or beyond the poles have no Mercator ordinate.
        return x, float("nan")
    return x, y


def from_mercator(x: float, y: float) -> Tuple[float, float]:
    return get_transformer(WEB_MERCATOR, 4326).transform(x, y)


def mercator_params(center_x: float, center_y: float, size_deg: float) -> MercatorParams:
    center_merc_x, center_merc_y = to_mercator(center_x, center_y)
    return MercatorParams(
        center_merc_x=center_merc_x,
        center_merc_y=center_merc_y,
        size_in_meters=size_deg * METERS_PER_DEGREE,
    )


def degree_bbox(center_x: float, center_y: float, size_deg: float) -> str:
    """Square bbox in GDA94 degrees for services queried with ``bboxSR=4283``."""
    half = size_deg / 2
    return ",".join(
        repr(value)
        for value in (center_x - half, center_y - half, center_x + half, center_y + half)
    )


@lru_cache(maxsize=32)
def get_transformer(src_epsg: int, dst_epsg: int) -> Transformer:
    return Transformer.from_crs(f"EPSG:{src_epsg}", f"EPSG:{dst_epsg}", always_xy=True)


def normalise_srs(wkid: int) -> int:
    if wkid in MERCATOR_SRS:
        return WEB_MERCATOR
    return wkid
