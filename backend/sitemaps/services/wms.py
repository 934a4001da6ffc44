"""WMS imagery with blank detection and primary/fallback failover."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from ..bounds import Bounds
from ..errors import LayerFetchError
from ..themes.config import LayerConfig
from ..utils.cache import FALLBACK, PRIMARY, ServiceAvailabilityCache
from ..utils.logging import get_logger
from .arcgis import ArcGISFetcher, decode_image
from .transport import ServiceTransport

logger = get_logger(__name__)

# Sampling stride for blank detection.
BLANK_SAMPLE_STRIDE = 10


def is_blank_image(image: Image.Image, stride: int = BLANK_SAMPLE_STRIDE) -> bool:
    """True when no sampled pixel is both visible and non-white."""
    pixels = np.asarray(image.convert("RGBA")).reshape(-1, 4)[::max(1, stride)]
    visible = pixels[:, 3] > 0
    coloured = np.any(pixels[:, :3] < 255, axis=1)
    return not bool(np.any(visible & coloured))


def build_getmap_params(
    layer: LayerConfig,
    bounds: Bounds,
    width: int,
    height: int,
    layers: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "SERVICE": "WMS",
        "VERSION": "1.3.0",
        "REQUEST": "GetMap",
        "BBOX": bounds.mercator().bbox,
        "CRS": "EPSG:3857",
        "WIDTH": width,
        "HEIGHT": height,
        "LAYERS": layers or layer.layers or "",
        "STYLES": "",
        "FORMAT": layer.format if "/" in layer.format else "image/png",
        "DPI": layer.dpi,
        "MAP_RESOLUTION": layer.dpi,
        "FORMAT_OPTIONS": f"dpi:{layer.dpi}",
    }


@dataclass(frozen=True)
class HistoricalImage:
    image: Image.Image
    layer: str
    region: str
    year: Optional[int]

    @property
    def attribution(self) -> str:
        when = self.year if self.year is not None else "latest"
        return f"Source: Metromap {self.region} ({when})"


class WmsFetcher:
    def __init__(self, transport: ServiceTransport, cache: ServiceAvailabilityCache, arcgis: Optional[ArcGISFetcher] = None):
        self.transport = transport
        self.cache = cache
        self.arcgis = arcgis or ArcGISFetcher(transport)

    async def get_map(
        self,
        url: str,
        layer: LayerConfig,
        bounds: Bounds,
        width: int,
        height: int,
        layers: Optional[str] = None,
        check_blank: bool = True,
    ) -> Image.Image:
        params = build_getmap_params(layer, bounds, width, height, layers)
        data = await self.transport.get_bytes(url, params=params, timeout=layer.timeout)
        image = decode_image(data, url)
        if check_blank and is_blank_image(image):
            raise LayerFetchError("WMS returned a blank image", layer=layer.id, url=url)
        return image

    async def _fallback(self, layer: LayerConfig, bounds: Bounds, width: int, height: int) -> Image.Image:
        if not layer.fallback_url:
            raise LayerFetchError("Primary imagery failed and no fallback is configured", layer=layer.id)

        if layer.fallback_kind == "export":
            fallback_layer = LayerConfig(
                id=f"{layer.id}_fallback",
                kind="export",
                url=layer.fallback_url,
                format=layer.fallback_format,
                transparent=layer.fallback_transparent,
                bbox_sr=layer.fallback_sr,
                image_sr=layer.fallback_sr,
                dpi=layer.dpi,
                timeout=layer.timeout,
            )
            return await self.arcgis.export_image(fallback_layer, bounds, width, height)
        return await self.get_map(layer.fallback_url, layer, bounds, width, height, check_blank=False)

    async def fetch(self, layer: LayerConfig, bounds: Bounds, width: int, height: int) -> Image.Image:
        """Primary WMS first, unless this viewport already failed over in the session."""
        key = self.cache.make_key(*bounds.cache_key())

        if self.cache.get_service_type(key) == FALLBACK:
            logger.debug("Using cached fallback decision", extra={'layer': layer.id, 'cache_key': key})
            return await self._fallback(layer, bounds, width, height)

        try:
            image = await self.get_map(layer.url, layer, bounds, width, height)
        except LayerFetchError as exc:
            logger.info(
                "Primary imagery failed; switching to fallback",
                extra={'layer': layer.id, 'cache_key': key, 'error': str(exc)},
            )
            self.cache.set_service_type(key, FALLBACK)
            return await self._fallback(layer, bounds, width, height)

        self.cache.set_service_type(key, PRIMARY)
        return image

    async def fetch_historical(
        self,
        layer: LayerConfig,
        bounds: Bounds,
        width: int,
        height: int,
        candidates: Sequence[Tuple[str, str, int]],
    ) -> HistoricalImage:
        """First non-blank layer among ``candidates`` (oldest first), else the latest mosaic."""
        for name, region, year in sorted(candidates, key=lambda item: item[2]):
            try:
                image = await self.get_map(layer.url, layer, bounds, width, height, layers=name)
            except LayerFetchError as exc:
                logger.info(
                    "Historical layer unavailable",
                    extra={'layer': name, 'year': year, 'error': str(exc)},
                )
                continue
            return HistoricalImage(image=image, layer=name, region=region, year=year)

        image = await self.get_map(layer.url, layer, bounds, width, height, layers="Australia_latest")
        return HistoricalImage(image=image, layer="Australia_latest", region="Australia", year=None)
