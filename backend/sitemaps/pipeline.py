"""One parameterised screenshot pipeline shared by every theme.

Layers are fetched concurrently, then drawn in a fixed order: aerial base,
raster exports, vector features, overlays, site boundary, developable area,
and finally the legend and captions.
"""
from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from PIL import Image

from . import settings
from .auth.tokens import EmbeddedTokenProvider, TokenRegistry
from .bounds import Bounds, calculate_bounds
from .errors import SiteMapError
from .render.canvas import PixelProjector, create_surface
from .render.labels import draw_developable_area_boundaries, draw_feature_boundaries
from .render.legend import draw_caption, draw_legend
from .render.regularity import draw_regularity
from .render.vectors import draw_vector_features
from .services.arcgis import ArcGISFetcher
from .services.wms import HistoricalImage, WmsFetcher
from .themes.config import LayerConfig, ThemeConfig, aerial_layer
from .utils.logging import get_logger

logger = get_logger(__name__)

REGULARITY_KEY = "site_suitability__regularity"


@dataclass
class LayerOutcome:
    layer: LayerConfig
    image: Optional[Image.Image] = None
    features: Optional[Dict[str, Any]] = None
    historical: Optional[HistoricalImage] = None


@dataclass
class ScreenshotResult:
    theme: str
    png: bytes
    features: Dict[str, Any] = field(default_factory=dict)

    @property
    def data_uri(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.png).decode("ascii")


def _site_properties(site: Dict[str, Any]) -> Dict[str, Any]:
    properties = site.get("properties")
    if not isinstance(properties, dict):
        properties = site["properties"] = {}
    return properties


class ScreenshotPipeline:
    def __init__(
        self,
        theme: ThemeConfig,
        *,
        client: httpx.AsyncClient,
        wms: WmsFetcher,
        arcgis: ArcGISFetcher,
        tokens: TokenRegistry,
        embedded: EmbeddedTokenProvider,
        historical_layers: Optional[Sequence[Tuple[str, str, int]]] = None,
        deadline_s: Optional[float] = None,
    ):
        self.theme = theme
        self.client = client
        self.wms = wms
        self.arcgis = arcgis
        self.tokens = tokens
        self.embedded = embedded
        self.historical_layers = (
            settings.METROMAP_HISTORICAL_LAYERS if historical_layers is None else historical_layers
        )
        self.deadline_s = settings.SCREENSHOT_DEADLINE if deadline_s is None else deadline_s

    def layers(self) -> List[LayerConfig]:
        layers = list(self.theme.layers)
        if self.theme.base_opacity > 0:
            layers.insert(0, aerial_layer())
        return layers

    async def fetch_layer(self, layer: LayerConfig, bounds: Bounds) -> LayerOutcome:
        width, height = self.theme.width, self.theme.height
        token = await self.tokens.token_for(layer.token, self.client, self.embedded, layer.project_layer_id)

        if layer.kind == "wms":
            return LayerOutcome(layer, image=await self.wms.fetch(layer, bounds, width, height))
        if layer.kind == "export":
            return LayerOutcome(layer, image=await self.arcgis.export_image(layer, bounds, width, height, token))
        if layer.kind == "query":
            return LayerOutcome(layer, features=await self.arcgis.query_features(layer, bounds, token))
        if layer.kind == "historical":
            historical = await self.wms.fetch_historical(layer, bounds, width, height, self.historical_layers)
            return LayerOutcome(layer, image=historical.image, historical=historical)
        raise ValueError(f"Unsupported layer kind '{layer.kind}'")

    async def fetch_all(self, layers: Sequence[LayerConfig], bounds: Bounds) -> Dict[str, LayerOutcome]:
        """Fetch every layer in parallel; failed or late layers are simply absent."""
        if not layers:
            return {}
        tasks = {
            asyncio.ensure_future(self.fetch_layer(layer, bounds)): layer
            for layer in layers
        }
        done, pending = await asyncio.wait(tasks, timeout=self.deadline_s)

        for task in pending:
            task.cancel()
            logger.warning(
                "Layer abandoned at deadline",
                extra={'theme': self.theme.id, 'layer': tasks[task].id, 'deadline_s': self.deadline_s},
            )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: Dict[str, LayerOutcome] = {}
        for task in done:
            layer = tasks[task]
            exc = task.exception()
            if exc is None:
                outcomes[layer.id] = task.result()
            elif isinstance(exc, SiteMapError):
                logger.warning(
                    "Layer skipped",
                    extra={**exc.log_extra(), 'theme': self.theme.id, 'layer': layer.id, 'error': str(exc)},
                )
            else:
                raise exc
        return outcomes

    def _write_back(self, site: Dict[str, Any], outcomes: Dict[str, LayerOutcome]) -> Dict[str, Any]:
        properties = _site_properties(site)
        collected: Dict[str, Any] = {}
        for outcome in outcomes.values():
            key = outcome.layer.feature_key
            if not key:
                continue
            if outcome.historical is not None:
                properties[key] = outcome.historical.year
                collected[key] = outcome.historical.year
            elif outcome.features is not None:
                features = outcome.features.get("features") or []
                value_field = outcome.layer.feature_value_field
                if value_field:
                    properties[key] = [(f.get("properties") or {}).get(value_field) for f in features]
                else:
                    properties[key] = features
                collected[key] = outcome.features
        return collected

    async def run(
        self,
        site: Optional[Dict[str, Any]],
        developable_area: Optional[Dict[str, Any]] = None,
        use_developable_area_for_bounds: bool = False,
        show_labels: bool = False,
    ) -> Optional[ScreenshotResult]:
        if not site:
            logger.info("No site supplied; skipping screenshot", extra={'theme': self.theme.id})
            return None

        started = time.perf_counter()
        theme = self.theme
        bounds = calculate_bounds(site, theme.padding, developable_area, use_developable_area_for_bounds)
        surface = create_surface(theme.width, theme.height, theme.background)
        projector = PixelProjector(bounds, theme.width, theme.height)

        layers = self.layers()
        outcomes = await self.fetch_all(layers, bounds)
        rendered = 0

        for layer in layers:
            outcome = outcomes.get(layer.id)
            if outcome is None or outcome.image is None:
                continue
            opacity = theme.base_opacity if layer.kind == "wms" else layer.opacity
            surface.draw_image(outcome.image, opacity)
            rendered += 1

        for layer in layers:
            outcome = outcomes.get(layer.id)
            if outcome is None or outcome.features is None:
                continue
            if layer.draw and draw_vector_features(surface, outcome.features, projector, layer.style):
                rendered += 1

        collected = self._write_back(site, outcomes)

        if theme.draw_regularity:
            regularity = draw_regularity(surface, site, projector)
            if regularity is not None:
                _site_properties(site)[REGULARITY_KEY] = regularity.percent
                collected[REGULARITY_KEY] = regularity.percent

        boundary = draw_feature_boundaries(
            surface, site, projector, theme.site_style, single_label=show_labels
        )
        if developable_area:
            draw_developable_area_boundaries(
                surface, developable_area, projector, theme.developable_style, single_label=show_labels
            )

        if rendered == 0 and boundary.boundaries == 0:
            logger.error(
                "Screenshot failed: no layer rendered and no boundary drawn",
                extra={'theme': theme.id, 'layers': [layer.id for layer in layers]},
            )
            return None

        draw_legend(surface, theme.legend_title, theme.legend, theme.legend_position)
        for outcome in outcomes.values():
            if outcome.historical is not None:
                draw_caption(surface, outcome.historical.attribution, position="bottom-left")

        png = surface.to_png()
        logger.info(
            "Screenshot composed",
            extra={
                'theme': theme.id,
                'layers_rendered': rendered,
                'layers_requested': len(layers),
                'bounds_fallback': bounds.fallback,
                'duration_ms': round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return ScreenshotResult(theme=theme.id, png=png, features=collected)
