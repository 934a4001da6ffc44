import asyncio
from typing import Any, Dict, List, Optional, Sequence

import httpx

from . import settings
from .auth.tokens import EmbeddedTokenProvider, LayerTree, TokenRegistry, get_token_registry
from .pipeline import ScreenshotPipeline, ScreenshotResult
from .services.arcgis import ArcGISFetcher
from .services.proxy import ProxyClient
from .services.transport import ServiceTransport
from .services.wms import WmsFetcher
from .themes.config import get_theme
from .utils.cache import ServiceAvailabilityCache
from .utils.limits import FetchLimiter
from .utils.logging import get_logger

logger = get_logger(__name__)


class ReportSession:
    """Shared state for generating every map of one report.

    The availability cache starts empty on entry; tokens come from the
    process-wide registry unless one is injected.
    """

    def __init__(
        self,
        layer_tree: Optional[LayerTree] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        tokens: Optional[TokenRegistry] = None,
        proxy_url: Optional[str] = None,
        max_concurrent: int = settings.FETCH_CONCURRENCY,
        per_host: int = settings.FETCH_CONCURRENCY_PER_HOST,
        deadline_s: Optional[float] = None,
        historical_layers=None,
    ):
        self.layer_tree = layer_tree
        self.tokens = tokens or get_token_registry()
        self.proxy_url = settings.PROXY_URL if proxy_url is None else proxy_url
        self.max_concurrent = max_concurrent
        self.per_host = per_host
        self.deadline_s = deadline_s
        self.historical_layers = historical_layers
        self.cache = ServiceAvailabilityCache()
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.ARCGIS_TIMEOUT, follow_redirects=True)
        self.client = self._client
        self.cache.clear()

        proxy = ProxyClient(self.client, self.proxy_url, settings.PROXY_TIMEOUT) if self.proxy_url else None
        self.limiter = FetchLimiter(self.max_concurrent, self.per_host)
        self.transport = ServiceTransport(self.client, proxy=proxy, limiter=self.limiter)
        self.arcgis = ArcGISFetcher(self.transport)
        self.wms = WmsFetcher(self.transport, self.cache, self.arcgis)
        self.embedded = EmbeddedTokenProvider(self.layer_tree)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def pipeline(self, theme_id: str, deadline_s: Optional[float] = None) -> ScreenshotPipeline:
        return ScreenshotPipeline(
            get_theme(theme_id),
            client=self.client,
            wms=self.wms,
            arcgis=self.arcgis,
            tokens=self.tokens,
            embedded=self.embedded,
            historical_layers=self.historical_layers,
            deadline_s=deadline_s if deadline_s is not None else self.deadline_s,
        )

    async def capture(
        self,
        theme_id: str,
        site: Optional[Dict[str, Any]],
        developable_area: Optional[Dict[str, Any]] = None,
        use_developable_area_for_bounds: bool = False,
        show_labels: bool = False,
        deadline_s: Optional[float] = None,
    ) -> Optional[ScreenshotResult]:
        return await self.pipeline(theme_id, deadline_s).run(
            site,
            developable_area=developable_area,
            use_developable_area_for_bounds=use_developable_area_for_bounds,
            show_labels=show_labels,
        )

    async def capture_many(
        self,
        theme_ids: Sequence[str],
        site: Optional[Dict[str, Any]],
        developable_area: Optional[Dict[str, Any]] = None,
        use_developable_area_for_bounds: bool = False,
        show_labels: bool = False,
        deadline_s: Optional[float] = None,
    ) -> List[Optional[ScreenshotResult]]:
        """Run several themes concurrently; results keep the order of ``theme_ids``."""
        pipelines = [self.pipeline(theme_id, deadline_s) for theme_id in theme_ids]
        logger.info("Capturing themes", extra={'themes': list(theme_ids)})
        return list(await asyncio.gather(*(
            pipeline.run(
                site,
                developable_area=developable_area,
                use_developable_area_for_bounds=use_developable_area_for_bounds,
                show_labels=show_labels,
            )
            for pipeline in pipelines
        )))
