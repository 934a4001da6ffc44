from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import orjson

from .. import settings
from ..errors import LayerFetchError
from ..utils.limits import FetchLimiter
from .proxy import ProxyClient


class ServiceTransport:
    """GETs against remote GIS services, direct or via the proxy, under the fetch limiter."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        proxy: Optional[ProxyClient] = None,
        limiter: Optional[FetchLimiter] = None,
        timeout: float = settings.ARCGIS_TIMEOUT,
    ):
        self.client = client
        self.proxy = proxy
        self.limiter = limiter
        self.timeout = timeout

    @asynccontextmanager
    async def _slot(self, url: str) -> AsyncIterator[None]:
        if self.limiter is None:
            yield
        else:
            async with self.limiter.slot(url):
                yield

    async def _direct(self, url: str, params: Optional[Dict[str, Any]], timeout: float) -> httpx.Response:
        try:
            response = await self.client.get(url, params=params, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise LayerFetchError(f"Timed out after {timeout}s", url=url) from exc
        except httpx.HTTPError as exc:
            raise LayerFetchError(f"Request failed: {exc}", url=url) from exc
        if response.status_code >= 400:
            raise LayerFetchError(f"HTTP {response.status_code}", url=url)
        return response

    async def get_bytes(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> bytes:
        timeout = timeout or self.timeout
        async with self._slot(url):
            if self.proxy is not None:
                result = await self.proxy.request(str(httpx.URL(url, params=params)), timeout=timeout)
                if isinstance(result, bytes):
                    return result
                raise LayerFetchError("Proxy returned a non-image payload", url=url)
            response = await self._direct(url, params, timeout)
        content = response.content
        if not content:
            raise LayerFetchError("Empty response body", url=url)
        return content

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        timeout = timeout or self.timeout
        async with self._slot(url):
            if self.proxy is not None:
                result = await self.proxy.request(str(httpx.URL(url, params=params)), timeout=timeout)
            else:
                result = (await self._direct(url, params, timeout)).content

        if isinstance(result, (bytes, str)):
            try:
                return orjson.loads(result)
            except orjson.JSONDecodeError as exc:
                raise LayerFetchError("Response was not valid JSON", url=url) from exc
        return result
