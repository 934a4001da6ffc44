from typing import Any, Dict, Optional, Union

import httpx

from ..errors import LayerFetchError
from ..utils.logging import get_logger

logger = get_logger(__name__)

_IMAGE_URL_MARKERS = ("/export", "getmap")

ProxyResult = Union[bytes, Any, str]


def expects_image(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in _IMAGE_URL_MARKERS)


class ProxyClient:
    """Forwards requests through the CORS proxy service.

    Image requests come back as raw bytes. Everything else is parsed as JSON,
    or returned as text when the body is not JSON.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 30.0):
        self.client = client
        self.base_url = base_url
        self.timeout = timeout

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> ProxyResult:
        payload = {
            "url": url,
            "method": method,
            "headers": headers or {},
            "body": body,
        }
        try:
            response = await self.client.post(
                self.base_url,
                json=payload,
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as exc:
            raise LayerFetchError(f"Proxy request failed: {exc}", url=url) from exc

        if response.status_code >= 400:
            raise LayerFetchError(f"Proxy returned HTTP {response.status_code}", url=url)

        content_type = (response.headers.get("content-type") or "").lower()
        if expects_image(url) or content_type.startswith("image/"):
            return response.content

        try:
            return response.json()
        except ValueError:
            logger.debug("Proxy response is not JSON", extra={'url': url})
            return response.text
