"""Bearer tokens for authenticated GIS services.

Two sources exist. Token endpoints (the NSW Spatial portal, the Government
Property Register) issue short-lived tokens from configured credentials and
are cached by ``TokenService``. Some hosted layers instead carry a token inside
the vector-tile URL of their project layer descriptor; ``extract_embedded_token``
is the only place that parsing happens.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union
from urllib.parse import unquote

import httpx
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .. import settings
from ..errors import AuthError
from ..utils.logging import get_logger

logger = get_logger(__name__)

TILE_PATH_MARKER = "/featureServer/{z}/{x}/{y}/"

LayerTree = Union[Mapping[Any, Dict[str, Any]], Iterable[Dict[str, Any]]]


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float  # epoch seconds

    def remaining(self, now: float) -> float:
        return self.expires_at - now


class TokenService:
    """Issues and caches one service's token, refreshing ahead of expiry.

    ``response_format`` is ``json`` for ArcGIS portal style endpoints, which
    answer ``{"token": ..., "expires": <ms>}``, or ``text`` for endpoints that
    answer with the bare token.
    """

    def __init__(
        self,
        name: str,
        url: str,
        username: str,
        password: str,
        *,
        referer: Optional[str] = None,
        expiration_minutes: int = 60,
        refresh_threshold_s: int = 300,
        response_format: str = "json",
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.url = url
        self.username = username
        self.password = password
        self.referer = referer
        self.expiration_minutes = expiration_minutes
        self.refresh_threshold_s = refresh_threshold_s
        self.response_format = response_format
        self._clock = clock
        self._cached: Optional[CachedToken] = None
        self._lock = threading.Lock()

    @property
    def cached(self) -> Optional[CachedToken]:
        with self._lock:
            return self._cached

    def clear(self) -> None:
        with self._lock:
            self._cached = None

    def _form(self) -> Dict[str, str]:
        form = {
            "username": self.username,
            "password": self.password,
            "expiration": str(self.expiration_minutes),
            "f": "json",
        }
        if self.referer:
            form["referer"] = self.referer
            form["client"] = "referer"
        else:
            form["client"] = "requestip"
        return form

    def _parse(self, response: httpx.Response) -> CachedToken:
        now = self._clock()
        default_expiry = now + self.expiration_minutes * 60

        if self.response_format == "text":
            token = response.text.strip()
            if not token or "error" in token.lower():
                raise AuthError(f"{self.name} token endpoint rejected the request", url=self.url)
            return CachedToken(token=token, expires_at=default_expiry)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(f"{self.name} token endpoint returned invalid JSON", url=self.url) from exc
        if not isinstance(payload, dict):
            raise AuthError(f"{self.name} token endpoint returned an unexpected payload", url=self.url)
        if "error" in payload:
            error = payload.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise AuthError(f"{self.name} token generation failed: {message}", url=self.url)
        token = payload.get("token")
        if not token:
            raise AuthError(f"{self.name} token endpoint returned no token", url=self.url)

        expires = payload.get("expires")
        expires_at = float(expires) / 1000.0 if isinstance(expires, (int, float)) else default_expiry
        return CachedToken(token=str(token), expires_at=expires_at)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.QUERY_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _issue(self, client: httpx.AsyncClient) -> CachedToken:
        if not self.username or not self.password:
            raise AuthError(f"No credentials configured for {self.name}", url=self.url)
        response = await client.post(self.url, data=self._form())
        if response.status_code >= 400:
            raise AuthError(f"{self.name} token endpoint returned HTTP {response.status_code}", url=self.url)
        return self._parse(response)

    async def get_token(self, client: httpx.AsyncClient) -> str:
        cached = self.cached
        now = self._clock()
        if cached and cached.remaining(now) > self.refresh_threshold_s:
            return cached.token

        try:
            issued = await self._issue(client)
        except (AuthError, httpx.HTTPError) as exc:
            if cached:
                logger.warning(
                    "Token refresh failed; reusing cached token",
                    extra={'token_service': self.name, 'error': str(exc)},
                )
                return cached.token
            if isinstance(exc, AuthError):
                raise
            raise AuthError(f"{self.name} token request failed: {exc}", url=self.url) from exc

        with self._lock:
            self._cached = issued
        logger.info(
            "Issued token",
            extra={'token_service': self.name, 'expires_in_s': round(issued.remaining(now))},
        )
        return issued.token


def _tile_url(descriptor: Dict[str, Any]) -> str:
    try:
        tiles = descriptor["layer_full"]["vector_source"]["tiles"]
        tile_url = tiles[0]
    except (KeyError, IndexError, TypeError) as exc:
        raise AuthError("Layer descriptor has no vector tile URL") from exc
    if not isinstance(tile_url, str) or not tile_url:
        raise AuthError("Layer descriptor has no vector tile URL")
    return tile_url


def extract_embedded_token(descriptor: Dict[str, Any]) -> str:
    """Pull the token out of a descriptor's URL-encoded vector tile URL.

    The tile URL looks like ``.../featureServer/{z}/{x}/{y}/<encoded query>``;
    the encoded part carries ``token=<value>``.
    """
    tile_url = _tile_url(descriptor)
    if TILE_PATH_MARKER not in tile_url:
        raise AuthError("Vector tile URL has no feature server tile path")

    decoded = unquote(tile_url.split(TILE_PATH_MARKER, 1)[1])
    if "token=" not in decoded:
        raise AuthError("Vector tile URL carries no token")

    token = decoded.split("token=", 1)[1].split("&", 1)[0].strip()
    if not token:
        raise AuthError("Vector tile URL carries an empty token")
    return token


class EmbeddedTokenProvider:
    """Resolves tokens from the host platform's project layer tree."""

    def __init__(self, layer_tree: Optional[LayerTree] = None):
        self.layer_tree = layer_tree

    def find_descriptor(self, project_layer_id: int) -> Dict[str, Any]:
        tree = self.layer_tree
        if not tree:
            raise AuthError(f"No layer tree available for project layer {project_layer_id}")

        if isinstance(tree, Mapping):
            descriptor = tree.get(project_layer_id) or tree.get(str(project_layer_id))
            if isinstance(descriptor, dict):
                return descriptor
            candidates: Iterable[Any] = tree.values()
        else:
            candidates = tree

        for descriptor in candidates:
            if isinstance(descriptor, dict) and str(descriptor.get("layer")) == str(project_layer_id):
                return descriptor
        raise AuthError(f"Project layer {project_layer_id} not found in layer tree")

    def get_token(self, project_layer_id: int) -> str:
        return extract_embedded_token(self.find_descriptor(project_layer_id))


class TokenRegistry:
    """Named token services shared by every session in the process."""

    def __init__(self, services: Optional[Dict[str, TokenService]] = None):
        self.services: Dict[str, TokenService] = dict(services or {})

    def register(self, key: str, service: TokenService) -> None:
        self.services[key] = service

    async def token_for(
        self,
        strategy: Optional[str],
        client: httpx.AsyncClient,
        embedded: EmbeddedTokenProvider,
        project_layer_id: Optional[int] = None,
    ) -> Optional[str]:
        if strategy is None:
            return None
        if strategy == "embedded":
            if project_layer_id is None:
                raise AuthError("Embedded token requested without a project layer id")
            return embedded.get_token(project_layer_id)
        service = self.services.get(strategy)
        if service is None:
            raise AuthError(f"No token service registered for '{strategy}'")
        return await service.get_token(client)

    def clear(self) -> None:
        for service in self.services.values():
            service.clear()


def build_token_registry() -> TokenRegistry:
    return TokenRegistry({
        "portal": TokenService(
            "nsw_portal",
            settings.NSW_PORTAL_TOKEN_URL,
            settings.NSW_PORTAL_USERNAME,
            settings.NSW_PORTAL_PASSWORD,
            referer=settings.NSW_PORTAL_REFERER,
            expiration_minutes=settings.TOKEN_EXPIRATION_MIN,
            refresh_threshold_s=settings.TOKEN_REFRESH_THRESHOLD,
        ),
        "gpr": TokenService(
            "gpr",
            settings.GPR_TOKEN_URL,
            settings.GPR_USERNAME,
            settings.GPR_PASSWORD,
            expiration_minutes=settings.TOKEN_EXPIRATION_MIN,
            refresh_threshold_s=settings.TOKEN_REFRESH_THRESHOLD,
            response_format="text",
        ),
    })


_token_registry: Optional[TokenRegistry] = None


def get_token_registry() -> TokenRegistry:
    global _token_registry
    if _token_registry is None:
        _token_registry = build_token_registry()
    return _token_registry
