import os
from typing import List, Tuple

from .utils.cache import get_response_cache
from .utils.limits import get_rate_limiter


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
CACHE_TTL = int(os.getenv("CACHE_TTL", "900"))
ARCGIS_TIMEOUT = _env_float("ARCGIS_TIMEOUT_S", "30")
SLOW_SERVICE_TIMEOUT = _env_float("SLOW_SERVICE_TIMEOUT_S", "120")
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "30"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

PROXY_URL = os.getenv("PROXY_URL", "").strip()
PROXY_TIMEOUT = _env_float("PROXY_TIMEOUT_S", "30")

# Credentials have no defaults; a missing value disables that token provider.
NSW_PORTAL_TOKEN_URL = os.getenv(
    "NSW_PORTAL_TOKEN_URL",
    "https://portal.data.nsw.gov.au/arcgis/sharing/rest/generateToken",
)
NSW_PORTAL_USERNAME = os.getenv("NSW_PORTAL_USERNAME", "")
NSW_PORTAL_PASSWORD = os.getenv("NSW_PORTAL_PASSWORD", "")
NSW_PORTAL_REFERER = os.getenv("NSW_PORTAL_REFERER", "http://localhost:3000")
GPR_TOKEN_URL = os.getenv(
    "GPR_TOKEN_URL",
    "https://arcgis.paggis.nsw.gov.au/arcgis/tokens/generateToken",
)
GPR_USERNAME = os.getenv("GPR_USERNAME", "")
GPR_PASSWORD = os.getenv("GPR_PASSWORD", "")
TOKEN_EXPIRATION_MIN = int(os.getenv("TOKEN_EXPIRATION_MIN", "60"))
TOKEN_REFRESH_THRESHOLD = int(os.getenv("TOKEN_REFRESH_THRESHOLD_S", "300"))

METROMAP_KEY = os.getenv("METROMAP_KEY", "")
METROMAP_BASE_URL = os.getenv("METROMAP_BASE_URL", "https://api.metromap.com.au/ogc/gda2020/key")

FETCH_CONCURRENCY = int(os.getenv("FETCH_CONCURRENCY", "8"))
FETCH_CONCURRENCY_PER_HOST = int(os.getenv("FETCH_CONCURRENCY_PER_HOST", "4"))
SCREENSHOT_DEADLINE = _env_float("SCREENSHOT_DEADLINE_S", "180")
QUERY_RETRY_ATTEMPTS = int(os.getenv("QUERY_RETRY_ATTEMPTS", "3"))


def _parse_historical_layers(raw: str) -> List[Tuple[str, str, int]]:
    """Parse ``layer:region:year`` entries separated by commas."""
    layers: List[Tuple[str, str, int]] = []
    for entry in raw.split(","):
        parts = [part.strip() for part in entry.split(":")]
        if len(parts) != 3 or not parts[0]:
            continue
        try:
            layers.append((parts[0], parts[1], int(parts[2])))
        except ValueError:
            continue
    return sorted(layers, key=lambda item: item[2])


METROMAP_HISTORICAL_LAYERS = _parse_historical_layers(
    os.getenv(
        "METROMAP_HISTORICAL_LAYERS",
        "Sydney_2009:Sydney:2009,Sydney_2014:Sydney:2014,Sydney_2019:Sydney:2019",
    )
)


def metromap_service_url() -> str:
    return f"{METROMAP_BASE_URL.rstrip('/')}/{METROMAP_KEY}/service"


response_cache = get_response_cache(ttl=CACHE_TTL)
rate_limiter = get_rate_limiter(
    max_requests=RATE_LIMIT_MAX_REQUESTS,
    window_seconds=RATE_LIMIT_WINDOW_SECONDS,
)
