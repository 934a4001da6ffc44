import uuid
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .models import (
    ErrorResponse,
    HealthResponse,
    ReportRequest,
    ReportResponse,
    ScreenshotRequest,
    ScreenshotResponse,
    ThemeInfo,
)
from .pipeline import ScreenshotResult
from .session import ReportSession
from .settings import FRONTEND_ORIGIN, LOG_LEVEL, rate_limiter, response_cache
from .themes.config import THEME_MAP, list_themes
from .utils.logging import get_logger, setup_logging

VERSION = "1.0.0"
MAP_UNAVAILABLE = "map unavailable for this theme"

setup_logging(LOG_LEVEL)
logger = get_logger(__name__)

app = FastAPI(
    title="Site Maps API",
    description="Themed NSW site map screenshots composed from WMS and ArcGIS layers",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

origins = [origin.strip() for origin in FRONTEND_ORIGIN.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log requests with timing and add request ID."""
    request_id = str(uuid.uuid4())[:8]
    start_time = datetime.now(timezone.utc)
    request.state.request_id = request_id

    logger.info(
        "Request started",
        extra={
            'request_id': request_id,
            'method': request.method,
            'url': str(request.url),
            'client_ip': request.client.host if request.client else None,
        },
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        logger.error(
            "Request failed",
            extra={
                'request_id': request_id,
                'method': request.method,
                'url': str(request.url),
                'duration_ms': round(duration, 2),
                'error': str(e),
            },
            exc_info=True,
        )
        raise

    duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    logger.info(
        "Request completed",
        extra={
            'request_id': request_id,
            'method': request.method,
            'url': str(request.url),
            'status_code': response.status_code,
            'duration_ms': round(duration, 2),
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured error response."""
    request_id = getattr(request.state, 'request_id', 'unknown')
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail, request_id=request_id).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions with structured error response."""
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            detail=str(exc) if LOG_LEVEL == "DEBUG" else None,
            request_id=request_id,
        ).model_dump(),
    )


def _check_rate_limit(req: Request) -> None:
    client_ip = req.client.host if req.client else "unknown"
    if not rate_limiter.is_allowed(client_ip):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


def _check_themes(theme_ids: List[str]) -> List[str]:
    normalised = [theme_id.strip().lower() for theme_id in theme_ids]
    unknown = [theme_id for theme_id in normalised if theme_id not in THEME_MAP]
    if unknown:
        raise HTTPException(status_code=404, detail=f"Unknown theme: {', '.join(unknown)}")
    return normalised


def _to_response(theme_id: str, result: Optional[ScreenshotResult], site_properties: dict) -> ScreenshotResponse:
    if result is None:
        return ScreenshotResponse(theme=theme_id, image=None, siteProperties=site_properties)
    return ScreenshotResponse(
        theme=result.theme,
        image=result.data_uri,
        features=result.features,
        siteProperties=site_properties,
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
    )


@app.get("/api/themes", response_model=List[ThemeInfo])
async def themes() -> List[ThemeInfo]:
    """Return metadata for every available map theme."""
    return [ThemeInfo(**theme) for theme in list_themes()]


@app.post("/api/screenshots/{theme_id}", response_model=ScreenshotResponse)
async def screenshot(theme_id: str, request: ScreenshotRequest, req: Request):
    """Compose one themed screenshot of the site."""
    _check_rate_limit(req)
    theme_id = _check_themes([theme_id])[0]

    if not request.site:
        raise HTTPException(status_code=400, detail="No site feature provided")

    cache_key = {'theme': theme_id, 'body': request.model_dump_json()}
    cached = response_cache.get(cache_key)
    if cached:
        logger.info("Returning cached screenshot", extra={'theme': theme_id})
        return cached

    site = request.site
    async with ReportSession(layer_tree=request.layerTree) as session:
        result = await session.capture(
            theme_id,
            site,
            developable_area=request.developableArea,
            use_developable_area_for_bounds=request.useDevelopableAreaForBounds,
            show_labels=request.showLabels,
        )

    if result is None:
        raise HTTPException(status_code=422, detail=MAP_UNAVAILABLE)

    response = _to_response(theme_id, result, site.get("properties") or {})
    response_cache.set(cache_key, response)
    return response


@app.post("/api/report", response_model=ReportResponse)
async def report(request: ReportRequest, req: Request):
    """Compose several themes for one site in a single session."""
    _check_rate_limit(req)
    theme_ids = _check_themes(request.themes)

    if not request.site:
        raise HTTPException(status_code=400, detail="No site feature provided")

    site = request.site
    async with ReportSession(layer_tree=request.layerTree) as session:
        results = await session.capture_many(
            theme_ids,
            site,
            developable_area=request.developableArea,
            use_developable_area_for_bounds=request.useDevelopableAreaForBounds,
            show_labels=request.showLabels,
        )

    failed = [theme_id for theme_id, result in zip(theme_ids, results) if result is None]
    if failed:
        logger.warning("Some themes produced no map", extra={'themes': failed})

    site_properties = site.get("properties") or {}
    return ReportResponse(
        results=[_to_response(theme_id, result, {}) for theme_id, result in zip(theme_ids, results)],
        siteProperties=site_properties,
    )


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
