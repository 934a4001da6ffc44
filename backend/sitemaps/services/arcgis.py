"""ArcGIS REST fetchers: MapServer ``/export`` images and ``/query`` features."""
from __future__ import annotations

import io
import logging
from typing import Any, Dict, List, Optional

import orjson
from PIL import Image, UnidentifiedImageError
from pyproj.exceptions import CRSError, ProjError
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from .. import settings
from ..bounds import Bounds
from ..errors import ArcGISError, LayerFetchError
from ..projection import GDA94, GEOGRAPHIC_SRS, MERCATOR_SRS, get_transformer, normalise_srs
from ..themes.config import LayerConfig
from ..utils.logging import get_logger
from .transport import ServiceTransport

logger = get_logger(__name__)

MAX_QUERY_PAGES = 10


def decode_image(data: bytes, url: Optional[str] = None) -> Image.Image:
    """Decode raster bytes to RGBA, turning ArcGIS JSON error bodies into ``ArcGISError``."""
    if data[:1] in (b"{", b"["):
        try:
            payload = orjson.loads(data)
        except orjson.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and "error" in payload:
            _raise_for_error(payload, url)
        raise LayerFetchError("Expected an image but received JSON", url=url)

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise LayerFetchError(f"Could not decode image: {exc}", url=url) from exc
    return image.convert("RGBA")


def _raise_for_error(payload: Dict[str, Any], url: Optional[str]) -> None:
    error = payload.get("error") or {}
    if isinstance(error, dict):
        message = error.get("message") or "ArcGIS error"
        details = error.get("details") or []
        if details:
            message = f"{message}: {'; '.join(str(d) for d in details)}"
        raise ArcGISError(message, code=error.get("code"), url=url)
    raise ArcGISError(str(error), url=url)


def bbox_for_sr(bounds: Bounds, spatial_reference: int) -> str:
    if spatial_reference in MERCATOR_SRS:
        return bounds.mercator().bbox
    return bounds.degree_bbox()


def build_export_params(
    layer: LayerConfig,
    bounds: Bounds,
    width: int,
    height: int,
    token: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "f": "image",
        "format": layer.format,
        "transparent": str(layer.transparent).lower(),
        "size": f"{width},{height}",
        "bbox": bbox_for_sr(bounds, layer.bbox_sr),
        "bboxSR": layer.bbox_sr,
        "imageSR": layer.image_sr,
        "dpi": layer.dpi,
    }
    if layer.layer_id is not None:
        params["layers"] = f"show:{layer.layer_id}"
    if token:
        params["token"] = token
    return params


def build_query_params(layer: LayerConfig, bounds: Bounds, token: Optional[str] = None) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "where": layer.where,
        "geometry": bbox_for_sr(bounds, layer.in_sr),
        "geometryType": "esriGeometryEnvelope",
        "inSR": layer.in_sr,
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": layer.out_fields,
        "returnGeometry": "true",
        "f": layer.response_format,
    }
    if layer.out_sr is not None:
        params["outSR"] = layer.out_sr
    if token:
        params["token"] = token
    return params


def _reproject(coords: List[Any], wkid: int) -> List[Any]:
    if wkid in GEOGRAPHIC_SRS:
        return coords
    transformer = get_transformer(normalise_srs(wkid), GDA94)
    projected = []
    for coord in coords:
        x, y = transformer.transform(coord[0], coord[1])
        projected.append([x, y])
    return projected


def _esri_feature(item: Dict[str, Any], wkid: int) -> Dict[str, Any]:
    geom = item.get("geometry") or {}
    geometry: Optional[Dict[str, Any]] = None

    if geom.get("paths"):
        paths = [_reproject(path, wkid) for path in geom["paths"] if path]
        if len(paths) == 1:
            geometry = {"type": "LineString", "coordinates": paths[0]}
        elif paths:
            geometry = {"type": "MultiLineString", "coordinates": paths}
    elif geom.get("rings"):
        geometry = {"type": "Polygon", "coordinates": [_reproject(ring, wkid) for ring in geom["rings"]]}
    elif "x" in geom and "y" in geom and geom["x"] is not None:
        point = _reproject([[geom["x"], geom["y"]]], wkid)[0]
        geometry = {"type": "Point", "coordinates": point}

    return {
        "type": "Feature",
        "geometry": geometry,
        "properties": dict(item.get("attributes") or {}),
    }


def esri_to_geojson(payload: Dict[str, Any], url: Optional[str] = None) -> Dict[str, Any]:
    """Convert an Esri JSON feature set to a GeoJSON FeatureCollection in GDA94 degrees.

    A feature set that cannot be read, including one in a spatial reference
    PROJ does not know, raises ``LayerFetchError``.
    """
    try:
        reference = payload.get("spatialReference") or {}
        wkid = int(reference.get("latestWkid") or reference.get("wkid") or GDA94)
        features = [_esri_feature(item, wkid) for item in payload.get("features") or []]
    except (CRSError, ProjError) as exc:
        raise LayerFetchError(f"Unsupported spatial reference: {exc}", url=url) from exc
    except (ValueError, TypeError, AttributeError, KeyError, IndexError) as exc:
        raise LayerFetchError(f"Malformed Esri feature set: {exc}", url=url) from exc
    return {"type": "FeatureCollection", "features": features}


def _ensure_fc(obj: Any, url: Optional[str]) -> Dict[str, Any]:
    if not isinstance(obj, dict) or obj.get("type") != "FeatureCollection":
        raise LayerFetchError("ArcGIS did not return a GeoJSON FeatureCollection", url=url)
    obj.setdefault("features", [])
    if not isinstance(obj["features"], list) or not all(isinstance(f, dict) for f in obj["features"]):
        raise LayerFetchError("ArcGIS returned malformed GeoJSON features", url=url)
    return obj


def _prop(props: Dict[str, Any], name: str) -> Any:
    if name in props:
        return props[name]
    lowered = name.lower()
    for key, value in props.items():
        if key.lower() == lowered:
            return value
    return None


def dedupe_features(features: List[Dict[str, Any]], fields: List[str]) -> List[Dict[str, Any]]:
    seen = set()
    unique = []
    for feature in features:
        props = feature.get("properties") or {}
        key = "|".join(str(_prop(props, name) or "").strip().lower() for name in fields)
        if key in seen:
            continue
        seen.add(key)
        unique.append(feature)
    return unique


def _is_transient(exc: BaseException) -> bool:
    # ArcGIS error bodies (bad token, bad parameters) fail the same way on every attempt.
    return isinstance(exc, LayerFetchError) and not isinstance(exc, ArcGISError)


class ArcGISFetcher:
    def __init__(self, transport: ServiceTransport):
        self.transport = transport

    async def export_image(
        self,
        layer: LayerConfig,
        bounds: Bounds,
        width: int,
        height: int,
        token: Optional[str] = None,
    ) -> Image.Image:
        """Render one MapServer layer for the viewport. No retry or fallback here."""
        params = build_export_params(layer, bounds, width, height, token)
        url = layer.export_url
        data = await self.transport.get_bytes(url, params=params, timeout=layer.timeout)
        image = decode_image(data, url)
        logger.debug("Exported ArcGIS image", extra={'layer': layer.id, 'size': image.size})
        return image

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(settings.QUERY_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _query_page(self, url: str, params: Dict[str, Any], timeout: Optional[float]) -> Any:
        payload = await self.transport.get_json(url, params=params, timeout=timeout)
        if isinstance(payload, dict) and "error" in payload:
            _raise_for_error(payload, url)
        return payload

    async def query_features(
        self,
        layer: LayerConfig,
        bounds: Bounds,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Features intersecting the viewport, as a GeoJSON FeatureCollection."""
        url = layer.query_url
        base_params = build_query_params(layer, bounds, token)
        features: List[Dict[str, Any]] = []
        offset = 0

        for _ in range(MAX_QUERY_PAGES):
            params = dict(base_params)
            if offset:
                params["resultOffset"] = offset
            payload = await self._query_page(url, params, layer.timeout)

            if layer.response_format == "json":
                if not isinstance(payload, dict):
                    raise LayerFetchError("ArcGIS returned an unexpected payload", url=url)
                page = esri_to_geojson(payload, url)
            else:
                page = _ensure_fc(payload, url)

            page_features = page.get("features") or []
            features.extend(page_features)

            exceeded = isinstance(payload, dict) and (
                payload.get("exceededTransferLimit")
                or (payload.get("properties") or {}).get("exceededTransferLimit")
            )
            if not exceeded or not page_features:
                break
            offset += len(page_features)

        if layer.dedupe_fields:
            features = dedupe_features(features, list(layer.dedupe_fields))
        if layer.property_defaults:
            for feature in features:
                props = feature.setdefault("properties", {}) or {}
                for key, default in layer.property_defaults.items():
                    if not props.get(key):
                        props[key] = default
                feature["properties"] = props

        logger.info(
            "Queried ArcGIS features",
            extra={'layer': layer.id, 'url': url, 'feature_count': len(features)},
        )
        return {"type": "FeatureCollection", "features": features}
