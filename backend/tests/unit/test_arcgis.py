import asyncio
import io

import orjson
import pytest
from PIL import Image
from tenacity import wait_none

from sitemaps.bounds import Bounds
from sitemaps.errors import ArcGISError, LayerFetchError
from sitemaps.projection import to_mercator
from sitemaps.services.arcgis import (
    ArcGISFetcher,
    build_export_params,
    build_query_params,
    decode_image,
    dedupe_features,
    esri_to_geojson,
)
from sitemaps.services.transport import ServiceTransport
from sitemaps.themes.config import LayerConfig, get_theme

BOUNDS = Bounds(151.005, -33.005, 0.013)


def png_bytes(color=(0, 0, 255, 255), size=(8, 8)):
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class MockResponse:
    def __init__(self, content=b"", status_code=200):
        self.content = content
        self.status_code = status_code


class MockAsyncClient:
    """Answers GETs from a list of payloads, recording each call."""

    def __init__(self, payloads):
        self.payloads = list(payloads)
        self.calls = []

    async def get(self, url, params=None, timeout=None):
        self.calls.append({'url': url, 'params': dict(params or {}), 'timeout': timeout})
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        if isinstance(payload, MockResponse):
            return payload
        if isinstance(payload, bytes):
            return MockResponse(payload)
        return MockResponse(orjson.dumps(payload))

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(ArcGISFetcher._query_page.retry, "wait", wait_none())


def _fetcher(payloads):
    client = MockAsyncClient(payloads)
    return ArcGISFetcher(ServiceTransport(client)), client


class TestRequestParams:

    def test_export_params_gda94_bbox(self):
        layer = get_theme("zoning").layers[0]
        params = build_export_params(layer, BOUNDS, 2048, 2048, token="tok")

        assert params["f"] == "image"
        assert params["size"] == "2048,2048"
        assert params["bboxSR"] == 4283
        assert params["imageSR"] == 3857
        assert params["layers"] == "show:2"
        assert params["token"] == "tok"
        minx, miny, maxx, maxy = (float(v) for v in params["bbox"].split(","))
        assert minx == pytest.approx(151.005 - 0.0065)
        assert maxy == pytest.approx(-33.005 + 0.0065)

    def test_export_params_mercator_bbox(self):
        layer = LayerConfig(id="cadastre", kind="export", url="https://maps.example/MapServer", layer_id=9)
        params = build_export_params(layer, BOUNDS, 512, 512)

        center_x, center_y = to_mercator(151.005, -33.005)
        minx, miny, maxx, maxy = (float(v) for v in params["bbox"].split(","))
        assert (minx + maxx) / 2 == pytest.approx(center_x)
        assert (miny + maxy) / 2 == pytest.approx(center_y)
        assert "token" not in params

    def test_query_params(self):
        layer = get_theme("roads").layers[0]
        params = build_query_params(layer, BOUNDS)

        assert params["geometryType"] == "esriGeometryEnvelope"
        assert params["spatialRel"] == "esriSpatialRelIntersects"
        assert params["inSR"] == 4283
        assert params["outSR"] == 4283
        assert params["f"] == "json"
        assert params["outFields"] == "ROADNAMEST,FUNCTION,LANECOUNT"
        assert layer.query_url.endswith("/MapServer/0/query")


class TestEsriConversion:

    def test_geometry_types(self):
        payload = {
            "spatialReference": {"wkid": 4283},
            "features": [
                {"attributes": {"ROADNAMEST": "GEORGE ST"}, "geometry": {"paths": [[[151.0, -33.0], [151.01, -33.0]]]}},
                {"attributes": {}, "geometry": {"paths": [[[151.0, -33.0], [151.01, -33.0]], [[151.0, -33.01], [151.01, -33.01]]]}},
                {"attributes": {}, "geometry": {"rings": [[[151.0, -33.0], [151.01, -33.0], [151.01, -33.01], [151.0, -33.0]]]}},
                {"attributes": {"id": 4}, "geometry": {"x": 151.0, "y": -33.0}},
            ],
        }
        collection = esri_to_geojson(payload)
        types = [feature["geometry"]["type"] for feature in collection["features"]]

        assert types == ["LineString", "MultiLineString", "Polygon", "Point"]
        assert collection["features"][0]["properties"] == {"ROADNAMEST": "GEORGE ST"}

    def test_reprojects_web_mercator(self):
        x, y = to_mercator(151.0, -33.0)
        payload = {"spatialReference": {"wkid": 102100, "latestWkid": 3857}, "features": [{"geometry": {"x": x, "y": y}}]}
        lon, lat = esri_to_geojson(payload)["features"][0]["geometry"]["coordinates"]
        assert lon == pytest.approx(151.0, abs=1e-4)
        assert lat == pytest.approx(-33.0, abs=1e-4)

    @pytest.mark.parametrize("payload", [
        {"spatialReference": {"wkid": 999999}, "features": [{"geometry": {"x": 1.0, "y": 2.0}}]},
        {"spatialReference": {"wkid": "web-mercator"}, "features": []},
        {"spatialReference": {"wkid": 4283}, "features": ["not a feature"]},
        {"spatialReference": {"wkid": 3857}, "features": [{"geometry": {"rings": [[151.0, -33.0]]}}]},
    ])
    def test_malformed_feature_sets_raise_layer_errors(self, payload):
        with pytest.raises(LayerFetchError):
            esri_to_geojson(payload, "https://example/MapServer/0/query")

    def test_dedupe_is_case_insensitive(self):
        features = [
            {"properties": {"ROADNAMEST": "George St", "FUNCTION": "Arterial"}},
            {"properties": {"roadnamest": "GEORGE ST", "function": "arterial"}},
            {"properties": {"ROADNAMEST": "George St", "FUNCTION": "Local"}},
        ]
        assert len(dedupe_features(features, ["roadnamest", "function"])) == 2


class TestDecodeImage:

    def test_png_becomes_rgba(self):
        image = decode_image(png_bytes((255, 0, 0, 255)))
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0)) == (255, 0, 0, 255)

    def test_error_payload(self):
        body = orjson.dumps({"error": {"code": 498, "message": "Invalid token", "details": []}})
        with pytest.raises(ArcGISError) as excinfo:
            decode_image(body, "https://example/export")
        assert excinfo.value.code == 498

    def test_garbage(self):
        with pytest.raises(LayerFetchError):
            decode_image(b"not an image")

    def test_oversized_image_is_a_layer_error(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)
        with pytest.raises(LayerFetchError):
            decode_image(png_bytes(size=(64, 64)))


class TestArcGISFetcher:

    def test_export_image(self):
        fetcher, client = _fetcher([png_bytes()])
        layer = get_theme("zoning").layers[0]
        image = asyncio.run(fetcher.export_image(layer, BOUNDS, 64, 64))

        assert image.size == (8, 8)
        assert client.calls[0]['url'].endswith("/EPI_Primary_Planning_Layers/MapServer/export")

    def test_export_http_error_is_not_retried(self):
        fetcher, client = _fetcher([MockResponse(status_code=503)])
        with pytest.raises(LayerFetchError):
            asyncio.run(fetcher.export_image(get_theme("zoning").layers[0], BOUNDS, 64, 64))
        assert len(client.calls) == 1

    def test_query_paginates(self):
        feature = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [151.0, -33.0]}, "properties": {}}
        fetcher, client = _fetcher([
            {"type": "FeatureCollection", "features": [feature, feature], "exceededTransferLimit": True},
            {"type": "FeatureCollection", "features": [feature]},
        ])
        layer = LayerConfig(id="pts", kind="query", url="https://example/FeatureServer/0")
        collection = asyncio.run(fetcher.query_features(layer, BOUNDS, token="abc"))

        assert len(collection["features"]) == 3
        assert len(client.calls) == 2
        assert "resultOffset" not in client.calls[0]['params']
        assert client.calls[1]['params']['resultOffset'] == 2
        assert client.calls[0]['params']['token'] == "abc"
        assert client.calls[0]['url'] == "https://example/FeatureServer/0/query"

    def test_arcgis_error_is_not_retried(self):
        error = {"error": {"code": 498, "message": "Invalid token"}}
        fetcher, client = _fetcher([error])
        layer = LayerConfig(id="pts", kind="query", url="https://example/FeatureServer/0")

        with pytest.raises(ArcGISError) as excinfo:
            asyncio.run(fetcher.query_features(layer, BOUNDS))
        assert excinfo.value.code == 498
        assert len(client.calls) == 1

    def test_transient_failures_retry_then_raise(self):
        fetcher, client = _fetcher([MockResponse(status_code=502)])
        layer = LayerConfig(id="pts", kind="query", url="https://example/FeatureServer/0")

        with pytest.raises(LayerFetchError):
            asyncio.run(fetcher.query_features(layer, BOUNDS))
        assert len(client.calls) == 3

    def test_unreadable_esri_json_is_a_layer_error(self):
        payload = {"spatialReference": {"wkid": 102113}, "features": [{"geometry": {"rings": [[[1, 2], [3, 4], [5, 6]]]}}]}
        fetcher, client = _fetcher([payload])
        layer = LayerConfig(id="roads", kind="query", url="https://example/MapServer/0", response_format="json")

        with pytest.raises(LayerFetchError) as excinfo:
            asyncio.run(fetcher.query_features(layer, BOUNDS))
        assert excinfo.value.url == "https://example/MapServer/0/query"
        assert len(client.calls) == 1

    def test_query_recovers_after_transient_failure(self):
        fetcher, client = _fetcher([
            MockResponse(status_code=502),
            {"type": "FeatureCollection", "features": []},
        ])
        layer = LayerConfig(id="pts", kind="query", url="https://example/FeatureServer/0")
        assert asyncio.run(fetcher.query_features(layer, BOUNDS)) == {"type": "FeatureCollection", "features": []}
        assert len(client.calls) == 2

    def test_property_defaults_filled(self):
        payload = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "geometry": None, "properties": {"AGENCY_NAME": "", "PROPERTY_NAME": "Depot"}},
        ]}
        fetcher, _ = _fetcher([payload])
        layer = get_theme("gpr").layers[1]
        props = asyncio.run(fetcher.query_features(layer, BOUNDS))["features"][0]["properties"]

        assert props["AGENCY_NAME"] == "Unknown Agency"
        assert props["PROPERTY_NAME"] == "Depot"
        assert props["IMPROVEMENTS"] == "No improvements data"
