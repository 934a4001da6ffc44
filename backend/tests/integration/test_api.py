import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from sitemaps import main
from sitemaps.main import MAP_UNAVAILABLE, app
from sitemaps.settings import rate_limiter, response_cache
from sitemaps.utils.limits import RequestRateLimiter

client = TestClient(app)


def png_bytes(color):
    buffer = io.BytesIO()
    Image.new("RGBA", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


SITE = {
    "type": "Feature",
    "geometry": {
        "type": "Polygon",
        "coordinates": [[[151.0, -33.0], [151.01, -33.0], [151.01, -32.99], [151.0, -32.99], [151.0, -33.0]]],
    },
    "properties": {"address": "1 Test Road"},
}


class MockResponse:
    def __init__(self, content=b"", status_code=200):
        self.content = content
        self.status_code = status_code


class MockAsyncClient:
    """Stands in for httpx.AsyncClient inside report sessions."""

    payload = png_bytes((90, 120, 60, 255))
    instances = []

    def __init__(self, *args, **kwargs):
        self.calls = []
        MockAsyncClient.instances.append(self)

    async def get(self, url, params=None, timeout=None):
        self.calls.append(url)
        if isinstance(self.payload, MockResponse):
            return self.payload
        return MockResponse(self.payload)

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    rate_limiter.reset()
    response_cache.clear()
    MockAsyncClient.instances = []
    monkeypatch.setattr("sitemaps.session.httpx.AsyncClient", MockAsyncClient)
    yield
    rate_limiter.reset()
    response_cache.clear()


class TestAPIEndpoints:

    def test_health_check(self):
        """Test health check endpoint."""
        response = client.get("/healthz")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == main.VERSION
        assert "timestamp" in data

    def test_list_themes(self):
        """Every theme is advertised with its layers and feature keys."""
        response = client.get("/api/themes")
        assert response.status_code == 200

        themes = {theme["id"]: theme for theme in response.json()}
        assert len(themes) == 21
        assert themes["ptal"]["featureKeys"] == ["ptalValues"]
        assert themes["aerial"]["width"] == 2048

    def test_unknown_theme(self):
        response = client.post("/api/screenshots/moonscape", json={"site": SITE})
        assert response.status_code == 404

        data = response.json()
        assert data["error"] == "Unknown theme: moonscape"
        assert "request_id" in data

    def test_missing_site(self):
        response = client.post("/api/screenshots/aerial", json={})
        assert response.status_code == 400

    def test_site_must_be_feature(self):
        payload = {"site": {"type": "Polygon", "coordinates": SITE["geometry"]["coordinates"]}}
        response = client.post("/api/screenshots/aerial", json=payload)
        assert response.status_code == 422

    def test_screenshot(self):
        """Test a screenshot is composed, tagged with a request id and then cached."""
        response = client.post("/api/screenshots/Aerial", json={"site": SITE})
        assert response.status_code == 200
        assert "X-Request-ID" in response.headers

        data = response.json()
        assert data["theme"] == "aerial"
        assert data["image"].startswith("data:image/png;base64,")
        assert data["siteProperties"]["address"] == "1 Test Road"
        assert len(MockAsyncClient.instances) == 1

        again = client.post("/api/screenshots/aerial", json={"site": SITE})
        assert again.status_code == 200
        assert again.json()["image"] == data["image"]
        assert len(MockAsyncClient.instances) == 1

    def test_map_unavailable(self, monkeypatch):
        monkeypatch.setattr(MockAsyncClient, "payload", MockResponse(status_code=500))
        site = {"type": "Feature", "geometry": None, "properties": {}}

        response = client.post("/api/screenshots/zoning", json={"site": site})
        assert response.status_code == 422
        assert response.json()["error"] == MAP_UNAVAILABLE

    def test_report(self):
        response = client.post("/api/report", json={"site": SITE, "themes": ["zoning", "aerial"]})
        assert response.status_code == 200

        data = response.json()
        assert [result["theme"] for result in data["results"]] == ["zoning", "aerial"]
        assert all(result["image"] for result in data["results"])
        assert data["siteProperties"]["address"] == "1 Test Road"

    def test_report_requires_themes(self):
        response = client.post("/api/report", json={"site": SITE, "themes": []})
        assert response.status_code == 422

    def test_rate_limit(self, monkeypatch):
        monkeypatch.setattr(main, "rate_limiter", RequestRateLimiter(max_requests=1, window_seconds=60))

        assert client.post("/api/screenshots/moonscape", json={"site": SITE}).status_code == 404
        response = client.post("/api/screenshots/moonscape", json={"site": SITE})
        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded"
