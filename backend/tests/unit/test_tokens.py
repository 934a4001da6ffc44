import asyncio
from urllib.parse import quote

import httpx
import pytest
from tenacity import wait_none

from sitemaps.auth import (
    EmbeddedTokenProvider,
    TokenRegistry,
    TokenService,
    extract_embedded_token,
)
from sitemaps.errors import AuthError

NOW = 1_700_000_000.0


class MockResponse:
    def __init__(self, data=None, status_code=200, text=None):
        self._data = data
        self.status_code = status_code
        self.text = text if text is not None else ""

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class MockAsyncClient:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    async def post(self, url, data=None, **kwargs):
        self.posts.append({'url': url, 'data': data})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _descriptor(layer_id, query):
    return {
        "layer": layer_id,
        "layer_full": {
            "vector_source": {
                "tiles": [
                    "https://portal.example/arcgis/rest/services/Hosted/Thing/featureServer/{z}/{x}/{y}/"
                    + quote(query, safe=""),
                ],
            },
        },
    }


def _service(**kwargs):
    defaults = dict(referer="https://app.example", expiration_minutes=60, refresh_threshold_s=300,
                    clock=lambda: NOW)
    defaults.update(kwargs)
    return TokenService("portal", "https://portal.example/generateToken", "user", "secret", **defaults)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(TokenService._issue.retry, "wait", wait_none())


class TestEmbeddedToken:

    def test_extracts_token_between_marker_and_ampersand(self):
        descriptor = _descriptor(19976, "f=pbf&token=abc.DEF-123_x&where=1%3D1")
        assert extract_embedded_token(descriptor) == "abc.DEF-123_x"

    def test_token_at_end_of_query(self):
        assert extract_embedded_token(_descriptor(1, "f=pbf&token=last")) == "last"

    @pytest.mark.parametrize("descriptor", [
        {},
        {"layer_full": {"vector_source": {"tiles": []}}},
        {"layer_full": {"vector_source": {"tiles": ["https://host/tiles/{z}/{x}/{y}.pbf?token=abc"]}}},
        _descriptor(1, "f=pbf&where=1%3D1"),
        _descriptor(1, "f=pbf&token=&x=1"),
    ])
    def test_malformed_descriptors_raise(self, descriptor):
        with pytest.raises(AuthError):
            extract_embedded_token(descriptor)

    def test_provider_searches_list_and_mapping(self):
        tree = [_descriptor(14112, "token=sewer"), _descriptor(14102, "token=water")]
        assert EmbeddedTokenProvider(tree).get_token(14102) == "water"

        keyed = {20976: _descriptor(20976, "token=buildings")}
        assert EmbeddedTokenProvider(keyed).get_token(20976) == "buildings"

    def test_provider_missing_layer(self):
        with pytest.raises(AuthError):
            EmbeddedTokenProvider([_descriptor(1, "token=a")]).get_token(2)
        with pytest.raises(AuthError):
            EmbeddedTokenProvider(None).get_token(2)


class TestTokenService:

    def test_issues_and_caches(self):
        service = _service()
        client = MockAsyncClient([MockResponse({"token": "t1", "expires": (NOW + 3600) * 1000})])

        assert asyncio.run(service.get_token(client)) == "t1"
        assert asyncio.run(service.get_token(client)) == "t1"
        assert len(client.posts) == 1

        form = client.posts[0]['data']
        assert form['username'] == "user"
        assert form['referer'] == "https://app.example"
        assert form['client'] == "referer"
        assert form['f'] == "json"
        assert form['expiration'] == "60"

    def test_refreshes_inside_threshold(self):
        service = _service()
        client = MockAsyncClient([
            MockResponse({"token": "old", "expires": (NOW + 100) * 1000}),
            MockResponse({"token": "new", "expires": (NOW + 3600) * 1000}),
        ])
        assert asyncio.run(service.get_token(client)) == "old"
        assert asyncio.run(service.get_token(client)) == "new"

    def test_failed_refresh_reuses_cached_token(self):
        service = _service()
        client = MockAsyncClient([
            MockResponse({"token": "stale", "expires": (NOW - 10) * 1000}),
            MockResponse(status_code=500),
        ])
        assert asyncio.run(service.get_token(client)) == "stale"
        assert asyncio.run(service.get_token(client)) == "stale"

    def test_failure_without_cache_raises(self):
        service = _service()
        client = MockAsyncClient([MockResponse({"error": {"code": 400, "message": "Invalid credentials"}})])
        with pytest.raises(AuthError, match="Invalid credentials"):
            asyncio.run(service.get_token(client))

    def test_transport_errors_are_retried(self):
        service = _service()
        client = MockAsyncClient([
            httpx.ConnectError("boom"),
            MockResponse({"token": "t2", "expires": (NOW + 3600) * 1000}),
        ])
        assert asyncio.run(service.get_token(client)) == "t2"
        assert len(client.posts) == 2

    def test_missing_credentials(self):
        service = TokenService("gpr", "https://gpr.example/generateToken", "", "", clock=lambda: NOW)
        with pytest.raises(AuthError, match="No credentials"):
            asyncio.run(service.get_token(MockAsyncClient([])))

    def test_text_flavour(self):
        service = _service(referer=None, response_format="text")
        client = MockAsyncClient([MockResponse(text="  plain-token \n")])
        assert asyncio.run(service.get_token(client)) == "plain-token"
        assert client.posts[0]['data']['client'] == "requestip"

        rejected = _service(response_format="text")
        with pytest.raises(AuthError):
            asyncio.run(rejected.get_token(MockAsyncClient([MockResponse(text="Error: bad login")])))


class TestTokenRegistry:

    def test_strategies(self):
        registry = TokenRegistry()
        registry.register("portal", _service())
        client = MockAsyncClient([MockResponse({"token": "p1", "expires": (NOW + 3600) * 1000})])
        embedded = EmbeddedTokenProvider([_descriptor(19976, "token=power")])

        assert asyncio.run(registry.token_for(None, client, embedded)) is None
        assert asyncio.run(registry.token_for("portal", client, embedded)) == "p1"
        assert asyncio.run(registry.token_for("embedded", client, embedded, 19976)) == "power"

        with pytest.raises(AuthError):
            asyncio.run(registry.token_for("gpr", client, embedded))
        with pytest.raises(AuthError):
            asyncio.run(registry.token_for("embedded", client, embedded))
