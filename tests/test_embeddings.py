import asyncio

import httpx
import pytest

from engines import embeddings
from engines.caching import EmbeddingCache, TTLCache
from engines.embeddings import EmbeddingClient


class _FakeAsyncClient:
    responses = []
    requests = []

    def __init__(self, *args, **kwargs):
        self.timeout = kwargs.get("timeout")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, url, json=None, headers=None):
        type(self).requests.append({"url": url, "json": json, "headers": headers})
        outcome = type(self).responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _response(status_code, payload):
    return httpx.Response(status_code, json=payload, request=httpx.Request("POST", "http://embed.test"))


@pytest.fixture
def fake_http(monkeypatch):
    _FakeAsyncClient.responses = []
    _FakeAsyncClient.requests = []
    monkeypatch.setattr(embeddings.httpx, "AsyncClient", _FakeAsyncClient)
    return _FakeAsyncClient


@pytest.fixture
def client():
    return EmbeddingClient(url="http://embed.test", model="embed-small", timeout=2, api_key="")


def test_embed_parses_openai_payload_and_caches(fake_http, client):
    fake_http.responses = [_response(200, {"data": [{"embedding": [0.1, 0.2, 0.3]}]})]

    first = asyncio.run(client.embed("java AND spring"))
    second = asyncio.run(client.embed("java AND spring"))

    assert first == [0.1, 0.2, 0.3]
    assert second == first
    assert len(fake_http.requests) == 1
    assert fake_http.requests[0]["json"] == {"model": "embed-small", "input": "java AND spring"}
    assert fake_http.requests[0]["headers"] is None


def test_embed_accepts_flat_payload(fake_http, client):
    fake_http.responses = [_response(200, {"embedding": [1, 2]})]
    assert asyncio.run(client.embed("text")) == [1.0, 2.0]


@pytest.mark.parametrize(
    "outcome",
    [
        httpx.ReadTimeout("slow"),
        httpx.ConnectError("refused"),
        _response(500, {"error": "boom"}),
        _response(200, {"data": []}),
        _response(200, {"data": [{"embedding": ["x", "y"]}]}),
    ],
)
def test_embed_failures_degrade_to_empty(fake_http, client, outcome):
    fake_http.responses = [outcome]
    assert asyncio.run(client.embed("text")) == []
    assert client.cache.get("text") is None


def test_blank_text_is_not_sent(fake_http, client):
    assert asyncio.run(client.embed("   ")) == []
    assert fake_http.requests == []


def test_long_input_is_truncated_and_key_sent(fake_http):
    client = EmbeddingClient(url="http://embed.test", model="m", timeout=1, api_key="sk-embed")
    fake_http.responses = [_response(200, {"embedding": [0.5]})]
    asyncio.run(client.embed("x" * 9000))

    sent = fake_http.requests[0]
    assert len(sent["json"]["input"]) == embeddings.MAX_INPUT_CHARS
    assert sent["headers"] == {"Authorization": "Bearer sk-embed"}


def test_embedding_cache_evicts_least_recent():
    cache = EmbeddingCache(max_size=2)
    cache.add("a", [1.0])
    cache.add("b", [2.0])
    cache.get("a")
    cache.add("c", [3.0])

    assert cache.get("a") == [1.0]
    assert cache.get("b") is None
    cache.add("d", [])
    assert cache.get("d") is None


def test_ttl_cache_expiry_and_invalidation():
    now = [0.0]
    cache = TTLCache(10, clock=lambda: now[0])
    loads = []

    def _load():
        loads.append(1)
        return "value"

    assert cache.get_or_load("k", _load) == "value"
    assert cache.get_or_load("k", _load) == "value"
    assert len(loads) == 1

    now[0] = 10.0
    assert cache.get("k") is None
    cache.set("k", "fresh")
    cache.invalidate("k")
    assert cache.get("k") is None
    assert len(cache) == 0
