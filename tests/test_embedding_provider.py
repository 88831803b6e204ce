"""Tests for sqlite_rag.embedding_provider: batching and the HTTP and mock backends."""

import json

import httpx
import numpy as np
import pytest

from sqlite_rag.config import RagSettings
from sqlite_rag.embedding_provider import (
    BATCH_SIZE,
    EmbeddingError,
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    get_embedding_dimension,
)


def _echo_handler(seen: list, reverse: bool = False):
    """Embed each input as [batch position, text length, 1.0]; optionally reply out of order."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        data = [
            {"object": "embedding", "index": i, "embedding": [float(i), float(len(text)), 1.0]}
            for i, text in enumerate(body["input"])
        ]
        if reverse:
            data.reverse()
        return httpx.Response(200, json={"object": "list", "data": data, "model": body["model"]})

    return handler


def _provider(handler, **kwargs) -> OpenAIEmbeddingProvider:
    client = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return OpenAIEmbeddingProvider(api_key="sk-test", client=client, **kwargs)


class TestDimensionTable:
    @pytest.mark.parametrize(
        "model,dim",
        [
            ("text-embedding-3-small", 1536),
            ("text-embedding-3-large", 3072),
            ("text-embedding-ada-002", 1536),
        ],
    )
    def test_known_models(self, model, dim):
        assert get_embedding_dimension(model) == dim

    def test_unknown_model_falls_back(self):
        assert get_embedding_dimension("some-future-model") == 1536


class TestOpenAIEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen: list = []
        provider = _provider(_echo_handler(seen), model="text-embedding-3-large")
        vectors = await provider.embed_many(["hello", "world!"])

        assert seen == [{"model": "text-embedding-3-large", "input": ["hello", "world!"]}]
        assert len(vectors) == 2
        assert vectors[0].dtype == np.float32
        assert vectors[1].tolist() == [1.0, 6.0, 1.0]

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self):
        headers = {}

        def handler(request: httpx.Request) -> httpx.Response:
            headers["authorization"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.5]}]})

        provider = _provider(handler)
        await provider.embed_one("x")
        assert headers["authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_batches_preserve_order_and_count(self):
        seen: list = []
        provider = _provider(_echo_handler(seen))
        texts = [f"text-{i}" + "x" * (i % 7) for i in range(250)]

        vectors = await provider.embed_many(texts)

        assert [len(call["input"]) for call in seen] == [BATCH_SIZE, BATCH_SIZE, 50]
        assert len(vectors) == 250
        for text, vec in zip(texts, vectors):
            assert vec[1] == len(text)

    @pytest.mark.asyncio
    async def test_out_of_order_response_is_reordered(self):
        seen: list = []
        provider = _provider(_echo_handler(seen, reverse=True))
        vectors = await provider.embed_many(["a", "bb", "ccc"])
        assert [v[1] for v in vectors] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_model_override_per_call(self):
        seen: list = []
        provider = _provider(_echo_handler(seen))
        await provider.embed_one("q", model="text-embedding-ada-002")
        assert seen[0]["model"] == "text-embedding-ada-002"

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_request(self):
        seen: list = []
        provider = _provider(_echo_handler(seen))
        assert await provider.embed_many([]) == []
        assert seen == []

    @pytest.mark.asyncio
    async def test_failed_batch_fails_whole_call(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 2:
                return httpx.Response(503, text="overloaded")
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"data": [{"index": i, "embedding": [1.0]} for i in range(len(body["input"]))]}
            )

        provider = _provider(handler, batch_size=2)
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_many(["a", "b", "c", "d", "e"])

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        provider = _provider(lambda request: httpx.Response(429, json={"error": "slow down"}))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_one("x")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self):
        provider = _provider(lambda request: httpx.Response(401, json={"error": "bad key"}))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_one("x")
        assert not exc_info.value.retryable
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_one("x")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        provider = _provider(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(EmbeddingError, match="Malformed"):
            await provider.embed_one("x")

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        provider = _provider(lambda request: httpx.Response(200, json={"data": []}))
        with pytest.raises(EmbeddingError, match="0 vectors for 1 inputs"):
            await provider.embed_one("x")

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="API key"):
            OpenAIEmbeddingProvider(api_key="")

    @pytest.mark.asyncio
    async def test_from_settings(self, tmp_path):
        settings = RagSettings(api_key="sk-x", embedding_model="text-embedding-3-large", project_root=tmp_path)
        async with OpenAIEmbeddingProvider.from_settings(settings) as provider:
            assert provider.model == "text-embedding-3-large"
            assert provider.dimension() == 3072

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        client = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(_echo_handler([])))
        provider = OpenAIEmbeddingProvider(api_key="sk-test", client=client)
        await provider.close()
        assert not client.is_closed
        await client.aclose()


class TestMockEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_default_dimension_follows_model(self):
        provider = MockEmbeddingProvider()
        vec = await provider.embed_one("hello")
        assert vec.shape == (1536,)
        assert provider.dimension() == 1536

    @pytest.mark.asyncio
    async def test_deterministic_and_normalized(self):
        provider = MockEmbeddingProvider(dim=64)
        a1, a2, b = await provider.embed_many(["vector store", "vector store", "deploy with docker"])
        assert np.array_equal(a1, a2)
        assert np.isclose(np.linalg.norm(a1), 1.0)
        assert not np.array_equal(a1, b)

    @pytest.mark.asyncio
    async def test_explicit_vectors(self):
        provider = MockEmbeddingProvider(dim=3, vectors={"q": [1.0, 0.0, 0.0]})
        vec = await provider.embed_one("q")
        assert vec.tolist() == [1.0, 0.0, 0.0]

    @pytest.mark.asyncio
    async def test_records_batches(self):
        provider = MockEmbeddingProvider(dim=8, batch_size=2)
        await provider.embed_many(["a", "b", "c"])
        assert provider.calls == [["a", "b"], ["c"]]
        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_failure_injection(self):
        provider = MockEmbeddingProvider(dim=8, fail_on="boom")
        with pytest.raises(EmbeddingError):
            await provider.embed_many(["fine", "boom here"])

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            MockEmbeddingProvider(batch_size=0)
