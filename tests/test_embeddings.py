"""Unit tests for the Ollama embedding client.

Tests cover:
- Single-text embedding and response validation
- Error classification (unreachable service, HTTP errors, wrong dimension)
- Bounded-concurrency batching with order preservation and fail-fast
- Connectivity and model-availability probes
"""

import asyncio

import numpy as np
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from helpcenter_kb.config.settings import OllamaConfig
from helpcenter_kb.errors import EmbeddingModelError, EmbeddingServiceError
from helpcenter_kb.indexer.embeddings import OllamaEmbedder

DIM = 8


class FakeOllama:
    """aiohttp application imitating the Ollama embeddings API."""

    def __init__(self):
        self.dimension = DIM
        self.models = [{"name": "nomic-embed-text:latest"}]
        self.fail_prompts = set()
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.payloads = []
        self.app = web.Application()
        self.app.router.add_post("/api/embeddings", self.embeddings)
        self.app.router.add_get("/api/tags", self.tags)

    async def embeddings(self, request):
        payload = await request.json()
        self.payloads.append(payload)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            prompt = payload["prompt"]
            if payload["model"] not in {m["name"].split(":")[0] for m in self.models}:
                return web.json_response(
                    {"error": f"model \"{payload['model']}\" not found, try pulling it first"}, status=404
                )
            if self.delay:
                # Later prompts finish first, to scramble completion order.
                await asyncio.sleep(self.delay / (1 + len(prompt)))
            if prompt in self.fail_prompts:
                return web.Response(status=500, text="model runner crashed")
            vector = [float(len(prompt))] + [0.5] * (self.dimension - 1)
            return web.json_response({"embedding": vector})
        finally:
            self.in_flight -= 1

    async def tags(self, request):
        return web.json_response({"models": self.models})


@pytest_asyncio.fixture
async def ollama():
    fake = FakeOllama()
    server = TestServer(fake.app)
    await server.start_server()
    fake.base_url = str(server.make_url(""))
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def embedder(ollama):
    config = OllamaConfig(base_url=ollama.base_url, model="nomic-embed-text", dimension=DIM)
    kb_embedder = OllamaEmbedder(config, concurrency=3)
    yield kb_embedder
    await kb_embedder.close()


class TestOllamaEmbedder:

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            OllamaEmbedder(OllamaConfig(), concurrency=0)

    @pytest.mark.asyncio
    async def test_embed_posts_model_and_prompt(self, ollama, embedder):
        vector = await embedder.embed("reset password")

        assert isinstance(vector, np.ndarray)
        assert vector.dtype == np.float32
        assert vector.shape == (DIM,)
        assert ollama.payloads == [{"model": "nomic-embed-text", "prompt": "reset password"}]

    @pytest.mark.asyncio
    async def test_wrong_dimension_names_the_model(self, ollama, embedder):
        ollama.dimension = DIM + 1
        with pytest.raises(EmbeddingModelError) as exc_info:
            await embedder.embed("hello")
        assert "nomic-embed-text" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_http_error_raises_service_error(self, ollama, embedder):
        ollama.fail_prompts.add("boom")
        with pytest.raises(EmbeddingServiceError) as exc_info:
            await embedder.embed("boom")
        assert not isinstance(exc_info.value, EmbeddingModelError)
        assert "500" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_model_raises_model_error(self, ollama):
        config = OllamaConfig(base_url=ollama.base_url, model="all-minilm", dimension=DIM)
        async with OllamaEmbedder(config) as missing_model:
            with pytest.raises(EmbeddingModelError) as exc_info:
                await missing_model.embed("hello")
        assert "all-minilm" in str(exc_info.value)
        assert "ollama pull" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unreachable_service_gives_guidance(self):
        config = OllamaConfig(base_url="http://127.0.0.1:1", dimension=DIM)
        async with OllamaEmbedder(config) as unreachable:
            with pytest.raises(EmbeddingServiceError) as exc_info:
                await unreachable.embed("hello")
        assert "ollama serve" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_batch_preserves_input_order(self, ollama, embedder):
        ollama.delay = 0.05
        texts = ["a" * n for n in range(1, 11)]
        progress = []

        vectors = await embedder.embed_batch(texts, on_progress=lambda done, total: progress.append((done, total)))

        assert [int(v[0]) for v in vectors] == list(range(1, 11))
        assert progress[-1] == (10, 10)
        assert len(progress) == 10

    @pytest.mark.asyncio
    async def test_batch_respects_concurrency_limit(self, ollama, embedder):
        ollama.delay = 0.05
        await embedder.embed_batch([f"text {i}" for i in range(12)])
        assert 1 <= ollama.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_batch_fails_fast(self, ollama, embedder):
        ollama.fail_prompts.add("bad")
        with pytest.raises(EmbeddingServiceError):
            await embedder.embed_batch(["ok one", "bad", "ok two", "ok three"])

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_requests(self, ollama, embedder):
        assert await embedder.embed_batch([]) == []
        assert ollama.payloads == []

    @pytest.mark.asyncio
    async def test_probes(self, ollama, embedder):
        assert await embedder.check_connection() is True
        assert await embedder.check_model_available() is True

        ollama.models = [{"name": "llama3:8b"}]
        assert await embedder.check_model_available() is False

    @pytest.mark.asyncio
    async def test_probes_never_raise_when_unreachable(self):
        config = OllamaConfig(base_url="http://127.0.0.1:1", dimension=DIM)
        async with OllamaEmbedder(config) as unreachable:
            assert await unreachable.check_connection() is False
            assert await unreachable.check_model_available() is False
