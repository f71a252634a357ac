"""Shared fixtures for the helpcenter-kb test suite."""

import hashlib
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import numpy as np
import pytest
import pytest_asyncio

from helpcenter_kb.config.settings import SourceConfig, SyncConfig
from helpcenter_kb.errors import EmbeddingServiceError
from helpcenter_kb.indexer.store import KnowledgeBaseStore
from helpcenter_kb.pipelines.fetcher import FetchedSource, HelpCenterArticle, HelpCenterSection

DIM = 8


def unit_vector(*components: float, dim: int = DIM) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float32)
    vector[:len(components)] = components
    return vector


def text_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Deterministic pseudo-embedding derived from the text's hash."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
    values = np.random.default_rng(seed).random(dim).astype(np.float32) + 0.1
    return values / np.linalg.norm(values)


def ts(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class FakeEmbedder:
    """Stands in for OllamaEmbedder; counts calls and can be told to fail."""

    def __init__(self, dim: int = DIM, vector_for: Optional[Callable[[str], np.ndarray]] = None):
        self.dim = dim
        self.vector_for = vector_for or (lambda text: text_vector(text, dim))
        self.embed_calls: List[str] = []
        self.batch_calls = 0
        self.fail_with: Optional[Exception] = None

    async def embed(self, text: str) -> np.ndarray:
        if self.fail_with:
            raise self.fail_with
        self.embed_calls.append(text)
        return self.vector_for(text)

    async def embed_batch(self, texts, on_progress=None):
        self.batch_calls += 1
        vectors = []
        for i, text in enumerate(texts, 1):
            vectors.append(await self.embed(text))
            if on_progress:
                on_progress(i, len(texts))
        return vectors

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class FakeHelpCenter:
    """In-memory stand-in for HelpCenterClient keyed by source id."""

    def __init__(self):
        self.listings: Dict[str, FetchedSource] = {}
        self.fetch_calls = 0
        self.fail_for: Dict[str, Exception] = {}

    def publish(self, source_id: str, articles: List[HelpCenterArticle],
                sections: Optional[Dict[int, HelpCenterSection]] = None,
                categories: Optional[Dict[int, str]] = None):
        self.listings[source_id] = FetchedSource(
            articles=list(articles),
            sections=sections or {},
            categories=categories or {},
        )

    async def fetch_source(self, source, on_progress=None) -> FetchedSource:
        self.fetch_calls += 1
        if source.id in self.fail_for:
            raise self.fail_for[source.id]
        fetched = self.listings.get(source.id, FetchedSource(articles=[]))
        if on_progress:
            on_progress(len(fetched.articles))
        return fetched

    async def test_connection(self, source) -> bool:
        return source.id in self.listings

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def make_article(article_id: int, title: str, body: str,
                 updated_at: str = "2024-01-01T00:00:00", section_id: Optional[int] = None,
                 base_url: str = "https://support.acme.test") -> HelpCenterArticle:
    return HelpCenterArticle(
        id=article_id,
        title=title,
        body=body,
        section_id=section_id,
        updated_at=ts(updated_at),
        html_url=f"{base_url}/hc/en-us/articles/{article_id}",
    )


@pytest.fixture
def acme_source() -> SourceConfig:
    return SourceConfig(id="acme", name="Acme Support", base_url="https://support.acme.test", locale="en-us")


@pytest.fixture
def small_sync_config() -> SyncConfig:
    return SyncConfig(chunk_size=60, chunk_overlap=10)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def failing_embedder() -> FakeEmbedder:
    embedder = FakeEmbedder()
    embedder.fail_with = EmbeddingServiceError("Cannot connect to Ollama")
    return embedder


@pytest.fixture
def fake_help_center() -> FakeHelpCenter:
    return FakeHelpCenter()


@pytest_asyncio.fixture
async def store(tmp_path):
    kb_store = KnowledgeBaseStore(str(tmp_path / "kb.sqlite"), dimension=DIM)
    await kb_store.initialize()
    yield kb_store
    await kb_store.close()


@pytest.fixture
def kb_home(tmp_path, monkeypatch):
    """Point config and data directories at a temporary root."""
    monkeypatch.setenv("KB_HOME", str(tmp_path / "kb-home"))
    for name in ("KB_OLLAMA_BASE_URL", "KB_OLLAMA_MODEL", "KB_LOG_LEVEL", "KB_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "kb-home"
