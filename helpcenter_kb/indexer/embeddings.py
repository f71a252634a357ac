# helpcenter-kb Embeddings Module
# Computes passage and query vectors through an Ollama embedding endpoint

import asyncio
import logging
from typing import Callable, List, Optional

import aiohttp
import numpy as np

from helpcenter_kb.config.settings import OllamaConfig
from helpcenter_kb.errors import EmbeddingModelError, EmbeddingServiceError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class OllamaEmbedder:
    """Fixed-dimension embeddings from an Ollama server, with bounded concurrency."""

    def __init__(self, config: OllamaConfig, concurrency: int = 5,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize embedder

        Args:
            config: Embedding service settings (base URL, model, dimension, timeout)
            concurrency: Maximum number of embedding requests in flight
            session: Existing session to use; the embedder will not close it
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.config = config
        self.concurrency = concurrency
        self.session = session
        self._owns_session = session is None

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def dimension(self) -> int:
        return self.config.dimension

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self.session

    def _unreachable(self, error: Exception) -> EmbeddingServiceError:
        return EmbeddingServiceError(
            f"Cannot connect to Ollama at {self.config.base_url} ({error})\n\n"
            f"Make sure Ollama is running:\n"
            f"  ollama serve\n\n"
            f"Or update ollama.base_url in your config."
        )

    async def embed(self, text: str) -> np.ndarray:
        """Generate the embedding for a single text.

        Raises:
            EmbeddingServiceError: endpoint unreachable or answering with an error status
            EmbeddingModelError: model unknown to Ollama, or a missing or wrong-dimension vector
        """
        session = self._ensure_session()
        url = f"{self.config.base_url}/api/embeddings"
        payload = {"model": self.config.model, "prompt": text}

        try:
            async with session.post(url, json=payload) as response:
                if response.status == 404:
                    error_text = await response.text()
                    raise EmbeddingModelError(
                        f"Model '{self.config.model}' is not available at {self.config.base_url} "
                        f"({error_text.strip()}). Pull it with: ollama pull {self.config.model}"
                    )
                if response.status >= 400:
                    error_text = await response.text()
                    raise EmbeddingServiceError(
                        f"Ollama API error ({response.status}): {error_text.strip()}"
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise self._unreachable(e) from e
        except aiohttp.ClientError as e:
            raise EmbeddingServiceError(f"Ollama request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise EmbeddingServiceError(
                f"Timed out after {self.config.request_timeout}s waiting for Ollama at {self.config.base_url}"
            ) from e
        except ValueError as e:
            raise EmbeddingServiceError(f"Invalid JSON response from Ollama: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingModelError(
                f"Invalid embedding response from Ollama for model '{self.config.model}'"
            )

        if len(embedding) != self.config.dimension:
            raise EmbeddingModelError(
                f"Expected {self.config.dimension}-dimensional embedding, got {len(embedding)}. "
                f"Make sure '{self.config.model}' is a {self.config.dimension}-dimension embedding model "
                f"(e.g. nomic-embed-text)."
            )

        return np.asarray(embedding, dtype=np.float32)

    async def embed_batch(self, texts: List[str],
                          on_progress: Optional[ProgressCallback] = None) -> List[np.ndarray]:
        """Embed many texts with at most ``concurrency`` requests in flight.

        Workers pull indices from one shared cursor and write into a pre-sized
        slot list, so the output order matches ``texts`` whatever order requests
        finish in. The first failure cancels the remaining workers and is
        re-raised; no partial result is returned.
        """
        if not texts:
            return []

        total = len(texts)
        results: List[Optional[np.ndarray]] = [None] * total
        cursor = iter(range(total))
        completed = 0

        async def worker():
            nonlocal completed
            for index in cursor:
                results[index] = await self.embed(texts[index])
                completed += 1
                if on_progress:
                    on_progress(completed, total)

        logger.info(f"Generating {total} embeddings with model {self.config.model} "
                    f"(concurrency={self.concurrency})")

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, total))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        logger.info(f"Generated {total} embeddings")
        return results

    async def check_connection(self) -> bool:
        """Return True if the Ollama server answers; never raises."""
        session = self._ensure_session()
        try:
            async with session.get(f"{self.config.base_url}/api/tags") as response:
                return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Ollama connectivity check failed: {e}")
            return False

    async def check_model_available(self) -> bool:
        """Return True if the configured model is installed on the server; never raises."""
        session = self._ensure_session()
        try:
            async with session.get(f"{self.config.base_url}/api/tags") as response:
                if not 200 <= response.status < 300:
                    return False
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"Ollama model check failed: {e}")
            return False

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return False

        model = self.config.model
        return any(
            isinstance(m, dict) and (m.get("name") == model or str(m.get("name", "")).startswith(f"{model}:"))
            for m in models
        )
