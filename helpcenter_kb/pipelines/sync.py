"""Incremental sync of help-center sources into the knowledge base.

One pass per source: fetch the full listing, diff it against stored update
times, normalize/chunk/embed only what changed, then commit replacements,
deletions and the new sync marker in a single store transaction.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from helpcenter_kb.config.settings import SourceConfig, SyncConfig
from helpcenter_kb.errors import KnowledgeBaseError, format_error
from helpcenter_kb.indexer.embeddings import OllamaEmbedder
from helpcenter_kb.indexer.models import ArticleSummary, PreparedArticle
from helpcenter_kb.indexer.store import KnowledgeBaseStore
from helpcenter_kb.pipelines.chunker import Chunker
from helpcenter_kb.pipelines.fetcher import FetchedSource, HelpCenterArticle, HelpCenterClient
from helpcenter_kb.pipelines.normalizer import html_to_text

logger = logging.getLogger(__name__)


@dataclass
class SyncProgress:
    phase: str
    current: int
    total: int
    message: str


@dataclass
class SyncResult:
    """Outcome of one source's sync pass."""
    source_id: str
    source_name: str
    articles_fetched: int = 0
    articles_processed: int = 0
    articles_deleted: int = 0
    chunks_created: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def up_to_date(self) -> bool:
        return self.ok and self.articles_processed == 0 and self.articles_deleted == 0


ProgressCallback = Callable[[SyncProgress], None]
MultiProgressCallback = Callable[[str, SyncProgress], None]


class SyncCoordinator:
    """Drives fetch, diff, normalize, chunk, embed and commit for each source.

    The coordinator borrows its store, client and embedder; their lifecycles
    belong to the caller.
    """

    def __init__(self, store: KnowledgeBaseStore, client: HelpCenterClient,
                 embedder: OllamaEmbedder, sync_config: Optional[SyncConfig] = None):
        self.store = store
        self.client = client
        self.embedder = embedder
        self.sync_config = sync_config or SyncConfig()
        self.chunker = Chunker(
            target_size=self.sync_config.chunk_size,
            overlap=self.sync_config.chunk_overlap,
        )

    async def sync_source(self, source: SourceConfig,
                          on_progress: Optional[ProgressCallback] = None,
                          full_resync: bool = False) -> SyncResult:
        """Run one sync pass for a source.

        Errors propagate; nothing is written unless the final commit succeeds,
        apart from registering the source row itself.
        """
        def emit(phase: str, current: int, total: int, message: str):
            if on_progress:
                on_progress(SyncProgress(phase=phase, current=current, total=total, message=message))

        start = time.monotonic()
        result = SyncResult(source_id=source.id, source_name=source.name)
        logger.info(f"Syncing {source.name} ({source.id}){' [full resync]' if full_resync else ''}")

        await self.store.upsert_source(source)

        # Fetch
        emit('fetching', 0, 0, f"Fetching articles from {source.name}...")
        fetched = await self.client.fetch_source(
            source,
            on_progress=lambda count: emit('fetching', count, count,
                                           f"Fetched {count} articles from {source.name}..."),
        )
        result.articles_fetched = len(fetched.articles)

        # Diff
        summaries = [ArticleSummary(id=a.id, updated_at=a.updated_at) for a in fetched.articles]
        diff = await self.store.get_stale_articles(source.id, summaries, full_resync=full_resync)

        if diff.is_empty:
            emit('storing', result.articles_fetched, result.articles_fetched, "All articles are up to date.")
            result.elapsed_seconds = time.monotonic() - start
            logger.info(f"{source.name} is up to date ({result.articles_fetched} articles)")
            return result

        to_process = [a for a in fetched.articles if a.id in diff.to_process]

        # Normalize and chunk
        chunked = self._chunk_articles(to_process, emit)

        # Embed
        texts = [chunk.text for _, chunks in chunked for chunk in chunks]
        emit('embedding', 0, len(texts), f"Generating embeddings for {len(texts)} chunks...")
        embeddings = await self.embedder.embed_batch(
            texts,
            on_progress=lambda done, total: emit('embedding', done, total,
                                                 f"Generated {done}/{total} embeddings..."),
        )

        prepared = self._prepare(chunked, embeddings, fetched)

        # Commit
        emit('storing', 0, len(prepared), "Storing articles and chunks...")
        summary = await self.store.commit_source_sync(
            source.id, prepared, fresh_ids=[a.id for a in fetched.articles]
        )
        emit('storing', len(prepared), len(prepared), "Sync complete.")

        result.articles_processed = summary.articles_upserted
        result.articles_deleted = summary.articles_deleted
        result.chunks_created = summary.chunks_created
        result.elapsed_seconds = time.monotonic() - start

        logger.info(f"Synced {source.name}: {result.articles_fetched} fetched, "
                    f"{result.articles_processed} processed, {result.articles_deleted} deleted, "
                    f"{result.chunks_created} chunks in {result.elapsed_seconds:.1f}s")
        return result

    def _chunk_articles(self, articles: List[HelpCenterArticle], emit):
        chunked = []
        total = len(articles)
        emit('parsing', 0, total, f"Processing {total} articles...")

        for i, article in enumerate(articles, 1):
            text = html_to_text(article.body)
            chunks = self.chunker.split(text, article.title)
            chunked.append((article, chunks))
            emit('chunking', i, total, f"Chunked {i}/{total} articles...")

        return chunked

    @staticmethod
    def _prepare(chunked, embeddings, fetched: FetchedSource) -> List[PreparedArticle]:
        prepared = []
        offset = 0
        for article, chunks in chunked:
            article_embeddings = embeddings[offset:offset + len(chunks)]
            offset += len(chunks)
            prepared.append(PreparedArticle(
                id=article.id,
                title=article.title,
                url=article.html_url,
                updated_at=article.updated_at,
                chunks=chunks,
                embeddings=article_embeddings,
                section_name=fetched.section_name(article),
                category_name=fetched.category_name(article),
            ))
        return prepared

    async def sync_all(self, sources: Iterable[SourceConfig],
                       on_progress: Optional[MultiProgressCallback] = None,
                       full_resync: bool = False) -> List[SyncResult]:
        """Sync enabled sources one after another.

        A failing source is logged and reported on its result; the remaining
        sources still run. Disabled sources are skipped.
        """
        results = []
        for source in sources:
            if not source.enabled:
                logger.debug(f"Skipping disabled source {source.id}")
                continue

            callback = None
            if on_progress:
                callback = (lambda sid: lambda progress: on_progress(sid, progress))(source.id)

            start = time.monotonic()
            try:
                result = await self.sync_source(source, on_progress=callback, full_resync=full_resync)
            except KnowledgeBaseError as e:
                logger.error(f"Sync failed for {source.name}: {format_error(e)}", exc_info=True)
                result = SyncResult(
                    source_id=source.id,
                    source_name=source.name,
                    elapsed_seconds=time.monotonic() - start,
                    error=format_error(e),
                )
            results.append(result)

        return results
