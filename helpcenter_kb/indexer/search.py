"""Semantic search over the local knowledge base."""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from helpcenter_kb.indexer.embeddings import OllamaEmbedder
from helpcenter_kb.indexer.store import KnowledgeBaseStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
MAX_LIMIT = 20


@dataclass
class SearchResult:
    """One ranked passage with the article it belongs to."""
    title: str
    url: str
    excerpt: str
    source_id: str
    relevance: float
    article_id: int
    chunk_id: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def distance_to_relevance(distance: float) -> float:
    """Map cosine distance (0 identical, 2 opposite) onto a [0, 1] relevance."""
    return max(0.0, min(1.0, 1.0 - distance / 2.0))


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def deduplicate_results(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Keep the most relevant passage per article URL, sorted by relevance."""
    best: Dict[str, SearchResult] = {}
    for result in results:
        current = best.get(result.url)
        if current is None or result.relevance > current.relevance:
            best[result.url] = result
    return sorted(best.values(), key=lambda r: r.relevance, reverse=True)


def format_results_markdown(results: Sequence[SearchResult], query: Optional[str] = None) -> str:
    """Render results as markdown for tool responses and terminal output."""
    if not results:
        if query:
            return f'No results found for "{query}".'
        return "No results found."

    lines = []
    if query:
        lines.append(f'Found {len(results)} result(s) for "{query}":')
        lines.append("")

    for position, result in enumerate(results, 1):
        lines.append(f"## {position}. {result.title}")
        lines.append(f"**Source:** {result.source_id} | **Relevance:** {result.relevance:.0%}")
        lines.append(f"**URL:** {result.url}")
        lines.append("")
        lines.append(result.excerpt)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


class SearchEngine:
    """Embeds a query and runs a nearest-neighbour lookup against the store.

    The store and embedder are shared with the sync path; this class owns
    neither and never closes them.
    """

    def __init__(self, store: KnowledgeBaseStore, embedder: OllamaEmbedder):
        self.store = store
        self.embedder = embedder

    async def search(self, query: str, limit: Optional[int] = DEFAULT_LIMIT,
                     sources: Optional[Sequence[str]] = None,
                     deduplicate: bool = False) -> List[SearchResult]:
        """Return passages ranked by descending relevance.

        Args:
            query: Free-text query
            limit: Number of passages to return, capped at 20
            sources: Restrict results to these source ids
            deduplicate: Keep only the best passage per article URL

        Raises:
            ValueError: if the query is blank
            EmbeddingServiceError: if the query cannot be embedded
            StorageError: if the vector lookup fails
        """
        if not query or not query.strip():
            raise ValueError("Query must not be empty")

        limit = clamp_limit(limit)
        source_ids = list(sources) if sources else None

        embedding = await self.embedder.embed(query.strip())
        hits = await self.store.search_similar_chunks(embedding, limit=limit, source_ids=source_ids)

        results = [
            SearchResult(
                title=hit.title,
                url=hit.url,
                excerpt=collapse_whitespace(hit.text),
                source_id=hit.source_id,
                relevance=distance_to_relevance(hit.distance),
                article_id=hit.article_id,
                chunk_id=hit.chunk_id,
            )
            for hit in hits
        ]

        if deduplicate:
            results = deduplicate_results(results)

        logger.debug(f"Search returned {len(results)} results (limit={limit}, sources={source_ids})")
        return results
