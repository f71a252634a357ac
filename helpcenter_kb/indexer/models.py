"""Record types shared by the store, the sync pipeline and search."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set

import numpy as np

from helpcenter_kb.pipelines.chunker import TextChunk


@dataclass
class SourceRecord:
    id: str
    name: str
    base_url: str
    locale: str
    enabled: bool = True
    last_synced_at: Optional[datetime] = None


@dataclass
class SourceStats:
    source: SourceRecord
    article_count: int = 0
    chunk_count: int = 0


@dataclass
class ArticleRecord:
    id: int
    source_id: str
    title: str
    url: str
    updated_at: datetime
    section_name: Optional[str] = None
    category_name: Optional[str] = None
    synced_at: Optional[datetime] = None


@dataclass
class ChunkRecord:
    id: int
    article_id: int
    source_id: str
    chunk_index: int
    text: str
    token_count: int


@dataclass(frozen=True)
class ArticleSummary:
    """What the staleness diff needs to know about a fetched article."""
    id: int
    updated_at: datetime


@dataclass
class ArticleDiff:
    """Result of comparing a fresh listing against stored state.

    ``to_process`` holds fetched articles that are new or newer than the
    stored copy; ``to_delete`` holds stored articles missing from the listing.
    """
    to_process: Set[int] = field(default_factory=set)
    to_delete: Set[int] = field(default_factory=set)

    @property
    def stale_ids(self) -> Set[int]:
        return self.to_process | self.to_delete

    @property
    def is_empty(self) -> bool:
        return not self.to_process and not self.to_delete


@dataclass
class PreparedArticle:
    """A reprocessed article with its full replacement chunk and vector set."""
    id: int
    title: str
    url: str
    updated_at: datetime
    chunks: List[TextChunk]
    embeddings: List[np.ndarray]
    section_name: Optional[str] = None
    category_name: Optional[str] = None

    def __post_init__(self):
        if len(self.chunks) != len(self.embeddings):
            raise ValueError(
                f"Article {self.id}: {len(self.chunks)} chunks but {len(self.embeddings)} embeddings"
            )


@dataclass
class CommitSummary:
    articles_upserted: int = 0
    chunks_created: int = 0
    articles_deleted: int = 0


@dataclass
class SimilarChunk:
    """Raw nearest-neighbour hit, before scoring and formatting."""
    chunk_id: int
    article_id: int
    source_id: str
    title: str
    url: str
    text: str
    distance: float
