"""Indexer package for helpcenter-kb.

Embedding generation, the SQLite/sqlite-vec store and semantic search.
"""

from .embeddings import OllamaEmbedder
from .search import SearchEngine, SearchResult, deduplicate_results, format_results_markdown
from .store import KnowledgeBaseStore, diff_articles

__all__ = [
    'KnowledgeBaseStore',
    'OllamaEmbedder',
    'SearchEngine',
    'SearchResult',
    'deduplicate_results',
    'diff_articles',
    'format_results_markdown',
]
