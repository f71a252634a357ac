"""Pipelines package for helpcenter-kb.

Provides fetching, normalization and chunking of help-center articles. The
sync coordinator lives in ``helpcenter_kb.pipelines.sync``.
"""

from .chunker import Chunker, TextChunk, chunk_text, estimate_token_count
from .fetcher import (
    FetchedSource,
    HelpCenterArticle,
    HelpCenterClient,
    HelpCenterSection,
    RetryPolicy,
)
from .normalizer import html_to_text

__all__ = [
    # Chunker
    'Chunker',
    'TextChunk',
    'chunk_text',
    'estimate_token_count',

    # Fetcher
    'FetchedSource',
    'HelpCenterArticle',
    'HelpCenterClient',
    'HelpCenterSection',
    'RetryPolicy',

    # Normalizer
    'html_to_text',
]
