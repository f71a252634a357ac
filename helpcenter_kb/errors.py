"""Error taxonomy for helpcenter-kb."""

from typing import Optional


class KnowledgeBaseError(Exception):
    """Base class for all helpcenter-kb failures."""


class ConfigError(KnowledgeBaseError):
    """Configuration file missing, unreadable or invalid."""


class FetchError(KnowledgeBaseError):
    """Network or HTTP failure against a source's content API."""

    def __init__(self, message: str, source: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status = status


class RateLimitError(FetchError):
    """The origin kept answering 429 after every retry was used up."""


class EmbeddingServiceError(KnowledgeBaseError):
    """Embedding endpoint unreachable or returned an error."""


class EmbeddingModelError(EmbeddingServiceError):
    """Embedding endpoint answered, but not with a usable vector for the configured model."""


class StorageError(KnowledgeBaseError):
    """Schema setup or transaction failure in the local store."""


def format_error(error: BaseException) -> str:
    """Render an exception as a message fit for the terminal."""
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return message
