"""Sources package for helpcenter-kb.

Provides the registry of configured help-center sources.
"""

from .registry import SourceRegistry

__all__ = [
    'SourceRegistry',
]
