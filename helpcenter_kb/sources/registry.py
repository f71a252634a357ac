"""Source registry for helpcenter-kb.

Keeps the configured help-center sources in order and mirrors them into the
store's ``sources`` table.
"""

import logging
from typing import Dict, Iterable, List, Optional

from helpcenter_kb.config.settings import AppConfig, SourceConfig
from helpcenter_kb.errors import ConfigError

logger = logging.getLogger(__name__)


class SourceRegistry:
    """In-memory view of the configured sources."""

    def __init__(self, config: AppConfig):
        """Initialize registry.

        Args:
            config: Validated application config; its sources are copied, the
                    config object itself is not mutated
        """
        self._config = config
        self._sources: Dict[str, SourceConfig] = {s.id: s for s in config.sources}

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def all(self) -> List[SourceConfig]:
        return list(self._sources.values())

    def enabled(self) -> List[SourceConfig]:
        return [s for s in self._sources.values() if s.enabled]

    def get(self, source_id: str) -> Optional[SourceConfig]:
        return self._sources.get(source_id)

    def add(self, source: SourceConfig) -> SourceConfig:
        """Add a new source.

        Raises:
            ConfigError: if a source with the same id is already configured
        """
        if source.id in self._sources:
            raise ConfigError(f"Source '{source.id}' already exists")
        self._sources[source.id] = source
        logger.info(f"Added source {source.id} ({source.base_url})")
        return source

    def remove(self, source_id: str) -> SourceConfig:
        """Remove a source from the registry and return it.

        Raises:
            ConfigError: if the id is unknown
        """
        if source_id not in self._sources:
            raise ConfigError(f"Source '{source_id}' not found")
        source = self._sources.pop(source_id)
        logger.info(f"Removed source {source_id}")
        return source

    def set_enabled(self, source_id: str, enabled: bool) -> SourceConfig:
        if source_id not in self._sources:
            raise ConfigError(f"Source '{source_id}' not found")
        updated = self._sources[source_id].model_copy(update={"enabled": enabled})
        self._sources[source_id] = updated
        return updated

    def select(self, source_ids: Optional[Iterable[str]] = None) -> List[SourceConfig]:
        """Sources to sync: the named ones, or every enabled source when none are named.

        Raises:
            ConfigError: if any named id is unknown
        """
        if not source_ids:
            return self.enabled()

        source_ids = list(source_ids)
        unknown = [sid for sid in source_ids if sid not in self._sources]
        if unknown:
            available = ", ".join(self._sources) or "none"
            raise ConfigError(f"Unknown source(s): {', '.join(unknown)} (available: {available})")
        return [self._sources[sid] for sid in source_ids]

    def to_config(self) -> AppConfig:
        """Return a copy of the application config carrying the registry's sources."""
        return self._config.model_copy(update={"sources": self.all()})

    async def register_all(self, store) -> int:
        """Upsert every configured source into the store; sync markers are kept."""
        for source in self._sources.values():
            await store.upsert_source(source)
        logger.debug(f"Registered {len(self._sources)} sources in the store")
        return len(self._sources)
