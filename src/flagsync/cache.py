from __future__ import annotations
import enum
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable

from .model import ProjectConfig


logger = logging.getLogger(__name__)


class ConfigCache(ABC):
    """
    A user supplied cache that persists serialized config records, e.g. to
    share them between processes. Both methods may be plain functions or
    coroutine functions.
    """

    @abstractmethod
    def get(self, key: str) -> str | None | Awaitable[str | None]: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None | Awaitable[None]: ...


class CacheSyncResult(enum.Enum):
    # The external cache returned the same content as last time (or failed).
    UNCHANGED = "unchanged"
    # The external cache returned different content, now the local one.
    CHANGED = "changed"
    # The external cache holds no record.
    ABSENT = "absent"


class InMemoryConfigCache:
    """
    The local config store used when no external cache is configured.
    """

    def __init__(self):
        self._config = ProjectConfig.EMPTY

    @property
    def local_cached_config(self) -> ProjectConfig:
        return self._config

    async def get(self, key: str) -> tuple[CacheSyncResult, ProjectConfig]:
        return CacheSyncResult.UNCHANGED, self._config

    async def set(self, key: str, config: ProjectConfig):
        self._config = config


class ExternalConfigCache:
    """
    Wraps a ConfigCache and keeps a local copy of the last record read from
    or written to it. Failures of the external cache are logged and the
    local copy is used instead.
    """

    def __init__(self, cache: ConfigCache):
        self._cache = cache
        self._config = ProjectConfig.EMPTY
        self._serialized: str | None = None

    @property
    def local_cached_config(self) -> ProjectConfig:
        return self._config

    async def get(self, key: str) -> tuple[CacheSyncResult, ProjectConfig]:
        try:
            value = self._cache.get(key)
            if inspect.isawaitable(value):
                value = await value
        except Exception:
            logger.exception("Error while reading the cache")
            return CacheSyncResult.UNCHANGED, self._config

        if not value:
            return CacheSyncResult.ABSENT, self._config
        if value == self._serialized:
            return CacheSyncResult.UNCHANGED, self._config

        try:
            config = ProjectConfig.deserialize(value)
        except ValueError:
            logger.exception("Error while reading the cache")
            return CacheSyncResult.UNCHANGED, self._config

        previous = self._config
        self._config = config
        self._serialized = value
        if ProjectConfig.content_equals(config, previous):
            # Only the fetch time moved, e.g. another process got a 304.
            return CacheSyncResult.UNCHANGED, config
        return CacheSyncResult.CHANGED, config

    async def set(self, key: str, config: ProjectConfig):
        self._config = config
        if config.is_empty:
            # Empty records only keep their timestamp locally.
            self._serialized = None
            return
        self._serialized = config.serialize()
        try:
            result = self._cache.set(key, self._serialized)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Error while writing the cache")


type ConfigStore = InMemoryConfigCache | ExternalConfigCache
