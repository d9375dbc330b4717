"""Select the persistence engine named by configuration."""

from __future__ import annotations

from clusterdispatch.config.settings import StorageConfig
from clusterdispatch.errors import ConfigurationError
from clusterdispatch.storage.blackhole import BlackHolePersistenceEngine
from clusterdispatch.storage.interfaces import PersistenceEngine
from clusterdispatch.storage.sqlite import SQLitePersistenceEngine


def open_persistence_engine(config: StorageConfig) -> PersistenceEngine:
    if config.driver == "blackhole":
        return BlackHolePersistenceEngine()
    if config.driver == "sqlite":
        return SQLitePersistenceEngine.open(config.sqlite_path, timeout_seconds=config.sqlite_timeout_seconds)
    raise ConfigurationError(f"Unknown storage driver: {config.driver} (expected blackhole|sqlite)")
