"""Persistence engine interface.

The scheduler keeps its driver collections in memory; this interface defines
the durability boundary used to rebuild them after a restart.

Concrete engines live in `storage/` (black-hole and SQLite) and are selected
from configuration by `storage.factory.open_persistence_engine`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from clusterdispatch.models import DriverState


class PersistenceEngine(ABC):
    """Every method may raise StorageFailure."""

    @abstractmethod
    def persist(self, state: DriverState) -> None:
        """Insert or replace the record keyed by state.submission_id."""

    @abstractmethod
    def read(self, submission_id: str) -> DriverState | None:
        """Fetch one record, or None when absent."""

    @abstractmethod
    def read_all(self) -> list[DriverState]:
        """All records, ordered by queue ticket."""

    @abstractmethod
    def expunge(self, submission_id: str) -> None:
        """Delete a record. Deleting an absent record is not an error."""

    @abstractmethod
    def read_counters(self) -> dict[str, int]:
        """Stored counter high-water marks; empty when none were recorded."""

    @abstractmethod
    def persist_counters(self, counters: dict[str, int]) -> None:
        """Record counter values. A stored value never decreases."""

    def close(self) -> None:
        """Release backend resources."""
