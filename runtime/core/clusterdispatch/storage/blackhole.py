"""Non-durable persistence engine.

Used when durability is explicitly not required (tests, single-node best
effort). Nothing survives a restart.
"""

from __future__ import annotations

from clusterdispatch.models import DriverState
from clusterdispatch.storage.interfaces import PersistenceEngine


class BlackHolePersistenceEngine(PersistenceEngine):
    def persist(self, state: DriverState) -> None:
        pass

    def read(self, submission_id: str) -> DriverState | None:
        return None

    def read_all(self) -> list[DriverState]:
        return []

    def expunge(self, submission_id: str) -> None:
        pass

    def read_counters(self) -> dict[str, int]:
        return {}

    def persist_counters(self, counters: dict[str, int]) -> None:
        pass
