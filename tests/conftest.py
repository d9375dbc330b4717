from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from clusterdispatch.config.settings import LaunchConfig, RetryConfig, SchedulerConfig
from clusterdispatch.errors import StorageFailure
from clusterdispatch.executor.backend import ExecutionBackend
from clusterdispatch.executor.engine import DriverRegistry
from clusterdispatch.models import Command, DriverDescription, DriverState
from clusterdispatch.scheduler.facade import SchedulerFacade
from clusterdispatch.storage.blackhole import BlackHolePersistenceEngine
from clusterdispatch.storage.interfaces import PersistenceEngine

REPO_ROOT = Path(__file__).resolve().parents[1]
T0 = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class MemoryPersistenceEngine(PersistenceEngine):
    """Keeps documents in a dict; `fail` makes every call raise StorageFailure."""

    def __init__(self) -> None:
        self.docs: dict[str, dict] = {}
        self.counters: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise StorageFailure("store unavailable")

    def persist(self, state: DriverState) -> None:
        self._check()
        self.docs[state.submission_id] = state.to_document()

    def read(self, submission_id: str) -> DriverState | None:
        self._check()
        doc = self.docs.get(submission_id)
        return DriverState.from_document(doc) if doc is not None else None

    def read_all(self) -> list[DriverState]:
        self._check()
        return sorted((DriverState.from_document(d) for d in self.docs.values()), key=lambda d: d.sequence)

    def expunge(self, submission_id: str) -> None:
        self._check()
        self.docs.pop(submission_id, None)

    def read_counters(self) -> dict[str, int]:
        self._check()
        return dict(self.counters)

    def persist_counters(self, counters: dict[str, int]) -> None:
        self._check()
        for name, value in counters.items():
            self.counters[name] = max(self.counters.get(name, 0), value)


class RecordingBackend(ExecutionBackend):
    def __init__(self) -> None:
        self.kills: list[str] = []

    def kill_driver(self, submission_id: str, launch_handle: dict[str, str] | None) -> None:
        self.kills.append(submission_id)


def make_scheduler_config(**overrides) -> SchedulerConfig:
    retry = overrides.pop(
        "retry", RetryConfig(max_retries=2, initial_backoff_seconds=1, max_backoff_seconds=4)
    )
    values = dict(
        instance_id="test",
        max_queued_drivers=200,
        retained_drivers=200,
        poll_interval_seconds=0.01,
        retry_loop_enabled=True,
        retry=retry,
    )
    values.update(overrides)
    return SchedulerConfig(**values)


LAUNCH = LaunchConfig(executable="./bin/spark-submit", master="mesos://localhost:5050")


def make_description(name: str = "d1", **overrides) -> DriverDescription:
    values = dict(
        name=name,
        jar_url="jar",
        mem_mb=1000,
        cores=1,
        supervise=True,
        command=Command(main_class="mainClass", arguments=("arg",)),
        properties={},
        submission_date=T0,
    )
    values.update(overrides)
    return DriverDescription(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryPersistenceEngine:
    return MemoryPersistenceEngine()


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def registry_factory(clock: FakeClock, backend: RecordingBackend) -> Callable[..., DriverRegistry]:
    def _make(engine: PersistenceEngine | None = None, **config_overrides) -> DriverRegistry:
        return DriverRegistry(
            engine=engine if engine is not None else BlackHolePersistenceEngine(),
            config=make_scheduler_config(**config_overrides),
            launch=LAUNCH,
            backend=backend,
            clock=clock,
        )

    return _make


@pytest.fixture
def registry(registry_factory, store: MemoryPersistenceEngine) -> DriverRegistry:
    reg = registry_factory(store)
    reg.recover()
    return reg


@pytest.fixture
def facade(registry_factory) -> SchedulerFacade:
    f = SchedulerFacade(registry_factory(BlackHolePersistenceEngine()))
    f.initialize()
    return f
