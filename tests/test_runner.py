from __future__ import annotations

import time

from clusterdispatch.scheduler.facade import SchedulerFacade
from clusterdispatch.scheduler.runner import RetryLoop

from conftest import MemoryPersistenceEngine, make_description, make_scheduler_config


def _retrying_driver(facade: SchedulerFacade) -> str:
    sid = facade.submit(make_description(supervise=True)).submission_id
    facade.on_offer_accepted(sid)
    facade.on_terminated(sid, "FAILED")
    return sid


def test_run_once_promotes_due_drivers(facade: SchedulerFacade, clock) -> None:
    sid = _retrying_driver(facade)
    loop = RetryLoop(config=make_scheduler_config(), facade=facade)
    assert loop.run_once() == []
    clock.advance(1)
    assert loop.run_once() == [sid]
    assert [d.submission_id for d in facade.snapshot().queued] == [sid]


def test_run_once_tolerates_storage_failure(registry_factory, clock) -> None:
    store = MemoryPersistenceEngine()
    facade = SchedulerFacade(registry_factory(store))
    facade.initialize()
    sid = _retrying_driver(facade)
    clock.advance(1)

    loop = RetryLoop(config=make_scheduler_config(), facade=facade)
    store.fail = True
    assert loop.run_once() == []
    assert facade.snapshot().retrying[0].submission_id == sid

    store.fail = False
    assert loop.run_once() == [sid]


def test_run_once_before_ready_does_nothing(registry_factory) -> None:
    facade = SchedulerFacade(registry_factory())
    assert RetryLoop(config=make_scheduler_config(), facade=facade).run_once() == []


def test_background_loop_starts_and_stops(facade: SchedulerFacade, clock) -> None:
    sid = _retrying_driver(facade)
    clock.advance(1)
    loop = RetryLoop(config=make_scheduler_config(poll_interval_seconds=0.01), facade=facade)
    loop.start()
    try:
        deadline = time.monotonic() + 5
        while not facade.snapshot().queued and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        loop.stop(timeout=5)
    assert [d.submission_id for d in facade.snapshot().queued] == [sid]


def test_disabled_loop_returns_immediately(facade: SchedulerFacade) -> None:
    loop = RetryLoop(config=make_scheduler_config(retry_loop_enabled=False), facade=facade)
    loop.run_forever()
