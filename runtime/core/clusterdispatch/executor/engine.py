"""Driver registry: queue, lifecycle transitions and recovery.

The registry:
- Validates DriverDescriptions and issues submission ids
- Keeps drivers in exactly one of queued / launched / retrying / finished
- Applies lifecycle transitions via the state machine
- Persists every new DriverState before it replaces the in-memory one

It is not thread-safe; `scheduler.facade.SchedulerFacade` serializes access.
A StorageFailure raised by the persistence engine aborts the transition and
leaves the collections untouched.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import datetime
from typing import Callable

from clusterdispatch.config.settings import LaunchConfig, SchedulerConfig
from clusterdispatch.errors import ConflictError, NotFoundError, RetryBudgetExhausted, StorageFailure, ValidationError
from clusterdispatch.executor.backend import ExecutionBackend, LoggingExecutionBackend
from clusterdispatch.executor.command import LaunchCommand, build_launch_command
from clusterdispatch.executor.policy import RetryPolicy, enforce_driver_description
from clusterdispatch.executor.state_machine import (
    FAILED,
    FINISHED,
    KILLED,
    LAUNCHED,
    QUEUED,
    RETRYING,
    TransitionRequest,
    apply_transition,
    is_terminal,
)
from clusterdispatch.models import DriverDescription, DriverState, SchedulerState
from clusterdispatch.storage.interfaces import PersistenceEngine
from clusterdispatch.utils import utcnow

logger = logging.getLogger(__name__)

# Outcomes reported by the execution layer for a launched driver.
OUTCOME_FINISHED = "FINISHED"
OUTCOME_FAILED = "FAILED"
OUTCOME_LOST = "LOST"
OUTCOME_KILLED = "KILLED"
TERMINATION_OUTCOMES = (OUTCOME_FINISHED, OUTCOME_FAILED, OUTCOME_LOST, OUTCOME_KILLED)

_ID_NUMBER = re.compile(r"-(\d+)$")

# Keys of the high-water marks kept by the persistence engine.
COUNTER_NEXT_ID = "next_id_number"
COUNTER_NEXT_TICKET = "next_ticket"


class DriverRegistry:
    def __init__(
        self,
        *,
        engine: PersistenceEngine,
        config: SchedulerConfig,
        launch: LaunchConfig,
        backend: ExecutionBackend | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._config = config
        self._launch = launch
        self._backend = backend or LoggingExecutionBackend()
        self._clock = clock
        self._retry_policy = RetryPolicy.from_config(config.retry)

        self._queued: OrderedDict[str, DriverState] = OrderedDict()
        self._launched: dict[str, DriverState] = {}
        self._retrying: dict[str, DriverState] = {}
        self._finished: OrderedDict[str, DriverState] = OrderedDict()

        self._next_id_number = 1
        self._next_ticket = 1

    # -- recovery -----------------------------------------------------------

    def recover(self) -> None:
        """Rebuild the collections from the persistence engine.

        Launched drivers are queued again: their execution handles do not
        survive a restart. A launched driver with a pending kill is recorded
        as KILLED instead.

        Id numbers and tickets resume above both the stored records and the
        stored high-water marks, so numbers of expunged drivers stay retired.
        """
        stored = self._engine.read_all()
        counters = self._engine.read_counters()
        now = self._clock()

        self._queued.clear()
        self._launched.clear()
        self._retrying.clear()
        self._finished.clear()

        self._next_id_number = max(1, counters.get(COUNTER_NEXT_ID, 1))
        self._next_ticket = max(1, counters.get(COUNTER_NEXT_TICKET, 1))

        for d in stored:
            m = _ID_NUMBER.search(d.submission_id)
            if m is not None:
                self._next_id_number = max(self._next_id_number, int(m.group(1)) + 1)
            self._next_ticket = max(self._next_ticket, d.sequence + 1)

        stored.sort(key=lambda d: (d.sequence, d.submission_id))
        relaunch: list[DriverState] = []
        terminal: list[DriverState] = []
        for d in stored:
            if d.status == QUEUED:
                self._queued[d.submission_id] = d
            elif d.status == LAUNCHED:
                relaunch.append(d)
            elif d.status == RETRYING:
                self._retrying[d.submission_id] = d
            elif is_terminal(d.status):
                terminal.append(d)
            else:
                raise StorageFailure(f"Unknown driver status in store for {d.submission_id}: {d.status}")

        for d in relaunch:
            if d.kill_requested:
                killed = apply_transition(d, TransitionRequest(new_state=KILLED, now=now))
                self._engine.persist(killed)
                terminal.append(killed)
                continue
            requeued = d.evolve(
                status=QUEUED,
                sequence=self._next_ticket,
                updated_at=now,
                launch_handle=None,
                kill_requested=False,
            )
            self._engine.persist(requeued)
            self._next_ticket += 1
            self._queued[requeued.submission_id] = requeued

        terminal.sort(key=lambda d: (d.updated_at, d.sequence))
        for d in terminal:
            self._finished[d.submission_id] = d
        self._evict_finished()

        logger.info(
            "registry_recovered queued=%d retrying=%d finished=%d",
            len(self._queued),
            len(self._retrying),
            len(self._finished),
            extra={"event": "registry_recovered"},
        )

    # -- submission ---------------------------------------------------------

    def submit(self, description: DriverDescription) -> DriverState:
        enforce_driver_description(description)
        if len(self._queued) >= self._config.max_queued_drivers:
            raise ConflictError("Already reached maximum submission size")

        now = self._clock()
        number = self._next_id_number
        ticket = self._next_ticket
        # Numbers are consumed even when persisting fails so an id is never handed out twice.
        self._next_id_number += 1
        self._next_ticket += 1

        driver = DriverState(
            submission_id=self._new_submission_id(now, number),
            description=description,
            status=QUEUED,
            sequence=ticket,
            updated_at=now,
        )
        self._engine.persist(driver)
        self._queued[driver.submission_id] = driver
        logger.info("driver_submitted", extra={"event": "driver_submitted", "submission_id": driver.submission_id, "status": QUEUED})
        return driver

    def _new_submission_id(self, now: datetime, number: int) -> str:
        return f"driver-{self._config.instance_id}-{now.strftime('%Y%m%d%H%M%S')}-{number:04d}"

    # -- kill ---------------------------------------------------------------

    def kill(self, submission_id: str) -> str:
        """Kill a driver; return a human readable description of what happened."""
        now = self._clock()

        if submission_id in self._queued:
            killed = apply_transition(self._queued[submission_id], TransitionRequest(new_state=KILLED, now=now))
            self._engine.persist(killed)
            del self._queued[submission_id]
            self._retire(killed, previous=QUEUED)
            return "Removed driver while it's still pending"

        if submission_id in self._retrying:
            killed = apply_transition(self._retrying[submission_id], TransitionRequest(new_state=KILLED, now=now))
            self._engine.persist(killed)
            del self._retrying[submission_id]
            self._retire(killed, previous=RETRYING)
            return "Removed driver while it's being retried"

        if submission_id in self._launched:
            driver = self._launched[submission_id]
            if not driver.kill_requested:
                driver = driver.evolve(kill_requested=True, updated_at=now)
                self._engine.persist(driver)
                self._launched[submission_id] = driver
            try:
                self._backend.kill_driver(submission_id, driver.launch_handle)
            except Exception as e:
                raise ConflictError(f"Execution layer did not accept the kill request: {e}") from e
            logger.info("driver_kill_signalled", extra={"event": "driver_kill_signalled", "submission_id": submission_id, "status": LAUNCHED})
            return "Killing running driver"

        if submission_id in self._finished:
            status = self._finished[submission_id].status
            if status == KILLED:
                return "Driver already killed"
            raise ConflictError(f"Driver already terminated (status={status})")

        raise NotFoundError("Driver", submission_id, "driver not found")

    # -- execution layer callbacks -------------------------------------------

    def on_offer_accepted(self, submission_id: str, launch_handle: dict[str, str] | None = None) -> LaunchCommand:
        driver = self._queued.get(submission_id)
        if driver is None:
            self._require_known(submission_id)
            raise ConflictError(f"Driver {submission_id} is not queued")

        launched = apply_transition(
            driver, TransitionRequest(new_state=LAUNCHED, now=self._clock(), launch_handle=launch_handle)
        )
        command = build_launch_command(submission_id, launched.description, self._launch)
        self._engine.persist(launched)
        del self._queued[submission_id]
        self._launched[submission_id] = launched
        logger.info(
            "driver_launched",
            extra={"event": "driver_launched", "submission_id": submission_id, "status": LAUNCHED, "previous_status": QUEUED},
        )
        return command

    def on_terminated(self, submission_id: str, outcome: str, message: str | None = None) -> DriverState:
        if outcome not in TERMINATION_OUTCOMES:
            raise ValidationError(f"Unknown termination outcome: {outcome} (expected one of {', '.join(TERMINATION_OUTCOMES)})")

        driver = self._launched.get(submission_id)
        if driver is None:
            self._require_known(submission_id)
            raise ConflictError(f"Driver {submission_id} is not launched")

        now = self._clock()
        if driver.kill_requested:
            updated = apply_transition(driver, TransitionRequest(new_state=KILLED, now=now))
        elif outcome == OUTCOME_FINISHED:
            updated = apply_transition(driver, TransitionRequest(new_state=FINISHED, now=now))
        else:
            updated = self._after_failure(driver, outcome, message, now)

        self._engine.persist(updated)
        del self._launched[submission_id]
        if updated.status == RETRYING:
            self._retrying[submission_id] = updated
            logger.warning(
                "driver_retry_scheduled",
                extra={
                    "event": "driver_retry_scheduled",
                    "submission_id": submission_id,
                    "status": RETRYING,
                    "retries": updated.retries,
                },
            )
        else:
            self._retire(updated, previous=LAUNCHED)
        return updated

    def _after_failure(self, driver: DriverState, outcome: str, message: str | None, now: datetime) -> DriverState:
        failure = message or f"driver {outcome.lower()}"
        if not driver.description.supervise:
            # An unrequested kill of an unsupervised driver is still a kill.
            terminal = KILLED if outcome == OUTCOME_KILLED else FAILED
            return apply_transition(driver, TransitionRequest(new_state=terminal, now=now, failure=failure))

        try:
            next_retry_at = self._retry_policy.next_retry_at(driver, now)
        except RetryBudgetExhausted as e:
            return apply_transition(driver, TransitionRequest(new_state=FAILED, now=now, failure=f"{failure}; {e}"))

        failed = apply_transition(driver, TransitionRequest(new_state=FAILED, now=now, failure=failure))
        return apply_transition(failed, TransitionRequest(new_state=RETRYING, now=now, next_retry_at=next_retry_at))

    def promote_due_retries(self, now: datetime | None = None) -> list[str]:
        """Queue every retrying driver whose backoff has elapsed; return their ids."""
        now = now or self._clock()
        due = sorted(
            (d for d in self._retrying.values() if d.next_retry_at is not None and d.next_retry_at <= now),
            key=lambda d: (d.next_retry_at, d.sequence),
        )
        promoted: list[str] = []
        for driver in due:
            queued = apply_transition(driver, TransitionRequest(new_state=QUEUED, now=now, sequence=self._next_ticket))
            self._engine.persist(queued)
            self._next_ticket += 1
            del self._retrying[driver.submission_id]
            self._queued[driver.submission_id] = queued
            promoted.append(driver.submission_id)
            logger.info(
                "driver_requeued",
                extra={"event": "driver_requeued", "submission_id": driver.submission_id, "status": QUEUED, "retries": queued.retries},
            )
        return promoted

    # -- queries ------------------------------------------------------------

    def queued_drivers(self) -> tuple[DriverState, ...]:
        return tuple(self._queued.values())

    def driver_status(self, submission_id: str) -> DriverState:
        for collection in (self._queued, self._launched, self._retrying, self._finished):
            if submission_id in collection:
                return collection[submission_id]
        raise NotFoundError("Driver", submission_id, "driver not found")

    def snapshot(self, readiness: str) -> SchedulerState:
        return SchedulerState(
            readiness=readiness,
            queued=tuple(self._queued.values()),
            launched=tuple(sorted(self._launched.values(), key=lambda d: d.sequence)),
            retrying=tuple(sorted(self._retrying.values(), key=lambda d: d.sequence)),
            finished=tuple(self._finished.values()),
        )

    # -- helpers ------------------------------------------------------------

    def _require_known(self, submission_id: str) -> None:
        self.driver_status(submission_id)

    def _retire(self, driver: DriverState, *, previous: str) -> None:
        self._finished[driver.submission_id] = driver
        logger.info(
            "driver_terminated",
            extra={"event": "driver_terminated", "submission_id": driver.submission_id, "status": driver.status, "previous_status": previous},
        )
        self._evict_finished()

    def _evict_finished(self) -> None:
        if len(self._finished) <= self._config.retained_drivers:
            return
        try:
            # Must be durable before any record carrying these numbers is expunged.
            self._engine.persist_counters({COUNTER_NEXT_ID: self._next_id_number, COUNTER_NEXT_TICKET: self._next_ticket})
        except StorageFailure:
            logger.warning("driver_eviction_failed", extra={"event": "driver_eviction_failed"}, exc_info=True)
            return
        while len(self._finished) > self._config.retained_drivers:
            oldest_id = next(iter(self._finished))
            try:
                self._engine.expunge(oldest_id)
            except StorageFailure:
                # Stays retained until the store drops it; the next eviction retries.
                logger.warning("driver_eviction_failed", extra={"event": "driver_eviction_failed", "submission_id": oldest_id}, exc_info=True)
                return
            del self._finished[oldest_id]
