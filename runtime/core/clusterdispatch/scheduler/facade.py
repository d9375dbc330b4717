"""Public operation surface of the driver scheduler.

Every mutation runs under one lock, including its persistence I/O. After each
committed mutation a fresh SchedulerState is published; `snapshot()` returns
the published object without taking the lock, so readers never wait on a slow
store.

submit / kill / driver_status return structured results. The execution-layer
callbacks raise typed errors, which the HTTP layer maps to status codes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from clusterdispatch.errors import ConflictError, NotFoundError, StorageFailure, ValidationError
from clusterdispatch.executor.command import LaunchCommand
from clusterdispatch.executor.engine import DriverRegistry
from clusterdispatch.models import DriverDescription, DriverState, SchedulerState

logger = logging.getLogger(__name__)

NEW = "NEW"
RECOVERING = "RECOVERING"
READY = "READY"
FAILED = "FAILED"

_NOT_READY = "Scheduler is not ready to take requests"


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    submission_id: str = ""
    message: str = ""

    def to_document(self) -> dict[str, Any]:
        return {"success": self.success, "submissionId": self.submission_id, "message": self.message}


@dataclass(frozen=True)
class KillResult:
    success: bool
    submission_id: str
    message: str = ""

    def to_document(self) -> dict[str, Any]:
        return {"success": self.success, "submissionId": self.submission_id, "message": self.message}


@dataclass(frozen=True)
class DriverStatusResult:
    success: bool
    submission_id: str
    status: str | None = None
    message: str = ""
    retries: int = 0
    last_failure: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "submissionId": self.submission_id,
            "driverState": self.status,
            "message": self.message,
            "retries": self.retries,
            "lastFailure": self.last_failure,
        }


class SchedulerFacade:
    def __init__(self, registry: DriverRegistry):
        self._registry = registry
        self._lock = threading.RLock()
        self._readiness = NEW
        self._published = registry.snapshot(NEW)

    @property
    def readiness(self) -> str:
        return self._readiness

    @property
    def ready(self) -> bool:
        return self._readiness == READY

    def initialize(self) -> None:
        """Replay persisted state; return once the scheduler is READY."""
        with self._lock:
            self._readiness = RECOVERING
            self._publish()
            try:
                self._registry.recover()
            except Exception:
                self._readiness = FAILED
                self._publish()
                logger.exception("scheduler_recovery_failed", extra={"event": "scheduler_recovery_failed"})
                raise
            self._readiness = READY
            self._publish()
        logger.info("scheduler_ready", extra={"event": "scheduler_ready", "status": READY})

    # -- public API ---------------------------------------------------------

    def submit(self, description: DriverDescription) -> SubmissionResult:
        if not self.ready:
            return SubmissionResult(success=False, message=_NOT_READY)
        with self._lock:
            try:
                driver = self._registry.submit(description)
            except (ValidationError, ConflictError, StorageFailure) as e:
                logger.warning("driver_submission_rejected: %s", e, extra={"event": "driver_submission_rejected"})
                return SubmissionResult(success=False, message=str(e))
            self._publish()
        return SubmissionResult(success=True, submission_id=driver.submission_id, message="Driver submitted")

    def kill(self, submission_id: str) -> KillResult:
        if not self.ready:
            return KillResult(success=False, submission_id=submission_id, message=_NOT_READY)
        with self._lock:
            try:
                message = self._registry.kill(submission_id)
            except (NotFoundError, ConflictError, StorageFailure) as e:
                logger.warning(
                    "driver_kill_rejected: %s", e, extra={"event": "driver_kill_rejected", "submission_id": submission_id}
                )
                # A launched driver may carry a committed kill request even when signalling failed.
                self._publish()
                return KillResult(success=False, submission_id=submission_id, message=str(e))
            self._publish()
        return KillResult(success=True, submission_id=submission_id, message=message)

    def driver_status(self, submission_id: str) -> DriverStatusResult:
        if not self.ready:
            return DriverStatusResult(success=False, submission_id=submission_id, message=_NOT_READY)
        state = self._published
        for driver in state.queued + state.launched + state.retrying + state.finished:
            if driver.submission_id == submission_id:
                return DriverStatusResult(
                    success=True,
                    submission_id=submission_id,
                    status=driver.status,
                    retries=driver.retries,
                    last_failure=driver.last_failure,
                )
        return DriverStatusResult(success=False, submission_id=submission_id, message="driver not found")

    def snapshot(self) -> SchedulerState:
        return self._published

    status = snapshot

    # -- execution / matching layer -----------------------------------------

    def queued_drivers(self) -> tuple[DriverState, ...]:
        return self._published.queued

    def on_offer_accepted(self, submission_id: str, launch_handle: dict[str, str] | None = None) -> LaunchCommand:
        with self._lock:
            self._require_ready()
            command = self._registry.on_offer_accepted(submission_id, launch_handle)
            self._publish()
        return command

    def on_terminated(self, submission_id: str, outcome: str, message: str | None = None) -> DriverState:
        with self._lock:
            self._require_ready()
            driver = self._registry.on_terminated(submission_id, outcome, message)
            self._publish()
        return driver

    def promote_due_retries(self, now: datetime | None = None) -> list[str]:
        with self._lock:
            self._require_ready()
            try:
                return self._registry.promote_due_retries(now)
            finally:
                # Promotions committed before a failure are already durable.
                self._publish()

    # -- helpers ------------------------------------------------------------

    def _require_ready(self) -> None:
        if not self.ready:
            raise ConflictError(_NOT_READY)

    def _publish(self) -> None:
        self._published = self._registry.snapshot(self._readiness)

