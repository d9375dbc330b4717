"""Driver lifecycle state machine.

Canonical lifecycle:
QUEUED -> LAUNCHED -> FINISHED | FAILED | KILLED
FAILED -> RETRYING -> QUEUED   (supervised drivers with retry budget left)
QUEUED | RETRYING -> KILLED

Notes:
- QUEUED is the only entry state.
- FINISHED, FAILED and KILLED are terminal. A FAILED driver that is relaunched
  passes through FAILED only transiently; its persisted state is RETRYING.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from clusterdispatch.errors import ConflictError, ValidationError
from clusterdispatch.models import DriverState

QUEUED = "QUEUED"
LAUNCHED = "LAUNCHED"
RETRYING = "RETRYING"
FINISHED = "FINISHED"
FAILED = "FAILED"
KILLED = "KILLED"

ALL_STATES = (QUEUED, LAUNCHED, RETRYING, FINISHED, FAILED, KILLED)

_TERMINAL_STATES = {FINISHED, FAILED, KILLED}

# Allowed transitions excluding no-op transitions.
_ALLOWED: dict[str, set[str]] = {
    QUEUED: {LAUNCHED, KILLED},
    LAUNCHED: {FINISHED, FAILED, KILLED},
    FAILED: {RETRYING},
    RETRYING: {QUEUED, KILLED},
    FINISHED: set(),
    KILLED: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    new_state: str
    now: datetime
    sequence: int | None = None
    failure: str | None = None
    next_retry_at: datetime | None = None
    launch_handle: dict[str, str] | None = None


def is_terminal(state: str) -> bool:
    return state in _TERMINAL_STATES


def apply_transition(driver: DriverState, req: TransitionRequest) -> DriverState:
    """Return a new DriverState in `req.new_state`."""
    current = driver.status
    new_state = req.new_state

    if new_state not in ALL_STATES:
        raise ValidationError(f"Unknown driver state: {new_state}")

    if new_state == current:
        return driver

    # FAILED is terminal except for the relaunch edge.
    if is_terminal(current) and not (current == FAILED and new_state == RETRYING):
        raise ConflictError(f"Driver is terminal; cannot transition from {current} to {new_state}")

    allowed = _ALLOWED.get(current)
    if allowed is None or new_state not in allowed:
        raise ConflictError(f"Invalid driver state transition: {current} -> {new_state}")

    changes: dict = {"status": new_state, "updated_at": req.now}

    if new_state == QUEUED:
        if req.sequence is None:
            raise ConflictError("A queue ticket is required to enqueue a driver")
        changes.update(sequence=req.sequence, next_retry_at=None, launch_handle=None, kill_requested=False)

    if new_state == LAUNCHED:
        changes["launch_handle"] = dict(req.launch_handle) if req.launch_handle is not None else {}

    if new_state == FAILED:
        changes["last_failure"] = req.failure or "driver failed"

    if new_state == RETRYING:
        if req.next_retry_at is None:
            raise ConflictError("next_retry_at is required for retrying drivers")
        changes.update(retries=driver.retries + 1, next_retry_at=req.next_retry_at, launch_handle=None)

    if new_state in _TERMINAL_STATES:
        changes["next_retry_at"] = None
        if req.failure:
            changes["last_failure"] = req.failure

    return driver.evolve(**changes)
