from __future__ import annotations

from datetime import timedelta

import pytest

from clusterdispatch.errors import ConflictError, ValidationError
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
from clusterdispatch.models import DriverState

from conftest import T0, make_description


def _driver(status: str = QUEUED, **changes) -> DriverState:
    return DriverState(
        submission_id="driver-test-20261019120000-0001",
        description=make_description(),
        status=status,
        sequence=1,
        updated_at=T0,
    ).evolve(**changes)


def test_terminal_states() -> None:
    assert is_terminal(FINISHED)
    assert is_terminal(FAILED)
    assert is_terminal(KILLED)
    assert not is_terminal(QUEUED)
    assert not is_terminal(LAUNCHED)
    assert not is_terminal(RETRYING)


def test_same_state_is_noop() -> None:
    d = _driver()
    assert apply_transition(d, TransitionRequest(new_state=QUEUED, now=T0 + timedelta(seconds=5))) is d


def test_launch_records_handle_and_time() -> None:
    later = T0 + timedelta(seconds=3)
    launched = apply_transition(_driver(), TransitionRequest(new_state=LAUNCHED, now=later, launch_handle={"task": "t-1"}))
    assert launched.status == LAUNCHED
    assert launched.launch_handle == {"task": "t-1"}
    assert launched.updated_at == later


def test_failed_then_retrying_counts_retry() -> None:
    launched = _driver(LAUNCHED, launch_handle={})
    failed = apply_transition(launched, TransitionRequest(new_state=FAILED, now=T0, failure="boom"))
    assert failed.last_failure == "boom"
    retry_at = T0 + timedelta(seconds=1)
    retrying = apply_transition(failed, TransitionRequest(new_state=RETRYING, now=T0, next_retry_at=retry_at))
    assert retrying.retries == 1
    assert retrying.next_retry_at == retry_at
    assert retrying.launch_handle is None


def test_requeue_takes_new_ticket_and_clears_retry_time() -> None:
    retrying = _driver(RETRYING, next_retry_at=T0, retries=1)
    queued = apply_transition(retrying, TransitionRequest(new_state=QUEUED, now=T0, sequence=9))
    assert queued.sequence == 9
    assert queued.next_retry_at is None
    assert queued.retries == 1


def test_requeue_requires_ticket() -> None:
    with pytest.raises(ConflictError):
        apply_transition(_driver(RETRYING, next_retry_at=T0), TransitionRequest(new_state=QUEUED, now=T0))


@pytest.mark.parametrize(
    "current,target",
    [
        (QUEUED, FINISHED),
        (QUEUED, RETRYING),
        (LAUNCHED, QUEUED),
        (RETRYING, LAUNCHED),
        (FINISHED, QUEUED),
        (KILLED, QUEUED),
        (FAILED, QUEUED),
    ],
)
def test_invalid_transitions_are_rejected(current: str, target: str) -> None:
    with pytest.raises(ConflictError):
        apply_transition(_driver(current), TransitionRequest(new_state=target, now=T0, sequence=2, next_retry_at=T0))


def test_unknown_state_is_rejected() -> None:
    with pytest.raises(ValidationError):
        apply_transition(_driver(), TransitionRequest(new_state="PAUSED", now=T0))
