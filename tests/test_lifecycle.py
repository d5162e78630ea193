"""
Lifecycle state machine tests.
"""

from __future__ import annotations

import pytest

from core.errors import InvalidTransition
from core.lifecycle import LifecycleEvent, LifecycleStateMachine, ModelState

ALLOWED = {
    (ModelState.NOT_DOWNLOADED, LifecycleEvent.BEGIN_DOWNLOAD): ModelState.DOWNLOADING,
    (ModelState.ERROR, LifecycleEvent.BEGIN_DOWNLOAD): ModelState.DOWNLOADING,
    (ModelState.DOWNLOADING, LifecycleEvent.DOWNLOAD_SUCCEEDED): ModelState.DOWNLOADED,
    (ModelState.DOWNLOADING, LifecycleEvent.DOWNLOAD_FAILED): ModelState.ERROR,
    (ModelState.DOWNLOADED, LifecycleEvent.BEGIN_LOAD): ModelState.LOADING,
    (ModelState.ERROR, LifecycleEvent.BEGIN_LOAD): ModelState.LOADING,
    (ModelState.LOADING, LifecycleEvent.LOAD_SUCCEEDED): ModelState.READY,
    (ModelState.LOADING, LifecycleEvent.LOAD_FAILED): ModelState.ERROR,
    (ModelState.READY, LifecycleEvent.UNLOAD): ModelState.DOWNLOADED,
    (ModelState.DOWNLOADED, LifecycleEvent.DELETE): ModelState.NOT_DOWNLOADED,
    (ModelState.ERROR, LifecycleEvent.DELETE): ModelState.NOT_DOWNLOADED,
}

REJECTED = [
    (state, event)
    for state in ModelState
    for event in LifecycleEvent
    if (state, event) not in ALLOWED
]


def _machine_in(state: ModelState) -> LifecycleStateMachine:
    machine = LifecycleStateMachine()
    machine.restore(state)
    return machine


def test_download_and_load_happy_path() -> None:
    machine = LifecycleStateMachine()
    assert machine.current_state() is ModelState.NOT_DOWNLOADED
    for event, expected in [
        (LifecycleEvent.BEGIN_DOWNLOAD, ModelState.DOWNLOADING),
        (LifecycleEvent.DOWNLOAD_SUCCEEDED, ModelState.DOWNLOADED),
        (LifecycleEvent.BEGIN_LOAD, ModelState.LOADING),
        (LifecycleEvent.LOAD_SUCCEEDED, ModelState.READY),
        (LifecycleEvent.UNLOAD, ModelState.DOWNLOADED),
    ]:
        assert machine.transition(event) is expected
        assert machine.state is expected


@pytest.mark.parametrize(("state", "event"), list(ALLOWED))
def test_allowed_edges(state: ModelState, event: LifecycleEvent) -> None:
    machine = _machine_in(state)
    assert machine.can_apply(event)
    assert machine.transition(event) is ALLOWED[(state, event)]


@pytest.mark.parametrize(("state", "event"), REJECTED)
def test_rejected_edges_leave_state_unchanged(state: ModelState, event: LifecycleEvent) -> None:
    machine = _machine_in(state)
    assert not machine.can_apply(event)
    with pytest.raises(InvalidTransition) as excinfo:
        machine.transition(event)
    assert machine.state is state
    assert excinfo.value.event is event
    assert excinfo.value.state is state


def test_error_message_is_set_and_cleared() -> None:
    machine = _machine_in(ModelState.DOWNLOADING)
    machine.transition(LifecycleEvent.DOWNLOAD_FAILED, error="HTTP 500")
    assert machine.state is ModelState.ERROR
    assert machine.last_error == "HTTP 500"

    machine.transition(LifecycleEvent.BEGIN_LOAD)
    assert machine.last_error is None


def test_error_without_message_gets_a_default() -> None:
    machine = _machine_in(ModelState.LOADING)
    machine.transition(LifecycleEvent.LOAD_FAILED)
    assert machine.last_error == "load_failed failed"


def test_rejected_transition_keeps_last_error() -> None:
    machine = _machine_in(ModelState.DOWNLOADING)
    machine.transition(LifecycleEvent.DOWNLOAD_FAILED, error="timeout")
    with pytest.raises(InvalidTransition):
        machine.transition(LifecycleEvent.UNLOAD)
    assert machine.last_error == "timeout"


def test_delete_lands_on_downloaded_when_artifacts_remain() -> None:
    machine = _machine_in(ModelState.DOWNLOADED)
    assert machine.transition(LifecycleEvent.DELETE, artifacts_remaining=True) is ModelState.DOWNLOADED


def test_restore_only_before_first_transition() -> None:
    machine = LifecycleStateMachine()
    machine.restore(ModelState.DOWNLOADED)
    machine.transition(LifecycleEvent.BEGIN_LOAD)
    with pytest.raises(InvalidTransition):
        machine.restore(ModelState.NOT_DOWNLOADED)
    assert machine.state is ModelState.LOADING
