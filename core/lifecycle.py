"""
Model lifecycle state machine.

    NOT_DOWNLOADED -> DOWNLOADING -> DOWNLOADED -> LOADING -> READY
                          |              ^            |         |
                          v              |            v         |
                        ERROR -----------+-------- ERROR        |
                                         +----------------------+ (unload)

ERROR may retry into DOWNLOADING or LOADING. DELETE lands on DOWNLOADED or
NOT_DOWNLOADED depending on whether other artifacts remain.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, NamedTuple, Optional

from core.errors import InvalidTransition
from utils.logger_util import get_logger

logger = get_logger("core.lifecycle")


class ModelState(Enum):
    NOT_DOWNLOADED = "not_downloaded"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class LifecycleEvent(Enum):
    BEGIN_DOWNLOAD = "begin_download"
    DOWNLOAD_SUCCEEDED = "download_succeeded"
    DOWNLOAD_FAILED = "download_failed"
    BEGIN_LOAD = "begin_load"
    LOAD_SUCCEEDED = "load_succeeded"
    LOAD_FAILED = "load_failed"
    UNLOAD = "unload"
    DELETE = "delete"


class _Rule(NamedTuple):
    sources: FrozenSet[ModelState]
    target: Optional[ModelState]


_RULES: Dict[LifecycleEvent, _Rule] = {
    LifecycleEvent.BEGIN_DOWNLOAD: _Rule(frozenset({ModelState.NOT_DOWNLOADED, ModelState.ERROR}), ModelState.DOWNLOADING),
    LifecycleEvent.DOWNLOAD_SUCCEEDED: _Rule(frozenset({ModelState.DOWNLOADING}), ModelState.DOWNLOADED),
    LifecycleEvent.DOWNLOAD_FAILED: _Rule(frozenset({ModelState.DOWNLOADING}), ModelState.ERROR),
    LifecycleEvent.BEGIN_LOAD: _Rule(frozenset({ModelState.DOWNLOADED, ModelState.ERROR}), ModelState.LOADING),
    LifecycleEvent.LOAD_SUCCEEDED: _Rule(frozenset({ModelState.LOADING}), ModelState.READY),
    LifecycleEvent.LOAD_FAILED: _Rule(frozenset({ModelState.LOADING}), ModelState.ERROR),
    LifecycleEvent.UNLOAD: _Rule(frozenset({ModelState.READY}), ModelState.DOWNLOADED),
    # Target depends on whether artifacts remain after the delete.
    LifecycleEvent.DELETE: _Rule(frozenset({ModelState.DOWNLOADED, ModelState.ERROR}), None),
}


class _Snapshot(NamedTuple):
    state: ModelState
    last_error: Optional[str]


class LifecycleStateMachine:
    """
    Owns the canonical `ModelState`.

    Reads never lock: state and last error live in one immutable snapshot
    that is replaced in a single assignment. Writers are expected to run on
    the lifecycle worker, so transitions never race each other.
    """

    def __init__(self, initial: ModelState = ModelState.NOT_DOWNLOADED) -> None:
        self._snapshot = _Snapshot(initial, None)
        self._transitioned = False

    @property
    def state(self) -> ModelState:
        return self._snapshot.state

    @property
    def last_error(self) -> Optional[str]:
        return self._snapshot.last_error

    def current_state(self) -> ModelState:
        return self._snapshot.state

    def can_apply(self, event: LifecycleEvent) -> bool:
        return self._snapshot.state in _RULES[event].sources

    def transition(
        self,
        event: LifecycleEvent,
        *,
        error: Optional[str] = None,
        artifacts_remaining: bool = False,
    ) -> ModelState:
        """
        Apply `event` and return the new state.

        Args:
            event: Lifecycle event to apply.
            error: Message recorded as `last_error` when entering ERROR.
            artifacts_remaining: For DELETE, whether other artifacts are still on disk.
        Returns:
            The state after the transition.
        Raises:
            InvalidTransition: `event` is not allowed from the current state;
                nothing is changed.
        """
        current = self._snapshot
        rule = _RULES[event]
        if current.state not in rule.sources:
            logger.warning("Rejected %s while %s", event.name, current.state.name)
            raise InvalidTransition(event, current.state)

        target = rule.target
        if target is None:
            target = ModelState.DOWNLOADED if artifacts_remaining else ModelState.NOT_DOWNLOADED

        if target is ModelState.ERROR:
            last_error = error or f"{event.name.lower()} failed"
        else:
            last_error = None

        self._snapshot = _Snapshot(target, last_error)
        self._transitioned = True
        logger.info("Model state %s -> %s (%s)", current.state.name, target.name, event.name)
        return target

    def restore(self, state: ModelState) -> None:
        """
        Seed the state discovered on disk at startup.

        Only valid before the first transition has been applied.
        """
        if self._transitioned:
            raise InvalidTransition("RESTORE", self._snapshot.state)
        logger.debug("Restoring model state to %s", state.name)
        self._snapshot = _Snapshot(state, None)
