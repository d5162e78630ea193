"""
Streaming sinks and the delivery channel for LocalMind callbacks.

Every token, progress update and completion is posted onto one delivery
channel so callers never see two callbacks at the same time.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable, NamedTuple, Optional, Protocol

from utils.logger_util import get_logger

logger = get_logger("core.streaming")


class GenerationSink(Protocol):
    """Receives streamed generation events."""

    def on_token(self, token: str) -> None:  # pragma: no cover - structural typing only
        ...

    def on_complete(self, text: str) -> None:  # pragma: no cover - structural typing only
        ...

    def on_error(self, message: str) -> None:  # pragma: no cover - structural typing only
        ...


class DeliveryChannel(Protocol):
    """Runs posted callables one at a time, in posting order."""

    def post(self, fn: Callable[..., Any], *args: Any) -> None:  # pragma: no cover - structural typing only
        ...


class ImmediateChannel:
    """Delivery channel that runs callbacks inline on the posting thread."""

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:  # noqa: BLE001 - a faulty callback must not kill the producer
            logger.exception("Callback %r raised", fn)

    def drain(self, timeout: float | None = None) -> bool:
        return True

    def close(self) -> None:
        return None


class CallbackChannel:
    """
    Single-threaded delivery queue (the UI-thread equivalent).

    Callbacks run on one daemon thread in FIFO order. Exceptions raised by a
    callback are logged and do not stop later deliveries.
    """

    _STOP = object()

    def __init__(self, name: str = "localmind-delivery") -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            logger.debug("Dropping callback %r posted after close", fn)
            return
        self._queue.put((fn, args))

    def drain(self, timeout: float | None = None) -> bool:
        """
        Wait until everything posted so far has been delivered.

        Returns:
            True when the queue drained within `timeout`.
        """
        if self._closed:
            return True
        marker = threading.Event()
        self.post(marker.set)
        return marker.wait(timeout)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(self._STOP)
        self._thread.join(timeout=5)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            fn, args = item
            try:
                fn(*args)
            except Exception:  # noqa: BLE001
                logger.exception("Callback %r raised", fn)


class CallbackSink:
    """Sink built from three plain callables (any of them optional)."""

    def __init__(
        self,
        on_token: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._on_token = on_token
        self._on_complete = on_complete
        self._on_error = on_error

    def on_token(self, token: str) -> None:
        if self._on_token:
            self._on_token(token)

    def on_complete(self, text: str) -> None:
        if self._on_complete:
            self._on_complete(text)

    def on_error(self, message: str) -> None:
        if self._on_error:
            self._on_error(message)


class ChannelSink:
    """Forwards every event to `target` through a delivery channel."""

    def __init__(self, target: GenerationSink, channel: DeliveryChannel) -> None:
        self._target = target
        self._channel = channel

    def on_token(self, token: str) -> None:
        self._channel.post(self._target.on_token, token)

    def on_complete(self, text: str) -> None:
        self._channel.post(self._target.on_complete, text)

    def on_error(self, message: str) -> None:
        self._channel.post(self._target.on_error, message)


class StreamEvent(NamedTuple):
    kind: str  # "token", "complete" or "error"
    text: str

    @property
    def terminal(self) -> bool:
        return self.kind != "token"


class QueueSink:
    """
    Sink that turns events into `StreamEvent`s on a queue.

    Used by the HTTP layer to bridge the callback world into a generator.
    """

    def __init__(self) -> None:
        self.events: "queue.Queue[StreamEvent]" = queue.Queue()

    def on_token(self, token: str) -> None:
        self.events.put(StreamEvent("token", token))

    def on_complete(self, text: str) -> None:
        self.events.put(StreamEvent("complete", text))

    def on_error(self, message: str) -> None:
        self.events.put(StreamEvent("error", message))

    def iter_events(self, timeout: float | None = None):
        """Yield events until (and including) the terminal one."""
        while True:
            event = self.events.get(timeout=timeout)
            yield event
            if event.terminal:
                return
