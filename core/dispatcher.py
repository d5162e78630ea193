"""
Generation dispatcher: the entry point for text generation.

Builds the ChatML prompt, enforces the single-session reentrancy guard, runs
the request on the generation worker and delivers the stream on the delivery
channel (zero or more tokens, then exactly one terminal event).
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from core.control import ControlHandler, ControlPermission, NullControlHandler, StaticControlPermission, control_prompt_block
from core.errors import BackendException, GenerationBusy, GenerationError
from core.inference_adapter import InferenceBackendAdapter
from core.lifecycle import ModelState
from core.streaming import DeliveryChannel, GenerationSink, ImmediateChannel
from utils.logger_util import get_logger

logger = get_logger("core.dispatcher")

DEFAULT_SYSTEM_PROMPT = "You are LocalMind, an AI assistant running on this device. Answer briefly and clearly."


def build_prompt(user_message: str, *, system_prompt: str = DEFAULT_SYSTEM_PROMPT, control_enabled: bool = False) -> str:
    """
    Wrap `user_message` in the ChatML template.

    When device control is enabled, the action catalog is appended to the
    system content as plain text.
    """
    system_content = system_prompt
    if control_enabled:
        system_content = f"{system_prompt}\n\n{control_prompt_block()}"
    return (
        "<|im_start|>system\n"
        f"{system_content}\n"
        "<|im_end|>\n"
        "<|im_start|>user\n"
        f"{user_message}\n"
        "<|im_end|>\n"
        "<|im_start|>assistant\n"
    )


@dataclass
class GenerationSession:
    id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    active: bool = True

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class GenerationHandle:
    """What `GenerationDispatcher.generate` hands back synchronously."""

    session: Optional[GenerationSession]
    error: Optional[GenerationError] = None
    future: Optional[Future] = None

    @property
    def accepted(self) -> bool:
        return self.error is None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the generation worker is done with this request."""
        if self.future is None:
            return True
        try:
            self.future.result(timeout=timeout)
        except Exception:  # noqa: BLE001 - includes the futures timeout
            return self.future.done()
        return True


class _SessionSink:
    """
    Per-session sink sitting between the adapter and the caller.

    Tokens go straight to the delivery channel; the terminal event is held
    until the worker finishes so exactly one is delivered. After a stop
    request further tokens are dropped and completion carries only what the
    caller actually received.
    """

    def __init__(self, session: GenerationSession, target: GenerationSink, channel: DeliveryChannel) -> None:
        self._session = session
        self._target = target
        self._channel = channel
        self._parts: List[str] = []
        self._terminal: Optional[Tuple[str, str]] = None
        self._lock = threading.Lock()

    def on_token(self, token: str) -> None:
        with self._lock:
            if self._terminal is not None or self._session.cancel_requested:
                return
            self._parts.append(token)
            self._channel.post(self._target.on_token, token)

    def on_complete(self, text: str) -> None:
        with self._lock:
            if self._terminal is None:
                delivered = "".join(self._parts)
                self._terminal = ("complete", delivered if self._session.cancel_requested else text)

    def on_error(self, message: str) -> None:
        with self._lock:
            if self._terminal is None:
                self._terminal = ("error", message)

    def finish(self) -> Tuple[str, str]:
        with self._lock:
            if self._terminal is None:
                if self._session.cancel_requested:
                    self._terminal = ("complete", "".join(self._parts))
                else:
                    self._terminal = ("error", str(BackendException("Generation ended without a result")))
            return self._terminal


class GenerationDispatcher:
    """
    Runs at most one generation at a time.

    The guard is a non-blocking lock acquire, so checking for an active
    session and claiming the slot happen as one indivisible step. A second
    request while busy is rejected, never queued.
    """

    def __init__(
        self,
        adapter: InferenceBackendAdapter,
        *,
        channel: Optional[DeliveryChannel] = None,
        state_provider: Optional[Callable[[], ModelState]] = None,
        permission: Optional[ControlPermission] = None,
        control_handler: Optional[ControlHandler] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._adapter = adapter
        self._channel = channel or ImmediateChannel()
        self._state_provider = state_provider
        self._permission = permission or StaticControlPermission(False)
        self._control_handler = control_handler or NullControlHandler()
        self._system_prompt = system_prompt
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="localmind-generation")
        self._busy = threading.Lock()
        self._current: Optional[GenerationSession] = None

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    @property
    def current_session(self) -> Optional[GenerationSession]:
        return self._current

    def build_prompt(self, raw_prompt: str) -> str:
        try:
            control_enabled = bool(self._permission.is_local_control_enabled())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Control permission check failed: %s", exc)
            control_enabled = False
        return build_prompt(raw_prompt, system_prompt=self._system_prompt, control_enabled=control_enabled)

    def generate(self, raw_prompt: str, max_tokens: int, temperature: float, sink: GenerationSink) -> GenerationHandle:
        """
        Start a generation.

        Args:
            raw_prompt: The user's message.
            max_tokens: Upper bound on generated tokens (native path).
            temperature: Sampling temperature (native path).
            sink: Receives the stream on the delivery channel.
        Returns:
            A handle; when busy it carries `GenerationBusy` and no work was started.
        """
        if not self._busy.acquire(blocking=False):
            error = GenerationBusy()
            logger.warning("Rejected generation request: %s", error)
            self._channel.post(sink.on_error, str(error))
            return GenerationHandle(session=None, error=error)

        session = GenerationSession(id=uuid.uuid4().hex)
        self._current = session
        prompt = self.build_prompt(raw_prompt)
        allow_native = self._state_provider is None or self._state_provider() is ModelState.READY
        preview = raw_prompt[:50] + ("..." if len(raw_prompt) > 50 else "")
        logger.info("Starting local inference session=%s prompt=%r", session.id, preview)

        session_sink = _SessionSink(session, sink, self._channel)
        try:
            future = self._executor.submit(
                self._run, session, prompt, max_tokens, temperature, session_sink, sink, allow_native
            )
        except RuntimeError as exc:
            error = BackendException(f"Generation worker unavailable: {exc}")
            self._finish_session(session)
            self._channel.post(sink.on_error, str(error))
            return GenerationHandle(session=None, error=error)
        return GenerationHandle(session=session, future=future)

    def stop_generation(self) -> None:
        """Cooperatively stop the active generation, if any."""
        session = self._current
        if session is not None:
            session.cancel_event.set()
            logger.info("Stop requested for session=%s", session.id)
        self._adapter.stop_generation()

    def is_generating(self) -> bool:
        """
        Whether a session holds the guard or the backend is still producing.

        The guard is released before the terminal event is posted, so this
        can read False while `on_complete`/`on_error` is still queued on the
        delivery channel. Treat the terminal callback as the end of the
        stream, not this flag.
        """
        return self.is_busy or self._adapter.is_generating()

    def shutdown(self) -> None:
        self.stop_generation()
        self._executor.shutdown(wait=True)

    def _run(
        self,
        session: GenerationSession,
        prompt: str,
        max_tokens: int,
        temperature: float,
        session_sink: _SessionSink,
        sink: GenerationSink,
        allow_native: bool,
    ) -> None:
        try:
            if session.cancel_requested:
                session_sink.on_complete("")
            else:
                self._adapter.generate(
                    prompt, max_tokens, temperature, session_sink, cancel=session.cancel_event, allow_native=allow_native
                )
        except Exception as exc:  # noqa: BLE001 - the adapter should not raise; guard anyway
            logger.error("Generation session=%s failed: %s", session.id, exc, exc_info=True)
            session_sink.on_error(str(BackendException(str(exc) or type(exc).__name__)))
        finally:
            kind, payload = session_sink.finish()
            self._finish_session(session)
            if kind == "complete":
                logger.info("Local inference finished session=%s length=%s", session.id, len(payload))
                self._channel.post(sink.on_complete, payload)
            else:
                logger.error("Local inference failed session=%s: %s", session.id, payload)
                self._channel.post(sink.on_error, payload)

        if kind == "complete":
            self._process_control(payload)

    def _finish_session(self, session: GenerationSession) -> None:
        session.active = False
        self._current = None
        self._busy.release()

    def _process_control(self, text: str) -> None:
        try:
            result = self._control_handler.process_output(text, True)
        except Exception as exc:  # noqa: BLE001 - the collaborator must never break generation
            logger.error("Control handler failed: %s", exc)
            return
        if result is not None:
            logger.info("Control command executed: %s: %s", result.action, result.detail)
