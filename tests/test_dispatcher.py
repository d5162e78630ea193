"""
Generation dispatcher tests: prompt building, reentrancy guard, stop and delivery order.
"""

from __future__ import annotations

import random
import threading
from pathlib import Path
from typing import List, Optional

import pytest

from core.control import ControlResult, StaticControlPermission
from core.dispatcher import GenerationDispatcher, build_prompt
from core.errors import GenerationBusy
from core.fallback_responder import FallbackEngine, FallbackResponder, FallbackStreamer
from core.inference_adapter import BackendProbe, InferenceBackendAdapter, detect_backend
from core.lifecycle import ModelState
from core.streaming import CallbackChannel

NO_NATIVE = BackendProbe(native_loaded=False, load_error="not installed", real_inference_supported=False)


class GatedSleep:
    """Sleep replacement that blocks until `resume` is set."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.resume = threading.Event()

    def __call__(self, _seconds: float) -> None:
        self.started.set()
        self.resume.wait(5)


class RecordingControlHandler:
    def __init__(self, raises: bool = False) -> None:
        self.calls: List[tuple] = []
        self.raises = raises

    def process_output(self, text: str, produced_locally: bool) -> Optional[ControlResult]:
        self.calls.append((text, produced_locally))
        if self.raises:
            raise RuntimeError("handler crashed")
        return ControlResult(action="root_wifi_toggle", detail="ok")


@pytest.fixture()
def dispatcher(instant_fallback):
    adapter = InferenceBackendAdapter(NO_NATIVE, instant_fallback)
    dispatcher = GenerationDispatcher(adapter)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture()
def gate() -> GatedSleep:
    gate = GatedSleep()
    yield gate
    gate.resume.set()


def _gated_dispatcher(gate: GatedSleep) -> GenerationDispatcher:
    streamer = FallbackStreamer(rng=random.Random(11), sleep=gate)
    adapter = InferenceBackendAdapter(NO_NATIVE, FallbackEngine(streamer=streamer))
    return GenerationDispatcher(adapter)


def _native_dispatcher(engine, fallback, tmp_path: Path, state: ModelState, **kwargs) -> GenerationDispatcher:
    adapter = InferenceBackendAdapter(detect_backend(lambda: engine), fallback)
    model = tmp_path / "tiny.gguf"
    model.write_bytes(b"gguf")
    adapter.load_model(model, 2048)
    return GenerationDispatcher(adapter, state_provider=lambda: state, **kwargs)


def test_build_prompt_uses_chatml_template() -> None:
    prompt = build_prompt("Hi there", system_prompt="Be brief.")
    assert prompt == (
        "<|im_start|>system\nBe brief.\n<|im_end|>\n"
        "<|im_start|>user\nHi there\n<|im_end|>\n"
        "<|im_start|>assistant\n"
    )


def test_build_prompt_appends_control_block_when_enabled() -> None:
    prompt = build_prompt("turn wifi off", system_prompt="Be brief.", control_enabled=True)
    system_part = prompt.split("<|im_end|>")[0]
    assert "Be brief." in system_part
    assert "root_wifi_toggle" in system_part
    assert "root_take_screenshot" in system_part


def test_arithmetic_without_backend(dispatcher, recording_sink) -> None:
    handle = dispatcher.generate("3+5", 64, 0.7, recording_sink)
    assert handle.accepted
    assert handle.wait(5)
    assert recording_sink.errors == []
    assert "8" in recording_sink.completed[0]
    assert recording_sink.completed[0] == recording_sink.text


def test_division_by_zero_without_backend(dispatcher, recording_sink) -> None:
    dispatcher.generate("10/0", 64, 0.7, recording_sink).wait(5)
    result = recording_sink.completed[0]
    assert result == "Cannot compute: division by zero is undefined."
    assert "inf" not in result.lower() and "nan" not in result.lower()


def test_second_request_while_busy_is_rejected(gate: GatedSleep, sink_factory) -> None:
    dispatcher = _gated_dispatcher(gate)
    first_sink, second_sink = sink_factory(), sink_factory()

    first = dispatcher.generate("hello", 64, 0.7, first_sink)
    assert gate.started.wait(5)
    assert dispatcher.is_busy

    second = dispatcher.generate("3+5", 64, 0.7, second_sink)
    assert not second.accepted
    assert isinstance(second.error, GenerationBusy)
    assert second.session is None
    assert second_sink.errors == [str(GenerationBusy())]
    assert dispatcher.current_session is first.session

    gate.resume.set()
    assert first.wait(5)
    expected = FallbackResponder().respond("hello")
    assert first_sink.completed == [expected]
    assert first_sink.text == expected
    assert second_sink.tokens == [] and second_sink.completed == []
    assert not dispatcher.is_busy
    dispatcher.shutdown()


def test_concurrent_callers_get_exactly_one_session(gate: GatedSleep, sink_factory) -> None:
    dispatcher = _gated_dispatcher(gate)
    barrier = threading.Barrier(8)
    handles = []
    lock = threading.Lock()

    def call() -> None:
        barrier.wait(5)
        handle = dispatcher.generate("hello", 64, 0.7, sink_factory())
        with lock:
            handles.append(handle)

    threads = [threading.Thread(target=call) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert sum(1 for handle in handles if handle.accepted) == 1
    assert sum(1 for handle in handles if isinstance(handle.error, GenerationBusy)) == 7
    gate.resume.set()
    dispatcher.shutdown()


def test_stop_mid_stream_completes_with_strict_prefix(gate: GatedSleep, recording_sink) -> None:
    dispatcher = _gated_dispatcher(gate)
    full_text = FallbackResponder().respond("hello")

    handle = dispatcher.generate("hello", 64, 0.7, recording_sink)
    assert gate.started.wait(5)
    dispatcher.stop_generation()
    assert handle.session.cancel_requested
    gate.resume.set()
    assert handle.wait(5)

    assert len(recording_sink.completed) == 1
    partial = recording_sink.completed[0]
    assert partial == recording_sink.text
    assert full_text.startswith(partial)
    assert len(partial) < len(full_text)
    assert len(recording_sink.tokens) == 1
    dispatcher.shutdown()


def test_stop_without_active_session_is_harmless(dispatcher, recording_sink) -> None:
    dispatcher.stop_generation()
    dispatcher.generate("3+5", 64, 0.7, recording_sink).wait(5)
    assert "8" in recording_sink.completed[0]


def test_completion_callback_may_start_next_generation(dispatcher, sink_factory) -> None:
    follow_up = sink_factory()
    handles = []

    class ChainingSink:
        def on_token(self, token: str) -> None:
            pass

        def on_complete(self, text: str) -> None:
            handles.append(dispatcher.generate("10-4", 64, 0.7, follow_up))

        def on_error(self, message: str) -> None:
            pass

    dispatcher.generate("3+5", 64, 0.7, ChainingSink()).wait(5)
    assert handles and handles[0].accepted
    handles[0].wait(5)
    assert follow_up.completed == ["Result: 10 - 4 = 6"]


def test_guard_is_released_before_terminal_delivery(dispatcher) -> None:
    observed = []

    class TerminalSink:
        def on_token(self, token: str) -> None:
            pass

        def on_complete(self, text: str) -> None:
            observed.append((dispatcher.is_busy, dispatcher.is_generating(), dispatcher.current_session))

        def on_error(self, message: str) -> None:
            pass

    dispatcher.generate("3+5", 64, 0.7, TerminalSink()).wait(5)
    assert observed == [(False, False, None)]


def test_tokens_and_terminal_arrive_in_order_on_the_channel(instant_fallback, recording_sink) -> None:
    channel = CallbackChannel()
    events: List[tuple] = []
    threads = set()

    class OrderedSink:
        def on_token(self, token: str) -> None:
            threads.add(threading.current_thread().name)
            events.append(("token", token))

        def on_complete(self, text: str) -> None:
            threads.add(threading.current_thread().name)
            events.append(("complete", text))

        def on_error(self, message: str) -> None:
            events.append(("error", message))

    adapter = InferenceBackendAdapter(NO_NATIVE, instant_fallback)
    dispatcher = GenerationDispatcher(adapter, channel=channel)
    dispatcher.generate("what is 12*12", 64, 0.7, OrderedSink()).wait(5)
    assert channel.drain(5)

    kinds = [kind for kind, _ in events]
    assert kinds[-1] == "complete"
    assert kinds.count("complete") == 1 and "error" not in kinds
    assert "".join(text for kind, text in events[:-1]) == events[-1][1] == "Result: 12 * 12 = 144"
    assert threads == {"localmind-delivery"}
    dispatcher.shutdown()
    channel.close()


def test_native_used_only_when_ready(fake_engine_cls, instant_fallback, tmp_path: Path, recording_sink) -> None:
    engine = fake_engine_cls()
    dispatcher = _native_dispatcher(engine, instant_fallback, tmp_path, ModelState.READY)
    dispatcher.generate("hi", 64, 0.7, recording_sink).wait(5)
    assert recording_sink.completed == ["Native says hi"]
    assert engine.prompts and engine.prompts[0].endswith("<|im_start|>assistant\n")
    dispatcher.shutdown()


def test_native_skipped_when_not_ready(fake_engine_cls, instant_fallback, tmp_path: Path, recording_sink) -> None:
    engine = fake_engine_cls()
    dispatcher = _native_dispatcher(engine, instant_fallback, tmp_path, ModelState.LOADING)
    dispatcher.generate("3+5", 64, 0.7, recording_sink).wait(5)
    assert engine.prompts == []
    assert recording_sink.completed == ["Result: 3 + 5 = 8"]
    dispatcher.shutdown()


def test_native_failure_after_tokens_delivers_single_error(
    fake_engine_cls, instant_fallback, tmp_path: Path, recording_sink
) -> None:
    dispatcher = _native_dispatcher(fake_engine_cls(fail_after=1), instant_fallback, tmp_path, ModelState.READY)
    dispatcher.generate("hi", 64, 0.7, recording_sink).wait(5)
    assert recording_sink.tokens == ["Native"]
    assert recording_sink.errors == ["native failure"]
    assert recording_sink.completed == []
    dispatcher.shutdown()


def test_control_block_follows_permission(fake_engine_cls, instant_fallback, tmp_path: Path, sink_factory) -> None:
    engine = fake_engine_cls()
    enabled = _native_dispatcher(
        engine, instant_fallback, tmp_path, ModelState.READY, permission=StaticControlPermission(True)
    )
    enabled.generate("turn wifi off", 64, 0.7, sink_factory()).wait(5)
    enabled.shutdown()

    disabled = _native_dispatcher(engine, instant_fallback, tmp_path, ModelState.READY)
    disabled.generate("turn wifi off", 64, 0.7, sink_factory()).wait(5)
    disabled.shutdown()

    assert "root_wifi_toggle" in engine.prompts[0]
    assert "root_wifi_toggle" not in engine.prompts[1]


def test_control_handler_receives_local_output(instant_fallback, recording_sink) -> None:
    handler = RecordingControlHandler()
    dispatcher = GenerationDispatcher(InferenceBackendAdapter(NO_NATIVE, instant_fallback), control_handler=handler)
    dispatcher.generate("3+5", 64, 0.7, recording_sink).wait(5)
    assert handler.calls == [("Result: 3 + 5 = 8", True)]
    dispatcher.shutdown()


def test_control_handler_failure_is_swallowed(instant_fallback, recording_sink) -> None:
    handler = RecordingControlHandler(raises=True)
    dispatcher = GenerationDispatcher(InferenceBackendAdapter(NO_NATIVE, instant_fallback), control_handler=handler)
    handle = dispatcher.generate("3+5", 64, 0.7, recording_sink)
    assert handle.wait(5)
    assert recording_sink.completed == ["Result: 3 + 5 = 8"]
    assert handler.calls
    assert not dispatcher.is_busy
    dispatcher.shutdown()


def test_generate_after_shutdown_reports_error(instant_fallback, recording_sink) -> None:
    dispatcher = GenerationDispatcher(InferenceBackendAdapter(NO_NATIVE, instant_fallback))
    dispatcher.shutdown()
    handle = dispatcher.generate("3+5", 64, 0.7, recording_sink)
    assert not handle.accepted
    assert recording_sink.errors
    assert not dispatcher.is_busy
