"""
Shared fixtures: fake native engines, recording sinks and instant fallback streams.
"""

from __future__ import annotations

import random
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from core.base_adapter import BaseInferenceEngine
from core.fallback_responder import FallbackEngine, FallbackStreamer
from core.streaming import GenerationSink


class RecordingSink:
    """Collects every streamed event; `done` is set on the terminal one."""

    def __init__(self) -> None:
        self.tokens: List[str] = []
        self.completed: List[str] = []
        self.errors: List[str] = []
        self.done = threading.Event()

    def on_token(self, token: str) -> None:
        self.tokens.append(token)

    def on_complete(self, text: str) -> None:
        self.completed.append(text)
        self.done.set()

    def on_error(self, message: str) -> None:
        self.errors.append(message)
        self.done.set()

    @property
    def text(self) -> str:
        return "".join(self.tokens)


class FakeEngine(BaseInferenceEngine):
    """Scriptable stand-in for the llama.cpp engine."""

    engine_name = "fake"

    def __init__(
        self,
        *,
        available: bool = True,
        real: bool = True,
        load_result: bool = True,
        load_raises: bool = False,
        tokens: Sequence[str] = ("Native", " says", " hi"),
        fail_after: Optional[int] = None,
        report_error: bool = False,
    ) -> None:
        super().__init__(threads=1)
        self.available = available
        self.real = real
        self.load_result = load_result
        self.load_raises = load_raises
        self.tokens = list(tokens)
        self.fail_after = fail_after
        self.report_error = report_error
        self.prompts: List[str] = []
        self.loads: List[tuple] = []
        self._stop = threading.Event()
        self._generating = threading.Event()

    def is_available(self) -> bool:
        return self.available

    def supports_real_inference(self) -> bool:
        return self.real

    def system_info(self) -> str:
        return "fake engine"

    def load_model(self, model_path: Path, n_ctx: int, n_gpu_layers: int = 0) -> bool:
        self.loads.append((model_path, n_ctx, n_gpu_layers))
        if self.load_raises:
            raise RuntimeError("native load exploded")
        if self.load_result:
            self._mark_loaded(model_path)
        return self.load_result

    def unload_model(self) -> None:
        self._mark_unloaded()

    def generate(self, prompt: str, max_tokens: int, temperature: float, sink: GenerationSink) -> None:
        self.prompts.append(prompt)
        self._stop.clear()
        self._generating.set()
        try:
            emitted: List[str] = []
            for index, token in enumerate(self.tokens):
                if self.fail_after is not None and index == self.fail_after:
                    if self.report_error:
                        sink.on_error("native failure")
                        return
                    raise RuntimeError("native failure")
                if self._stop.is_set():
                    break
                emitted.append(token)
                sink.on_token(token)
            if self.fail_after is not None and self.fail_after >= len(self.tokens):
                raise RuntimeError("native failure")
            sink.on_complete("".join(emitted))
        finally:
            self._generating.clear()

    def stop_generation(self) -> None:
        self._stop.set()

    def is_generating(self) -> bool:
        return self._generating.is_set()


@pytest.fixture()
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def sink_factory() -> Callable[[], RecordingSink]:
    return RecordingSink


@pytest.fixture()
def fake_engine_cls() -> type:
    return FakeEngine


@pytest.fixture()
def instant_fallback() -> FallbackEngine:
    """Fallback engine with deterministic chunking and no delays."""
    streamer = FallbackStreamer(rng=random.Random(7), sleep=lambda _seconds: None)
    return FallbackEngine(streamer=streamer)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests independent of the developer's environment and settings file."""
    for name in (
        "LOCALMIND_DATA_DIR",
        "LOCALMIND_MODELS_DIR",
        "LOCALMIND_BUNDLED_MODEL",
        "LOCALMIND_LOCAL_AI_CONTROL",
        "LOCALMIND_API_TOKEN",
        "LOCALMIND_LLM_N_GPU_LAYERS",
        "LOCALMIND_HF_ENDPOINT",
        "LOCALMIND_API_HOST",
        "LOCALMIND_API_PORT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOCALMIND_SETTINGS_FILE", str(tmp_path / "missing-settings.json"))
