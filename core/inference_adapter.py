"""
Inference backend adapter: native llama.cpp engine with automatic degradation
to the fallback responder.

Capability detection runs once through `detect_backend()`; the resulting
`BackendProbe` is immutable and handed to the adapter explicitly.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.base_adapter import BaseInferenceEngine
from core.fallback_responder import FallbackEngine
from core.streaming import GenerationSink
from utils.logger_util import get_logger

logger = get_logger("core.inference")

MODE_NATIVE = "native"
MODE_DEGRADED = "degraded"
MODE_FALLBACK = "fallback"


@dataclass(frozen=True)
class BackendProbe:
    """Result of the one-time native capability detection."""

    native_loaded: bool
    load_error: Optional[str]
    real_inference_supported: bool
    engine: Optional[BaseInferenceEngine] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class BackendCapability:
    native_loaded: bool
    load_error: Optional[str]
    real_inference_supported: bool
    model_loaded: bool
    degraded: bool
    mode: str


def detect_backend(engine_factory: Optional[Callable[[], BaseInferenceEngine]] = None) -> BackendProbe:
    """
    Probe the native engine once.

    Args:
        engine_factory: Builds the native engine; defaults to the llama.cpp engine.
    Returns:
        A frozen probe; `engine` is only set when the native library is present.
    """
    if engine_factory is None:
        from llm import LLMllamacpp

        engine_factory = LLMllamacpp

    try:
        engine = engine_factory()
        available = engine.is_available()
    except Exception as exc:  # noqa: BLE001 - detection must never fail the process
        logger.warning("Native backend probe failed: %s", exc)
        return BackendProbe(native_loaded=False, load_error=str(exc) or type(exc).__name__, real_inference_supported=False)

    if not available:
        reason = _safe_call(engine.system_info, "native library not available")
        logger.warning("Native backend not available (%s); using fallback responder", reason)
        return BackendProbe(native_loaded=False, load_error=reason, real_inference_supported=False)

    real = bool(_safe_call(engine.supports_real_inference, False))
    logger.info("Native backend %s detected (real inference: %s)", engine.engine_name, real)
    return BackendProbe(native_loaded=True, load_error=None, real_inference_supported=real, engine=engine)


def _safe_call(fn: Callable[[], Any], default: Any) -> Any:
    try:
        return fn()
    except Exception as exc:  # noqa: BLE001
        logger.debug("%s failed: %s", getattr(fn, "__name__", fn), exc)
        return default


class _NativeGuard:
    """
    Sink wrapper for the native path.

    Tokens and completion are forwarded; an engine-reported error is held
    back so the adapter can still fall back when nothing was streamed yet.
    """

    def __init__(self, target: GenerationSink) -> None:
        self._target = target
        self.parts: List[str] = []
        self.completed = False
        self.error: Optional[str] = None

    def on_token(self, token: str) -> None:
        if self.completed:
            return
        self.parts.append(token)
        self._target.on_token(token)

    def on_complete(self, text: str) -> None:
        if self.completed or self.error is not None:
            return
        self.completed = True
        self._target.on_complete(text)

    def on_error(self, message: str) -> None:
        if not self.completed and self.error is None:
            self.error = message


class InferenceBackendAdapter:
    """
    Front door to inference.

    No public method raises: native failures while loading mark the adapter
    as degraded-loaded and still report success, and native failures while
    generating fall through to the fallback responder.
    """

    def __init__(self, probe: BackendProbe, fallback: Optional[FallbackEngine] = None, *, gpu_layers: int = 0) -> None:
        """
        Args:
            probe: One-time capability probe from `detect_backend()`.
            fallback: Keyword-rule engine used whenever native inference is not possible.
            gpu_layers: Layers offloaded to a GPU when loading natively.
        """
        self._probe = probe
        self._engine = probe.engine if probe.native_loaded else None
        self._fallback = fallback or FallbackEngine()
        self._gpu_layers = gpu_layers
        self._degraded_loaded = threading.Event()

    @property
    def probe(self) -> BackendProbe:
        return self._probe

    @property
    def fallback(self) -> FallbackEngine:
        return self._fallback

    def is_available(self) -> bool:
        return self._probe.native_loaded

    def supports_real_inference(self) -> bool:
        return self._probe.native_loaded and self._probe.real_inference_supported

    def load_model(self, path: Path | str, context_length: int) -> bool:
        """
        Load `path` natively when possible.

        Returns:
            Always True; failures switch the adapter into degraded mode.
        """
        path = Path(path)
        if self._engine is None:
            logger.info("Native backend unavailable; %s marked loaded in degraded mode", path.name)
            self._degraded_loaded.set()
            return True

        try:
            loaded = bool(self._engine.load_model(path, context_length, self._gpu_layers))
        except Exception as exc:  # noqa: BLE001
            logger.error("Exception during native model load: %s", exc, exc_info=True)
            loaded = False

        if loaded:
            self._degraded_loaded.clear()
            logger.info("Model %s loaded natively", path.name)
        else:
            self._degraded_loaded.set()
            logger.warning("Native load of %s failed; continuing in degraded mode", path.name)
        return True

    def unload_model(self) -> None:
        if self._engine is not None:
            try:
                self._engine.unload_model()
            except Exception as exc:  # noqa: BLE001
                logger.error("Error unloading native model: %s", exc)
        self._degraded_loaded.clear()

    def is_model_loaded(self) -> bool:
        return self._native_model_loaded() or self._degraded_loaded.is_set()

    def is_degraded(self) -> bool:
        return self._degraded_loaded.is_set() and not self._native_model_loaded()

    def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        sink: GenerationSink,
        *,
        cancel: Optional[threading.Event] = None,
        allow_native: bool = True,
    ) -> None:
        """
        Generate a completion, streaming into `sink`.

        Native inference is used when the library is functional, a model is
        loaded natively and `allow_native` is set. A native failure before any
        token was streamed falls through to the fallback responder; a failure
        after tokens were streamed ends the stream with `on_error`.
        """
        native_loaded = self._native_model_loaded()
        use_native = allow_native and self.supports_real_inference() and native_loaded
        logger.info(
            "Generate request - native=%s real_inference=%s model_loaded=%s use_native=%s",
            self._probe.native_loaded,
            self._probe.real_inference_supported,
            native_loaded,
            use_native,
        )

        if use_native and self._generate_native(prompt, max_tokens, temperature, sink):
            return

        logger.info("Using fallback responder")
        self._fallback.generate(prompt, sink, cancel)

    def _generate_native(self, prompt: str, max_tokens: int, temperature: float, sink: GenerationSink) -> bool:
        """Return True when the native path fully handled the request."""
        guard = _NativeGuard(sink)
        try:
            self._engine.generate(prompt, max_tokens, temperature, guard)
        except Exception as exc:  # noqa: BLE001
            guard.on_error(str(exc) or type(exc).__name__)
            logger.warning("Native generate failed: %s", exc)

        if guard.completed:
            return True
        if guard.error is None:
            sink.on_complete("".join(guard.parts))
            return True
        if guard.parts:
            sink.on_error(guard.error)
            return True
        logger.warning("Native generation produced nothing (%s); falling back", guard.error)
        return False

    def stop_generation(self) -> None:
        self._fallback.stop()
        if self._engine is not None:
            try:
                self._engine.stop_generation()
            except Exception as exc:  # noqa: BLE001
                logger.error("Error stopping native generation: %s", exc)

    def is_generating(self) -> bool:
        if self._fallback.is_generating():
            return True
        if self._engine is None:
            return False
        return bool(_safe_call(self._engine.is_generating, False))

    def mode(self) -> str:
        if self.supports_real_inference() and self._native_model_loaded():
            return MODE_NATIVE
        if self.is_model_loaded():
            return MODE_DEGRADED
        return MODE_FALLBACK

    def mode_description(self) -> str:
        if self.supports_real_inference():
            if self._native_model_loaded():
                return "Real AI inference (llama.cpp native)"
            return "Native ready (model not loaded)"
        if self._probe.native_loaded:
            return "Native library loaded (llama.cpp not functional)"
        return "Fallback AI mode (limited replies)"

    def system_info(self) -> str:
        lines = [self.mode_description(), ""]
        if self._engine is not None:
            lines.append(_safe_call(self._engine.system_info, "llama.cpp (native) - system info unavailable"))
        else:
            lines.append("llama.cpp: fallback responder mode")
            if self._probe.load_error:
                lines.append(f"Load error: {self._probe.load_error}")
            lines.append("Install llama-cpp-python and load a GGUF model to enable real offline inference.")
        return "\n".join(lines)

    def capability(self) -> BackendCapability:
        return BackendCapability(
            native_loaded=self._probe.native_loaded,
            load_error=self._probe.load_error,
            real_inference_supported=self.supports_real_inference(),
            model_loaded=self.is_model_loaded(),
            degraded=self.is_degraded(),
            mode=self.mode(),
        )

    def detailed_status(self) -> Dict[str, Any]:
        capability = self.capability()
        return {
            "nativeLoaded": capability.native_loaded,
            "nativeLoadError": capability.load_error or "none",
            "realInferenceSupported": capability.real_inference_supported,
            "modelLoaded": capability.model_loaded,
            "degraded": capability.degraded,
            "isGenerating": self.is_generating(),
            "mode": capability.mode,
            "modeDescription": self.mode_description(),
        }

    def _native_model_loaded(self) -> bool:
        if self._engine is None:
            return False
        return bool(_safe_call(self._engine.is_model_loaded, False))
