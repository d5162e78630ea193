"""
Base abstraction for LocalMind native inference engines.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from core.streaming import GenerationSink


class BaseInferenceEngine(ABC):
    """
    Base class for every native inference engine.

    Engines follow the `load_model -> generate -> unload_model` lifecycle and
    run entirely offline. They may raise; the inference adapter sitting in
    front of them converts every failure into fallback behavior.
    """

    engine_name: str

    def __init__(self, *, threads: int | None = None) -> None:
        """
        Args:
            threads: Optional CPU thread count hint for the runtime.
        """
        self._threads = threads
        self._model_path: Path | None = None
        self._is_loaded = False

    @abstractmethod
    def is_available(self) -> bool:
        """
        Return whether the native library could be imported at all.
        """

    @abstractmethod
    def supports_real_inference(self) -> bool:
        """
        Return whether the library is functional, not merely present.
        """

    @abstractmethod
    def system_info(self) -> str:
        """
        Return a human-readable description of the native runtime.
        """

    @abstractmethod
    def load_model(self, model_path: Path, n_ctx: int, n_gpu_layers: int = 0) -> bool:
        """
        Load model weights into memory.

        Args:
            model_path: Filesystem path to the GGUF artifact.
            n_ctx: Context window in tokens.
            n_gpu_layers: Layers to offload to a GPU (0 keeps everything on CPU).
        Returns:
            Whether the engine accepted the model.
        """

    @abstractmethod
    def unload_model(self) -> None:
        """
        Free the loaded model; safe to call repeatedly.
        """

    @abstractmethod
    def generate(self, prompt: str, max_tokens: int, temperature: float, sink: GenerationSink) -> None:
        """
        Generate a completion for `prompt`, streaming into `sink`.

        Runs synchronously on the calling thread. A normal run ends with one
        `on_complete` call; failures may be raised instead.
        """

    @abstractmethod
    def stop_generation(self) -> None:
        """
        Ask a running generation to stop at the next token.
        """

    @abstractmethod
    def is_generating(self) -> bool:
        """
        Return whether a generation is currently running.
        """

    def is_model_loaded(self) -> bool:
        return self._is_loaded

    @property
    def model_path(self) -> Path | None:
        return self._model_path

    def _mark_loaded(self, model_path: Path) -> None:
        """Internal helper to flag the engine as loaded."""
        self._model_path = model_path
        self._is_loaded = True

    def _mark_unloaded(self) -> None:
        """Internal helper to flag the engine as unloaded."""
        self._model_path = None
        self._is_loaded = False
