"""
llama.cpp inference engine for LocalMind (via llama-cpp-python).
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import List, Optional

try:
    import llama_cpp
    from llama_cpp import Llama
except ImportError:  # pragma: no cover - optional dependency
    llama_cpp = None  # type: ignore
    Llama = None  # type: ignore

from core.base_adapter import BaseInferenceEngine
from core.streaming import GenerationSink
from utils.logger_util import get_logger

logger = get_logger("llm.llamacpp")

CHATML_STOP = ["<|im_end|>", "<|im_start|>"]
# Context reserved for the prompt however many completion tokens are requested.
MIN_PROMPT_TOKENS = 256
MIN_COMPLETION_TOKENS = 16


class LLMllamacpp(BaseInferenceEngine):
    """
    Native engine backed by a GGUF checkpoint loaded through llama.cpp.
    """

    engine_name = "llama.cpp"

    def __init__(self, *, threads: int | None = None) -> None:
        super().__init__(threads=threads or int(os.getenv("LOCALMIND_LLM_THREADS", str(os.cpu_count() or 4))))
        self._force_fake = os.getenv("LOCALMIND_LLM_FAKE", "0") == "1"
        self._prompt_margin = int(os.getenv("LOCALMIND_LLM_MARGIN", "64"))
        self._context_window = 0
        self._llm: Optional[Llama] = None
        self._stop = threading.Event()
        self._generating = threading.Event()

    def is_available(self) -> bool:
        return not self._force_fake and Llama is not None

    def supports_real_inference(self) -> bool:
        if not self.is_available():
            return False
        try:
            llama_cpp.llama_print_system_info()
        except Exception as exc:  # noqa: BLE001 - any native failure means "not functional"
            logger.warning("llama.cpp present but not functional: %s", exc)
            return False
        return True

    def system_info(self) -> str:
        if not self.is_available():
            reason = "forced by LOCALMIND_LLM_FAKE" if self._force_fake else "llama_cpp not installed"
            return f"llama.cpp unavailable ({reason})"
        raw = llama_cpp.llama_print_system_info()
        info = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        version = getattr(llama_cpp, "__version__", "unknown")
        return f"llama-cpp-python {version}\n{info.strip()}"

    def load_model(self, model_path: Path, n_ctx: int, n_gpu_layers: int = 0) -> bool:
        """Load the GGUF file; raises when the runtime or the file is missing."""
        if not self.is_available():
            raise RuntimeError("llama_cpp is not available")
        if not model_path.exists():
            raise FileNotFoundError(f"Model file {model_path} missing")

        if self._llm is not None:
            self.unload_model()

        logger.info(
            "Loading GGUF from %s (n_ctx=%s, threads=%s, gpu_layers=%s)", model_path, n_ctx, self._threads, n_gpu_layers
        )
        self._llm = Llama(
            model_path=str(model_path),
            n_ctx=n_ctx,
            n_threads=self._threads,
            n_gpu_layers=n_gpu_layers,
            logits_all=False,
            embedding=False,
            verbose=False,
        )
        self._context_window = n_ctx
        self._mark_loaded(model_path)
        return True

    def unload_model(self) -> None:
        if self._llm is None:
            self._mark_unloaded()
            return
        logger.info("Unloading model %s", self.model_path)
        close = getattr(self._llm, "close", None)
        if callable(close):
            close()
        self._llm = None
        self._mark_unloaded()

    def is_model_loaded(self) -> bool:
        return self._llm is not None and super().is_model_loaded()

    def generate(self, prompt: str, max_tokens: int, temperature: float, sink: GenerationSink) -> None:
        """
        Stream a completion token by token.

        The stop flag is checked between tokens; on stop the text produced so
        far is delivered through `on_complete`.
        """
        llm = self._llm
        if llm is None:
            raise RuntimeError("No model loaded")

        self._stop.clear()
        self._generating.set()
        try:
            max_tokens = self._completion_budget(max_tokens)
            prompt = self._fit_prompt(llm, prompt, max_tokens)
            logger.debug("llama.cpp prompt len=%s temperature=%s max_tokens=%s", len(prompt), temperature, max_tokens)

            parts: List[str] = []
            for chunk in llm(prompt, max_tokens=max_tokens, temperature=temperature, stop=CHATML_STOP, stream=True):
                if self._stop.is_set():
                    logger.info("Generation stopped after %s chunks", len(parts))
                    break
                token = chunk["choices"][0].get("text", "")
                if token:
                    parts.append(token)
                    sink.on_token(token)
        finally:
            self._generating.clear()
        sink.on_complete("".join(parts))

    def stop_generation(self) -> None:
        self._stop.set()

    def is_generating(self) -> bool:
        return self._generating.is_set()

    def _completion_budget(self, requested: int) -> int:
        """
        Cap `requested` so `MIN_PROMPT_TOKENS` of the window stay free for the prompt.

        Args:
            requested: Completion tokens asked for by the caller.
        Returns:
            Completion tokens actually passed to llama.cpp.
        """
        ceiling = self._context_window - self._prompt_margin - MIN_PROMPT_TOKENS
        if ceiling < MIN_COMPLETION_TOKENS:
            raise ValueError(f"Context window of {self._context_window} tokens is too small to generate.")
        budget = max(MIN_COMPLETION_TOKENS, min(requested, ceiling))
        if budget < requested:
            logger.info("max_tokens capped from %s to %s for a %s-token context.", requested, budget, self._context_window)
        return budget

    def _fit_prompt(self, llm: Llama, prompt: str, max_tokens: int) -> str:
        allowed_prompt_tokens = self._context_window - max_tokens - self._prompt_margin
        if allowed_prompt_tokens <= 0:
            raise ValueError("Requested max_tokens leaves no room for prompt.")

        prompt_tokens = llm.tokenize(prompt.encode("utf-8"), add_bos=True, special=True)
        if len(prompt_tokens) <= allowed_prompt_tokens:
            return prompt

        original_length = len(prompt_tokens)
        prompt_tokens = prompt_tokens[-allowed_prompt_tokens:]
        logger.warning("Prompt truncated from %s to %s tokens to fit context window.", original_length, allowed_prompt_tokens)
        return llm.detokenize(prompt_tokens).decode("utf-8", errors="ignore")
