"""
Native LLM engines for LocalMind.
"""

from __future__ import annotations

from pathlib import Path

from core.adapter_loader import load_class
from core.base_adapter import BaseInferenceEngine

_LLM_LLAMACPP_PATH = Path(__file__).with_name("LLMllamacpp-class.py")

LLMllamacpp = load_class(_LLM_LLAMACPP_PATH, "LLMllamacpp", BaseInferenceEngine)

__all__ = ["LLMllamacpp"]
