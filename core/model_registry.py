"""
Static catalog of the model artifacts LocalMind knows how to fetch.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from huggingface_hub import hf_hub_url
from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.file_utils import MODEL_EXTENSIONS
from utils.logger_util import get_logger

logger = get_logger("core.registry")

DEFAULT_CONTEXT_LENGTH = 2048
DEFAULT_HF_ENDPOINT = "https://hf-mirror.com"


class ModelDescriptor(BaseModel):
    """
    Immutable description of one downloadable model artifact.

    `name` doubles as the filename inside the models directory.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    download_url: str
    size_bytes: int = Field(default=0, ge=0)
    context_length: int = Field(default=DEFAULT_CONTEXT_LENGTH, gt=0)
    description: str = ""

    @field_validator("name")
    @classmethod
    def _check_extension(cls, value: str) -> str:
        if not value.lower().endswith(MODEL_EXTENSIONS):
            raise ValueError(f"model name must end with one of {MODEL_EXTENSIONS}: {value!r}")
        if Path(value).name != value:
            raise ValueError(f"model name must be a bare filename: {value!r}")
        return value


def default_catalog(endpoint: Optional[str] = None) -> List[ModelDescriptor]:
    """
    Build the four pre-registered descriptors.

    Args:
        endpoint: Hugging Face mirror to resolve files against
            (defaults to `LOCALMIND_HF_ENDPOINT` or hf-mirror.com).
    Returns:
        Descriptors ordered as they appear in the model picker.
    """
    endpoint = endpoint or os.getenv("LOCALMIND_HF_ENDPOINT", DEFAULT_HF_ENDPOINT)
    return [
        ModelDescriptor(
            name="deepseek-coder-1.3b-q4.gguf",
            display_name="DeepSeek Coder 1.3B (Q4)",
            download_url=hf_hub_url(
                "TheBloke/deepseek-coder-1.3b-instruct-GGUF",
                "deepseek-coder-1.3b-instruct.Q4_K_M.gguf",
                endpoint=endpoint,
            ),
            size_bytes=800_000_000,
            description="Lightweight code model for basic chat and code questions.",
        ),
        ModelDescriptor(
            name="qwen2-0.5b-q8.gguf",
            display_name="Qwen2 0.5B (Q8)",
            download_url=hf_hub_url("Qwen/Qwen2-0.5B-Instruct-GGUF", "qwen2-0_5b-instruct-q8_0.gguf", endpoint=endpoint),
            size_bytes=530_000_000,
            description="Ultra-light model, the fastest to run.",
        ),
        ModelDescriptor(
            name="phi-2-q4.gguf",
            display_name="Microsoft Phi-2 (Q4)",
            download_url=hf_hub_url("TheBloke/phi-2-GGUF", "phi-2.Q4_K_M.gguf", endpoint=endpoint),
            size_bytes=1_600_000_000,
            description="Small Microsoft model with good answer quality.",
        ),
        ModelDescriptor(
            name="tinyllama-1.1b-q4.gguf",
            display_name="TinyLlama 1.1B (Q4)",
            download_url=hf_hub_url(
                "TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF",
                "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
                endpoint=endpoint,
            ),
            size_bytes=670_000_000,
            description="Small chat model balancing speed and quality.",
        ),
    ]


class ModelRegistry:
    """
    Read-only lookup over the model catalog, keyed by descriptor name.
    """

    def __init__(self, descriptors: Optional[List[ModelDescriptor]] = None) -> None:
        self._descriptors: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors if descriptors is not None else default_catalog():
            self._register(descriptor)

    def _register(self, descriptor: ModelDescriptor) -> None:
        if descriptor.name in self._descriptors:
            raise ValueError(f"Duplicate model name '{descriptor.name}'")
        logger.debug("Registering model descriptor name=%s", descriptor.name)
        self._descriptors[descriptor.name] = descriptor

    def get(self, name: str) -> ModelDescriptor:
        """
        Retrieve a descriptor by name.

        Args:
            name: Descriptor name (also the artifact filename).
        Returns:
            The matching descriptor.
        """
        if name not in self._descriptors:
            raise KeyError(f"No model registered under '{name}'")
        return self._descriptors[name]

    def find_for_path(self, path: Path | str) -> Optional[ModelDescriptor]:
        """Return the descriptor whose filename matches `path`, if any."""
        return self._descriptors.get(Path(path).name)

    def context_length_for(self, path: Path | str) -> int:
        descriptor = self.find_for_path(path)
        return descriptor.context_length if descriptor else DEFAULT_CONTEXT_LENGTH

    def descriptors(self) -> List[ModelDescriptor]:
        return list(self._descriptors.values())

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)
