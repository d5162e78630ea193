"""
Filesystem helpers for LocalMind.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Iterable, List

MODEL_EXTENSIONS = (".gguf", ".bin")


def ensure_directory(path: Path) -> Path:
    """
    Ensure the provided path exists as a directory.

    Args:
        path: Directory path to create if missing.
    Returns:
        Path object pointing to the directory.
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_json(path: Path) -> dict[str, Any]:
    """
    Load JSON content from disk.

    Args:
        path: Path to the JSON file.
    Returns:
        Parsed dictionary content.
    """
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def save_json(path: Path, payload: dict[str, Any]) -> None:
    """
    Persist JSON payload to disk with indentation.

    The payload is written to a sibling temp file and swapped in so a crash
    never leaves a truncated file behind.

    Args:
        path: Destination path.
        payload: Serializable dictionary.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
    tmp_path.replace(path)


def list_model_files(directory: Path, extensions: Iterable[str] = MODEL_EXTENSIONS) -> List[Path]:
    """
    List model artifacts stored directly inside `directory`.

    Args:
        directory: Models directory.
        extensions: Accepted file suffixes.
    Returns:
        Sorted list of artifact paths (empty when the directory is missing).
    """
    if not directory.is_dir():
        return []
    allowed = {ext.lower() for ext in extensions}
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in allowed)


def copy_file(source: Path, target: Path, *, buffer_size: int = 8192) -> Path:
    """Copy `source` to `target`, creating parent directories."""
    ensure_directory(target.parent)
    with source.open("rb") as src, target.open("wb") as dst:
        shutil.copyfileobj(src, dst, length=buffer_size)
    return target


def format_file_size(num_bytes: int) -> str:
    """Render a byte count the way the model picker shows it (decimal units)."""
    if num_bytes >= 1_000_000_000:
        return f"{num_bytes / 1_000_000_000:.2f} GB"
    if num_bytes >= 1_000_000:
        return f"{num_bytes / 1_000_000:.2f} MB"
    if num_bytes >= 1_000:
        return f"{num_bytes / 1_000:.2f} KB"
    return f"{num_bytes} B"
