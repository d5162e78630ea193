"""
Importer for engine modules stored under dashed filenames (e.g. `LLMllamacpp-class.py`).
"""

from __future__ import annotations

from functools import lru_cache
from importlib.machinery import SourceFileLoader
from importlib.util import module_from_spec, spec_from_loader
from pathlib import Path
from types import ModuleType
from typing import Optional, Type


@lru_cache(maxsize=None)
def _load_module(path: Path) -> ModuleType:
    """
    Execute the file at `path` as a module named after its sanitized stem.
    """
    if not path.is_file():
        raise ImportError(f"Engine module {path} does not exist")
    module_name = f"localmind_{path.stem.replace('-', '_').lower()}"
    loader = SourceFileLoader(module_name, str(path))
    spec = spec_from_loader(module_name, loader)
    if spec is None or spec.loader is None:
        raise ImportError(f"Unable to load spec for {path}")
    module = module_from_spec(spec)
    loader.exec_module(module)
    return module


def load_class(path: Path, class_name: str, base: Optional[type] = None) -> Type:
    """
    Load a class object from a file path.

    Args:
        path: Path to the module file.
        class_name: Class to retrieve from the module.
        base: Optional base class the loaded class must derive from.
    Returns:
        The located class object.
    """
    module = _load_module(path)
    cls = getattr(module, class_name, None)
    if cls is None:
        raise ImportError(f"{class_name} not found in {path}")
    if base is not None and not (isinstance(cls, type) and issubclass(cls, base)):
        raise ImportError(f"{class_name} in {path} is not a {base.__name__}")
    return cls
