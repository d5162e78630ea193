"""
Settings for LocalMind: `settings_local.json` plus `LOCALMIND_*` environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from core.errors import ConfigurationError
from utils.file_utils import load_json
from utils.logger_util import get_logger

logger = get_logger("core.settings")

T = TypeVar("T")

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


def parse_bool(value: Any) -> bool:
    """Interpret a JSON or environment value as a flag; unknown strings raise `ValueError`."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean, got {value!r}")


class SettingsLoader:
    """
    Lazy loader for the LocalMind settings file.

    A missing settings file is not an error: every lookup then resolves to
    its default, so a fresh checkout runs without any configuration. The
    typed getters let an environment variable win over the file.
    """

    def __init__(self, settings_file: Path | None = None, *, overrides: Optional[dict[str, Any]] = None) -> None:
        """
        Args:
            settings_file: Optional explicit path to `settings_local.json`.
            overrides: Optional in-memory settings used instead of reading disk.
        """
        self._settings_path = settings_file or Path(os.getenv("LOCALMIND_SETTINGS_FILE", "./settings_local.json"))
        self._cache: dict[str, Any] | None = dict(overrides) if overrides is not None else None

    @property
    def settings_path(self) -> Path:
        return self._settings_path

    def load(self) -> dict[str, Any]:
        """
        Load settings from disk (cached after first call).

        Returns:
            Parsed dictionary containing LocalMind configuration.
        Raises:
            ConfigurationError: The file does not hold a JSON object.
        """
        if self._cache is None:
            if not self._settings_path.exists():
                logger.debug("Settings file %s not found; using defaults", self._settings_path)
                self._cache = {}
                return self._cache
            logger.debug("Loading settings from %s", self._settings_path)
            payload = load_json(self._settings_path)
            if not isinstance(payload, dict):
                raise ConfigurationError(f"{self._settings_path} must contain a JSON object")
            self._cache = payload
        return self._cache

    def get(self, *keys: str, default: Any | None = None) -> Any:
        """
        Retrieve a nested configuration value.

        Args:
            *keys: Hierarchical keys (e.g., "download", "chunk_size").
            default: Optional fallback if the key path does not exist.
        Returns:
            Value at the provided key path or the default.
        """
        current: Any = self.load()
        for key in keys:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def get_path(self, *keys: str, env: str | None = None, default: str) -> Path:
        """Resolve a filesystem path, letting `env` win over the file."""
        raw = (os.getenv(env) if env else None) or self.get(*keys, default=default)
        return Path(str(raw)).expanduser()

    def get_int(self, *keys: str, env: str | None = None, default: int) -> int:
        return self._typed(keys, env, default, int)

    def get_float(self, *keys: str, env: str | None = None, default: float) -> float:
        return self._typed(keys, env, default, float)

    def get_bool(self, *keys: str, env: str | None = None, default: bool) -> bool:
        return self._typed(keys, env, default, parse_bool)

    def _typed(self, keys: tuple[str, ...], env: str | None, default: T, convert: Callable[[Any], T]) -> T:
        env_value = os.getenv(env) if env else None
        if env_value is not None:
            source, raw = env, env_value
        else:
            source, raw = ".".join(keys), self.get(*keys, default=default)
        try:
            return convert(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for {source}: {raw!r}") from exc
