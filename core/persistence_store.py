"""
Durable record of the last loaded model for LocalMind.
"""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from utils.file_utils import load_json, save_json
from utils.logger_util import get_logger

logger = get_logger("core.persistence")

KEY_LAST_LOADED_MODEL = "last_loaded_model"
KEY_LAST_LOAD_TIME = "last_load_time"
KEY_AUTO_LOAD_MODEL = "auto_load_model"


class PersistedConfig(BaseModel):
    """Snapshot of the persisted model configuration."""

    last_loaded_model: Optional[str] = None
    last_load_time: Optional[int] = None
    auto_load_model: bool = True


class PersistenceStore:
    """
    Key-value store backed by a small JSON file.

    Paths are stored verbatim; whether the file still exists is checked by
    the lifecycle initializer, not here.
    """

    def __init__(self, config_path: Path) -> None:
        """
        Args:
            config_path: JSON file holding the persisted keys.
        """
        self._config_path = config_path
        self._lock = threading.Lock()

    @property
    def config_path(self) -> Path:
        return self._config_path

    def save(self, model_path: str | Path) -> None:
        """
        Record `model_path` as the last successfully loaded model.

        Args:
            model_path: Path of the artifact that was just loaded.
        """
        with self._lock:
            payload = self._read()
            payload[KEY_LAST_LOADED_MODEL] = str(model_path)
            payload[KEY_LAST_LOAD_TIME] = int(time.time() * 1000)
            save_json(self._config_path, payload)
        logger.info("Saved model configuration for %s", model_path)

    def load(self) -> PersistedConfig:
        """
        Read the persisted configuration.

        Returns:
            PersistedConfig with defaults for every missing key.
        """
        with self._lock:
            payload = self._read()
        try:
            return PersistedConfig.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed persisted config at %s: %s", self._config_path, exc)
            return PersistedConfig()

    def set_auto_load(self, enabled: bool) -> None:
        with self._lock:
            payload = self._read()
            payload[KEY_AUTO_LOAD_MODEL] = bool(enabled)
            save_json(self._config_path, payload)
        logger.debug("Autoload set to %s", enabled)

    def is_auto_load_enabled(self) -> bool:
        return self.load().auto_load_model

    def _read(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        try:
            payload = load_json(self._config_path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read %s (%s); starting from an empty config", self._config_path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}
