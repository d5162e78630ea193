"""
Explicit wiring of the LocalMind object graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from core.base_adapter import BaseInferenceEngine
from core.control import ControlHandler, ControlPermission, SettingsControlPermission
from core.dispatcher import DEFAULT_SYSTEM_PROMPT, GenerationDispatcher
from core.download_coordinator import DEFAULT_CHUNK_SIZE, DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT, DownloadCoordinator
from core.fallback_responder import FallbackEngine
from core.inference_adapter import InferenceBackendAdapter, detect_backend
from core.model_manager import ModelManager
from core.model_registry import ModelRegistry, default_catalog
from core.persistence_store import PersistenceStore
from core.settings_loader import SettingsLoader
from core.streaming import CallbackChannel, DeliveryChannel
from utils.logger_util import get_logger

logger = get_logger("core.runtime")

CONFIG_FILENAME = "model_config.json"
# Copied into the models directory on first run when present.
DEFAULT_BUNDLED_MODEL = "./assets/tinyllama-1.1b-q4.gguf"


@dataclass
class Runtime:
    """Everything a LocalMind process needs, built once by `build_runtime()`."""

    settings: SettingsLoader
    registry: ModelRegistry
    store: PersistenceStore
    coordinator: DownloadCoordinator
    adapter: InferenceBackendAdapter
    manager: ModelManager
    dispatcher: GenerationDispatcher
    channel: DeliveryChannel

    def shutdown(self) -> None:
        self.dispatcher.shutdown()
        self.manager.shutdown()
        close = getattr(self.channel, "close", None)
        if close is not None:
            close()
        logger.info("LocalMind runtime stopped")


def build_runtime(
    settings: Optional[SettingsLoader] = None,
    *,
    engine_factory: Optional[Callable[[], BaseInferenceEngine]] = None,
    channel: Optional[DeliveryChannel] = None,
    http_session: Optional[Any] = None,
    fallback: Optional[FallbackEngine] = None,
    permission: Optional[ControlPermission] = None,
    control_handler: Optional[ControlHandler] = None,
    initialize: bool = True,
) -> Runtime:
    """
    Build the runtime from settings and environment.

    Args:
        settings: Settings source; a default `SettingsLoader` when omitted.
        engine_factory: Native engine constructor used by the backend probe.
        channel: Delivery channel for callbacks; a `CallbackChannel` by default.
        http_session: `requests.Session`-like object for downloads.
        fallback: Fallback engine override (tests inject deterministic streamers).
        permission: Device-control permission source.
        control_handler: Device-control post-processor.
        initialize: Queue `ModelManager.initialize()` on the lifecycle worker.
    Returns:
        The wired `Runtime`.
    """
    load_dotenv()
    settings = settings or SettingsLoader()

    data_dir = settings.get_path("paths", "data_dir", env="LOCALMIND_DATA_DIR", default="./data")
    models_dir = settings.get_path("paths", "models_dir", env="LOCALMIND_MODELS_DIR", default=str(data_dir / "models"))
    bundled = settings.get_path("paths", "bundled_model", env="LOCALMIND_BUNDLED_MODEL", default=DEFAULT_BUNDLED_MODEL)

    registry = ModelRegistry(default_catalog(settings.get("download", "hf_endpoint", default=None)))
    store = PersistenceStore(data_dir / CONFIG_FILENAME)
    coordinator = DownloadCoordinator(
        models_dir,
        session=http_session,
        connect_timeout=settings.get_float("download", "connect_timeout", default=DEFAULT_CONNECT_TIMEOUT),
        read_timeout=settings.get_float("download", "read_timeout", default=DEFAULT_READ_TIMEOUT),
        chunk_size=settings.get_int("download", "chunk_size", default=DEFAULT_CHUNK_SIZE),
    )

    probe = detect_backend(engine_factory)
    gpu_layers = settings.get_int("llm", "n_gpu_layers", env="LOCALMIND_LLM_N_GPU_LAYERS", default=0)
    adapter = InferenceBackendAdapter(probe, fallback, gpu_layers=gpu_layers)

    channel = channel or CallbackChannel()
    manager = ModelManager(
        registry=registry,
        store=store,
        coordinator=coordinator,
        adapter=adapter,
        channel=channel,
        bundled_artifact=bundled,
    )
    dispatcher = GenerationDispatcher(
        adapter,
        channel=channel,
        state_provider=manager.lifecycle.current_state,
        permission=permission or SettingsControlPermission(settings),
        control_handler=control_handler,
        system_prompt=settings.get("llm", "system_prompt", default=DEFAULT_SYSTEM_PROMPT),
    )
    logger.info("LocalMind runtime ready (models dir: %s, mode: %s)", models_dir, adapter.mode())

    if initialize:
        manager.initialize()

    return Runtime(
        settings=settings,
        registry=registry,
        store=store,
        coordinator=coordinator,
        adapter=adapter,
        manager=manager,
        dispatcher=dispatcher,
        channel=channel,
    )
