"""
Model lifecycle facade: download, load, unload and delete on one worker.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.download_coordinator import DownloadCoordinator
from core.errors import (
    BackendFailure,
    DownloadError,
    DownloadInProgress,
    InvalidTransition,
    LocalMindError,
    ModelFileNotFound,
    NoModelsAvailable,
)
from core.inference_adapter import InferenceBackendAdapter
from core.lifecycle import LifecycleEvent, LifecycleStateMachine, ModelState
from core.model_registry import ModelDescriptor, ModelRegistry
from core.persistence_store import PersistenceStore
from core.streaming import DeliveryChannel, ImmediateChannel
from utils.file_utils import copy_file, format_file_size, list_model_files
from utils.logger_util import get_logger

logger = get_logger("core.model_manager")

ProgressCallback = Callable[[int], None]
CompletionCallback = Callable[[bool, Optional[str]], None]

# Bundled copies smaller than this are treated as placeholders and replaced.
MIN_BUNDLED_SIZE = 1000


def _finished(result: bool) -> "Future[bool]":
    future: "Future[bool]" = Future()
    future.set_result(result)
    return future


class ModelManager:
    """
    Owns the lifecycle worker and drives the state machine.

    Every mutating operation is queued on a single-thread executor, so
    transitions never interleave. Public operations never raise: outcomes
    are reported through `on_complete(ok, error)` on the delivery channel
    and through the returned future's boolean result.
    """

    def __init__(
        self,
        *,
        registry: ModelRegistry,
        store: PersistenceStore,
        coordinator: DownloadCoordinator,
        adapter: InferenceBackendAdapter,
        lifecycle: Optional[LifecycleStateMachine] = None,
        channel: Optional[DeliveryChannel] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        bundled_artifact: Optional[Path] = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._coordinator = coordinator
        self._adapter = adapter
        self._lifecycle = lifecycle or LifecycleStateMachine()
        self._channel = channel or ImmediateChannel()
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="localmind-lifecycle")
        self._bundled_artifact = bundled_artifact
        self._models_dir = coordinator.models_dir
        self._download_slot = threading.Lock()
        self._current_path: Optional[Path] = None

    # ------------------------------------------------------------------ queries

    @property
    def lifecycle(self) -> LifecycleStateMachine:
        return self._lifecycle

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def state(self) -> ModelState:
        return self._lifecycle.state

    @property
    def last_error(self) -> Optional[str]:
        return self._lifecycle.last_error

    @property
    def current_model_path(self) -> Optional[Path]:
        return self._current_path

    @property
    def is_downloading(self) -> bool:
        return self._download_slot.locked() or self._coordinator.is_busy

    def available_models(self) -> List[ModelDescriptor]:
        return self._registry.descriptors()

    def downloaded_models(self) -> List[str]:
        return [path.name for path in list_model_files(self._models_dir)]

    def is_model_downloaded(self, name: str) -> bool:
        return (self._models_dir / Path(name).name).is_file()

    def model_size(self, name: str) -> str:
        """Human-readable size of the artifact on disk, else the catalog estimate."""
        path = self._models_dir / Path(name).name
        if path.is_file():
            return format_file_size(path.stat().st_size)
        if name in self._registry and self._registry.get(name).size_bytes > 0:
            return format_file_size(self._registry.get(name).size_bytes)
        return "unknown"

    def set_auto_load(self, enabled: bool) -> None:
        self._store.set_auto_load(enabled)

    def is_auto_load_enabled(self) -> bool:
        return self._store.is_auto_load_enabled()

    def system_info(self) -> str:
        current = self._current_path.name if self._current_path else "none"
        return "\n".join(
            [
                self._adapter.system_info(),
                "",
                f"Model state: {self.state.name}",
                f"Current model: {current}",
                f"Models directory: {self._models_dir}",
            ]
        )

    def detailed_status(self) -> Dict[str, Any]:
        session = self._coordinator.session
        status: Dict[str, Any] = {
            "state": self.state.value,
            "lastError": self.last_error,
            "currentModel": str(self._current_path) if self._current_path else None,
            "autoLoad": self.is_auto_load_enabled(),
            "downloading": self.is_downloading,
            "downloadModel": session.descriptor.name if session else None,
            "downloadProgress": session.percent if session else None,
            "downloadedModels": self.downloaded_models(),
        }
        status.update(self._adapter.detailed_status())
        return status

    # --------------------------------------------------------------- operations

    def initialize(self, on_complete: Optional[CompletionCallback] = None) -> "Future[bool]":
        """Seed state from disk and autoload the persisted model when allowed."""
        return self._submit(self._initialize, on_complete)

    def download_model(
        self,
        name: str,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> "Future[bool]":
        """
        Download a catalog model.

        Args:
            name: Descriptor name from the registry.
            on_progress: Receives percentages, or -1 when the size is unknown.
            on_complete: Receives `(ok, error_message)`.
        Returns:
            Future resolving to True on success.
        """
        if not self._download_slot.acquire(blocking=False):
            error = DownloadInProgress()
            logger.warning("Rejected download of %s: %s", name, error)
            self._report(on_complete, False, str(error))
            return _finished(False)

        try:
            descriptor = self._registry.get(name)
        except KeyError:
            self._download_slot.release()
            message = f"Unknown model: {name}"
            logger.error(message)
            self._report(on_complete, False, message)
            return _finished(False)

        def task() -> None:
            try:
                self._download(descriptor, on_progress)
            finally:
                self._download_slot.release()

        return self._submit(task, on_complete, on_rejected=self._download_slot.release)

    def cancel_download(self) -> bool:
        return self._coordinator.cancel()

    def load_model(
        self,
        name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> "Future[bool]":
        """
        Load a model artifact.

        Args:
            name: Absolute path, a filename inside the models directory, or
                None for the first downloaded artifact.
            on_progress: Receives 10, 30 and 100 as loading advances.
            on_complete: Receives `(ok, error_message)`.
        Returns:
            Future resolving to True on success.
        """
        try:
            path = self._resolve_model_path(name)
        except NoModelsAvailable as exc:
            logger.error("Cannot load model: %s", exc)
            self._report(on_complete, False, str(exc))
            return _finished(False)
        return self._submit(lambda: self._load(path, on_progress), on_complete)

    def unload_model(self, on_complete: Optional[CompletionCallback] = None) -> "Future[bool]":
        return self._submit(self._unload, on_complete)

    def delete_model(self, name: str, on_complete: Optional[CompletionCallback] = None) -> "Future[bool]":
        """Delete a downloaded artifact, unloading it first when it is the active model."""
        return self._submit(lambda: self._delete(name), on_complete)

    def shutdown(self) -> None:
        self._coordinator.cancel()
        self._executor.shutdown(wait=True)
        self._adapter.unload_model()
        logger.info("Model manager stopped")

    # ------------------------------------------------------------ worker bodies

    def _submit(
        self,
        body: Callable[[], None],
        on_complete: Optional[CompletionCallback],
        *,
        on_rejected: Optional[Callable[[], None]] = None,
    ) -> "Future[bool]":
        def run() -> bool:
            try:
                body()
            except LocalMindError as exc:
                logger.error("%s", exc)
                self._report(on_complete, False, str(exc))
                return False
            except Exception as exc:  # noqa: BLE001 - lifecycle operations report, never raise
                logger.error("Unexpected lifecycle failure: %s", exc, exc_info=True)
                self._report(on_complete, False, str(exc) or type(exc).__name__)
                return False
            self._report(on_complete, True, None)
            return True

        try:
            return self._executor.submit(run)
        except RuntimeError as exc:
            logger.error("Lifecycle worker unavailable: %s", exc)
            if on_rejected is not None:
                on_rejected()
            self._report(on_complete, False, f"Lifecycle worker unavailable: {exc}")
            return _finished(False)

    def _report(self, on_complete: Optional[CompletionCallback], ok: bool, error: Optional[str]) -> None:
        if on_complete is not None:
            self._channel.post(on_complete, ok, error)

    def _initialize(self) -> None:
        self._extract_bundled_artifact()
        artifacts = list_model_files(self._models_dir)
        logger.info("Found %s downloaded model(s) in %s", len(artifacts), self._models_dir)

        config = self._store.load()
        autoload_path: Optional[Path] = None
        if not config.auto_load_model:
            logger.info("Autoload disabled")
        elif config.last_loaded_model:
            candidate = Path(config.last_loaded_model)
            if candidate.is_file():
                autoload_path = candidate
            else:
                logger.warning("Last loaded model %s no longer exists; skipping autoload", candidate)

        if artifacts or autoload_path is not None:
            try:
                self._lifecycle.restore(ModelState.DOWNLOADED)
            except InvalidTransition as exc:
                logger.warning("State already advanced; skipping restore: %s", exc)

        if autoload_path is not None and self._lifecycle.state is ModelState.DOWNLOADED:
            logger.info("Autoloading %s", autoload_path.name)
            self._load(autoload_path, None)

    def _extract_bundled_artifact(self) -> None:
        bundled = self._bundled_artifact
        if bundled is None or not bundled.is_file():
            return
        target = self._models_dir / bundled.name
        if target.is_file() and target.stat().st_size >= MIN_BUNDLED_SIZE:
            return
        try:
            copy_file(bundled, target)
            logger.info("Copied bundled model %s (%s)", bundled.name, format_file_size(target.stat().st_size))
        except OSError as exc:
            logger.error("Failed to copy bundled model %s: %s", bundled, exc)

    def _download(self, descriptor: ModelDescriptor, on_progress: Optional[ProgressCallback]) -> None:
        self._lifecycle.transition(LifecycleEvent.BEGIN_DOWNLOAD)

        def progress(percent: int) -> None:
            if on_progress is not None:
                self._channel.post(on_progress, percent)

        try:
            self._coordinator.download(descriptor, progress)
        except DownloadError as exc:
            self._lifecycle.transition(LifecycleEvent.DOWNLOAD_FAILED, error=str(exc))
            raise
        except Exception as exc:
            self._lifecycle.transition(LifecycleEvent.DOWNLOAD_FAILED, error=str(exc) or type(exc).__name__)
            raise
        self._lifecycle.transition(LifecycleEvent.DOWNLOAD_SUCCEEDED)

    def _resolve_model_path(self, name: Optional[str]) -> Path:
        if name:
            candidate = Path(name)
            if candidate.is_absolute() and candidate.is_file():
                return candidate
            in_models_dir = self._models_dir / candidate.name
            if in_models_dir.is_file():
                return in_models_dir
        artifacts = list_model_files(self._models_dir)
        if not artifacts:
            raise NoModelsAvailable()
        if name:
            logger.warning("Model %s not found; loading %s instead", name, artifacts[0].name)
        return artifacts[0]

    def _load(self, path: Path, on_progress: Optional[ProgressCallback]) -> None:
        if not path.is_file():
            raise ModelFileNotFound(f"Model file not found: {path}")

        def progress(percent: int) -> None:
            if on_progress is not None:
                self._channel.post(on_progress, percent)

        if self._lifecycle.state is ModelState.READY:
            self._unload()

        self._lifecycle.transition(LifecycleEvent.BEGIN_LOAD)
        progress(10)
        context_length = self._registry.context_length_for(path)
        logger.info("Loading model %s (context %s)", path.name, context_length)
        progress(30)
        try:
            loaded = self._adapter.load_model(path, context_length)
        except Exception as exc:  # noqa: BLE001
            loaded = False
            logger.error("Adapter raised while loading %s: %s", path.name, exc)
        if not loaded:
            error = BackendFailure(f"Backend failed to load {path.name}")
            self._lifecycle.transition(LifecycleEvent.LOAD_FAILED, error=str(error))
            raise error

        self._lifecycle.transition(LifecycleEvent.LOAD_SUCCEEDED)
        self._current_path = path
        self._store.save(path)
        progress(100)
        logger.info("Model %s ready (mode: %s)", path.name, self._adapter.mode())

    def _unload(self) -> None:
        self._lifecycle.transition(LifecycleEvent.UNLOAD)
        self._adapter.unload_model()
        self._current_path = None
        logger.info("Model unloaded")

    def _delete(self, name: str) -> None:
        path = self._models_dir / Path(name).name
        if not path.is_file():
            raise ModelFileNotFound(f"Model file not found: {path}")

        state = self._lifecycle.state
        if state is ModelState.READY and self._current_path != path:
            # Another model stays active; the lifecycle state is unaffected.
            path.unlink()
            logger.info("Deleted inactive model %s", path.name)
            return

        if state is ModelState.READY:
            self._unload()
        if not self._lifecycle.can_apply(LifecycleEvent.DELETE):
            raise InvalidTransition(LifecycleEvent.DELETE, self._lifecycle.state)
        path.unlink()
        remaining = bool(list_model_files(self._models_dir))
        self._lifecycle.transition(LifecycleEvent.DELETE, artifacts_remaining=remaining)
        logger.info("Deleted model %s", path.name)
