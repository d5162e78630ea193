"""
Exception taxonomy for LocalMind.

Internal components raise these; the public lifecycle and generation entry
points catch them and hand them to callers through callbacks or handles.
"""

from __future__ import annotations


class LocalMindError(RuntimeError):
    """Base class for every LocalMind failure."""


class ConfigurationError(LocalMindError):
    """A settings value or environment override has the wrong type."""


class InvalidTransition(LocalMindError):
    """Raised when a lifecycle event is applied from a state that does not allow it."""

    def __init__(self, event: object, state: object) -> None:
        self.event = event
        self.state = state
        super().__init__(f"Event {getattr(event, 'name', event)} is not allowed from state {getattr(state, 'name', state)}")


class DownloadError(LocalMindError):
    """Base class for model download failures."""


class DownloadNetworkError(DownloadError):
    """Transport or filesystem failure while fetching an artifact."""


class DownloadInProgress(DownloadError):
    """Another download session is still live."""

    def __init__(self, message: str = "A model download is already in progress") -> None:
        super().__init__(message)


class EmptyArtifact(DownloadError):
    """The server answered successfully but delivered zero bytes."""


class TooManyRedirects(DownloadError):
    """More than one redirect was returned in sequence."""


class DownloadCancelled(DownloadError):
    """The caller cancelled the download; the partial file is kept."""


class LoadError(LocalMindError):
    """Base class for model load failures."""


class BackendFailure(LoadError):
    """The inference backend rejected the model."""


class ModelFileNotFound(LoadError):
    """The requested model artifact does not exist on disk."""


class NoModelsAvailable(LoadError):
    """No model artifact exists anywhere; nothing can be loaded."""

    def __init__(self, message: str = "No model file found; download a model first") -> None:
        super().__init__(message)


class GenerationError(LocalMindError):
    """Base class for generation failures."""


class GenerationBusy(GenerationError):
    """A generation session is already active."""

    def __init__(self, message: str = "A generation is already in progress") -> None:
        super().__init__(message)


class BackendException(GenerationError):
    """The backend failed before producing a final result."""
