"""Error taxonomy for backend selection, loading and recovery."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .descriptor import BackendDescriptor


class WhisperAccelError(RuntimeError):
    """Base error for all whisperaccel failures."""
    pass


class CapabilityProbeFailed(WhisperAccelError):
    """Raised when the hardware capability snapshot cannot be produced."""
    pass


class LoadError(WhisperAccelError):
    """Base error for backend module load and validation failures.

    Attributes:
        descriptor: The backend that failed (None when unknown)
        retryable: Whether retrying the same descriptor could succeed
    """

    retryable = True

    def __init__(self, message: str, descriptor: Optional["BackendDescriptor"] = None):
        super().__init__(message)
        self.descriptor = descriptor


class ModuleNotFound(LoadError):
    """The backend module artifact does not exist for this platform."""

    retryable = False


class LoadFailed(LoadError):
    """Importing the backend module raised an exception."""
    pass


class InvalidStructure(LoadError):
    """The module loaded but does not expose a callable inference entry point."""

    retryable = False


class ValidationTimeout(LoadError):
    """The validation call did not complete within its time budget."""
    pass


class ValidationFailed(LoadError):
    """The validation call reported a real (non model/file) error."""
    pass


class AllFallbacksExhausted(WhisperAccelError):
    """Every entry of a fallback chain failed to load."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class AllRecoveryStrategiesExhausted(WhisperAccelError):
    """No recovery strategy could resolve a runtime processing error."""
    pass


class LegacyFallbackFailed(WhisperAccelError):
    """The last-resort legacy loader failed. Nothing else can be tried."""
    pass


def user_friendly_message(error: BaseException) -> str:
    """Translate an error into category-specific guidance for the UI."""
    message = str(error)

    if "memory" in message:
        return "GPU memory insufficient. Try using a smaller model or switch to CPU processing."

    if "driver" in message:
        return "GPU driver issue detected. Please update your GPU drivers or switch to CPU processing."

    if "model" in message:
        return "Model loading failed. Please ensure the model is downloaded and try again."

    if "OpenVINO" in message:
        return "Intel GPU processing failed. Please check OpenVINO installation or switch to CPU processing."

    if "CUDA" in message:
        return "NVIDIA GPU processing failed. Please check CUDA installation or switch to CPU processing."

    if "backend module" in message or "addon" in message:
        return "Backend module loading failed. Please restart the application or use CPU processing."

    return f"Processing failed: {message}. Please try again or contact support."
