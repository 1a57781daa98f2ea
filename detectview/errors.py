"""
Error hierarchy for the detection pipeline.

Session-level failures (model load, camera acquisition, file decode)
carry a short machine-readable ``reason`` and an actionable
``user_message`` so a UI shell can tell the user what to do next.

Per-cycle inference failures are ``InferenceError`` and never leave the
scheduler: they are converted to empty detection batches plus a
diagnostic.
"""

from typing import Optional

_LOAD_MESSAGES = {
    "unsupported_family": "This model type is not supported. Please select a different model.",
    "missing_option": "The model could not be loaded because a required setting is missing.",
    "backend": (
        "Failed to load the detection model. Please try again or "
        "select a different model."
    ),
}

_ACQUISITION_MESSAGES = {
    "permission_denied": (
        "Unable to access the camera. Please ensure you have granted "
        "permission to use it."
    ),
    "device_busy": "The camera is in use by another application. Close it and try again.",
    "not_found": "No camera was found. Please connect a camera and try again.",
}

_DECODE_MESSAGES = {
    "unsupported_type": "Please select a valid image file (JPEG, PNG, GIF, or WebP).",
    "too_large": "The image is too large. Please choose a smaller file.",
    "unreadable": "Failed to load image. Please try another file.",
}


class DetectViewError(Exception):
    """Base class for all errors raised by this package."""

    reason: str = "error"

    @property
    def user_message(self) -> str:
        return str(self)


class ModelLoadError(DetectViewError):
    """A model could not be loaded.

    Attributes:
        family: The requested model family tag (as given by the caller).
        cause: The underlying exception, if any.
        reason: One of 'unsupported_family', 'missing_option', 'backend'.
    """

    def __init__(
        self,
        family,
        message: str,
        cause: Optional[BaseException] = None,
        reason: str = "backend",
    ) -> None:
        super().__init__(f"Failed to load {family} model: {message}")
        self.family = family
        self.cause = cause
        self.reason = reason

    @property
    def user_message(self) -> str:
        return _LOAD_MESSAGES.get(self.reason, _LOAD_MESSAGES["backend"])


class AcquisitionError(DetectViewError):
    """The live video stream could not be acquired."""

    def __init__(
        self,
        message: str,
        reason: str = "device_busy",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.cause = cause

    @property
    def user_message(self) -> str:
        return _ACQUISITION_MESSAGES.get(self.reason, _ACQUISITION_MESSAGES["device_busy"])


class DecodeError(DetectViewError):
    """An uploaded image file was rejected or could not be decoded."""

    def __init__(
        self,
        message: str,
        reason: str = "unreadable",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.cause = cause

    @property
    def user_message(self) -> str:
        return _DECODE_MESSAGES.get(self.reason, _DECODE_MESSAGES["unreadable"])


class InferenceError(DetectViewError):
    """A single inference call failed or returned unusable data."""

    reason = "inference"


class HandleDisposedError(InferenceError):
    """Inference was requested on a handle that has been disposed."""

    reason = "disposed"


class HandleBusyError(InferenceError):
    """A second inference call was issued while one is still in flight."""

    reason = "busy"
