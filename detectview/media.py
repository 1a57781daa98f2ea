"""
Media acquisition and image decoding.

Responsibility:
    Produce the two kinds of visual source the scheduler accepts: a
    decoded still image, or a live camera stream that yields frames until
    it is released.

Non-goals:
    - No detection, drawing, or output writing.
    - No multi-camera support.
    - No implicit fallback between source types.

Robustness:
    - Validates files (MIME type, size) before decoding.
    - Live streams report unreadable frames as None (never raise mid-stream).
    - Releasing a stream is idempotent.
"""

import io
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Dict, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from detectview.errors import AcquisitionError, DecodeError

logger = logging.getLogger(__name__)

# Older interpreters do not map .webp
mimetypes.add_type("image/webp", ".webp")

DEFAULT_MAX_BYTES = 10 * 1024 * 1024

ACCEPTED_MIME_TYPES: Tuple[str, ...] = (
    "image/jpeg", "image/png", "image/gif", "image/webp",
)

WEBCAM_RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "low": (320, 240),
    "medium": (640, 480),
    "high": (1280, 720),
}


@dataclass(frozen=True)
class StreamConstraints:
    """Requested properties of a live camera stream.

    Attributes:
        width: Desired frame width.
        height: Desired frame height.
        facing_mode: Preferred facing, 'environment' or 'user'. OpenCV
                     cannot select by facing, so this is advisory only.
        device_index: Camera device index.
    """

    width: int = 640
    height: int = 480
    facing_mode: str = "environment"
    device_index: int = 0


def constraints_for(
    resolution: str = "medium",
    facing_mode: str = "environment",
    device_index: int = 0,
) -> StreamConstraints:
    """Build StreamConstraints from a resolution preset name.

    Raises:
        ValueError: If the preset is unknown.
    """
    if resolution not in WEBCAM_RESOLUTIONS:
        raise ValueError(
            f"Unknown resolution preset: '{resolution}'. "
            f"Must be one of {sorted(WEBCAM_RESOLUTIONS)}."
        )
    width, height = WEBCAM_RESOLUTIONS[resolution]
    return StreamConstraints(width, height, facing_mode, device_index)


def is_frame_ready(frame: Optional[np.ndarray]) -> bool:
    """Return True if a frame is populated with non-zero dimensions."""
    return (
        isinstance(frame, np.ndarray)
        and frame.ndim == 3
        and frame.shape[0] > 0
        and frame.shape[1] > 0
        and frame.shape[2] == 3
    )


class StillImage:
    """A single decoded image (finite, one-shot source)."""

    is_live = False

    def __init__(self, pixels: np.ndarray, name: str = "image") -> None:
        if not is_frame_ready(pixels):
            raise ValueError(
                f"Expected a BGR image with shape (H, W, 3), "
                f"got {getattr(pixels, 'shape', type(pixels).__name__)}."
            )
        self.pixels = pixels
        self.name = name

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def __repr__(self) -> str:
        return f"<StillImage {self.name} {self.width}x{self.height}>"


class LiveStream:
    """A live camera stream backed by cv2.VideoCapture.

    Usage:
        stream = acquire_stream(StreamConstraints())
        frame = stream.read_frame()   # None when no frame is ready
        stream.release()
    """

    is_live = True

    def __init__(self, capture: cv2.VideoCapture, constraints: StreamConstraints) -> None:
        self._cap: Optional[cv2.VideoCapture] = capture
        self.constraints = constraints

    @property
    def active(self) -> bool:
        return self._cap is not None

    def read_frame(self) -> Optional[np.ndarray]:
        """Read the next frame. Blocking; returns None if none is ready."""
        if self._cap is None:
            return None
        ret, frame = self._cap.read()
        if not ret or not is_frame_ready(frame):
            return None
        return frame

    def release(self) -> None:
        """Stop the capture device. Safe to call more than once."""
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera %d released.", self.constraints.device_index)

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"<LiveStream device={self.constraints.device_index} {state}>"


def _diagnose_capture_failure(device_index: int) -> str:
    """Best-effort guess at why a camera could not be opened."""
    device_path = f"/dev/video{device_index}"
    if os.name != "posix" or not os.path.exists("/dev"):
        return "device_busy"
    if not os.path.exists(device_path):
        return "not_found"
    if not os.access(device_path, os.R_OK | os.W_OK):
        return "permission_denied"
    return "device_busy"


def acquire_stream(constraints: StreamConstraints) -> LiveStream:
    """Open a camera device as a live stream.

    Raises:
        AcquisitionError: If the device cannot be opened.
    """
    cap = cv2.VideoCapture(constraints.device_index)
    if not cap.isOpened():
        cap.release()
        reason = _diagnose_capture_failure(constraints.device_index)
        raise AcquisitionError(
            f"Failed to open webcam device {constraints.device_index} ({reason}). "
            f"Ensure the camera is connected, accessible and not in use.",
            reason=reason,
        )

    cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
    logger.info(
        "Camera %d opened (requested %dx%d, facing=%s).",
        constraints.device_index, constraints.width, constraints.height,
        constraints.facing_mode,
    )
    return LiveStream(cap, constraints)


def release_stream(stream: LiveStream) -> None:
    """Release a live stream (idempotent)."""
    stream.release()


def _decode_with_pillow(data: bytes) -> Optional[np.ndarray]:
    """Decode formats OpenCV cannot read (GIF). Uses the first frame."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = np.asarray(img.convert("RGB"))
    except (UnidentifiedImageError, OSError):
        return None
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def decode_image_file(
    data: bytes,
    mime_type: str,
    max_bytes: int = DEFAULT_MAX_BYTES,
    accepted_types: Collection[str] = ACCEPTED_MIME_TYPES,
    name: str = "image",
) -> StillImage:
    """Validate and decode image file bytes into a StillImage.

    Args:
        data: Raw file contents.
        mime_type: Declared MIME type of the file.
        max_bytes: Maximum accepted size in bytes.
        accepted_types: Allowed MIME types.
        name: Label used in logs and reprs.

    Raises:
        DecodeError: If the type is not accepted, the file is too large,
                     or the bytes are not a decodable image.
    """
    mime_type = (mime_type or "").lower()
    if mime_type not in accepted_types:
        raise DecodeError(
            f"Unsupported image type '{mime_type}' for {name}. "
            f"Accepted types: {', '.join(accepted_types)}.",
            reason="unsupported_type",
        )

    if len(data) > max_bytes:
        raise DecodeError(
            f"Image {name} is {len(data)} bytes; the limit is {max_bytes} bytes.",
            reason="too_large",
        )

    if mime_type == "image/gif":
        pixels = _decode_with_pillow(data)
    else:
        buffer = np.frombuffer(data, dtype=np.uint8)
        pixels = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None

    if pixels is None or not is_frame_ready(pixels):
        raise DecodeError(f"Failed to decode image {name}.", reason="unreadable")

    logger.info("Image decoded: %s (%dx%d)", name, pixels.shape[1], pixels.shape[0])
    return StillImage(pixels, name=name)


def load_image_file(
    path: Union[str, Path],
    max_bytes: int = DEFAULT_MAX_BYTES,
    accepted_types: Collection[str] = ACCEPTED_MIME_TYPES,
) -> StillImage:
    """Read and decode an image file, inferring its MIME type from the name.

    Raises:
        FileNotFoundError: If the file does not exist.
        DecodeError: As for decode_image_file.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(
            f"Input source not found: '{path}'. "
            f"Provide a valid image path or a webcam device index."
        )
    mime_type, _ = mimetypes.guess_type(path.name)
    return decode_image_file(
        path.read_bytes(),
        mime_type or "",
        max_bytes=max_bytes,
        accepted_types=accepted_types,
        name=path.name,
    )
