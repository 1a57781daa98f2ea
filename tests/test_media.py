"""
Tests for media acquisition and image decoding.
"""

import io

import cv2
import numpy as np
import pytest
from PIL import Image

from detectview.errors import DecodeError
from detectview.media import (
    LiveStream,
    StillImage,
    StreamConstraints,
    constraints_for,
    decode_image_file,
    is_frame_ready,
    load_image_file,
)


def _png_bytes(width=40, height=30):
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :, 2] = 255
    ok, buffer = cv2.imencode(".png", frame)
    assert ok
    return buffer.tobytes()


def test_is_frame_ready():
    assert is_frame_ready(np.zeros((2, 2, 3), dtype=np.uint8))
    assert not is_frame_ready(None)
    assert not is_frame_ready(np.zeros((0, 4, 3), dtype=np.uint8))
    assert not is_frame_ready(np.zeros((4, 4), dtype=np.uint8))


def test_constraints_for_presets():
    assert constraints_for("low") == StreamConstraints(320, 240)
    assert constraints_for("high", "user").facing_mode == "user"
    with pytest.raises(ValueError, match="resolution"):
        constraints_for("ultra")


def test_decode_png():
    image = decode_image_file(_png_bytes(), "image/png", name="red.png")
    assert isinstance(image, StillImage)
    assert (image.width, image.height) == (40, 30)
    assert image.pixels[0, 0, 2] == 255


def test_decode_gif_with_pillow():
    """GIFs go through Pillow and come back as BGR."""
    buffer = io.BytesIO()
    Image.new("RGB", (12, 8), (255, 0, 0)).save(buffer, format="GIF")

    image = decode_image_file(buffer.getvalue(), "image/gif")
    assert (image.width, image.height) == (12, 8)
    assert image.pixels[0, 0, 2] > 200
    assert image.pixels[0, 0, 0] < 50


def test_decode_rejects_unsupported_type():
    with pytest.raises(DecodeError) as excinfo:
        decode_image_file(b"BM....", "image/bmp")
    assert excinfo.value.reason == "unsupported_type"


def test_decode_rejects_large_file():
    with pytest.raises(DecodeError) as excinfo:
        decode_image_file(_png_bytes(), "image/png", max_bytes=10)
    assert excinfo.value.reason == "too_large"


def test_decode_rejects_garbage():
    with pytest.raises(DecodeError) as excinfo:
        decode_image_file(b"not an image", "image/jpeg")
    assert excinfo.value.reason == "unreadable"
    assert "Failed to load image" in excinfo.value.user_message


def test_load_image_file(tmp_path):
    path = tmp_path / "frame.png"
    path.write_bytes(_png_bytes())
    assert load_image_file(path).name == "frame.png"

    with pytest.raises(FileNotFoundError):
        load_image_file(tmp_path / "missing.png")


def test_still_image_rejects_bad_pixels():
    with pytest.raises(ValueError):
        StillImage(np.zeros((4, 4), dtype=np.uint8))


class _FakeCapture:
    def __init__(self, frames):
        self.frames = list(frames)
        self.released = 0

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self):
        self.released += 1


def test_live_stream_reads_and_releases():
    """Unreadable frames come back as None; release is idempotent."""
    capture = _FakeCapture([np.zeros((4, 4, 3), dtype=np.uint8)])
    stream = LiveStream(capture, StreamConstraints())

    assert stream.read_frame() is not None
    assert stream.read_frame() is None

    stream.release()
    stream.release()
    assert capture.released == 1
    assert not stream.active
    assert stream.read_frame() is None
