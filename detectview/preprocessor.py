"""
Preprocessing for the OpenCV DNN backends.

Responsibility:
    Convert a raw BGR frame (numpy array) into a 4D DNN-compatible
    input blob using cv2.dnn.blobFromImage.

Non-goals:
    - No frame acquisition or I/O.
    - No inference or coordinate mapping.
    - No model-awareness beyond the blob parameters.
"""

from typing import Tuple

import cv2
import numpy as np


def preprocess(
    frame: np.ndarray,
    input_size: Tuple[int, int],
    scale_factor: float = 1.0,
    mean_values: Tuple[float, float, float] = (0.0, 0.0, 0.0),
    swap_rb: bool = False,
) -> np.ndarray:
    """Convert a raw BGR frame into a DNN input blob.

    Args:
        frame: Input image as a BGR numpy array (H, W, 3).
        input_size: Network input (width, height).
        scale_factor: Pixel value multiplier applied after mean subtraction.
        mean_values: Per-channel means subtracted from the frame.
        swap_rb: Swap the R and B channels (for RGB-trained graphs).

    Returns:
        A 4D numpy array of shape (1, 3, H, W) with dtype float32.

    Raises:
        ValueError: If the frame is empty.
    """
    if frame is None or frame.size == 0:
        raise ValueError(
            "Cannot preprocess an empty frame. "
            "Ensure the input source is providing valid frames."
        )

    return cv2.dnn.blobFromImage(
        image=frame,
        scalefactor=scale_factor,
        size=tuple(input_size),
        mean=mean_values,
        swapRB=swap_rb,
        crop=False,
    )
