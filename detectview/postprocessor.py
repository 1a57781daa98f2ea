"""
Postprocessing for the OpenCV DNN backends.

Responsibility:
    Parse the raw SSD network output tensor into the family-native raw
    records the adapters consume. Apply confidence thresholding,
    coordinate un-normalization, and boundary clamping.

Non-goals:
    - No canonical Detection construction (that belongs in adapters).
    - No drawing, model loading, or inference.

Hard-coded:
    - SSD output tensor layout: [1, 1, N, 7] where each row is
      [batch_id, class_id, confidence, x1, y1, x2, y2] with
      coordinates normalized to [0, 1].
"""

from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np


def _iter_boxes(
    network_output: np.ndarray,
    frame_width: int,
    frame_height: int,
    confidence_threshold: float,
) -> Iterator[Tuple[int, float, int, int, int, int]]:
    """Yield (class_id, confidence, x1, y1, x2, y2) for accepted SSD rows."""
    # SSD output shape: (1, 1, num_detections, 7)
    raw = network_output.reshape(-1, 7)

    for i in range(raw.shape[0]):
        confidence = float(raw[i, 2])

        if confidence < confidence_threshold:
            continue

        # Un-normalize coordinates from [0, 1] to absolute pixels
        x1 = int(raw[i, 3] * frame_width)
        y1 = int(raw[i, 4] * frame_height)
        x2 = int(raw[i, 5] * frame_width)
        y2 = int(raw[i, 6] * frame_height)

        # Clamp to frame boundaries
        x1 = max(0, min(x1, frame_width - 1))
        y1 = max(0, min(y1, frame_height - 1))
        x2 = max(0, min(x2, frame_width - 1))
        y2 = max(0, min(y2, frame_height - 1))

        # Skip degenerate boxes
        if x2 <= x1 or y2 <= y1:
            continue

        yield int(raw[i, 1]), min(confidence, 1.0), x1, y1, x2, y2


def parse_general_output(
    network_output: np.ndarray,
    frame_width: int,
    frame_height: int,
    confidence_threshold: float,
    label_map: Dict[int, str],
    limit: Optional[int] = None,
) -> List[dict]:
    """Parse SSD output into general-detector (box, category, score) records.

    Rows whose class id is missing from ``label_map`` are skipped.

    Returns:
        Records ``{"bbox": [x, y, w, h], "class": str, "score": float}``
        sorted by score (descending), at most ``limit`` of them.
    """
    records = []
    for class_id, confidence, x1, y1, x2, y2 in _iter_boxes(
        network_output, frame_width, frame_height, confidence_threshold
    ):
        label = label_map.get(class_id)
        if label is None:
            continue
        records.append({
            "bbox": [x1, y1, x2 - x1, y2 - y1],
            "class": label,
            "score": confidence,
        })

    records.sort(key=lambda r: r["score"], reverse=True)
    return records[:limit] if limit is not None else records


def parse_face_output(
    network_output: np.ndarray,
    frame_width: int,
    frame_height: int,
    confidence_threshold: float,
    limit: Optional[int] = None,
) -> List[dict]:
    """Parse SSD face output into corner-point records.

    Returns:
        Records ``{"top_left": [x, y], "bottom_right": [x, y],
        "probability": [p]}`` sorted by probability (descending).
    """
    records = []
    for _, confidence, x1, y1, x2, y2 in _iter_boxes(
        network_output, frame_width, frame_height, confidence_threshold
    ):
        records.append({
            "top_left": [x1, y1],
            "bottom_right": [x2, y2],
            "probability": [confidence],
        })

    records.sort(key=lambda r: r["probability"][0], reverse=True)
    return records[:limit] if limit is not None else records
