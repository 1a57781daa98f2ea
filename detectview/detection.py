"""
Detection data transfer objects.

This module defines the canonical detection record produced by every
model family adapter, and the batch that groups the detections of one
inference cycle. Both are frozen: each cycle creates a fresh set.

All coordinates are in the pixel space of the *source media* (top-left
origin), never the display surface.

Non-goals:
    - No rendering logic.
    - No file I/O.
"""

import math
from dataclasses import dataclass
from typing import Iterator, NamedTuple, Optional, Tuple


class BoundingBox(NamedTuple):
    """Axis-aligned box as (x, y, width, height) in source pixels."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        """Build a box from two opposite corner points."""
        return cls(x1, y1, x2 - x1, y2 - y1)

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)


@dataclass(frozen=True, slots=True)
class Detection:
    """A single recognized object instance.

    Attributes:
        bounding_box: Box in source-media pixel coordinates.
        class_label: One of the active model's known categories.
        confidence: Detection confidence score in [0.0, 1.0].
    """

    bounding_box: BoundingBox
    class_label: str
    confidence: float

    def __post_init__(self) -> None:
        box = self.bounding_box
        if not isinstance(box, BoundingBox):
            box = BoundingBox(*box)
            object.__setattr__(self, "bounding_box", box)
        if not all(math.isfinite(v) for v in box):
            raise ValueError(f"Bounding box values must be finite, got {tuple(box)}.")
        if not math.isfinite(self.confidence):
            raise ValueError(f"Confidence must be finite, got {self.confidence}.")
        if box.width < 0 or box.height < 0:
            raise ValueError(f"Bounding box width/height must be >= 0, got {tuple(box)}.")
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(f"Confidence must be in [0.0, 1.0], got {self.confidence}.")

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        x, y, w, h = self.bounding_box
        return {
            "bbox": [x, y, w, h],
            "class": self.class_label,
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True)
class DetectionBatch:
    """All detections from one inference cycle against one frame.

    Attributes:
        detections: Ordered detections (possibly empty).
        source_width: Width of the source frame at capture time.
        source_height: Height of the source frame at capture time.
        generation: Scheduler generation the cycle belonged to.
        family: Model family tag that produced the batch.
        frame_index: 0-based index of the frame within its source.
    """

    detections: Tuple[Detection, ...]
    source_width: int
    source_height: int
    generation: int = 0
    family: Optional[str] = None
    frame_index: int = 0

    def __len__(self) -> int:
        return len(self.detections)

    def __iter__(self) -> Iterator[Detection]:
        return iter(self.detections)

    @property
    def is_empty(self) -> bool:
        return not self.detections
