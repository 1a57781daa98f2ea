"""
Tracking paths for the tracking overlay.

This module implements a simple IoU-based association across cycles:
each detection either extends the path of the best-overlapping track of
the same class or starts a new one. Paths are the history of box
centers, newest last.

Note: tracking only feeds the overlay. It never alters detection batches.
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Tuple

from detectview.detection import BoundingBox, Detection
from detectview.geometry import intersection_over_union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingPath:
    """Snapshot of one track's path.

    Attributes:
        track_id: Unique track identifier.
        class_label: Class shared by every detection on the path.
        points: Box centers, oldest first.
    """

    track_id: int
    class_label: str
    points: Tuple[Tuple[float, float], ...]


@dataclass
class _Track:
    track_id: int
    class_label: str
    box: BoundingBox
    points: Deque[Tuple[float, float]]
    frames_since_seen: int = field(default=0)


class PathTracker:
    """Associates detections across cycles to build tracking paths.

    Attributes:
        iou_threshold: Minimum IoU to continue an existing track.
        max_points: Points kept per path.
        max_missed: Cycles a track may go unmatched before it is dropped.
    """

    def __init__(
        self,
        iou_threshold: float = 0.3,
        max_points: int = 30,
        max_missed: int = 10,
    ) -> None:
        self.iou_threshold = iou_threshold
        self.max_points = max_points
        self.max_missed = max_missed
        self._tracks: Dict[int, _Track] = {}
        self._ids = itertools.count(1)

    def update(self, detections: Iterable[Detection]) -> List[TrackingPath]:
        """Advance all tracks by one cycle and return the current paths."""
        matched = set()

        for det in detections:
            best_id, best_iou = None, self.iou_threshold
            for track_id, track in self._tracks.items():
                if track_id in matched or track.class_label != det.class_label:
                    continue
                iou = intersection_over_union(track.box, det.bounding_box)
                if iou >= best_iou:
                    best_id, best_iou = track_id, iou

            if best_id is None:
                best_id = next(self._ids)
                self._tracks[best_id] = _Track(
                    track_id=best_id,
                    class_label=det.class_label,
                    box=det.bounding_box,
                    points=deque(maxlen=self.max_points),
                )
                logger.debug("New track %d (%s)", best_id, det.class_label)

            track = self._tracks[best_id]
            track.box = det.bounding_box
            track.points.append(det.bounding_box.center)
            track.frames_since_seen = 0
            matched.add(best_id)

        for track_id in list(self._tracks):
            if track_id in matched:
                continue
            track = self._tracks[track_id]
            track.frames_since_seen += 1
            if track.frames_since_seen > self.max_missed:
                del self._tracks[track_id]

        return self.paths()

    def paths(self) -> List[TrackingPath]:
        """Return snapshots of every live track."""
        return [
            TrackingPath(t.track_id, t.class_label, tuple(t.points))
            for t in self._tracks.values()
        ]

    def reset(self) -> None:
        """Forget every track."""
        self._tracks.clear()
