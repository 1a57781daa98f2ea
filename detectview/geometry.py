"""
Bounding-box geometry and detection suppression.

Responsibility:
    IoU on (x, y, width, height) boxes, confidence/class filtering, and
    greedy per-class non-max suppression. Everything here is pure and
    order-preserving where ordering is defined.

Non-goals:
    - No drawing or model logic.
    - No cross-frame state (see tracking).
"""

from typing import Iterable, List, Optional, Sequence

from detectview.detection import Detection


def intersection_over_union(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """Compute IoU of two axis-aligned (x, y, width, height) boxes.

    Returns:
        Overlap ratio in [0.0, 1.0]. Zero union area yields 0.0.
    """
    ax, ay, aw, ah = box_a
    bx, by, bw, bh = box_b

    inter_w = max(0.0, min(ax + aw, bx + bw) - max(ax, bx))
    inter_h = max(0.0, min(ay + ah, by + bh) - max(ay, by))
    intersection = inter_w * inter_h

    union = aw * ah + bw * bh - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def filter_by_confidence_and_class(
    detections: Iterable[Detection],
    min_confidence: float,
    allowed_classes: Iterable[str] = (),
) -> List[Detection]:
    """Keep detections at or above ``min_confidence`` in ``allowed_classes``.

    An empty ``allowed_classes`` allows every class. Input order is kept.
    """
    allowed = frozenset(allowed_classes)
    return [
        d for d in detections
        if d.confidence >= min_confidence
        and (not allowed or d.class_label in allowed)
    ]


def non_max_suppress(
    detections: Iterable[Detection],
    iou_threshold: float,
) -> List[Detection]:
    """Greedy per-class non-maximum suppression.

    Candidates are visited in descending confidence (stable for ties).
    Each selected detection discards every remaining candidate of the
    same class whose IoU with it exceeds ``iou_threshold``.

    Returns:
        Selected detections in selection order.
    """
    candidates = sorted(detections, key=lambda d: d.confidence, reverse=True)
    selected: List[Detection] = []

    while candidates:
        best = candidates.pop(0)
        selected.append(best)
        candidates = [
            d for d in candidates
            if d.class_label != best.class_label
            or intersection_over_union(d.bounding_box, best.bounding_box) <= iou_threshold
        ]

    return selected


def limit_detections(
    detections: Sequence[Detection],
    max_detections: Optional[int],
) -> List[Detection]:
    """Keep at most ``max_detections`` entries (None means no limit)."""
    if max_detections is None:
        return list(detections)
    return list(detections[:max_detections])


def refine(
    detections: Iterable[Detection],
    min_confidence: float,
    allowed_classes: Iterable[str] = (),
    iou_threshold: Optional[float] = None,
    max_detections: Optional[int] = None,
) -> List[Detection]:
    """Run the per-cycle post-processing stage on adapted detections.

    Filters by confidence and class, suppresses duplicates when an
    ``iou_threshold`` is given, then applies the output cap. Without
    suppression the cap keeps the highest-confidence detections.
    """
    kept = filter_by_confidence_and_class(detections, min_confidence, allowed_classes)
    if iou_threshold is not None:
        kept = non_max_suppress(kept, iou_threshold)
    elif max_detections is not None and len(kept) > max_detections:
        kept = sorted(kept, key=lambda d: d.confidence, reverse=True)
    return limit_detections(kept, max_detections)
