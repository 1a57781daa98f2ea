"""
Summary views over a detection batch.

Pure functions consumed by a results display: per-class counts, sorted
and filtered views, and a class distribution. Inputs are never mutated
and nothing is cached between calls.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from detectview.detection import Detection

SORT_BY_CONFIDENCE = "confidence"
SORT_BY_NAME = "name"


@dataclass(frozen=True)
class ClassShare:
    """One class's share of a batch."""

    class_label: str
    count: int
    percentage: int


@dataclass(frozen=True)
class BatchSummary:
    """Headline numbers for a batch.

    Attributes:
        total: Number of detections.
        unique_classes: Number of distinct classes.
        counts: Detections per class, in first-seen order.
        distribution: Class shares, most frequent first.
    """

    total: int
    unique_classes: int
    counts: Dict[str, int]
    distribution: Tuple[ClassShare, ...]


def count_by_class(detections: Iterable[Detection]) -> Dict[str, int]:
    """Count detections per class label (first-seen order)."""
    counts: Dict[str, int] = {}
    for det in detections:
        counts[det.class_label] = counts.get(det.class_label, 0) + 1
    return counts


def sort_detections(
    detections: Iterable[Detection],
    sort_by: str = SORT_BY_CONFIDENCE,
) -> List[Detection]:
    """Return a stably sorted copy.

    ``"confidence"`` sorts highest first; ``"name"`` sorts by class
    label, case-insensitive, A to Z.

    Raises:
        ValueError: On an unknown sort key.
    """
    if sort_by == SORT_BY_CONFIDENCE:
        return sorted(detections, key=lambda d: d.confidence, reverse=True)
    if sort_by == SORT_BY_NAME:
        return sorted(detections, key=lambda d: d.class_label.casefold())
    raise ValueError(
        f"Unknown sort key: '{sort_by}'. "
        f"Must be '{SORT_BY_CONFIDENCE}' or '{SORT_BY_NAME}'."
    )


def filter_by_class_text(detections: Iterable[Detection], text: str) -> List[Detection]:
    """Keep detections whose class label contains ``text`` (case-insensitive)."""
    needle = (text or "").casefold()
    return [d for d in detections if needle in d.class_label.casefold()]


def results_view(
    detections: Iterable[Detection],
    filter_text: str = "",
    sort_by: str = SORT_BY_CONFIDENCE,
) -> List[Detection]:
    """Filter by class text, then sort: the rows of a results table."""
    return sort_detections(filter_by_class_text(detections, filter_text), sort_by)


def class_distribution(detections: Iterable[Detection]) -> List[ClassShare]:
    """Per-class counts with rounded percentages, most frequent first."""
    counts = count_by_class(detections)
    total = sum(counts.values())
    shares = [
        ClassShare(label, count, round(count / total * 100))
        for label, count in counts.items()
    ]
    return sorted(shares, key=lambda s: s.count, reverse=True)


def summarize(detections: Iterable[Detection]) -> BatchSummary:
    """Build the headline summary of a batch."""
    detections = list(detections)
    counts = count_by_class(detections)
    return BatchSummary(
        total=len(detections),
        unique_classes=len(counts),
        counts=counts,
        distribution=tuple(class_distribution(detections)),
    )
