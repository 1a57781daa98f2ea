"""
Adapters from family-native model output to canonical detections.

Each model family reports its results in its own shape. The adapter for
that family maps them onto ``Detection`` records in source-pixel
coordinates. Adapters are pure: no I/O, no state.

Raw formats:
    general-detector: sequence of mappings
        {"bbox": [x, y, w, h], "class": str, "score": float}
    face-detector: sequence of mappings
        {"top_left": [x, y], "bottom_right": [x, y], "probability": [p]}

Failure behavior:
    - Malformed output never raises. The whole output is discarded and
      the returned ``anomaly`` describes what was wrong.
    - Families without an adapter return no detections and an
      "unsupported family" anomaly.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from detectview.detection import BoundingBox, Detection
from detectview.families import ModelFamily

logger = logging.getLogger(__name__)

FACE_LABEL = "face"


@dataclass(frozen=True)
class AdaptedOutput:
    """Result of adapting one raw model output.

    Attributes:
        detections: Canonical detections (empty on any anomaly).
        anomaly: Description of why the output was rejected, or None.
    """

    detections: Tuple[Detection, ...] = ()
    anomaly: Optional[str] = None


def _pair(value: Any) -> Tuple[float, float]:
    x, y = value
    return float(x), float(y)


def adapt_general_output(raw: Any) -> List[Detection]:
    """Map general-detector (box, category, score) records to detections.

    Raises:
        KeyError, TypeError, ValueError: On malformed records.
    """
    detections = []
    for record in raw:
        x, y, w, h = (float(v) for v in record["bbox"])
        detections.append(Detection(
            bounding_box=BoundingBox(x, y, w, h),
            class_label=str(record["class"]),
            confidence=float(record["score"]),
        ))
    return detections


def adapt_face_output(raw: Any) -> List[Detection]:
    """Map face-detector corner-point records to detections.

    Raises:
        KeyError, TypeError, ValueError: On malformed records.
    """
    detections = []
    for record in raw:
        x1, y1 = _pair(record["top_left"])
        x2, y2 = _pair(record["bottom_right"])
        (probability,) = record["probability"]
        detections.append(Detection(
            bounding_box=BoundingBox.from_corners(x1, y1, x2, y2),
            class_label=FACE_LABEL,
            confidence=float(probability),
        ))
    return detections


_ADAPTERS: Dict[ModelFamily, Callable[[Any], List[Detection]]] = {
    ModelFamily.GENERAL: adapt_general_output,
    ModelFamily.FACE: adapt_face_output,
}


def is_supported(family) -> bool:
    """Return True if an adapter exists for the family."""
    try:
        return ModelFamily.parse(family) in _ADAPTERS
    except ValueError:
        return False


def adapt(family, raw: Any) -> AdaptedOutput:
    """Adapt a family's raw inference output into canonical detections.

    Args:
        family: Model family tag (enum member or string value).
        raw: The backend's raw output for one frame.

    Returns:
        An AdaptedOutput. On unsupported families or malformed output the
        detections are empty and ``anomaly`` is set.
    """
    try:
        adapter = _ADAPTERS.get(ModelFamily.parse(family))
    except ValueError:
        adapter = None

    if adapter is None:
        anomaly = f"unsupported family '{family}'"
        logger.warning("No adapter available: %s", anomaly)
        return AdaptedOutput(anomaly=anomaly)

    if raw is None:
        return AdaptedOutput(anomaly="model returned no output")

    try:
        detections = adapter(raw)
    except (KeyError, TypeError, ValueError, IndexError) as e:
        anomaly = f"malformed {family} output: {e!r}"
        logger.warning("Discarding model output: %s", anomaly)
        return AdaptedOutput(anomaly=anomaly)

    return AdaptedOutput(detections=tuple(detections))
