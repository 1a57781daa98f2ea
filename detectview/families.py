"""
Model family tags and their static capability metadata.

Every loaded model belongs to exactly one family. The family selects the
backend used to load it and the adapter used to turn its raw output into
canonical detections. ``describe`` is a pure lookup with no I/O.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Tuple, Union


class ModelFamily(str, enum.Enum):
    """Supported model families."""

    GENERAL = "general-detector"
    FACE = "face-detector"
    CUSTOM = "custom"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Union[str, "ModelFamily"]) -> "ModelFamily":
        """Resolve a family tag, accepting enum members or their string values.

        Raises:
            ValueError: If the tag is not a known family.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown model family: '{value}'. "
                f"Must be one of {[f.value for f in cls]}."
            ) from None


COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus",
    "train", "truck", "boat", "traffic light", "fire hydrant",
    "stop sign", "parking meter", "bench", "bird", "cat", "dog",
    "horse", "sheep", "cow", "elephant", "bear", "zebra", "giraffe",
    "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat",
    "baseball glove", "skateboard", "surfboard", "tennis racket",
    "bottle", "wine glass", "cup", "fork", "knife", "spoon", "bowl",
    "banana", "apple", "sandwich", "orange", "broccoli", "carrot",
    "hot dog", "pizza", "donut", "cake", "chair", "couch",
    "potted plant", "bed", "dining table", "toilet", "tv", "laptop",
    "mouse", "remote", "keyboard", "cell phone", "microwave", "oven",
    "toaster", "sink", "refrigerator", "book", "clock", "vase",
    "scissors", "teddy bear", "hair drier", "toothbrush",
)

# TensorFlow object-detection graphs number COCO classes 1..90 with gaps.
_COCO_UNUSED_IDS = {12, 26, 29, 30, 45, 66, 68, 69, 71, 83}

COCO_LABEL_MAP: Dict[int, str] = dict(
    zip((i for i in range(1, 91) if i not in _COCO_UNUSED_IDS), COCO_CLASSES)
)


@dataclass(frozen=True)
class ModelCapabilities:
    """Static metadata describing what a model family can do.

    Attributes:
        name: Human-readable model name.
        description: One-line description for a model picker.
        classes: Class vocabulary (empty when unknown).
        default_threshold: Confidence threshold used when none is configured.
        max_detections: Output cap used when none is configured.
        input_size: Network input (width, height), or None when unknown.
        speed_rating: Informal speed rating.
        accuracy_rating: Informal accuracy rating.
    """

    name: str
    description: str
    classes: Tuple[str, ...]
    default_threshold: float
    max_detections: int
    input_size: Union[Tuple[int, int], None]
    speed_rating: str = "Unknown"
    accuracy_rating: str = "Unknown"


_CAPABILITIES: Dict[ModelFamily, ModelCapabilities] = {
    ModelFamily.GENERAL: ModelCapabilities(
        name="COCO-SSD",
        description="Fast object detection with 80 object categories",
        classes=COCO_CLASSES,
        default_threshold=0.5,
        max_detections=20,
        input_size=(300, 300),
        speed_rating="Medium",
        accuracy_rating="Medium",
    ),
    ModelFamily.FACE: ModelCapabilities(
        name="Face Detector",
        description="Single-class face detection (SSD ResNet-10)",
        classes=("face",),
        default_threshold=0.75,
        max_detections=10,
        input_size=(300, 300),
        speed_rating="Fast",
        accuracy_rating="Medium",
    ),
    ModelFamily.CUSTOM: ModelCapabilities(
        name="Custom Model",
        description="User-provided custom detection model",
        classes=(),
        default_threshold=0.5,
        max_detections=20,
        input_size=None,
    ),
}


def describe(family: Union[str, ModelFamily]) -> ModelCapabilities:
    """Return the static capabilities of a model family.

    Raises:
        ValueError: If the family tag is unknown.
    """
    return _CAPABILITIES[ModelFamily.parse(family)]
