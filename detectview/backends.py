"""
OpenCV DNN model backends, one per model family.

Responsibility:
    Load model files from disk, configure the compute backend, and run
    blocking inference that returns the family's native raw output.

Non-goals:
    - No canonical detection records (adapters do that).
    - No automatic model downloading.
    - No fallback to alternative models.

Failure behavior:
    - Missing model files raise FileNotFoundError with the exact
      missing path.
    - A custom load without ``model_path`` raises ModelLoadError.
    - Incompatible backend raises RuntimeError.
"""

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

import cv2
import numpy as np

from detectview.errors import ModelLoadError
from detectview.families import COCO_LABEL_MAP, ModelFamily, describe
from detectview.postprocessor import parse_face_output, parse_general_output
from detectview.preprocessor import preprocess

logger = logging.getLogger(__name__)


class DetectorBackend(Protocol):
    """A loaded model able to run inference on one frame at a time."""

    def detect(self, frame: np.ndarray, options: Mapping[str, Any]) -> Any:
        """Run inference and return the family-native raw output."""
        ...

    def close(self) -> None:
        """Release the model's resources."""
        ...


def _require_file(path: Optional[str], description: str, option: str) -> Path:
    """Validate file existence, failing fast with an actionable message."""
    if path is None:
        raise FileNotFoundError(
            f"{description} path not configured.\n"
            f"  Provide it as the '{option}' model option."
        )
    resolved = Path(path)
    if not resolved.is_file():
        raise FileNotFoundError(
            f"{description} not found.\n"
            f"  Expected: {resolved}\n"
            f"  Download the file and place it at the path above,\n"
            f"  or update '{option}' in your config."
        )
    return resolved


def _configure_backend(net: cv2.dnn.Net, backend: str) -> None:
    """Select the compute backend and target for a network."""
    if backend == "cuda":
        logger.info("Setting CUDA backend and target.")
        try:
            net.setPreferableBackend(cv2.dnn.DNN_BACKEND_CUDA)
            net.setPreferableTarget(cv2.dnn.DNN_TARGET_CUDA)
        except cv2.error as e:
            raise RuntimeError(
                f"Failed to set CUDA backend. Ensure OpenCV was built with "
                f"CUDA support (opencv-contrib-python or custom build).\n"
                f"  OpenCV error: {e}"
            ) from e
    else:
        logger.info("Using CPU backend.")
        net.setPreferableBackend(cv2.dnn.DNN_BACKEND_OPENCV)
        net.setPreferableTarget(cv2.dnn.DNN_TARGET_CPU)


class _DnnBackend:
    """Shared lifecycle for cv2.dnn networks."""

    def __init__(self, net: cv2.dnn.Net) -> None:
        self._net = net

    def _forward(self, blob: np.ndarray) -> np.ndarray:
        if self._net is None:
            raise RuntimeError("Model has been closed.")
        self._net.setInput(blob)
        return self._net.forward()

    def close(self) -> None:
        self._net = None


class GeneralDetectorBackend(_DnnBackend):
    """COCO SSD-MobileNet object detector (TensorFlow graph via cv2.dnn)."""

    def __init__(self, net: cv2.dnn.Net) -> None:
        super().__init__(net)
        self._capabilities = describe(ModelFamily.GENERAL)

    def detect(self, frame: np.ndarray, options: Mapping[str, Any]) -> list:
        h, w = frame.shape[:2]
        blob = preprocess(frame, self._capabilities.input_size, swap_rb=True)
        output = self._forward(blob)
        return parse_general_output(
            network_output=output,
            frame_width=w,
            frame_height=h,
            confidence_threshold=options.get(
                "confidence_threshold", self._capabilities.default_threshold
            ),
            label_map=COCO_LABEL_MAP,
            limit=options.get("max_detections", self._capabilities.max_detections),
        )


class FaceDetectorBackend(_DnnBackend):
    """SSD-ResNet10 face detector (Caffe model via cv2.dnn)."""

    _MEAN_VALUES = (104.0, 177.0, 123.0)

    def __init__(self, net: cv2.dnn.Net) -> None:
        super().__init__(net)
        self._capabilities = describe(ModelFamily.FACE)

    def detect(self, frame: np.ndarray, options: Mapping[str, Any]) -> list:
        h, w = frame.shape[:2]
        blob = preprocess(
            frame,
            self._capabilities.input_size,
            mean_values=self._MEAN_VALUES,
        )
        output = self._forward(blob)
        return parse_face_output(
            network_output=output,
            frame_width=w,
            frame_height=h,
            confidence_threshold=options.get(
                "confidence_threshold", self._capabilities.default_threshold
            ),
            limit=options.get("max_detections", self._capabilities.max_detections),
        )


class CustomModelBackend(_DnnBackend):
    """Any cv2.dnn-readable model; returns the raw forward() output."""

    def __init__(self, net: cv2.dnn.Net, input_size=(300, 300)) -> None:
        super().__init__(net)
        self._input_size = tuple(input_size)

    def detect(self, frame: np.ndarray, options: Mapping[str, Any]) -> np.ndarray:
        blob = preprocess(frame, self._input_size, scale_factor=1.0 / 255.0, swap_rb=True)
        return self._forward(blob)


def load_general_detector(options: Mapping[str, Any]) -> GeneralDetectorBackend:
    """Load the COCO SSD general detector.

    Options:
        model_path: Frozen TensorFlow graph (.pb).
        config_path: Text graph description (.pbtxt).
        backend: 'cpu' (default) or 'cuda'.
    """
    model = _require_file(options.get("model_path"), "General detector graph", "model_path")
    config = _require_file(options.get("config_path"), "General detector config", "config_path")

    logger.info("Loading general detector: model=%s, config=%s", model, config)
    net = cv2.dnn.readNetFromTensorflow(str(model), str(config))
    _configure_backend(net, options.get("backend", "cpu"))
    logger.info("General detector loaded successfully.")
    return GeneralDetectorBackend(net)


def load_face_detector(options: Mapping[str, Any]) -> FaceDetectorBackend:
    """Load the SSD-ResNet10 face detector.

    Options:
        prototxt_path: Caffe network definition.
        weights_path: Caffe weights.
        backend: 'cpu' (default) or 'cuda'.
    """
    prototxt = _require_file(options.get("prototxt_path"), "Model prototxt", "prototxt_path")
    weights = _require_file(options.get("weights_path"), "Model weights", "weights_path")

    logger.info("Loading face detector: prototxt=%s, weights=%s", prototxt, weights)
    net = cv2.dnn.readNetFromCaffe(str(prototxt), str(weights))
    _configure_backend(net, options.get("backend", "cpu"))
    logger.info("Face detector loaded successfully.")
    return FaceDetectorBackend(net)


def load_custom_model(options: Mapping[str, Any]) -> CustomModelBackend:
    """Load a user-provided model through cv2.dnn.readNet.

    Options:
        model_path: Model file (required).
        config_path: Optional companion file.
        input_size: Optional (width, height), defaults to 300x300.
        backend: 'cpu' (default) or 'cuda'.

    Raises:
        ModelLoadError: If ``model_path`` is not provided.
    """
    if not options.get("model_path"):
        raise ModelLoadError(
            ModelFamily.CUSTOM,
            "a model_path option is required for custom models",
            reason="missing_option",
        )
    model = _require_file(options["model_path"], "Custom model", "model_path")
    config_path = options.get("config_path")
    config = str(_require_file(config_path, "Custom model config", "config_path")) if config_path else ""

    logger.info("Loading custom model: %s", model)
    net = cv2.dnn.readNet(str(model), config)
    _configure_backend(net, options.get("backend", "cpu"))
    logger.info("Custom model loaded successfully.")
    return CustomModelBackend(net, options.get("input_size", (300, 300)))


DEFAULT_BACKENDS = {
    ModelFamily.GENERAL: load_general_detector,
    ModelFamily.FACE: load_face_detector,
    ModelFamily.CUSTOM: load_custom_model,
}
