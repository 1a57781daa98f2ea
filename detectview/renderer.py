"""
Rendering for the detection pipeline.

Responsibility:
    Paint the source frame, bounding boxes, label tags and optional
    overlays (heatmap, tracking paths) onto a raster surface. All paint
    calls are synchronous, perform no I/O, and only touch the surface
    they are given. Detection batches are never modified.

Non-goals:
    - No window management or display logic.
    - No detection or model logic.
    - No letterboxing: the surface maps 1:1 onto source pixels.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from detectview.config import VisualizationConfig
from detectview.detection import Detection
from detectview.tracking import TrackingPath

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

# Hard-coded rendering constants (cosmetic internals, not user-facing)
_FONT = cv2.FONT_HERSHEY_SIMPLEX
_FONT_THICKNESS = 1
_TEXT_COLOR = (255, 255, 255)
_HEATMAP_COLOR = np.array((0, 0, 255), dtype=np.float32)  # BGR red
_HEATMAP_PEAK = 0.7
_PATH_THICKNESS = 2
_DEFAULT_PATH_COLOR = (255, 255, 255)


def _hex_to_bgr(value: str) -> Color:
    value = value.lstrip("#")
    r, g, b = (int(value[i:i + 2], 16) for i in (0, 2, 4))
    return (b, g, r)


DEFAULT_PALETTE: Tuple[Color, ...] = tuple(_hex_to_bgr(c) for c in (
    "#FF3B30",  # red
    "#4CD964",  # green
    "#007AFF",  # blue
    "#FF9500",  # orange
    "#5856D6",  # purple
    "#FF2D55",  # pink
    "#FFCC00",  # yellow
    "#34C759",  # mint
    "#5AC8FA",  # teal
    "#AF52DE",  # lavender
))


class ClassColorMap:
    """Deterministic class -> color assignment.

    The first class seen gets the first palette slot, the next new class
    the next slot, wrapping around. Assignments are stable until reset.
    """

    def __init__(self, palette: Sequence[Color] = DEFAULT_PALETTE) -> None:
        if not palette:
            raise ValueError("Palette must contain at least one color.")
        self._palette = tuple(palette)
        self._colors: Dict[str, Color] = {}

    def color_for(self, class_label: str) -> Color:
        color = self._colors.get(class_label)
        if color is None:
            color = self._palette[len(self._colors) % len(self._palette)]
            self._colors[class_label] = color
        return color

    def get(self, class_label: str, default: Optional[Color] = None) -> Optional[Color]:
        """Return an assigned color without assigning a new one."""
        return self._colors.get(class_label, default)

    def reset(self) -> None:
        self._colors.clear()


class Surface:
    """A BGR raster owned by one painting context."""

    def __init__(self, width: int = 640, height: int = 480) -> None:
        self.pixels = np.zeros((height, width, 3), dtype=np.uint8)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def resize(self, width: int, height: int) -> None:
        """Match the surface to new source dimensions (contents are cleared)."""
        if (width, height) != (self.width, self.height):
            self.pixels = np.zeros((height, width, 3), dtype=np.uint8)
            logger.debug("Surface resized to %dx%d", width, height)

    def clear(self) -> None:
        self.pixels[:] = 0


def format_label(detection: Detection) -> str:
    """Label tag text, e.g. 'person: 87%'. Halves round up."""
    return f"{detection.class_label}: {int(detection.confidence * 100 + 0.5)}%"


def paint_frame(surface: Surface, frame: np.ndarray) -> None:
    """Draw a source frame onto the surface, resizing it to the frame."""
    h, w = frame.shape[:2]
    surface.resize(w, h)
    np.copyto(surface.pixels, frame)


def _within_bounds(surface: Surface, detection: Detection) -> bool:
    box = detection.bounding_box
    return (
        box.x >= 0 and box.y >= 0
        and box.x2 <= surface.width and box.y2 <= surface.height
    )


def paint_detections(
    surface: Surface,
    detections: Iterable[Detection],
    colors: ClassColorMap,
    config: VisualizationConfig,
) -> int:
    """Stroke boxes and draw label tags above each box's top-left corner.

    Detections whose box lies outside the surface are skipped. Label tags
    are shifted to stay inside the surface.

    Returns:
        The number of detections painted.
    """
    painted = 0
    pad = config.label_padding

    for det in detections:
        if not _within_bounds(surface, det):
            logger.debug("Skipping out-of-bounds detection: %s", det)
            continue

        color = colors.color_for(det.class_label)
        box = det.bounding_box
        x1, y1 = int(round(box.x)), int(round(box.y))
        x2, y2 = int(round(box.x2)), int(round(box.y2))

        cv2.rectangle(surface.pixels, (x1, y1), (x2, y2), color, config.thickness)

        label = format_label(det)
        (text_w, text_h), baseline = cv2.getTextSize(
            label, _FONT, config.font_scale, _FONT_THICKNESS
        )
        tag_w = text_w + pad * 2
        tag_h = text_h + baseline + pad * 2

        # Anchor above the box, clipped to the surface
        tag_left = max(0, min(x1, surface.width - tag_w))
        tag_top = max(0, min(y1 - tag_h, surface.height - tag_h))

        cv2.rectangle(
            surface.pixels,
            (tag_left, tag_top),
            (tag_left + tag_w, tag_top + tag_h),
            color,
            cv2.FILLED,
        )
        cv2.putText(
            surface.pixels,
            label,
            (tag_left + pad, tag_top + pad + text_h),
            _FONT,
            config.font_scale,
            _TEXT_COLOR,
            _FONT_THICKNESS,
            cv2.LINE_AA,
        )
        painted += 1

    return painted


def paint_heatmap(
    surface: Surface,
    detections: Iterable[Detection],
    alpha: float = 0.6,
) -> None:
    """Composite a confidence-weighted detection heatmap over the surface.

    Each detection contributes a radial blob centered on its box, with
    radius max(w, h) / 2 and peak opacity ``confidence * 0.7`` fading
    linearly to zero at the rim. Blobs combine with "over" compositing and
    the result is blended onto the surface at ``alpha``.
    """
    h, w = surface.height, surface.width
    coverage = np.zeros((h, w), dtype=np.float32)
    ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)

    for det in detections:
        box = det.bounding_box
        radius = max(box.width, box.height) / 2.0
        if radius <= 0:
            continue
        cx, cy = box.center
        distance = np.sqrt((xs - cx) ** 2 + (ys - cy) ** 2)
        blob = np.clip(1.0 - distance / radius, 0.0, 1.0) * (det.confidence * _HEATMAP_PEAK)
        coverage = 1.0 - (1.0 - coverage) * (1.0 - blob)

    weight = (coverage * alpha)[..., np.newaxis]
    blended = surface.pixels.astype(np.float32) * (1.0 - weight) + _HEATMAP_COLOR * weight
    surface.pixels[:] = np.clip(blended, 0, 255).astype(np.uint8)


def paint_tracking_paths(
    surface: Surface,
    paths: Iterable[TrackingPath],
    colors: ClassColorMap,
    thickness: int = _PATH_THICKNESS,
) -> None:
    """Draw each tracking path as a polyline in its class color."""
    for path in paths:
        if len(path.points) < 2:
            continue
        color = colors.get(path.class_label, _DEFAULT_PATH_COLOR)
        points = np.array(
            [[int(round(x)), int(round(y))] for x, y in path.points], dtype=np.int32
        )
        cv2.polylines(surface.pixels, [points], False, color, thickness, cv2.LINE_AA)


class Renderer:
    """Bundles a surface, a class color map and rendering options.

    The scheduler paints through a Renderer; a display layer reads
    ``renderer.surface.pixels`` after each batch.
    """

    def __init__(
        self,
        config: Optional[VisualizationConfig] = None,
        surface: Optional[Surface] = None,
        palette: Sequence[Color] = DEFAULT_PALETTE,
    ) -> None:
        self.config = config or VisualizationConfig()
        self.surface = surface or Surface()
        self.colors = ClassColorMap(palette)

    def paint_frame(self, frame: np.ndarray) -> None:
        paint_frame(self.surface, frame)

    def paint_detections(self, detections: Iterable[Detection]) -> int:
        return paint_detections(self.surface, detections, self.colors, self.config)

    def paint_batch(
        self,
        detections: Sequence[Detection],
        paths: Optional[List[TrackingPath]] = None,
    ) -> int:
        """Paint boxes, then the enabled overlays, over the current frame.

        Returns:
            The number of detections painted.
        """
        painted = self.paint_detections(detections)
        if self.config.enable_heatmap:
            paint_heatmap(self.surface, detections, self.config.heatmap_alpha)
        if self.config.enable_tracking and paths:
            paint_tracking_paths(self.surface, paths, self.colors)
        return painted
