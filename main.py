"""
DetectView CLI Entrypoint.

Responsibility:
    Parse command-line arguments, configure the application, wire the
    scheduler to a model gateway, a renderer and a display window, and
    run detection on a webcam or an image file.

Usage:
    python main.py --source 0                          # Webcam
    python main.py --source street.jpg                 # Still image
    python main.py --source 0 --model face-detector --tracking
    python main.py --source street.jpg --no-display --filter car
    python main.py --config my_config.yaml

This module is the executable entry point. It should not be imported
by other modules.
"""

import argparse
import asyncio
import logging
import sys

# Configure logging before importing local modules
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("main")

import cv2

from detectview.aggregator import SORT_BY_CONFIDENCE, SORT_BY_NAME, results_view, summarize
from detectview.config import load_config, with_overrides
from detectview.detection import DetectionBatch
from detectview.errors import DetectViewError
from detectview.gateway import ModelGateway
from detectview.media import constraints_for, load_image_file
from detectview.renderer import Renderer
from detectview.scheduler import Diagnostic, DetectionScheduler, StateSnapshot

WINDOW_NAME = "DetectView"
_QUIT_KEYS = (ord("q"), 27)  # 'q' or ESC
_DISPLAY_INTERVAL_S = 0.015


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="DetectView: real-time object and face detection",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--source",
        type=str,
        help="Input source: webcam device index (e.g. '0') or path to an image file.",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--model",
        type=str,
        choices=["general-detector", "face-detector", "custom"],
        help="Model family to load. Overrides config.",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        help="Model file for the 'custom' family. Overrides config.",
    )
    parser.add_argument(
        "--backend",
        type=str,
        choices=["cpu", "cuda"],
        help="Compute backend preference. Overrides config.",
    )
    parser.add_argument(
        "--confidence",
        type=float,
        help="Detection confidence threshold (0.0 - 1.0). Overrides config.",
    )
    parser.add_argument(
        "--iou",
        type=float,
        help="IoU threshold for non-max suppression (0.0 - 1.0). Overrides config.",
    )
    parser.add_argument(
        "--no-suppression",
        action="store_true",
        help="Disable non-max suppression.",
    )
    parser.add_argument(
        "--resolution",
        type=str,
        choices=["low", "medium", "high"],
        help="Webcam resolution preset. Overrides config.",
    )
    parser.add_argument(
        "--heatmap",
        action="store_true",
        help="Composite a detection heatmap over the frame.",
    )
    parser.add_argument(
        "--tracking",
        action="store_true",
        help="Draw tracking paths across frames.",
    )
    parser.add_argument(
        "--filter",
        type=str,
        default="",
        help="Only list detections whose class contains this text.",
    )
    parser.add_argument(
        "--sort",
        type=str,
        choices=[SORT_BY_CONFIDENCE, SORT_BY_NAME],
        default=SORT_BY_CONFIDENCE,
        help="Order of the listed detections.",
    )
    parser.add_argument(
        "--no-display",
        action="store_true",
        help="Do not open a window; log results only.",
    )

    return parser.parse_args()


def build_config(args: argparse.Namespace):
    """Apply CLI overrides on top of YAML and environment configuration."""
    config = load_config(args.config)
    config = with_overrides(
        config, "model",
        family=args.model,
        backend=args.backend,
        custom_model_path=args.model_path,
    )
    config = with_overrides(
        config, "detection",
        confidence_threshold=args.confidence,
        iou_threshold=args.iou,
        enable_suppression=False if args.no_suppression else None,
    )
    config = with_overrides(
        config, "input",
        source=args.source,
        resolution=args.resolution,
    )
    config = with_overrides(
        config, "visualization",
        enable_heatmap=True if args.heatmap else None,
        enable_tracking=True if args.tracking else None,
    )
    return config


def log_batch(batch: DetectionBatch, filter_text: str, sort_by: str) -> None:
    """Log a results table for one batch."""
    summary = summarize(batch.detections)
    logger.info(
        "Frame %d: %d detections, %d classes",
        batch.frame_index, summary.total, summary.unique_classes,
    )
    for det in results_view(batch.detections, filter_text, sort_by):
        box = det.bounding_box
        logger.info(
            "  %-16s %5.1f%%  [x=%.0f y=%.0f w=%.0f h=%.0f]",
            det.class_label, det.confidence * 100, box.x, box.y, box.width, box.height,
        )
    for share in summary.distribution:
        logger.info("  %-16s %d (%d%%)", share.class_label, share.count, share.percentage)


async def display_loop(renderer: Renderer, stop: asyncio.Event) -> None:
    """Show the rendered surface until the user quits or ``stop`` is set."""
    while not stop.is_set():
        cv2.imshow(WINDOW_NAME, renderer.surface.pixels)
        key = cv2.waitKey(1) & 0xFF
        if key in _QUIT_KEYS:
            logger.info("Stopping per user request.")
            break
        await asyncio.sleep(_DISPLAY_INTERVAL_S)


async def run(config, args: argparse.Namespace) -> int:
    """Run detection on the configured source until done or interrupted."""
    renderer = Renderer(config.visualization)
    scheduler = DetectionScheduler(ModelGateway(), config, renderer)
    stop = asyncio.Event()

    # Live streams log progress every 30 frames; still images always log
    live_source = config.input.source.isdigit()

    @scheduler.on_detection_batch
    def _on_batch(batch: DetectionBatch) -> None:
        if not live_source or batch.frame_index % 30 == 0:
            log_batch(batch, args.filter, args.sort)

    @scheduler.on_state_change
    def _on_state(snapshot: StateSnapshot) -> None:
        if snapshot.error is not None:
            logger.error("Scheduler error: %s", snapshot.error.user_message)

    @scheduler.on_diagnostic
    def _on_diagnostic(diagnostic: Diagnostic) -> None:
        logger.warning("[%s] %s", diagnostic.kind, diagnostic.message)

    async with scheduler:
        try:
            await scheduler.select_model(config.model.family)

            if live_source:
                await scheduler.start_stream(
                    constraints_for(
                        config.input.resolution,
                        config.input.facing_mode,
                        device_index=int(config.input.source),
                    )
                )
            else:
                image = load_image_file(
                    config.input.source,
                    max_bytes=config.input.max_upload_bytes,
                    accepted_types=config.input.accepted_types,
                )
                await scheduler.set_source(image)
                if args.no_display:
                    await scheduler.join()
                    return 0

            if args.no_display:
                # Live stream without a window: run until interrupted
                await stop.wait()
            else:
                await display_loop(renderer, stop)

        except DetectViewError as e:
            logger.error("%s (%s)", e.user_message, e)
            return 1
        except FileNotFoundError as e:
            logger.error("%s", e)
            return 1
        finally:
            stop.set()
            if not args.no_display:
                cv2.destroyAllWindows()

    return 0


def main() -> int:
    """Main entry point."""
    args = parse_args()

    # 1. Load Configuration (CLI args > ENV > YAML > Defaults)
    try:
        config = build_config(args)
        logger.info("Configuration active for this run.")
    except Exception as e:
        logger.error("Configuration error: %s", e)
        return 1

    # 2. Run
    try:
        return asyncio.run(run(config, args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 0
    except Exception as e:
        logger.exception("Runtime error during processing: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
