"""
DetectView: real-time object and face detection using OpenCV DNN.

Public API:
    - DetectionScheduler: Drives detection over still images and live streams.
    - ModelGateway: Loads, runs and disposes detection models.
    - Renderer: Paints frames, boxes and overlays onto a surface.
    - Detection, DetectionBatch, BoundingBox: Detection data objects.
    - ModelFamily: Supported model families.

Usage:
    import asyncio
    from detectview import DetectionScheduler, ModelGateway, Renderer
    from detectview.media import load_image_file

    async def run():
        async with DetectionScheduler(ModelGateway(), renderer=Renderer()) as scheduler:
            scheduler.on_detection_batch(print)
            await scheduler.select_model("general-detector")
            await scheduler.set_source(load_image_file("street.jpg"))
            await scheduler.join()

    asyncio.run(run())
"""

from detectview.detection import BoundingBox, Detection, DetectionBatch
from detectview.families import ModelFamily
from detectview.gateway import ModelGateway, ModelHandle
from detectview.renderer import Renderer
from detectview.scheduler import DetectionScheduler, SchedulerState

__all__ = [
    "BoundingBox",
    "Detection",
    "DetectionBatch",
    "DetectionScheduler",
    "ModelFamily",
    "ModelGateway",
    "ModelHandle",
    "Renderer",
    "SchedulerState",
]
