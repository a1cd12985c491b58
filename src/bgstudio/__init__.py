"""
On-device background removal and replacement.

Segments images with a locally run ONNX model, composites the cutout over a
solid color or an image, and applies one photographic effect before export.
"""

from .capabilities import Capabilities, detect
from .compositing import (
    Blur,
    Brightness,
    Contrast,
    EditConfig,
    ImageFill,
    NoEffect,
    SolidColor,
    export_png,
    render,
)
from .config import SegmentationConfig
from .lifecycle import (
    COMPATIBILITY_MODEL_ID,
    CONSTRAINED_MODEL_ID,
    QUALITY_MODEL_ID,
    LifecycleResult,
    ModelLifecycleManager,
    ModelState,
    Readiness,
)
from .pipeline import SegmentationOrchestrator, SegmentationOutcome
from .session import EditSession, Studio
from .store import ImageCollectionStore, ImageRecord

__all__ = [
    "Capabilities",
    "detect",
    "Blur",
    "Brightness",
    "Contrast",
    "EditConfig",
    "ImageFill",
    "NoEffect",
    "SolidColor",
    "export_png",
    "render",
    "SegmentationConfig",
    "COMPATIBILITY_MODEL_ID",
    "CONSTRAINED_MODEL_ID",
    "QUALITY_MODEL_ID",
    "LifecycleResult",
    "ModelLifecycleManager",
    "ModelState",
    "Readiness",
    "SegmentationOrchestrator",
    "SegmentationOutcome",
    "EditSession",
    "Studio",
    "ImageCollectionStore",
    "ImageRecord",
]
