from __future__ import annotations

from .onnx_base import ONNXSegmentationModel

__all__ = ["U2NETPSegmentation"]


class U2NETPSegmentation(ONNXSegmentationModel):
    """Compact model pinned on constrained devices."""

    MODEL_NAME = "u2netp"
    WEIGHTS_URL = (
        "https://github.com/danielgatis/rembg/releases/download/v0.0.0/"
        "u2netp.onnx"
    )
    DEFAULT_SIZE = 320
    NORMALIZE_MEAN = (0.485, 0.456, 0.406)
    NORMALIZE_STD = (0.229, 0.224, 0.225)
