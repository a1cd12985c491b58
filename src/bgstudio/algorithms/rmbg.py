from __future__ import annotations

from .onnx_base import ONNXSegmentationModel

__all__ = ["RMBG14Segmentation"]


class RMBG14Segmentation(ONNXSegmentationModel):
    """Compatibility model: runs acceptably on the CPU provider."""

    MODEL_NAME = "rmbg-1.4"
    WEIGHTS_URL = (
        "https://github.com/danielgatis/rembg/releases/download/v0.0.0/"
        "rmbg-1.4.onnx"
    )
    DEFAULT_SIZE = 1024
