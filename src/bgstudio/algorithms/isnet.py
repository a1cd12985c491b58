from __future__ import annotations

from .onnx_base import ONNXSegmentationModel

__all__ = ["ISNetSegmentation"]


class ISNetSegmentation(ONNXSegmentationModel):
    """Quality model: sharper edges, only offered on a CUDA backend."""

    MODEL_NAME = "isnet-general-use"
    WEIGHTS_URL = (
        "https://github.com/danielgatis/rembg/releases/download/v0.0.0/"
        "isnet-general-use.onnx"
    )
    DEFAULT_SIZE = 1024
    REQUIRES_ACCELERATION = True
