from .base import SegmentationModel
from .isnet import ISNetSegmentation
from .onnx_base import ONNXSegmentationModel
from .rmbg import RMBG14Segmentation
from .u2netp import U2NETPSegmentation

__all__ = [
    "SegmentationModel",
    "ONNXSegmentationModel",
    "RMBG14Segmentation",
    "ISNetSegmentation",
    "U2NETPSegmentation",
]
