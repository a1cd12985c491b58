from __future__ import annotations

import abc
from pathlib import Path
from typing import ClassVar, Optional

import torch
from PIL import Image

from ..utils.downloads import download_file, sha256_file


class SegmentationModel(abc.ABC):
    """
    Abstract base class for segmentation backends.

    A model turns an RGB image into a single-channel ``L`` matte of the same
    size. Everything behind ``forward`` is treated as an opaque capability.
    """

    MODEL_NAME: ClassVar[str]
    WEIGHTS_URL: ClassVar[Optional[str]] = None
    WEIGHTS_SHA256: ClassVar[Optional[str]] = None
    WEIGHTS_EXTENSION: ClassVar[str] = ".onnx"
    DEFAULT_SIZE: ClassVar[int] = 1024
    REQUIRES_ACCELERATION: ClassVar[bool] = False

    def __init__(self, weights_root: Path, device: torch.device) -> None:
        self.device = device
        self._load(weights_root)

    @classmethod
    def weights_path(cls, root: Path) -> Path:
        return root / f"{cls.MODEL_NAME}{cls.WEIGHTS_EXTENSION}"

    @classmethod
    def ensure_weights(cls, root: Path) -> Path:
        path = cls.weights_path(root)
        if path.exists() and path.stat().st_size > 0:
            if not cls.WEIGHTS_SHA256 or sha256_file(path) == cls.WEIGHTS_SHA256.lower():
                return path

        if not cls.WEIGHTS_URL:
            raise RuntimeError(f"No download source available for model '{cls.MODEL_NAME}'.")
        return download_file(cls.WEIGHTS_URL, path, cls.WEIGHTS_SHA256)

    @abc.abstractmethod
    def _load(self, root: Path) -> None:
        ...

    @abc.abstractmethod
    def forward(self, image: Image.Image) -> Image.Image:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(device={self.device})"
