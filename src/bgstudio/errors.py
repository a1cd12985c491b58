from __future__ import annotations

from typing import Optional

__all__ = [
    "StudioError",
    "ModelInitFailure",
    "ModelNotReady",
    "LifecycleBusy",
    "ModelPinned",
    "SegmentationFailure",
    "AssetDecodeFailure",
    "ImageNotSegmented",
]


class StudioError(Exception):
    """Base class for every error raised by bgstudio."""


class ModelInitFailure(StudioError):
    """A segmentation model could not be brought up."""

    def __init__(self, model_id: str, cause: Optional[BaseException] = None) -> None:
        self.model_id = model_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to initialize model '{model_id}'{detail}")


class ModelNotReady(StudioError):
    """Segmentation was requested while no model is ready for new work."""


class LifecycleBusy(StudioError):
    """Another initialize/switch operation is still in flight."""


class ModelPinned(StudioError):
    """The device is pinned to a single model and cannot switch."""


class SegmentationFailure(StudioError):
    """Segmentation of a single image failed."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Segmentation failed during {stage}: {cause}")


class AssetDecodeFailure(StudioError):
    """An image asset could not be decoded."""


class ImageNotSegmented(StudioError, ValueError):
    """The image has no segmented cutout to edit or export yet."""
