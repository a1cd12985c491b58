from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image
from torchvision.transforms import functional as TF

from .algorithms.base import SegmentationModel
from .config import SegmentationConfig
from .errors import SegmentationFailure
from .lifecycle import ModelLifecycleManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentationOutcome:
    index: int
    image: Optional[Image.Image] = None
    error: Optional[SegmentationFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def decode_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return img.convert("RGB")


class SegmentationOrchestrator:
    """
    Runs source images through the model that is ready for new work.

    The orchestrator never initializes or switches models itself; it only
    reads ``ModelLifecycleManager.ready_model()``.
    """

    def __init__(
        self,
        lifecycle: ModelLifecycleManager,
        config: Optional[SegmentationConfig] = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.config = config or SegmentationConfig()

    async def segment(self, source: bytes) -> Image.Image:
        # Bind the model before suspending so a concurrent switch cannot rebind it.
        model = self.lifecycle.ready_model()
        return await asyncio.to_thread(self._cutout, model, source)

    async def segment_batch(self, sources: Sequence[bytes]) -> List[SegmentationOutcome]:
        outcomes: List[SegmentationOutcome] = []
        for index, source in enumerate(sources):
            try:
                image = await self.segment(source)
            except SegmentationFailure as exc:
                logger.warning("Item %d failed: %s", index, exc)
                outcomes.append(SegmentationOutcome(index, error=exc))
            else:
                outcomes.append(SegmentationOutcome(index, image=image))
        return outcomes

    def _cutout(self, model: SegmentationModel, source: bytes) -> Image.Image:
        start = time.perf_counter()
        try:
            image_rgb = decode_image(source)
        except Exception as exc:
            raise SegmentationFailure("decode", exc) from exc

        try:
            alpha = model.forward(image_rgb)
        except Exception as exc:
            raise SegmentationFailure("inference", exc) from exc

        result = self._compose_image(image_rgb, alpha, model.device)
        logger.debug(
            "Segmented %dx%d image in %.3fs", result.width, result.height, time.perf_counter() - start
        )
        return result

    def _process_alpha_np(self, alpha_np: np.ndarray, device: torch.device) -> np.ndarray:
        alpha_np = np.clip(alpha_np, 0.0, 1.0)

        threshold = self.config.alpha_threshold
        if threshold is not None:
            alpha_np = (alpha_np >= threshold).astype(np.float32)

        if self.config.refine_dilate > 0 or self.config.refine_feather > 0:
            alpha_tensor = torch.from_numpy(alpha_np).to(device).unsqueeze(0).unsqueeze(0)
            for _ in range(self.config.refine_dilate):
                alpha_tensor = F.max_pool2d(alpha_tensor, kernel_size=3, stride=1, padding=1)
            if self.config.refine_feather > 0:
                kernel = 2 * self.config.refine_feather + 1
                alpha_tensor = TF.gaussian_blur(
                    alpha_tensor, kernel_size=kernel, sigma=self.config.refine_feather
                )
            alpha_np = alpha_tensor[0, 0].clamp(0, 1).detach().cpu().numpy()

        return alpha_np

    def _compose_image(
        self, image_rgb: Image.Image, alpha_image: Image.Image, device: torch.device
    ) -> Image.Image:
        if alpha_image.size != image_rgb.size:
            alpha_image = alpha_image.resize(image_rgb.size, Image.BILINEAR)

        if self.config.refine_foreground:
            alpha_np = np.asarray(alpha_image.convert("L"), dtype=np.float32) / 255.0
            alpha_np = self._process_alpha_np(alpha_np, device)
            alpha_image = Image.fromarray(np.rint(alpha_np * 255).astype("uint8"))

        composed = image_rgb.convert("RGBA")
        composed.putalpha(alpha_image.convert("L"))
        return composed
