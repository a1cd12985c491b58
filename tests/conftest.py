from __future__ import annotations

import asyncio
import io
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set

import numpy as np
import pytest
import torch
from PIL import Image

from bgstudio.algorithms.base import SegmentationModel
from bgstudio.capabilities import Capabilities


def png_bytes(size=(8, 6), color=(10, 200, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeModel(SegmentationModel):
    """Matte: left half opaque, right half transparent. Fails on configured red values."""

    MODEL_NAME = "fake"

    def __init__(self, model_id: str, fail_on_red: Optional[int] = None) -> None:
        self.model_id = model_id
        self.fail_on_red = fail_on_red
        self.calls = 0
        self.device = torch.device("cpu")

    def _load(self, root: Path) -> None:
        pass

    def forward(self, image: Image.Image) -> Image.Image:
        self.calls += 1
        if self.fail_on_red is not None and image.getpixel((0, 0))[0] == self.fail_on_red:
            raise RuntimeError("inference blew up")
        alpha = np.zeros((image.height, image.width), dtype=np.uint8)
        alpha[:, : image.width // 2] = 255
        return Image.fromarray(alpha)


class GatedModel(FakeModel):
    """Blocks inside ``forward`` until the test releases it."""

    def __init__(self, model_id: str) -> None:
        super().__init__(model_id)
        self.started = threading.Event()
        self.release = threading.Event()

    def forward(self, image: Image.Image) -> Image.Image:
        self.started.set()
        if not self.release.wait(timeout=5):
            raise RuntimeError("gate never released")
        return super().forward(image)


class FakeLoader:
    def __init__(self, failing: Optional[Set[str]] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.failing = set(failing or ())
        self.gate = gate
        self.calls: List[str] = []
        self.capabilities: List[Capabilities] = []
        self.models: Dict[str, FakeModel] = {}
        self.factory = FakeModel

    async def __call__(self, model_id: str, capabilities: Capabilities) -> SegmentationModel:
        self.calls.append(model_id)
        self.capabilities.append(capabilities)
        if self.gate is not None:
            await self.gate.wait()
        if model_id in self.failing:
            raise RuntimeError(f"cannot load {model_id}")
        model = self.factory(model_id)
        self.models[model_id] = model
        return model


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def desktop() -> Capabilities:
    return Capabilities(is_constrained_device=False)


@pytest.fixture
def constrained() -> Capabilities:
    return Capabilities(is_constrained_device=True)


@pytest.fixture
def source_png() -> bytes:
    return png_bytes()
