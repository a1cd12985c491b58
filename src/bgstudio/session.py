"""
Session-level coordination.

``Studio`` wires the store, the lifecycle manager and the orchestrator
together and is the single ingestion path for every image source. Editing
goes through ``EditSession``, which re-renders explicitly when a parameter
changed instead of recomputing behind the caller's back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import requests
from PIL import Image, ImageColor

from . import compositing
from .capabilities import Capabilities, accelerated_backend_available, detect
from .compositing import (
    DEFAULT_BACKGROUND_COLOR,
    DEFAULT_INTENSITY,
    EFFECT_KINDS,
    EFFECT_TYPES,
    Asset,
    Background,
    EditConfig,
    Effect,
    ImageFill,
    SolidColor,
    clamp_intensity,
    make_effect,
)
from .config import SegmentationConfig
from .errors import ImageNotSegmented, LifecycleBusy, ModelInitFailure, SegmentationFailure
from .lifecycle import (
    LifecycleResult,
    ModelLifecycleManager,
    ModelLoader,
    Readiness,
    RegistryModelLoader,
)
from .pipeline import SegmentationOrchestrator
from .store import ImageCollectionStore, ImageRecord
from .utils.downloads import fetch_bytes

logger = logging.getLogger(__name__)

SAMPLE_IMAGE_URLS = (
    "https://images.unsplash.com/photo-1581803118522-7b72a50f7e9f?q=80&w=2938&auto=format&fit=crop&ixlib=rb-4.0.3",
    "https://images.unsplash.com/photo-1596854407944-bf87f6fdd49e?q=80&w=2970&auto=format&fit=crop&ixlib=rb-4.0.3",
    "https://images.unsplash.com/photo-1495360010541-f48722b34f7d?q=80&w=2874&auto=format&fit=crop&ixlib=rb-4.0.3",
    "https://images.unsplash.com/photo-1574158622682-e40e69881006?q=80&w=2333&auto=format&fit=crop&ixlib=rb-4.0.3",
)

EXPORT_PREFIX = "bgstudio"


class EditSession:
    """
    Editing state for one segmented image.

    Every setter only records the change and marks the session dirty;
    ``render`` re-runs the full compositing pipeline when dirty. Each effect
    kind keeps its own intensity, so switching kinds and back restores it.
    """

    def __init__(self, store: ImageCollectionStore, image_id: int) -> None:
        record = store.get(image_id)
        if record is None:
            raise KeyError(image_id)
        if record.segmented is None:
            raise ImageNotSegmented(f"Image {image_id} has not been segmented yet")

        self.store = store
        self.image_id = image_id
        self._use_image_fill = False
        self._color = DEFAULT_BACKGROUND_COLOR
        self._fill: Optional[Asset] = None
        self._effect_kind = "none"
        self._intensities: Dict[str, float] = {kind: DEFAULT_INTENSITY for kind in EFFECT_TYPES}
        self._result: Optional[Image.Image] = None
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def background(self) -> Background:
        if self._use_image_fill:
            return ImageFill(self._fill)
        return SolidColor(self._color)

    @property
    def effect(self) -> Effect:
        return make_effect(self._effect_kind, self._intensities.get(self._effect_kind, DEFAULT_INTENSITY))

    @property
    def effect_kind(self) -> str:
        return self._effect_kind

    @property
    def intensity(self) -> Optional[float]:
        """Intensity shown for the selected effect, ``None`` when no effect is selected."""
        return self._intensities.get(self._effect_kind)

    @property
    def config(self) -> EditConfig:
        return EditConfig(background=self.background, effect=self.effect)

    def set_background_color(self, value: str) -> None:
        ImageColor.getrgb(value)  # raises ValueError for unknown colors
        self._change(_use_image_fill=False, _color=value)

    def set_background_image(self, asset: Optional[Asset]) -> None:
        self._change(_use_image_fill=True, _fill=asset)

    def select_effect(self, kind: str) -> None:
        if kind not in EFFECT_KINDS:
            raise ValueError(f"Unknown effect '{kind}'. Choices: {list(EFFECT_KINDS)}")
        self._change(_effect_kind=kind)

    def set_intensity(self, value: float) -> None:
        if self._effect_kind not in self._intensities:
            return
        intensities = dict(self._intensities)
        intensities[self._effect_kind] = clamp_intensity(value)
        self._change(_intensities=intensities)

    def render(self) -> Image.Image:
        if self._dirty or self._result is None:
            record = self._record()
            self._result = compositing.render(record.segmented, self.config)
            self._dirty = False
        return self._result

    def save(self) -> bool:
        """Store the current render as the image's edit; False if the image is gone."""
        return self.store.mark_edited(self.image_id, self.render().copy())

    def export(self) -> bytes:
        return compositing.export_png(self.render())

    def _record(self) -> ImageRecord:
        record = self.store.get(self.image_id)
        if record is None:
            raise KeyError(self.image_id)
        return record

    def _change(self, **changes) -> None:
        for attr, value in changes.items():
            if getattr(self, attr) != value:
                setattr(self, attr, value)
                self._dirty = True


class Studio:
    def __init__(
        self,
        config: Optional[SegmentationConfig] = None,
        *,
        loader: Optional[ModelLoader] = None,
        capabilities: Optional[Capabilities] = None,
        probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.config = config or SegmentationConfig()
        self.capabilities = capabilities if capabilities is not None else detect()
        self.store = ImageCollectionStore()
        self.lifecycle = ModelLifecycleManager(
            self.capabilities,
            loader or RegistryModelLoader(self.config),
            probe=probe or accelerated_backend_available,
        )
        self.orchestrator = SegmentationOrchestrator(self.lifecycle, self.config)
        self.notices: List[str] = []

    @property
    def images(self) -> List[ImageRecord]:
        return self.store.list()

    def add(
        self, sources: Iterable[bytes], names: Optional[Sequence[Optional[str]]] = None
    ) -> List[int]:
        return self.store.add(sources, names)

    async def ingest(
        self, sources: Iterable[bytes], names: Optional[Sequence[Optional[str]]] = None
    ) -> List[int]:
        ids = self.add(sources, names)
        await self.process(ids)
        return ids

    async def add_sample(self, url: str = SAMPLE_IMAGE_URLS[0]) -> List[int]:
        try:
            data = await asyncio.to_thread(fetch_bytes, url)
        except requests.RequestException as exc:
            logger.warning("Could not fetch sample image %s: %s", url, exc)
            return []
        return await self.ingest([data], names=["sample-image.jpg"])

    async def ensure_model(self) -> None:
        while True:
            await self.lifecycle.wait_idle()
            if self.lifecycle.readiness is Readiness.READY:
                return
            try:
                result = await self.lifecycle.initialize(self.config.model_name)
            except LifecycleBusy:
                continue
            self._note(result)
            return

    async def process(self, ids: Sequence[int]) -> Dict[int, Optional[SegmentationFailure]]:
        """
        Segment the given images one after another.

        Returns the per-image failure (``None`` on success) for every image
        that was still present when its result arrived. If no model can be
        brought up for the first time, the images are dropped and
        ``ModelInitFailure`` propagates.
        """
        pending = [image_id for image_id in ids if self._needs_segmentation(image_id)]
        if not pending:
            return {}

        try:
            await self.ensure_model()
        except ModelInitFailure:
            for image_id in pending:
                self.store.remove(image_id)
            raise

        results: Dict[int, Optional[SegmentationFailure]] = {}
        for image_id in pending:
            await self.ensure_model()
            if not self._needs_segmentation(image_id):
                continue
            model_id = self.lifecycle.active_model_id
            try:
                image = await self.orchestrator.segment(self.store.get(image_id).source)
            except SegmentationFailure as exc:
                if self.store.mark_failed(image_id, str(exc)):
                    results[image_id] = exc
                if exc.stage == "inference":
                    self._note(await self.lifecycle.report_runtime_failure(model_id, exc.cause))
                continue

            if self._needs_segmentation(image_id) and self.store.mark_segmented(image_id, image):
                results[image_id] = None
            else:
                image.close()
        return results

    async def switch_model(self, model_id: str) -> LifecycleResult:
        result = await self.lifecycle.switch_to(model_id)
        self._note(result)
        return result

    def edit(self, image_id: int) -> EditSession:
        return EditSession(self.store, image_id)

    def export(self, image_id: int) -> bytes:
        record = self.store.get(image_id)
        if record is None:
            raise KeyError(image_id)
        if record.output is None:
            raise ImageNotSegmented(f"Image {image_id} has nothing to export yet")
        return compositing.export_png(record.output)

    @staticmethod
    def export_name(image_id: int) -> str:
        return f"{EXPORT_PREFIX}-{image_id}.png"

    def remove(self, image_id: int) -> bool:
        return self.store.remove(image_id)

    def _needs_segmentation(self, image_id: int) -> bool:
        record = self.store.get(image_id)
        return record is not None and record.segmented is None

    def _note(self, result: Optional[LifecycleResult]) -> None:
        if result is None or not result.fell_back:
            return
        message = f"{result.fallback}. Using '{result.model_id}' instead."
        logger.info("%s", message)
        self.notices.append(message)
