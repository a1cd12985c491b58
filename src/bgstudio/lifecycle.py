"""
Model lifecycle management.

The manager owns the single ``ModelState`` of a session. It decides which
segmentation model is active, brings it up lazily, switches between models
and falls back to the compatibility model when anything else fails. Only one
initialize/switch operation may be in flight; a concurrent request is
rejected with ``LifecycleBusy``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import torch

from .algorithms import (
    ISNetSegmentation,
    RMBG14Segmentation,
    SegmentationModel,
    U2NETPSegmentation,
)
from .capabilities import Capabilities, accelerated_backend_available
from .config import SegmentationConfig
from .errors import LifecycleBusy, ModelInitFailure, ModelNotReady, ModelPinned

logger = logging.getLogger(__name__)


MODEL_REGISTRY: Dict[str, type[SegmentationModel]] = {
    RMBG14Segmentation.MODEL_NAME: RMBG14Segmentation,
    ISNetSegmentation.MODEL_NAME: ISNetSegmentation,
    U2NETPSegmentation.MODEL_NAME: U2NETPSegmentation,
}

COMPATIBILITY_MODEL_ID = RMBG14Segmentation.MODEL_NAME
QUALITY_MODEL_ID = ISNetSegmentation.MODEL_NAME
CONSTRAINED_MODEL_ID = U2NETPSegmentation.MODEL_NAME

ModelLoader = Callable[[str, Capabilities], Awaitable[SegmentationModel]]


class Readiness(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SWITCHING = "switching"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelState:
    active_model_id: str
    readiness: Readiness
    capabilities: Capabilities


@dataclass(frozen=True)
class LifecycleResult:
    model_id: str
    fallback: Optional[ModelInitFailure] = None

    @property
    def fell_back(self) -> bool:
        return self.fallback is not None


class RegistryModelLoader:
    """Builds models from ``MODEL_REGISTRY`` on a worker thread."""

    def __init__(self, config: Optional[SegmentationConfig] = None) -> None:
        self.config = config or SegmentationConfig()

    async def __call__(self, model_id: str, capabilities: Capabilities) -> SegmentationModel:
        return await asyncio.to_thread(self.build, model_id, capabilities)

    def build(self, model_id: str, capabilities: Capabilities) -> SegmentationModel:
        model_cls = MODEL_REGISTRY[model_id]
        accelerated = bool(capabilities.supports_accelerated_backend)
        if model_cls.REQUIRES_ACCELERATION and not accelerated:
            raise RuntimeError(f"Model '{model_id}' requires an accelerated backend.")

        device = torch.device("cuda", self.config.device_index) if accelerated else torch.device("cpu")
        return model_cls(
            self.config.weights_dir,
            device,
            use_tensorrt=self.config.use_tensorrt,
        )


class ModelLifecycleManager:
    def __init__(
        self,
        capabilities: Capabilities,
        loader: Optional[ModelLoader] = None,
        probe: Callable[[], bool] = accelerated_backend_available,
    ) -> None:
        self._loader = loader or RegistryModelLoader()
        self._probe = probe
        initial = CONSTRAINED_MODEL_ID if capabilities.is_constrained_device else COMPATIBILITY_MODEL_ID
        self._state = ModelState(initial, Readiness.UNINITIALIZED, capabilities)
        self._model: Optional[SegmentationModel] = None
        self._last_ready_id: Optional[str] = None
        self._busy = False
        self._idle: Optional[asyncio.Event] = None
        self._idle_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def active_model_id(self) -> str:
        return self._state.active_model_id

    @property
    def readiness(self) -> Readiness:
        return self._state.readiness

    @property
    def capabilities(self) -> Capabilities:
        return self._state.capabilities

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def can_switch(self) -> bool:
        return not self.capabilities.is_constrained_device

    def ready_model(self) -> SegmentationModel:
        """Return the model instance that new work should run on."""
        if self._state.readiness is not Readiness.READY or self._model is None:
            raise ModelNotReady(
                f"Model '{self.active_model_id}' is {self.readiness.value}; initialize it first."
            )
        return self._model

    async def wait_idle(self) -> None:
        while self._busy:
            await self._idle_event().wait()

    async def initialize(self, model_id: Optional[str] = None) -> LifecycleResult:
        self._claim()
        try:
            if self.readiness is Readiness.READY:
                return LifecycleResult(self.active_model_id)

            target = self._resolve_target(model_id or COMPATIBILITY_MODEL_ID)
            self._update(active_model_id=target, readiness=Readiness.INITIALIZING)
            return await self._bring_up(target)
        finally:
            self._release()

    async def switch_to(self, model_id: str) -> LifecycleResult:
        if not self.can_switch:
            raise ModelPinned(f"This device is pinned to '{CONSTRAINED_MODEL_ID}'.")
        self._check_known(model_id)
        self._claim()
        try:
            current = self.readiness
            if current is Readiness.READY and model_id == self.active_model_id:
                return LifecycleResult(model_id)
            if current not in (Readiness.READY, Readiness.FAILED):
                raise ModelNotReady(f"Cannot switch models while {current.value}.")

            next_state = Readiness.SWITCHING if current is Readiness.READY else Readiness.INITIALIZING
            logger.info("Switching model %s -> %s", self.active_model_id, model_id)
            self._update(readiness=next_state)
            return await self._bring_up(model_id)
        finally:
            self._release()

    async def report_runtime_failure(
        self, model_id: str, exc: BaseException
    ) -> Optional[LifecycleResult]:
        """
        Fall back to the compatibility model after the active model failed mid-use.

        Failures of the compatibility model, of a model that is no longer
        active, or reported while another operation is in flight are ignored.
        """
        if (
            model_id == COMPATIBILITY_MODEL_ID
            or not self.can_switch
            or model_id != self.active_model_id
            or self.readiness is not Readiness.READY
            or self.is_busy
        ):
            return None

        self._claim()
        try:
            logger.warning("Model '%s' failed during inference (%s).", model_id, exc)
            self._update(readiness=Readiness.SWITCHING)
            return await self._fall_back(ModelInitFailure(model_id, exc))
        finally:
            self._release()

    async def _bring_up(self, target: str) -> LifecycleResult:
        caps = await self._resolve_capabilities()
        try:
            model = await self._loader(target, caps)
        except Exception as exc:
            failure = ModelInitFailure(target, exc)
            if target != COMPATIBILITY_MODEL_ID and self.can_switch:
                return await self._fall_back(failure)
            self._fail(target)
            raise failure from exc

        self._ready(target, model)
        return LifecycleResult(target)

    async def _fall_back(self, failure: ModelInitFailure) -> LifecycleResult:
        logger.warning("%s; falling back to '%s'.", failure, COMPATIBILITY_MODEL_ID)
        try:
            model = await self._loader(COMPATIBILITY_MODEL_ID, self.capabilities)
        except Exception as exc:
            self._fail(COMPATIBILITY_MODEL_ID)
            raise ModelInitFailure(COMPATIBILITY_MODEL_ID, exc) from exc

        self._ready(COMPATIBILITY_MODEL_ID, model)
        return LifecycleResult(COMPATIBILITY_MODEL_ID, fallback=failure)

    async def _resolve_capabilities(self) -> Capabilities:
        caps = self.capabilities
        if not caps.acceleration_probed:
            available = await asyncio.to_thread(self._probe)
            caps = caps.with_acceleration(available)
            self._update(capabilities=caps)
            logger.info("Accelerated backend available: %s", available)
        return caps

    def _resolve_target(self, model_id: str) -> str:
        if self.capabilities.is_constrained_device:
            return CONSTRAINED_MODEL_ID
        self._check_known(model_id)
        return model_id

    @staticmethod
    def _check_known(model_id: str) -> None:
        if model_id not in MODEL_REGISTRY:
            raise ValueError(f"Unknown model '{model_id}'. Choices: {list(MODEL_REGISTRY)}")

    def _ready(self, model_id: str, model: SegmentationModel) -> None:
        # Work already running keeps its own reference to the previous instance.
        self._model = model
        self._last_ready_id = model_id
        self._update(active_model_id=model_id, readiness=Readiness.READY)
        logger.info("Model '%s' ready.", model_id)

    def _fail(self, attempted: str) -> None:
        self._model = None
        self._update(
            active_model_id=self._last_ready_id or attempted,
            readiness=Readiness.FAILED,
        )

    def _claim(self) -> None:
        if self.is_busy:
            raise LifecycleBusy("A model initialization or switch is already in progress.")
        self._busy = True
        if self._idle is not None:
            self._idle.clear()

    def _release(self) -> None:
        self._busy = False
        if self._idle is not None:
            self._idle.set()

    def _idle_event(self) -> asyncio.Event:
        # asyncio.Event binds to one loop; a new asyncio.run gets a new event.
        loop = asyncio.get_running_loop()
        if self._idle is None or self._idle_loop is not loop:
            self._idle = asyncio.Event()
            self._idle_loop = loop
        return self._idle

    def _update(self, **changes) -> None:
        self._state = dataclasses.replace(self._state, **changes)
