"""
Runtime capability detection.

Detection never raises. The acceleration probe degrades to False on any error.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

CONSTRAINED_PLATFORMS = frozenset({"ios", "android"})
CONSTRAINED_ENV = "BGSTUDIO_CONSTRAINED"
DISABLE_ACCELERATION_ENV = "BGSTUDIO_DISABLE_ACCELERATION"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Capabilities:
    is_constrained_device: bool = False
    # Unknown until the first model initialization probes for it.
    supports_accelerated_backend: Optional[bool] = None

    @property
    def acceleration_probed(self) -> bool:
        return self.supports_accelerated_backend is not None

    def with_acceleration(self, available: bool) -> "Capabilities":
        return dataclasses.replace(self, supports_accelerated_backend=bool(available))


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in _TRUTHY


def detect(
    environ: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
) -> Capabilities:
    environ = os.environ if environ is None else environ
    platform = sys.platform if platform is None else platform

    constrained = platform in CONSTRAINED_PLATFORMS or _flag(environ, CONSTRAINED_ENV)
    return Capabilities(is_constrained_device=constrained)


def accelerated_backend_available(environ: Optional[Mapping[str, str]] = None) -> bool:
    """
    Try to acquire a GPU execution path for inference.

    Both torch (used for pre/post-processing) and onnxruntime (used for the
    model itself) must see CUDA.
    """
    environ = os.environ if environ is None else environ
    if _flag(environ, DISABLE_ACCELERATION_ENV):
        return False

    try:
        import onnxruntime as ort
        import torch

        if not torch.cuda.is_available():
            return False
        return "CUDAExecutionProvider" in ort.get_available_providers()
    except Exception as exc:
        logger.warning("Accelerated backend probe failed (%s); using CPU.", exc)
        return False
