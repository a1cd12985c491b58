from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np
import onnxruntime as ort
import torch
import torch.nn.functional as F
from PIL import Image
from torchvision import transforms

from .base import SegmentationModel

logger = logging.getLogger(__name__)


class ONNXSegmentationModel(SegmentationModel):
    """
    Shared ONNXRuntime-backed segmentation implementation.

    Runs on CUDA when the device is a CUDA device and on the CPU provider
    otherwise. Models flagged ``REQUIRES_ACCELERATION`` refuse to come up
    without the CUDA provider.
    """

    NORMALIZE_MEAN: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    NORMALIZE_STD: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    # When False the raw output is min-max normalized instead.
    OUTPUT_SIGMOID: bool = False

    def __init__(
        self,
        weights_root: Path,
        device: torch.device,
        use_tensorrt: bool = False,
    ) -> None:
        self.session: ort.InferenceSession | None = None
        self.input_name: str | None = None
        self.output_name: str | None = None
        self.use_tensorrt = use_tensorrt and device.type == "cuda"
        super().__init__(weights_root, device)

    def _load(self, root: Path) -> None:
        onnx_path = self.ensure_weights(root)

        session_options = ort.SessionOptions()
        session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        try:
            session = self._open_session(onnx_path, session_options, tensorrt=self.use_tensorrt)
        except Exception:
            if not self.use_tensorrt:
                raise
            logger.warning("TensorRT provider failed to initialize; retrying without TensorRT.")
            self.use_tensorrt = False
            session = self._open_session(onnx_path, session_options, tensorrt=False)

        active = session.get_providers()
        if self.REQUIRES_ACCELERATION and "CUDAExecutionProvider" not in active:
            raise RuntimeError(
                f"Model '{self.MODEL_NAME}' needs the CUDAExecutionProvider but onnxruntime "
                f"only initialized {active}."
            )
        if self.device.type == "cuda" and "CUDAExecutionProvider" not in active:
            logger.warning("CUDA requested for %s but onnxruntime runs on %s.", self.MODEL_NAME, active)

        self.session = session
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name

    def _open_session(
        self, onnx_path: Path, options: ort.SessionOptions, *, tensorrt: bool
    ) -> ort.InferenceSession:
        providers = self._build_providers(tensorrt=tensorrt)
        return ort.InferenceSession(
            onnx_path.as_posix(),
            sess_options=options,
            providers=[name for name, _ in providers],
            provider_options=[opts for _, opts in providers],
        )

    def _build_providers(self, *, tensorrt: bool) -> List[Tuple[str, Dict[str, str]]]:
        providers: List[Tuple[str, Dict[str, str]]] = [("CPUExecutionProvider", {})]
        if self.device.type != "cuda":
            return providers

        device_id = str(self.device.index if self.device.index is not None else 0)
        cuda_options = {
            "device_id": device_id,
            "arena_extend_strategy": "kNextPowerOfTwo",
            "cudnn_conv_use_max_workspace": "1",
            "do_copy_in_default_stream": "1",
        }
        providers.insert(0, ("CUDAExecutionProvider", cuda_options))

        if tensorrt:
            trt_options = {
                "device_id": device_id,
                "trt_fp16_enable": "True",
                "trt_max_workspace_size": str(1 << 30),
            }
            providers.insert(0, ("TensorrtExecutionProvider", trt_options))

        return providers

    def preprocess(self, image: Image.Image) -> torch.Tensor:
        transform = transforms.Compose(
            [
                transforms.Resize(
                    (self.DEFAULT_SIZE, self.DEFAULT_SIZE),
                    interpolation=transforms.InterpolationMode.BILINEAR,
                ),
                transforms.ToTensor(),
                transforms.Normalize(mean=self.NORMALIZE_MEAN, std=self.NORMALIZE_STD),
            ]
        )
        return transform(image.convert("RGB")).unsqueeze(0)

    def normalize_output(self, raw: torch.Tensor) -> torch.Tensor:
        if self.OUTPUT_SIGMOID:
            return torch.sigmoid(raw)
        lo, hi = raw.min(), raw.max()
        if float(hi - lo) <= 0:
            return torch.zeros_like(raw)
        return (raw - lo) / (hi - lo)

    def forward(self, image: Image.Image) -> Image.Image:
        if self.session is None or self.input_name is None or self.output_name is None:
            raise RuntimeError("ONNX session not initialized.")

        tensor = self.preprocess(image)
        ort_inputs = {self.input_name: tensor.numpy().astype(np.float32)}
        outputs = self.session.run([self.output_name], ort_inputs)[0]
        alpha = self.normalize_output(torch.from_numpy(outputs))
        return self.postprocess(alpha, (image.height, image.width))

    def postprocess(self, alpha_pred: torch.Tensor, size: Tuple[int, int]) -> Image.Image:
        alpha = alpha_pred.reshape(-1, *alpha_pred.shape[-2:])[:1].unsqueeze(0)
        alpha = F.interpolate(alpha, size=size, mode="bilinear", align_corners=False)[0, 0]
        alpha = torch.nan_to_num(alpha, nan=0.0, posinf=1.0, neginf=0.0).clamp(0, 1)
        alpha_img = (alpha.numpy() * 255).round().astype("uint8")
        return Image.fromarray(alpha_img)
