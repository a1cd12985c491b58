from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

HOME_ENV = "BGSTUDIO_HOME"


def default_weights_dir() -> Path:
    root = os.environ.get(HOME_ENV)
    if root:
        return Path(root).expanduser()
    return Path("~/.cache/bgstudio").expanduser()


@dataclass
class SegmentationConfig:
    # None selects the compatibility model.
    model_name: Optional[str] = None
    weights_dir: Path = field(default_factory=default_weights_dir)
    device_index: int = 0
    use_tensorrt: bool = False
    alpha_threshold: Optional[float] = None
    refine_foreground: bool = True
    refine_dilate: int = 0
    refine_feather: int = 0

    def __post_init__(self) -> None:
        self.weights_dir = Path(self.weights_dir).expanduser()
        self.refine_dilate = max(0, int(self.refine_dilate))
        self.refine_feather = max(0, int(self.refine_feather))
        if self.alpha_threshold is not None:
            self.alpha_threshold = max(0.0, min(1.0, float(self.alpha_threshold)))
