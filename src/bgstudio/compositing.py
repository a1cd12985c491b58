"""
Compositing and effects engine.

``render`` takes an RGBA cutout and an ``EditConfig`` and always runs the
whole pipeline from scratch:

1. allocate an output the size of the cutout,
2. paint the background (flat color, or an image stretched to the output),
3. composite the cutout on top (source-over),
4. apply at most one effect to the composite,
5. hand back an RGBA image ready for ``export_png``.

The engine holds no state; the same inputs always yield the same pixels.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageColor, ImageFilter

from .errors import AssetDecodeFailure

logger = logging.getLogger(__name__)

MIN_INTENSITY = 0
MAX_INTENSITY = 100
DEFAULT_INTENSITY = 50
DEFAULT_BACKGROUND_COLOR = "#ffffff"

PRESET_COLORS: Tuple[str, ...] = (
    "#ffffff",
    "#000000",
    "#ff0000",
    "#00ff00",
    "#0000ff",
    "#ffff00",
    "#00ffff",
    "#ff00ff",
    "#808080",
    "#c0c0c0",
)

Asset = Union[bytes, Image.Image]


def clamp_intensity(value: float) -> float:
    return max(float(MIN_INTENSITY), min(float(MAX_INTENSITY), float(value)))


# ============================================================================
# Edit configuration
# ============================================================================


@dataclass(frozen=True)
class SolidColor:
    value: str = DEFAULT_BACKGROUND_COLOR


@dataclass(frozen=True)
class ImageFill:
    # None means "no image chosen yet" and leaves the background transparent.
    asset: Optional[Asset] = field(default=None, hash=False)


Background = Union[SolidColor, ImageFill]


@dataclass(frozen=True)
class NoEffect:
    kind = "none"


@dataclass(frozen=True)
class _IntensityEffect:
    intensity: float = DEFAULT_INTENSITY

    def __post_init__(self) -> None:
        object.__setattr__(self, "intensity", clamp_intensity(self.intensity))


@dataclass(frozen=True)
class Blur(_IntensityEffect):
    kind = "blur"

    @property
    def radius(self) -> float:
        return self.intensity / 10


@dataclass(frozen=True)
class Brightness(_IntensityEffect):
    kind = "brightness"


@dataclass(frozen=True)
class Contrast(_IntensityEffect):
    kind = "contrast"


Effect = Union[NoEffect, Blur, Brightness, Contrast]

EFFECT_TYPES = {cls.kind: cls for cls in (Blur, Brightness, Contrast)}
EFFECT_KINDS = ("none",) + tuple(EFFECT_TYPES)


def make_effect(kind: str, intensity: float = DEFAULT_INTENSITY) -> Effect:
    if kind == NoEffect.kind:
        return NoEffect()
    try:
        return EFFECT_TYPES[kind](intensity)
    except KeyError:
        raise ValueError(f"Unknown effect '{kind}'. Choices: {list(EFFECT_KINDS)}") from None


@dataclass(frozen=True)
class EditConfig:
    background: Background = field(default_factory=SolidColor)
    effect: Effect = field(default_factory=NoEffect)


# ============================================================================
# Pipeline steps
# ============================================================================


def decode_asset(asset: Asset) -> Image.Image:
    if isinstance(asset, Image.Image):
        return asset.convert("RGBA")
    try:
        with Image.open(io.BytesIO(asset)) as img:
            img.load()
            return img.convert("RGBA")
    except Exception as exc:
        raise AssetDecodeFailure(f"Could not decode background image: {exc}") from exc


def paint_background(background: Background, size: Tuple[int, int]) -> Image.Image:
    if isinstance(background, SolidColor):
        return Image.new("RGBA", size, ImageColor.getcolor(background.value, "RGBA"))

    canvas = Image.new("RGBA", size, (0, 0, 0, 0))
    if background.asset is None:
        return canvas
    try:
        fill = decode_asset(background.asset)
    except AssetDecodeFailure as exc:
        logger.warning("%s; using a transparent background.", exc)
        return canvas
    # Stretched to the exact output size, never letterboxed.
    return fill.resize(size, Image.BILINEAR)


def composite(background: Image.Image, foreground: Image.Image) -> Image.Image:
    """Source-over composite of two same-sized RGBA images."""
    bg = np.asarray(background.convert("RGBA"), dtype=np.float64) / 255.0
    fg = np.asarray(foreground.convert("RGBA"), dtype=np.float64) / 255.0

    fa = fg[..., 3:4]
    ba = bg[..., 3:4]
    out_a = fa + ba * (1.0 - fa)
    premul = fg[..., :3] * fa + bg[..., :3] * ba * (1.0 - fa)
    out_rgb = np.divide(premul, out_a, out=np.zeros_like(premul), where=out_a > 0)

    out = np.concatenate([out_rgb, out_a], axis=-1) * 255.0
    return Image.fromarray(np.rint(np.clip(out, 0, 255)).astype(np.uint8))


def _map_rgb(image: Image.Image, fn) -> Image.Image:
    pixels = np.asarray(image.convert("RGBA"), dtype=np.float64).copy()
    pixels[..., :3] = np.rint(np.clip(fn(pixels[..., :3]), 0, 255))
    return Image.fromarray(pixels.astype(np.uint8))


def apply_brightness(image: Image.Image, intensity: float) -> Image.Image:
    scale = clamp_intensity(intensity) / 50
    return _map_rgb(image, lambda rgb: rgb * scale)


def contrast_factor(intensity: float) -> float:
    intensity = clamp_intensity(intensity)
    return (259 * (intensity + 255)) / (255 * (259 - intensity))


def apply_contrast(image: Image.Image, intensity: float) -> Image.Image:
    factor = contrast_factor(intensity)
    return _map_rgb(image, lambda rgb: factor * (rgb - 128) + 128)


def apply_blur(image: Image.Image, intensity: float) -> Image.Image:
    radius = clamp_intensity(intensity) / 10
    image = image.convert("RGBA")
    if radius <= 0:
        return image.copy()
    # Blur premultiplied so transparent pixels do not darken the edges.
    blurred = image.convert("RGBa").filter(ImageFilter.GaussianBlur(radius=radius))
    return blurred.convert("RGBA")


def apply_effect(image: Image.Image, effect: Effect) -> Image.Image:
    if isinstance(effect, Blur):
        return apply_blur(image, effect.intensity)
    if isinstance(effect, Brightness):
        return apply_brightness(image, effect.intensity)
    if isinstance(effect, Contrast):
        return apply_contrast(image, effect.intensity)
    return image


def render(segmented: Image.Image, config: EditConfig) -> Image.Image:
    foreground = segmented.convert("RGBA")
    background = paint_background(config.background, foreground.size)
    return apply_effect(composite(background, foreground), config.effect)


def export_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.convert("RGBA").save(buffer, format="PNG", optimize=False)
    return buffer.getvalue()
