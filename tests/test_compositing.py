import io
import logging

import numpy as np
import pytest
from PIL import Image

from bgstudio.compositing import (
    Blur,
    Brightness,
    Contrast,
    EditConfig,
    ImageFill,
    NoEffect,
    SolidColor,
    apply_blur,
    apply_brightness,
    apply_contrast,
    contrast_factor,
    export_png,
    make_effect,
    render,
)


def _rgba(pixels):
    return Image.fromarray(np.array(pixels, dtype=np.uint8))


def _gradient(alpha=255):
    row = np.arange(0, 256, 4, dtype=np.uint8)
    rgb = np.stack([row, row[::-1], row], axis=-1)[np.newaxis].repeat(3, axis=0)
    a = np.full(rgb.shape[:2] + (1,), alpha, dtype=np.uint8)
    return Image.fromarray(np.concatenate([rgb, a], axis=-1))


def _png(image):
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def test_opaque_foreground_over_red_matches_fill_then_overdraw():
    foreground = Image.new("RGBA", (10, 10), (0, 40, 255, 255))
    reference = Image.new("RGBA", (10, 10), (255, 0, 0, 255))
    reference.paste(foreground, (0, 0), foreground)

    result = render(foreground, EditConfig(SolidColor("#ff0000"), NoEffect()))

    assert result.size == (10, 10)
    assert result.mode == "RGBA"
    np.testing.assert_array_equal(np.asarray(result), np.asarray(reference))


def test_partial_alpha_blends_over_flat_color():
    foreground = _rgba([[(0, 0, 255, 51), (0, 0, 255, 0)], [(0, 0, 255, 255), (0, 0, 255, 51)]])

    result = np.asarray(render(foreground, EditConfig(SolidColor("#ff0000"))))

    assert tuple(result[0, 0]) == (204, 0, 51, 255)
    assert tuple(result[0, 1]) == (255, 0, 0, 255)
    assert tuple(result[1, 0]) == (0, 0, 255, 255)
    assert tuple(result[1, 1]) == (204, 0, 51, 255)


def test_default_config_is_white_background_without_effect():
    config = EditConfig()
    assert config.background == SolidColor("#ffffff")
    assert config.effect == NoEffect()


def test_render_is_deterministic():
    foreground = _gradient(alpha=128)
    config = EditConfig(SolidColor("#336699"), Contrast(70))
    first = render(foreground, config)
    second = render(foreground, config)
    assert first.tobytes() == second.tobytes()


def test_render_does_not_touch_the_cutout():
    foreground = _gradient(alpha=100)
    before = foreground.tobytes()
    render(foreground, EditConfig(SolidColor("#000000"), Brightness(100)))
    assert foreground.tobytes() == before


def test_missing_fill_image_leaves_background_transparent():
    foreground = _rgba([[(9, 8, 7, 255), (1, 2, 3, 0)]])
    result = np.asarray(render(foreground, EditConfig(ImageFill(None))))
    assert tuple(result[0, 0]) == (9, 8, 7, 255)
    assert tuple(result[0, 1]) == (0, 0, 0, 0)


def test_fill_image_is_stretched_not_letterboxed():
    fill = _rgba([[(255, 0, 0, 255), (0, 0, 255, 255)]])
    foreground = Image.new("RGBA", (4, 4), (0, 0, 0, 0))

    result = np.asarray(render(foreground, EditConfig(ImageFill(_png(fill)))))

    assert result.shape == (4, 4, 4)
    assert (result[..., 3] == 255).all()
    assert result[0, 0, 0] > result[0, 0, 2]
    assert result[3, 3, 2] > result[3, 3, 0]


def test_fill_image_accepts_decoded_images():
    fill = Image.new("RGB", (3, 7), (0, 255, 0))
    foreground = Image.new("RGBA", (5, 5), (0, 0, 0, 0))
    result = render(foreground, EditConfig(ImageFill(fill)))
    assert result.getpixel((2, 2)) == (0, 255, 0, 255)


def test_undecodable_fill_degrades_to_transparent(caplog):
    foreground = _rgba([[(50, 60, 70, 255), (0, 0, 0, 0)]])
    with caplog.at_level(logging.WARNING, logger="bgstudio.compositing"):
        result = np.asarray(render(foreground, EditConfig(ImageFill(b"not an image"))))

    assert tuple(result[0, 0]) == (50, 60, 70, 255)
    assert tuple(result[0, 1]) == (0, 0, 0, 0)
    assert "transparent background" in caplog.text


@pytest.mark.parametrize("intensity", [0, 100])
def test_brightness_stays_in_channel_range(intensity):
    image = _gradient(alpha=77)
    result = np.asarray(apply_brightness(image, intensity)).astype(int)
    assert result[..., :3].min() >= 0
    assert result[..., :3].max() <= 255
    np.testing.assert_array_equal(result[..., 3], 77)


def test_brightness_scale():
    image = _rgba([[(100, 200, 0, 255)]])
    assert apply_brightness(image, 0).getpixel((0, 0)) == (0, 0, 0, 255)
    assert apply_brightness(image, 50).getpixel((0, 0)) == (100, 200, 0, 255)
    assert apply_brightness(image, 100).getpixel((0, 0)) == (200, 255, 0, 255)


@pytest.mark.parametrize("intensity", [0, 100])
def test_contrast_stays_in_channel_range(intensity):
    image = _gradient(alpha=200)
    result = np.asarray(apply_contrast(image, intensity)).astype(int)
    assert result[..., :3].min() >= 0
    assert result[..., :3].max() <= 255
    np.testing.assert_array_equal(result[..., 3], 200)


def test_contrast_factor_formula():
    assert contrast_factor(0) == pytest.approx(1.0)
    assert contrast_factor(50) == pytest.approx(259 * 305 / (255 * 209))
    image = _rgba([[(0, 128, 255, 255)]])
    assert apply_contrast(image, 100).getpixel((0, 0)) == (0, 128, 255, 255)


def test_contrast_does_not_compose_linearly():
    image = _gradient()
    twice = apply_contrast(apply_contrast(image, 50), 50)
    doubled = apply_contrast(image, 100)
    assert not np.array_equal(np.asarray(twice), np.asarray(doubled))


def test_blur_applies_to_background_and_foreground_together():
    pixels = np.zeros((20, 20, 4), dtype=np.uint8)
    pixels[:, :10] = (0, 0, 0, 255)
    foreground = Image.fromarray(pixels)

    sharp = np.asarray(render(foreground, EditConfig(SolidColor("#ffffff"))))
    blurred = np.asarray(render(foreground, EditConfig(SolidColor("#ffffff"), Blur(100))))

    assert sharp[10, 9, 0] == 0 and sharp[10, 10, 0] == 255
    assert 0 < blurred[10, 9, 0] < 255
    assert 0 < blurred[10, 10, 0] < 255


def test_zero_blur_is_identity():
    image = _gradient(alpha=90)
    assert apply_blur(image, 0).tobytes() == image.tobytes()
    assert Blur(35).radius == pytest.approx(3.5)


def test_intensities_are_clamped():
    assert Brightness(150).intensity == 100
    assert Contrast(-20).intensity == 0
    assert Blur(42).intensity == 42


def test_make_effect():
    assert make_effect("none") == NoEffect()
    assert make_effect("blur", 20) == Blur(20)
    assert make_effect("contrast") == Contrast(50)
    with pytest.raises(ValueError):
        make_effect("sepia")


def test_export_png_is_lossless():
    image = _gradient(alpha=33)
    exported = Image.open(io.BytesIO(export_png(image)))
    assert exported.format == "PNG"
    assert exported.convert("RGBA").tobytes() == image.tobytes()


def test_blur_over_transparent_fill_keeps_edge_colour():
    pixels = np.zeros((10, 40, 4), dtype=np.uint8)
    pixels[:, :20] = (255, 255, 255, 255)
    foreground = Image.fromarray(pixels)

    result = np.asarray(render(foreground, EditConfig(ImageFill(None), Blur(50))))

    edge = result[5, 20]
    assert 0 < edge[3] < 255
    assert (edge[:3] >= 250).all()
    assert (result[5, 17, :3] >= 250).all()
