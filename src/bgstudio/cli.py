from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .compositing import EFFECT_KINDS
from .config import SegmentationConfig, default_weights_dir
from .errors import ModelInitFailure
from .lifecycle import COMPATIBILITY_MODEL_ID, MODEL_REGISTRY
from .session import SAMPLE_IMAGE_URLS, Studio

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".webp"}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Remove image backgrounds locally, then replace them and apply an effect.",
    )
    parser.add_argument(
        "--input-dir",
        type=Path,
        default=None,
        help="Directory containing source images.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        required=True,
        help="Directory where RGBA PNG outputs will be written.",
    )
    parser.add_argument(
        "--samples",
        action="store_true",
        help="Also process the bundled sample images (downloaded on demand).",
    )
    parser.add_argument(
        "--model",
        default=COMPATIBILITY_MODEL_ID,
        choices=list(MODEL_REGISTRY.keys()),
        help="Segmentation model. Falls back to the compatibility model if it fails to load.",
    )
    parser.add_argument(
        "--weights-dir",
        type=Path,
        default=default_weights_dir(),
        help="Directory used to cache downloaded model weights.",
    )
    parser.add_argument(
        "--device-index",
        type=int,
        default=0,
        help="CUDA device index used when acceleration is available.",
    )
    parser.add_argument(
        "--tensorrt",
        dest="use_tensorrt",
        action="store_true",
        help="Try the TensorRT execution provider first when running on CUDA.",
    )
    parser.add_argument(
        "--alpha-threshold",
        type=float,
        default=None,
        help="Optional hard threshold [0,1] applied to the alpha matte.",
    )
    parser.add_argument(
        "--refine-dilate",
        type=int,
        default=0,
        help="Optional number of 3x3 dilation iterations applied after thresholding.",
    )
    parser.add_argument(
        "--refine-feather",
        type=int,
        default=0,
        help="Optional gaussian blur radius (pixels) to feather mask edges.",
    )
    parser.add_argument(
        "--no-refine",
        dest="refine_foreground",
        action="store_false",
        help="Skip matte post-processing and only attach the predicted alpha channel.",
    )
    parser.add_argument(
        "--background",
        default=None,
        help="Solid background color, e.g. '#ffffff'. Omit to keep the cutout transparent.",
    )
    parser.add_argument(
        "--background-image",
        type=Path,
        default=None,
        help="Background image, stretched to each output's size.",
    )
    parser.add_argument(
        "--effect",
        default="none",
        choices=list(EFFECT_KINDS),
        help="Effect applied over the composited result.",
    )
    parser.add_argument(
        "--intensity",
        type=float,
        default=50,
        help="Effect intensity in [0, 100].",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite outputs even if the file already exists.",
    )
    parser.add_argument(
        "--json",
        dest="json_report",
        type=Path,
        default=None,
        help="Optional path to write a JSON timing report.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    args = parser.parse_args(argv)
    if args.input_dir is None and not args.samples:
        parser.error("one of --input-dir or --samples is required")
    if args.background and args.background_image:
        parser.error("--background and --background-image are mutually exclusive")
    return args


def iter_images(path: Path) -> Iterable[Path]:
    for file in path.rglob("*"):
        if file.suffix.lower() in IMAGE_EXTENSIONS:
            yield file


def build_config(args: argparse.Namespace) -> SegmentationConfig:
    return SegmentationConfig(
        model_name=args.model,
        weights_dir=args.weights_dir,
        device_index=args.device_index,
        use_tensorrt=args.use_tensorrt,
        alpha_threshold=args.alpha_threshold,
        refine_foreground=args.refine_foreground,
        refine_dilate=args.refine_dilate,
        refine_feather=args.refine_feather,
    )


def wants_edit(args: argparse.Namespace) -> bool:
    return bool(args.background or args.background_image or args.effect != "none")


def output_path(output_dir: Path, name: str) -> Path:
    return output_dir / f"{Path(name).stem}.png"


async def process(args: argparse.Namespace, studio: Studio) -> Dict[str, float]:
    timings: Dict[str, float] = {}

    if args.samples:
        for index, url in enumerate(SAMPLE_IMAGE_URLS, start=1):
            name = f"sample-{index}.jpg"
            start = time.perf_counter()
            ids = await studio.add_sample(url)
            if _write_outputs(args, studio, ids, [name]):
                timings[name] = time.perf_counter() - start
            for image_id in ids:
                record = studio.store.get(image_id)
                if record is not None and record.error:
                    print(f"    {name}: {record.error}")
                studio.remove(image_id)

    if args.input_dir is None:
        return timings

    for image_path in sorted(iter_images(args.input_dir)):
        if output_path(args.output_dir, image_path.name).exists() and not args.overwrite:
            continue
        start = time.perf_counter()
        ids = studio.add([image_path.read_bytes()], [image_path.name])
        failures = await studio.process(ids)
        if failures.get(ids[0]) is not None:
            print(f"    {image_path.name}: {failures[ids[0]]}")
            studio.remove(ids[0])
            continue
        if _write_outputs(args, studio, ids, [image_path.name]):
            timings[image_path.name] = time.perf_counter() - start
    return timings


def _write_outputs(
    args: argparse.Namespace,
    studio: Studio,
    ids: List[int],
    names: List[str],
) -> int:
    background_image = args.background_image.read_bytes() if args.background_image else None
    written = 0

    for image_id, name in zip(ids, names):
        record = studio.store.get(image_id)
        if record is None or record.segmented is None:
            continue
        if wants_edit(args):
            session = studio.edit(image_id)
            if background_image is not None:
                session.set_background_image(background_image)
            elif args.background:
                session.set_background_color(args.background)
            else:
                session.set_background_image(None)
            session.select_effect(args.effect)
            session.set_intensity(args.intensity)
            session.save()
        output_path(args.output_dir, name).write_bytes(studio.export(image_id))
        studio.remove(image_id)
        written += 1
    return written


async def main(args: argparse.Namespace) -> Tuple[str, Dict[str, float]]:
    studio = Studio(build_config(args))
    timings = await process(args, studio)
    for notice in studio.notices:
        print(f"[!] {notice}")
    model_id = studio.lifecycle.active_model_id
    print(f"[+] Model: {model_id}")
    return model_id, timings


def run(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    args.output_dir = args.output_dir.expanduser()
    if args.input_dir is not None:
        args.input_dir = args.input_dir.expanduser()
        if not args.input_dir.exists():
            raise SystemExit(f"Input directory {args.input_dir} does not exist.")
    args.output_dir.mkdir(parents=True, exist_ok=True)

    try:
        model_id, timings = asyncio.run(main(args))
    except ModelInitFailure as exc:
        raise SystemExit(f"[!] {exc}") from exc
    if not timings:
        print("    No images processed (perhaps outputs already exist?).")
        return

    total_time = sum(timings.values())
    print(
        f"[+] Processed {len(timings)} images | total {total_time:.2f}s "
        f"| avg {total_time / len(timings):.3f}s"
    )

    if args.json_report:
        args.json_report.parent.mkdir(parents=True, exist_ok=True)
        with args.json_report.open("w", encoding="utf-8") as handle:
            json.dump({"model": model_id, "timings": timings}, handle, indent=2)
        print(f"[+] Wrote timing report to {args.json_report}")


if __name__ == "__main__":
    run()
