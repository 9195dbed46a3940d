# sd_sampler/main.py
"""
Command-line entrypoint for the sampler.

    sd-sampler <guidance_scale> <n_steps> <prompt> <output_basename>

Downloads the pretrained model if needed, loads it, runs CFG sampling and
writes `{output_basename}{index}.png` for every sample. Every failure is
reported on stderr and exits with status 1.
"""

from __future__ import annotations

import argparse
import sys
import warnings
from typing import List, Optional

# Suppress CUDA autocast warning on non-CUDA machines (must be set before torch imports)
warnings.filterwarnings(
    "ignore",
    category=UserWarning,
    module=r"torch\.amp\.autocast_mode",
)

from sd_sampler.config import DEFAULT_SCHEDULER, DEVICE, IMAGE_SIZE, MODEL_ID, NUM_SAMPLES, SCHEDULERS
from sd_sampler.errors import DownloadError, ImageSaveError, ModelLoadError, SamplerError
from sd_sampler.images import save_images
from sd_sampler.model import download_model, load_pipeline
from sd_sampler.sampler import SampleConfig, generate_images


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _guidance_scale(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid unconditional guidance scale.")


def _n_steps(value: str) -> int:
    try:
        steps = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid number of diffusion steps.")
    if steps < 1:
        raise argparse.ArgumentTypeError("Invalid number of diffusion steps.")
    return steps


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog="sd-sampler",
        description="Generate images from a text prompt with classifier-free guidance.",
    )

    parser.add_argument(
        "guidance_scale",
        type=_guidance_scale,
        help="Unconditional guidance scale (higher = closer to prompt, e.g. 7.5).",
    )
    parser.add_argument(
        "n_steps",
        type=_n_steps,
        help="Number of diffusion steps.",
    )
    parser.add_argument(
        "prompt",
        type=str,
        help="Text prompt describing the image to generate.",
    )
    parser.add_argument(
        "output_basename",
        type=str,
        help="Output path prefix; images are written as <basename><index>.png.",
    )
    parser.add_argument(
        "--negative-prompt",
        type=str,
        default="",
        help="Prompt used for the unconditional context (empty by default).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducible generation.",
    )
    parser.add_argument(
        "--height",
        type=int,
        default=IMAGE_SIZE,
        help="Output image height in pixels (multiple of 8).",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=IMAGE_SIZE,
        help="Output image width in pixels (multiple of 8).",
    )
    parser.add_argument(
        "--samples",
        type=int,
        default=NUM_SAMPLES,
        help="Number of images to generate for the prompt.",
    )
    parser.add_argument(
        "--scheduler",
        choices=SCHEDULERS,
        default=DEFAULT_SCHEDULER,
        help="Latent update rule: deterministic DDIM or stochastic DDPM.",
    )
    parser.add_argument(
        "--model-id",
        type=str,
        default=MODEL_ID,
        help="Hugging Face model repository to download.",
    )

    return parser.parse_args(argv)


def _fail(message: str) -> int:
    print(f"[ERROR] {message}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        cfg = SampleConfig(
            num_inference_steps=args.n_steps,
            guidance_scale=args.guidance_scale,
            seed=args.seed,
            height=args.height,
            width=args.width,
            num_samples=args.samples,
            scheduler=args.scheduler,
        )
    except ValueError as err:
        return _fail(str(err))

    print(f"[INFO] Device: {DEVICE.type}")
    print(f"[INFO] Prompt: {args.prompt!r}")
    if args.negative_prompt:
        print(f"[INFO] Negative prompt: {args.negative_prompt!r}")
    print(f"[INFO] Steps: {cfg.num_inference_steps} | Guidance: {cfg.guidance_scale} | Seed: {cfg.seed}")
    print(f"[INFO] Size: {cfg.width}x{cfg.height} | Samples: {cfg.num_samples} | Scheduler: {cfg.scheduler}")

    print("[INFO] Downloading model...")
    try:
        model_path = download_model(args.model_id)
    except DownloadError as err:
        return _fail(f"Error downloading model: {err}")

    print("[INFO] Loading model...")
    try:
        pipe = load_pipeline(model_path, DEVICE)
    except ModelLoadError as err:
        return _fail(f"Error loading model: {err}")

    print("[INFO] Sampling...")
    try:
        images = generate_images(
            pipe=pipe,
            prompt=args.prompt,
            negative_prompt=args.negative_prompt,
            cfg=cfg,
            device=DEVICE,
        )
    except SamplerError as err:
        return _fail(f"Error sampling image: {err}")

    try:
        paths = save_images(images, args.output_basename, cfg.width, cfg.height)
    except ImageSaveError as err:
        return _fail(f"Error saving image: {err}")

    for path in paths:
        print(f"[OK] Saved image -> {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
