"""Command-line interface.

Usage:
    python -m pathtracer [options]
    pathtracer [options]

Options:
    --quality {low,medium,high}   Resolution / sample preset (default: low)
    --scene NAME                  Demo scene (default: cornell)
    --scene-file PATH             JSON scene description, overrides --scene
    --output PATH                 .png (tone mapped) or .npy (linear) output
    --seed SEED                   Render seed (default: 0)
    --samples N                   Override the preset's samples per pixel
    --width N                     Override the preset's image width
    --max-depth N                 Override the preset's bounce ceiling
    --batch-size N                Samples per pixel per kernel launch
    --time-limit SECONDS          Stop after the batch running at the limit
    --tone-map {none,reinhard,exposure}
    --exposure STOPS              Exposure adjustment for the PNG
    --arch {cpu,gpu,cuda,vulkan,metal}
    -v, --verbose                 -v for progress, -vv for debug output

Example:
    python -m pathtracer --scene cornell --samples 64 --width 400 -v
"""

import argparse
import logging
import sys
import threading
from pathlib import Path

import taichi as ti

from pathtracer.config import DEFAULT_BATCH_SIZE, QUALITY_PRESETS, RenderSettings
from pathtracer.errors import PathTracerError
from pathtracer.log import configure_logging

logger = logging.getLogger(__name__)

SCENE_CHOICES = ("balls", "cornell", "environment", "bsdf", "textures", "emissive-sphere")
ARCH_CHOICES = ("cpu", "gpu", "cuda", "vulkan", "metal")
TONE_MAP_CHOICES = ("none", "reinhard", "exposure")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pathtracer",
        description="Render a scene with the Monte Carlo path tracer.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--quality", choices=sorted(QUALITY_PRESETS), default="low", help="Quality preset")
    parser.add_argument("--scene", choices=SCENE_CHOICES, default="cornell", help="Demo scene to render")
    parser.add_argument("--scene-file", type=Path, default=None, help="JSON scene description")
    parser.add_argument("--output", type=Path, default=Path("render.png"), help="Output file (.png or .npy)")
    parser.add_argument("--seed", type=int, default=0, help="Render seed (default: 0)")
    parser.add_argument("--samples", type=int, default=None, help="Samples per pixel")
    parser.add_argument("--width", type=int, default=None, help="Image width in pixels")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum path depth")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Samples per pixel per batch (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument("--time-limit", type=float, default=None, help="Stop rendering after this many seconds")
    parser.add_argument("--tone-map", choices=TONE_MAP_CHOICES, default="reinhard", help="Tone mapping for PNG")
    parser.add_argument("--exposure", type=float, default=0.0, help="Exposure adjustment in stops")
    parser.add_argument("--arch", choices=ARCH_CHOICES, default="cpu", help="Taichi backend (default: cpu)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    if args.time_limit is not None and args.time_limit <= 0:
        build_parser().error("--time-limit must be positive")
    return args


def make_settings(args: argparse.Namespace, aspect_ratio: float) -> RenderSettings:
    """Combine the quality preset with command-line overrides.

    Raises:
        ValueError: If an override is out of range.
    """
    overrides = {"seed": args.seed, "batch_size": args.batch_size}
    if args.samples is not None:
        overrides["samples_per_pixel"] = args.samples
    if args.max_depth is not None:
        overrides["max_depth"] = args.max_depth
    if args.width is not None:
        if args.width <= 0:
            raise ValueError(f"--width must be positive, got {args.width}")
        overrides["width"] = args.width
        overrides["height"] = max(1, int(args.width / aspect_ratio))
    return RenderSettings.from_preset(args.quality, aspect_ratio=aspect_ratio, **overrides)


def run(args: argparse.Namespace) -> int:
    """Render according to parsed arguments. Taichi must be initialized."""
    # Lazy imports: these modules allocate Taichi fields
    from pathtracer.core.progressive import render_with_stats
    from pathtracer.output.export import save_npy, save_png
    from pathtracer.scene.description import load_scene_file
    from pathtracer.scene.scenes import create_scene

    scene = load_scene_file(args.scene_file) if args.scene_file is not None else create_scene(args.scene)
    settings = make_settings(args, scene.aspect_ratio)

    cancel = threading.Event()
    timer = None
    if args.time_limit is not None:
        timer = threading.Timer(args.time_limit, cancel.set)
        timer.daemon = True
        timer.start()
    try:
        image, stats = render_with_stats(
            scene,
            settings.width,
            settings.height,
            settings.samples_per_pixel,
            settings.max_depth,
            seed=settings.seed,
            batch_size=settings.batch_size,
            rr_start_depth=settings.rr_start_depth,
            strategy=settings.strategy,
            cancel_event=cancel,
        )
    finally:
        if timer is not None:
            timer.cancel()

    if stats.cancelled:
        logger.warning(
            "Time limit reached: saving %d of %d samples per pixel",
            stats.samples_per_pixel,
            stats.requested_samples,
        )
    try:
        if args.output.suffix.lower() == ".npy":
            save_npy(args.output, image)
        else:
            save_png(args.output, image, tone_map=args.tone_map, exposure_stops=args.exposure)
    except OSError as exc:
        logger.error("Cannot write %s: %s", args.output, exc)
        return 1
    logger.info(
        "Rendered %dx%d at %d spp in %.2fs -> %s",
        settings.width,
        settings.height,
        stats.samples_per_pixel,
        stats.elapsed_seconds,
        args.output,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.verbose)
    ti.init(arch=getattr(ti, args.arch))

    try:
        return run(args)
    except PathTracerError as exc:
        logger.error("%s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
