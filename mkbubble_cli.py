#!/usr/bin/env python3

"""
mkbubble_cli.py

CLI tools for turning the bright regions of an image into a bubble chart.

This module loads an image, thresholds it on perceptual luminance, packs the
foreground with as few, as large circles as it can (see :mod:`bubble_pack`),
optionally exports diagnostic PNGs and prints the circles to stdout.

Typical usage:
    $ mkbubble frame.png
    $ mkbubble frame.png --debug --config mkbubble.yaml --strategy random --seed 7

The public entry point is :func:`main`.

Output is a single line, ``[[x,y,r],...],``, with y measured from the bottom
of the image (charting convention). The trailing comma is deliberate so the
lines of several frames can be concatenated into one array. All progress
messages go to stderr.

Debug outputs (``--debug``), written to ``debug_dir``:
  - targets.png      (foreground pixels)
  - first_pass.png   (coverage of the first pass; all circles in single-pass runs)
  - output.png       (coverage of all placed circles)
"""

from __future__ import annotations
import argparse, json, os, sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Set
import numpy as np
import cv2
import yaml

from bubble_pack import (
    Circle,
    ConfigError,
    DebugWriteError,
    ImageDecodeError,
    PackConfig,
    Pixel,
    PixelSet,
    SEED_STRATEGIES,
    EDT_BACKENDS,
    DEFAULT_LUMINANCE_THRESHOLD,
    announce,
    circle_size_counts,
    disc_pixels,
    ensure_bool,
    format_circles,
    report,
    run_packing,
)

# Perceptual luma weights (ITU-R BT.601)
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

DEBUG_TARGETS_FILE = "targets.png"
DEBUG_FIRST_PASS_FILE = "first_pass.png"
DEBUG_OUTPUT_FILE = "output.png"


# =========================
# Image loading
# =========================
def load_rgb(img_path: str) -> np.ndarray:
    """
    Decode ``img_path`` into an (H, W, 3) uint8 RGB array. Alpha is dropped.

    Raises:
        ImageDecodeError: the path is missing, unreadable or not an image.
    """
    ensure_bool(os.path.isfile(img_path), f"Image not found: {img_path}", ImageDecodeError)
    try:
        img = cv2.imread(img_path, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageDecodeError(f"Image decoding failed for path: {img_path} ({e})") from e
    ensure_bool(img is not None, f"Image loading failed for path: {img_path}", ImageDecodeError)
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)


# =========================
# Foreground extraction
# =========================
def luminance(rgb) -> np.ndarray:
    """Luma in [0, 1] of an RGB triple or of an (..., 3) array."""
    arr = np.asarray(rgb, dtype=np.float32) / 255.0
    wr, wg, wb = LUMA_WEIGHTS
    return wr * arr[..., 0] + wg * arr[..., 1] + wb * arr[..., 2]

def is_foreground(r: int, g: int, b: int, threshold: float = DEFAULT_LUMINANCE_THRESHOLD) -> bool:
    return bool(luminance((r, g, b)) > threshold)

def foreground_mask(rgb: np.ndarray, threshold: float = DEFAULT_LUMINANCE_THRESHOLD,
                    workers: int = 1) -> np.ndarray:
    """
    Boolean (H, W) mask of pixels brighter than ``threshold``.
    With ``workers > 1`` horizontal bands are thresholded on a thread pool and
    stacked back in order; the result does not depend on the worker count.
    """
    ensure_bool(rgb.ndim == 3 and rgb.shape[2] >= 3, "expected an (H, W, 3) RGB array", ValueError)
    h = rgb.shape[0]
    if workers <= 1 or h < 2:
        return luminance(rgb[..., :3]) > threshold

    bounds = np.linspace(0, h, num=min(workers, h) + 1).astype(int)
    bands = [rgb[a:b, :, :3] for a, b in zip(bounds[:-1], bounds[1:])]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        parts = list(pool.map(lambda band: luminance(band) > threshold, bands))
    return np.vstack(parts)

def extract_foreground(rgb: np.ndarray, threshold: float = DEFAULT_LUMINANCE_THRESHOLD,
                       workers: int = 1) -> PixelSet:
    return PixelSet.from_mask(foreground_mask(rgb, threshold, workers))


# =========================
# Debug artifacts
# =========================
def coverage_pixels(circles: Iterable[Circle]) -> Set[Pixel]:
    covered: Set[Pixel] = set()
    for c in circles:
        covered.update(disc_pixels(c.x, c.y, c.r))
    return covered

def write_debug_image(pixels: Iterable[Pixel], width: int, height: int, path: str) -> str:
    """
    Black canvas with ``pixels`` in white; out-of-bounds pixels are skipped.

    Raises:
        DebugWriteError: the directory cannot be created or the PNG written.
    """
    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    for x, y in pixels:
        if 0 <= x < width and 0 <= y < height:
            canvas[y, x] = 255
    try:
        outdir = os.path.dirname(path)
        if outdir:
            os.makedirs(outdir, exist_ok=True)
        ok = cv2.imwrite(path, canvas)
    except (OSError, cv2.error) as e:
        raise DebugWriteError(f"Failed to save debug image {path}: {e}") from e
    ensure_bool(ok, f"Failed to save debug image: {path}", DebugWriteError)
    return path

def _save_debug(pixels: Iterable[Pixel], width: int, height: int, cfg: PackConfig,
                filename: str, written: List[str]):
    path = os.path.join(cfg.debug_dir, filename)
    announce("SAVE_DEBUG_IMAGE", {"path": path, "size": (width, height)})
    try:
        written.append(write_debug_image(pixels, width, height, path))
    except DebugWriteError as e:
        # diagnostics only, the circle list is still produced
        report("WARN", str(e))


# =========================
# Configuration
# =========================
def load_config(config_path: str) -> PackConfig:
    """Read a YAML mapping of :class:`PackConfig` fields. Unknown keys are an error."""
    try:
        with open(config_path, "r") as f:
            cfg = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config: {e}") from e
    if cfg is None:
        cfg = {}
    ensure_bool(isinstance(cfg, dict), "Config file must hold a YAML mapping.", ConfigError)
    return PackConfig.from_mapping(cfg)

def build_config(args: argparse.Namespace) -> PackConfig:
    """YAML file (if any) overridden by explicit command-line flags."""
    base = load_config(args.config) if args.config else PackConfig()
    return base.with_overrides(
        seed_strategy=args.strategy,
        random_seed=args.seed,
        edt_backend=args.edt_backend,
        max_radius=args.max_radius,
        min_radius=args.min_radius,
        overlap_margin=args.overlap_margin,
        two_pass=args.two_pass,
        workers=args.workers,
        max_iterations=args.max_iterations,
        debug_dir=args.debug_dir,
    )


# =========================
# Main pipeline
# =========================
def pack_bubbles_from_image(img_path: str, cfg: Optional[PackConfig] = None,
                            debug: bool = False) -> Dict[str, Any]:
    """
    Load ``img_path``, extract its bright pixels and pack them.

    Returns a dict with the accepted ``circles`` (image coordinates), the
    formatted ``output`` line, ``image_size`` as (w, h), ``foreground_pixels``,
    loop statistics and the ``debug_files`` actually written.

    Raises:
        ImageDecodeError: the image cannot be loaded.
    """
    cfg = (cfg or PackConfig()).validate()

    announce("LOAD_IMAGE", {"img_path": img_path})
    rgb = load_rgb(img_path)
    h, w = rgb.shape[:2]
    report("OK", f"Image loaded ({w}x{h}).")

    announce("EXTRACT_FOREGROUND", {"threshold": cfg.luminance_threshold, "workers": cfg.workers})
    targets = extract_foreground(rgb, cfg.luminance_threshold, cfg.workers)
    report("OK", f"{len(targets)} foreground pixels.")

    debug_files: List[str] = []
    if debug:
        _save_debug(targets, w, h, cfg, DEBUG_TARGETS_FILE, debug_files)

    result = run_packing(targets, cfg)

    if debug:
        _save_debug(coverage_pixels(result.first_pass), w, h, cfg, DEBUG_FIRST_PASS_FILE,
                    debug_files)
        _save_debug(coverage_pixels(result.circles), w, h, cfg, DEBUG_OUTPUT_FILE, debug_files)

    announce("SUMMARY", {"circles": len(result.circles),
                         "sizes": circle_size_counts(result.circles)})

    return {
        "circles": list(result.circles),
        "output": format_circles(result.circles, h),
        "image_size": (int(w), int(h)),
        "foreground_pixels": len(targets),
        "iterations": result.iterations,
        "rejected": result.rejected,
        "debug_files": debug_files,
    }


# =========================
# CLI
# =========================
def make_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mkbubble",
        description="Cover the bright regions of an image with few, large circles.")
    p.add_argument("img", metavar="IMG", help="frame to analyze")
    p.add_argument("-d", "--debug", action="store_true",
                   help="activate debug mode: output the mask and pass images.")
    p.add_argument("--config", help="Path to YAML config file (e.g., mkbubble.yaml).")
    p.add_argument("--strategy", choices=sorted(SEED_STRATEGIES), help="Seed selection strategy.")
    p.add_argument("--seed", type=int, help="Random seed for the 'random' strategy.")
    p.add_argument("--edt-backend", choices=sorted(EDT_BACKENDS),
                   help="Distance transform used by the 'edt' strategy.")
    p.add_argument("--max-radius", type=int, help="Largest radius tried per seed.")
    p.add_argument("--min-radius", type=int, help="Smallest radius accepted.")
    p.add_argument("--overlap-margin", type=int,
                   help="Pixels kept around accepted circles so neighbours may overlap.")
    p.add_argument("--two-pass", action="store_true", default=None,
                   help="Place maximal circles first, then fill the gaps.")
    p.add_argument("--workers", type=int, help="Threads used for foreground extraction.")
    p.add_argument("--max-iterations", type=int, help="Iteration budget per pass.")
    p.add_argument("--debug-dir", help="Directory for debug images.")
    return p

def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the mkbubble command-line interface.

    Prints the packed circle list to stdout and returns the process exit code:
    0 on success, 1 when the image cannot be decoded. Invalid options and
    configuration files exit with status 2 through argparse.
    """
    p = make_parser()
    args = p.parse_args(argv)

    try:
        cfg = build_config(args)
    except ConfigError as e:
        p.error(str(e))

    try:
        result = pack_bubbles_from_image(args.img, cfg, debug=args.debug)
    except ImageDecodeError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1

    print(result["output"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
