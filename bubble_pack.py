#!/usr/bin/env python3

"""
bubble_pack.py

Greedy bubble packing over a set of foreground pixels.

The packer repeatedly picks a seed pixel, grows the largest disc centered on it
that stays entirely inside the remaining foreground, records that disc as a
circle, carves it out of the foreground and starts again. Packing stops when the
foreground is exhausted.

Typical usage:
    >>> targets = PixelSet.from_mask(mask)
    >>> result = run_packing(targets, PackConfig(seed_strategy="edt"))
    >>> print(format_circles(result.circles, mask.shape[0]))

Three seed strategies are available (``first``, ``random`` and ``edt``), and the
loop runs in one pass or in two passes (large circles first, then small ones to
fill the gaps).
"""

from __future__ import annotations
import math, sys
from dataclasses import dataclass, field, fields, replace
from functools import lru_cache
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple
import numpy as np
import cv2
import scipy.ndimage as ndi

# =========================
# Configurable constants
# =========================
DEFAULT_MAX_RADIUS = 25          # hard cap on growth, bounds the per-seed cost
DEFAULT_MIN_RADIUS = 3           # smaller circles are rejected
DEFAULT_START_RADIUS = 2         # first radius actually tested; smaller ones are free
DEFAULT_SEED_STRATEGY = "edt"
DEFAULT_RANDOM_SEED = 0
DEFAULT_EDT_BACKEND = "opencv"

# Overlap: pixels removed after acceptance use a reduced radius
DEFAULT_OVERLAP_MODE = "subtract"
DEFAULT_OVERLAP_MARGIN = 0
DEFAULT_KEEP_RATIO_SMALL = 1.0   # keep-ratio at min_radius ("ratio" mode)
DEFAULT_KEEP_RATIO_LARGE = 0.9   # keep-ratio at max_radius ("ratio" mode)

# Two-pass variant
DEFAULT_SECOND_PASS_SHRINK = 1
DEFAULT_SECOND_PASS_MIN_RADIUS = 2

# Foreground extraction
DEFAULT_LUMINANCE_THRESHOLD = 0.5
DEFAULT_WORKERS = 1
DEFAULT_DEBUG_DIR = "."

SEED_STRATEGIES = {"first", "random", "edt"}
EDT_BACKENDS = {"opencv", "scipy"}
OVERLAP_MODES = {"subtract", "ratio"}

Pixel = Tuple[int, int]


# =========================
# Errors
# =========================
class BubbleError(RuntimeError):
    """Base class for every failure raised by mkbubble."""

class ImageDecodeError(BubbleError):
    """The input path is unreadable or does not hold a decodable image."""

class DebugWriteError(BubbleError):
    """A diagnostic raster could not be written."""

class ConfigError(BubbleError, ValueError):
    """Invalid packing configuration."""


# =========================
# Utility helpers
# =========================
def announce(step: str, inputs: Dict[str, Any]):
    """
    Log a structured event for debugging and automation.
    Goes to stderr: stdout only ever carries the packed circle list.
    """
    print(f"[STEP] {step} | inputs: " + ", ".join(f"{k}={v}" for k, v in inputs.items()),
          file=sys.stderr)

def report(tag: str, msg: str):
    print(f"[{tag}] {msg}", file=sys.stderr)

def ensure_bool(cond: bool, msg: str, exc: type = BubbleError):
    if not cond:
        raise exc(msg)


# =========================
# Configuration
# =========================
@dataclass
class PackConfig:
    """
    Parameters for one packing run.

    Growth and acceptance:
        max_radius: Largest radius ever tried for a seed.
        min_radius: Accepted circles have at least this radius.
        start_radius: First radius tested with the full disc check; smaller
            radii are assumed valid around a seed, so both acceptance
            thresholds must be at least ``start_radius``.

    Seeding:
        seed_strategy: ``first``, ``random`` or ``edt``.
        random_seed: Seed for the ``random`` strategy.
        edt_backend: ``opencv`` or ``scipy`` distance transform for ``edt``.

    Overlap:
        overlap_mode: ``subtract`` removes ``r - overlap_margin``; ``ratio``
            removes ``floor(r * keep)`` with keep interpolated between
            ``keep_ratio_small`` (at min_radius) and ``keep_ratio_large``
            (at max_radius).

    Two-pass:
        two_pass: Place only maximal circles first, then fill the gaps.
        second_pass_shrink: Radius reduction applied to first-pass circles
            when building the second-pass foreground.
        second_pass_min_radius: Acceptance threshold of the second pass.

    Budget and extraction:
        max_iterations: Optional cap on loop iterations per pass.
        luminance_threshold: Pixels strictly brighter than this are foreground.
        workers: Threads used for foreground extraction.
        debug_dir: Where debug rasters are written.
    """
    max_radius: int = DEFAULT_MAX_RADIUS
    min_radius: int = DEFAULT_MIN_RADIUS
    start_radius: int = DEFAULT_START_RADIUS

    seed_strategy: str = DEFAULT_SEED_STRATEGY
    random_seed: int = DEFAULT_RANDOM_SEED
    edt_backend: str = DEFAULT_EDT_BACKEND

    overlap_mode: str = DEFAULT_OVERLAP_MODE
    overlap_margin: int = DEFAULT_OVERLAP_MARGIN
    keep_ratio_small: float = DEFAULT_KEEP_RATIO_SMALL
    keep_ratio_large: float = DEFAULT_KEEP_RATIO_LARGE

    two_pass: bool = False
    second_pass_shrink: int = DEFAULT_SECOND_PASS_SHRINK
    second_pass_min_radius: int = DEFAULT_SECOND_PASS_MIN_RADIUS

    max_iterations: Optional[int] = None
    luminance_threshold: float = DEFAULT_LUMINANCE_THRESHOLD
    workers: int = DEFAULT_WORKERS
    debug_dir: str = DEFAULT_DEBUG_DIR

    def validate(self) -> "PackConfig":
        ensure_bool(self.max_radius >= 1, "max_radius must be >= 1", ConfigError)
        ensure_bool(self.min_radius >= 1, "min_radius must be >= 1", ConfigError)
        ensure_bool(self.start_radius >= 1, "start_radius must be >= 1", ConfigError)
        ensure_bool(self.min_radius <= self.max_radius,
                    f"min_radius ({self.min_radius}) exceeds max_radius ({self.max_radius})",
                    ConfigError)
        ensure_bool(self.seed_strategy in SEED_STRATEGIES,
                    f"seed_strategy must be one of {sorted(SEED_STRATEGIES)}", ConfigError)
        ensure_bool(self.edt_backend in EDT_BACKENDS,
                    f"edt_backend must be one of {sorted(EDT_BACKENDS)}", ConfigError)
        ensure_bool(self.overlap_mode in OVERLAP_MODES,
                    f"overlap_mode must be one of {sorted(OVERLAP_MODES)}", ConfigError)
        ensure_bool(self.overlap_margin >= 0, "overlap_margin must be >= 0", ConfigError)
        for name in ("keep_ratio_small", "keep_ratio_large"):
            ratio = getattr(self, name)
            ensure_bool(0 < ratio <= 1, f"{name} must be in (0, 1]", ConfigError)
        ensure_bool(self.second_pass_shrink >= 0, "second_pass_shrink must be >= 0", ConfigError)
        ensure_bool(self.second_pass_min_radius >= 1, "second_pass_min_radius must be >= 1",
                    ConfigError)
        # radii below start_radius are never tested, so they must never be accepted
        for name in ("min_radius", "second_pass_min_radius"):
            ensure_bool(getattr(self, name) >= self.start_radius,
                        f"{name} ({getattr(self, name)}) is below start_radius "
                        f"({self.start_radius})", ConfigError)
        ensure_bool(self.max_iterations is None or self.max_iterations >= 0,
                    "max_iterations must be >= 0", ConfigError)
        ensure_bool(0 <= self.luminance_threshold <= 1, "luminance_threshold must be in [0, 1]",
                    ConfigError)
        ensure_bool(self.workers >= 1, "workers must be >= 1", ConfigError)
        return self

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "PackConfig":
        """Build a validated config from a plain mapping (e.g. parsed YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        ensure_bool(not unknown, f"Unknown config keys: {unknown}", ConfigError)
        try:
            cfg = cls(**data)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        return cfg.validate()

    def with_overrides(self, **overrides) -> "PackConfig":
        """Copy with the non-None overrides applied, then validated."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None}).validate()


# =========================
# Data model
# =========================
class Circle(NamedTuple):
    x: int
    y: int
    r: int


class PixelSet:
    """
    Mutable set of in-bounds pixel coordinates, the foreground being packed.

    Membership, removal and uniform random picks are O(1): members live in a
    list with a position index and are removed by swapping with the last one.
    Build order (row-major when built from a mask) is kept separately so that
    ``first()`` is deterministic. A ``uint8`` mask mirrors the members for the
    distance-transform seeders.

    The set only ever shrinks after construction.
    """

    def __init__(self, width: int, height: int, pixels: Iterable[Pixel] = ()):
        self.width = int(width)
        self.height = int(height)
        self._items: List[Pixel] = []
        self._index: Dict[Pixel, int] = {}
        self._mask = np.zeros((self.height, self.width), dtype=np.uint8)
        for x, y in pixels:
            p = (int(x), int(y))
            ensure_bool(0 <= p[0] < self.width and 0 <= p[1] < self.height,
                        f"pixel {p} lies outside a {self.width}x{self.height} image", ValueError)
            if p in self._index:
                continue
            self._index[p] = len(self._items)
            self._items.append(p)
            self._mask[p[1], p[0]] = 255
        self._order: List[Pixel] = list(self._items)
        self._cursor = 0

    @classmethod
    def from_mask(cls, mask: np.ndarray) -> "PixelSet":
        """Members are the non-zero cells of ``mask`` (H x W), in row-major order."""
        h, w = mask.shape[:2]
        ys, xs = np.nonzero(mask)
        return cls(w, h, zip(xs.tolist(), ys.tolist()))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, pixel) -> bool:
        return pixel in self._index

    def __iter__(self) -> Iterator[Pixel]:
        return (p for p in self._order if p in self._index)

    def __repr__(self) -> str:
        return f"PixelSet({self.width}x{self.height}, {len(self)} pixels)"

    def discard(self, pixel: Pixel) -> bool:
        """Remove ``pixel`` if present; return whether it was."""
        pos = self._index.pop(pixel, None)
        if pos is None:
            return False
        last = self._items.pop()
        if pos < len(self._items):
            self._items[pos] = last
            self._index[last] = pos
        x, y = pixel
        self._mask[y, x] = 0
        return True

    def discard_many(self, pixels: Iterable[Pixel]) -> int:
        return sum(1 for p in pixels if self.discard(p))

    def first(self) -> Optional[Pixel]:
        """Earliest remaining member in build order, or None when empty."""
        while self._cursor < len(self._order):
            p = self._order[self._cursor]
            if p in self._index:
                return p
            self._cursor += 1
        return None

    def item_at(self, i: int) -> Pixel:
        return self._items[i]

    def mask(self) -> np.ndarray:
        """Live H x W mask, 255 on members. Treat as read-only."""
        return self._mask

    def copy(self) -> "PixelSet":
        return PixelSet(self.width, self.height, iter(self))

    def to_set(self) -> set:
        return set(self._items)


# =========================
# Disc geometry
# =========================
@lru_cache(maxsize=None)
def disc_offsets(r: int) -> Tuple[Pixel, ...]:
    """Offsets (dx, dy) with dx^2 + dy^2 <= r^2, row-major over the bounding box."""
    ensure_bool(r >= 0, f"radius must be >= 0, got {r}", ValueError)
    r2 = r * r
    return tuple((dx, dy)
                 for dy in range(-r, r + 1)
                 for dx in range(-r, r + 1)
                 if dx * dx + dy * dy <= r2)

def disc_pixels(cx: int, cy: int, r: int) -> List[Pixel]:
    """
    Every integer coordinate within Euclidean distance ``r`` of (cx, cy).
    Coordinates with a negative component are dropped; there is no upper clamp.
    """
    out = []
    for dx, dy in disc_offsets(int(r)):
        x, y = cx + dx, cy + dy
        if x < 0 or y < 0:
            continue
        out.append((x, y))
    return out

def disc_entirely_valid(pixels, cx: int, cy: int, r: int) -> bool:
    """True iff every non-negative coordinate of the disc is in ``pixels``."""
    for dx, dy in disc_offsets(int(r)):
        x, y = cx + dx, cy + dy
        if x < 0 or y < 0:
            continue
        if (x, y) not in pixels:
            return False
    return True


# =========================
# Seed selection
# =========================
class SeedSelector:
    """Picks the next circle center from the remaining pixels without mutating them."""
    name = "abstract"

    def pick(self, pixels: PixelSet) -> Optional[Pixel]:
        raise NotImplementedError


class FirstSeedSelector(SeedSelector):
    """Earliest remaining pixel in row-major order. Fast, no quality guarantee."""
    name = "first"

    def pick(self, pixels: PixelSet) -> Optional[Pixel]:
        return pixels.first()


class RandomSeedSelector(SeedSelector):
    """Uniformly random member; reproducible for a fixed seed."""
    name = "random"

    def __init__(self, seed: Optional[int] = DEFAULT_RANDOM_SEED):
        self.rng = np.random.default_rng(seed)

    def pick(self, pixels: PixelSet) -> Optional[Pixel]:
        if len(pixels) == 0:
            return None
        return pixels.item_at(int(self.rng.integers(len(pixels))))


def farthest_interior_point(pixels: PixelSet, backend: str = DEFAULT_EDT_BACKEND) -> Optional[Pixel]:
    """
    Member farthest (Euclidean) from any non-member pixel.

    The mask is padded with one background pixel on every side so the image
    border counts as background too. Ties resolve to the first maximum in
    row-major order.
    """
    if len(pixels) == 0:
        return None
    padded = np.pad(pixels.mask(), 1, mode="constant", constant_values=0)

    if backend == "opencv":
        dt = cv2.distanceTransform(padded, distanceType=cv2.DIST_L2,
                                   maskSize=cv2.DIST_MASK_PRECISE, dstType=cv2.CV_32F)
        minVal, maxVal, minLoc, maxLoc = cv2.minMaxLoc(dt)
        x, y = maxLoc       # OpenCV points are (x, y)
    elif backend == "scipy":
        dt = ndi.distance_transform_edt(padded > 0)
        y, x = np.unravel_index(int(np.argmax(dt)), dt.shape)
        maxVal = float(dt[y, x])
    else:
        raise ConfigError(f"edt_backend must be one of {sorted(EDT_BACKENDS)}")

    if maxVal <= 0:
        return None
    return (int(x) - 1, int(y) - 1)


class DistanceTransformSeedSelector(SeedSelector):
    """
    Center of the largest inscribed disc of the remaining pixels.

    Recomputes a distance transform over the whole mask on every pick, so a
    full run costs up to O(pixels^2); it gives the largest circles per pick.
    """
    name = "edt"

    def __init__(self, backend: str = DEFAULT_EDT_BACKEND):
        ensure_bool(backend in EDT_BACKENDS,
                    f"edt_backend must be one of {sorted(EDT_BACKENDS)}", ConfigError)
        self.backend = backend

    def pick(self, pixels: PixelSet) -> Optional[Pixel]:
        return farthest_interior_point(pixels, self.backend)


def make_seed_selector(cfg: PackConfig) -> SeedSelector:
    if cfg.seed_strategy == "first":
        return FirstSeedSelector()
    if cfg.seed_strategy == "random":
        return RandomSeedSelector(cfg.random_seed)
    if cfg.seed_strategy == "edt":
        return DistanceTransformSeedSelector(cfg.edt_backend)
    raise ConfigError(f"seed_strategy must be one of {sorted(SEED_STRATEGIES)}")


# =========================
# Circle growth
# =========================
def grow_circle(pixels, cx: int, cy: int, max_radius: int,
                start_radius: int = DEFAULT_START_RADIUS) -> Circle:
    """
    Largest radius (up to ``max_radius``) whose whole disc around (cx, cy) is in
    ``pixels``. Radii below ``start_radius`` are not tested; when even
    ``start_radius`` fails the circle gets radius 1.
    Never fails: callers decide whether the result is big enough.
    """
    radius = 1
    for r in range(start_radius, max_radius + 1):
        if not disc_entirely_valid(pixels, cx, cy, r):
            break
        radius = r
    return Circle(int(cx), int(cy), int(radius))


# =========================
# Packing loop
# =========================
@dataclass
class PackResult:
    circles: List[Circle] = field(default_factory=list)
    iterations: int = 0
    rejected: int = 0
    budget_exhausted: bool = False
    first_pass: List[Circle] = field(default_factory=list)   # == circles for single-pass runs


def removal_radius(r: int, cfg: PackConfig, min_radius: Optional[int] = None) -> int:
    """Radius of the disc carved out after accepting a circle of radius ``r``."""
    if cfg.overlap_mode == "subtract":
        return max(0, r - cfg.overlap_margin)
    lo = cfg.min_radius if min_radius is None else min_radius
    hi = cfg.max_radius
    t = 1.0 if hi <= lo else (r - lo) / float(hi - lo)
    t = min(1.0, max(0.0, t))
    keep = cfg.keep_ratio_small + t * (cfg.keep_ratio_large - cfg.keep_ratio_small)
    return max(0, int(math.floor(r * keep)))


def pack(pixels: PixelSet, selector: SeedSelector, cfg: PackConfig,
         min_radius: Optional[int] = None) -> PackResult:
    """
    Greedy packing of ``pixels`` (consumed in place).

    Each iteration picks a seed and grows a circle on it. A circle smaller than
    the acceptance threshold only costs its seed pixel; an accepted one has its
    (overlap-reduced) disc carved out. Every iteration removes at least one
    pixel, so the loop runs at most ``len(pixels)`` times.
    """
    min_r = cfg.min_radius if min_radius is None else int(min_radius)
    ensure_bool(min_r >= cfg.start_radius,
                f"min_radius ({min_r}) is below start_radius ({cfg.start_radius})", ConfigError)
    result = PackResult()

    while len(pixels) > 0:
        if cfg.max_iterations is not None and result.iterations >= cfg.max_iterations:
            result.budget_exhausted = True
            report("WARN", f"Iteration budget ({cfg.max_iterations}) exhausted with "
                           f"{len(pixels)} pixels left.")
            break

        seed = selector.pick(pixels)
        if seed is None:
            break
        result.iterations += 1

        cx, cy = seed
        circle = grow_circle(pixels, cx, cy, cfg.max_radius, cfg.start_radius)
        if circle.r < min_r:
            pixels.discard(seed)
            result.rejected += 1
            continue

        result.circles.append(circle)
        pixels.discard_many(disc_pixels(cx, cy, removal_radius(circle.r, cfg, min_r)))

    return result


def pack_two_pass(targets: PixelSet, cfg: PackConfig,
                  selector: Optional[SeedSelector] = None) -> PackResult:
    """
    Large circles first, then small ones.

    Pass 1 accepts only ``max_radius`` circles. Pass 2 runs on the original
    targets minus the pass-1 circles shrunk by ``second_pass_shrink`` (so the
    small circles may overlap them slightly), accepting anything from
    ``second_pass_min_radius`` up.
    """
    selector = selector or make_seed_selector(cfg)

    announce("PACK_PASS", {"pass": 1, "min_radius": cfg.max_radius, "strategy": selector.name})
    first = pack(targets.copy(), selector, cfg, min_radius=cfg.max_radius)
    report("OK", f"First pass placed {len(first.circles)} circles.")

    second_pixels = targets.copy()
    for c in first.circles:
        second_pixels.discard_many(disc_pixels(c.x, c.y, max(0, c.r - cfg.second_pass_shrink)))

    announce("PACK_PASS", {"pass": 2, "min_radius": cfg.second_pass_min_radius,
                           "pixels": len(second_pixels)})
    second = pack(second_pixels, selector, cfg, min_radius=cfg.second_pass_min_radius)
    report("OK", f"Second pass placed {len(second.circles)} circles.")

    return PackResult(
        circles=first.circles + second.circles,
        iterations=first.iterations + second.iterations,
        rejected=first.rejected + second.rejected,
        budget_exhausted=first.budget_exhausted or second.budget_exhausted,
        first_pass=list(first.circles),
    )


def run_packing(targets: PixelSet, cfg: Optional[PackConfig] = None) -> PackResult:
    """Pack ``targets`` per ``cfg`` (one or two passes). ``targets`` is left untouched."""
    cfg = (cfg or PackConfig()).validate()
    selector = make_seed_selector(cfg)
    if cfg.two_pass:
        return pack_two_pass(targets, cfg, selector)

    announce("PACK_PASS", {"pass": 1, "min_radius": cfg.min_radius, "strategy": selector.name,
                           "pixels": len(targets)})
    result = pack(targets.copy(), selector, cfg)
    result.first_pass = list(result.circles)
    report("OK", f"Placed {len(result.circles)} circles "
                 f"({result.rejected} seeds rejected, {result.iterations} iterations).")
    return result


# =========================
# Output
# =========================
def flip_circles(circles: Iterable[Circle], height: int) -> List[Circle]:
    """Move y to a bottom-origin axis (charting convention)."""
    return [Circle(c.x, height - c.y, c.r) for c in circles]

def format_circles(circles: Iterable[Circle], height: int) -> str:
    """``[[x,y,r],...],`` with y flipped; the trailing comma lets frames be concatenated."""
    body = ",".join(f"[{c.x},{c.y},{c.r}]" for c in flip_circles(circles, height))
    return f"[{body}],"

def circle_size_counts(circles: Iterable[Circle]) -> List[Tuple[int, int]]:
    """(radius, count) pairs, largest radius first."""
    counts: Dict[int, int] = {}
    for c in circles:
        counts[c.r] = counts.get(c.r, 0) + 1
    return sorted(((int(r), int(n)) for r, n in counts.items()), key=lambda t: -t[0])
