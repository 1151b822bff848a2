"""Unit tests for disc geometry, seed selection and the packing loop."""

import numpy as np
import pytest

from bubble_pack import (
    Circle,
    ConfigError,
    DistanceTransformSeedSelector,
    FirstSeedSelector,
    PackConfig,
    PixelSet,
    RandomSeedSelector,
    circle_size_counts,
    disc_entirely_valid,
    disc_pixels,
    farthest_interior_point,
    format_circles,
    grow_circle,
    make_seed_selector,
    pack,
    removal_radius,
    run_packing,
)


def _full(width, height):
    return PixelSet.from_mask(np.ones((height, width), dtype=np.uint8))


def _blob_mask():
    """Disc + bar, irregular enough that every strategy places several circles."""
    yy, xx = np.mgrid[0:30, 0:30]
    mask = ((xx - 12) ** 2 + (yy - 12) ** 2 <= 81).astype(np.uint8)
    mask[20:27, 3:29] = 1
    return mask


class RecordingSelector(FirstSeedSelector):
    """Snapshots the remaining pixels before every pick."""

    def __init__(self, inner):
        self.inner = inner
        self.snapshots = []

    def pick(self, pixels):
        seed = self.inner.pick(pixels)
        self.snapshots.append((seed, pixels.to_set()))
        return seed


# --- disc geometry ---

def test_disc_pixels_radius_zero_is_center():
    assert disc_pixels(4, 7, 0) == [(4, 7)]


def test_disc_pixels_radius_one():
    assert set(disc_pixels(5, 5, 1)) == {(5, 5), (4, 5), (6, 5), (5, 4), (5, 6)}


def test_disc_pixels_drops_negative_coordinates():
    pts = disc_pixels(1, 0, 5)
    assert all(x >= 0 and y >= 0 for x, y in pts)
    expected = {(1 + dx, dy) for dx in range(-5, 6) for dy in range(-5, 6)
                if dx * dx + dy * dy <= 25 and 1 + dx >= 0 and dy >= 0}
    assert set(pts) == expected
    assert len(pts) == len(expected)


def test_disc_pixels_has_no_upper_clamp():
    assert (1003, 1000) in disc_pixels(1000, 1000, 3)


def test_disc_entirely_valid_stops_at_radius():
    pixels = set(disc_pixels(10, 10, 3))
    assert disc_entirely_valid(pixels, 10, 10, 3)
    assert not disc_entirely_valid(pixels, 10, 10, 4)


def test_disc_entirely_valid_boundary_semantics():
    pixels = _full(10, 10)
    # negative side is never tested
    assert disc_entirely_valid(pixels, 0, 0, 3)
    # beyond width/height is tested and fails
    assert not disc_entirely_valid(pixels, 9, 5, 1)


# --- pixel set ---

def test_pixel_set_row_major_first_and_discard():
    mask = np.zeros((4, 5), dtype=np.uint8)
    mask[1, 3] = mask[2, 0] = mask[1, 1] = 1
    pixels = PixelSet.from_mask(mask)
    assert list(pixels) == [(1, 1), (3, 1), (0, 2)]
    assert pixels.first() == (1, 1)

    assert pixels.discard((1, 1))
    assert not pixels.discard((1, 1))
    assert pixels.first() == (3, 1)
    assert len(pixels) == 2
    assert (1, 1) not in pixels
    assert pixels.mask()[1, 1] == 0
    assert pixels.mask()[1, 3] == 255


def test_pixel_set_discard_ignores_out_of_range():
    pixels = _full(3, 3)
    assert pixels.discard_many([(5, 5), (2, 2), (3, 0)]) == 1
    assert len(pixels) == 8


def test_pixel_set_rejects_out_of_bounds_members():
    with pytest.raises(ValueError):
        PixelSet(3, 3, [(3, 0)])


def test_pixel_set_copy_is_independent():
    pixels = _full(4, 4)
    clone = pixels.copy()
    clone.discard((0, 0))
    assert (0, 0) in pixels
    assert len(clone) == 15
    assert clone.first() == (1, 0)


# --- seed selection ---

def test_selectors_return_none_on_empty_set():
    empty = PixelSet(8, 8)
    for selector in (FirstSeedSelector(), RandomSeedSelector(1), DistanceTransformSeedSelector()):
        assert selector.pick(empty) is None


def test_selectors_do_not_mutate():
    pixels = PixelSet.from_mask(_blob_mask())
    before = pixels.to_set()
    for selector in (FirstSeedSelector(), RandomSeedSelector(1),
                     DistanceTransformSeedSelector("opencv"), DistanceTransformSeedSelector("scipy")):
        assert selector.pick(pixels) in pixels
    assert pixels.to_set() == before


@pytest.mark.parametrize("backend", ["opencv", "scipy"])
def test_farthest_interior_point_counts_image_border(backend):
    assert farthest_interior_point(_full(5, 5), backend) == (2, 2)


@pytest.mark.parametrize("backend", ["opencv", "scipy"])
def test_farthest_interior_point_in_bar(backend):
    mask = np.zeros((12, 20), dtype=np.uint8)
    mask[4:7, 2:18] = 1
    x, y = farthest_interior_point(PixelSet.from_mask(mask), backend)
    assert y == 5
    assert 3 <= x <= 16


def test_make_seed_selector_by_name():
    assert isinstance(make_seed_selector(PackConfig(seed_strategy="first")), FirstSeedSelector)
    assert isinstance(make_seed_selector(PackConfig(seed_strategy="random")), RandomSeedSelector)
    edt = make_seed_selector(PackConfig(seed_strategy="edt", edt_backend="scipy"))
    assert isinstance(edt, DistanceTransformSeedSelector)
    assert edt.backend == "scipy"


# --- growth ---

def test_grow_circle_limited_by_far_edges():
    assert grow_circle(_full(11, 11), 5, 5, max_radius=25) == Circle(5, 5, 5)


def test_grow_circle_capped_by_max_radius():
    assert grow_circle(_full(11, 11), 5, 5, max_radius=3) == Circle(5, 5, 3)


def test_grow_circle_floor_radius():
    lonely = {(3, 3)}
    assert grow_circle(lonely, 3, 3, max_radius=25).r == 1
    assert grow_circle(lonely, 3, 3, max_radius=25, start_radius=3).r == 1
    assert grow_circle(lonely, 3, 3, max_radius=25, start_radius=5).r == 1


@pytest.mark.parametrize("overrides", [
    {"min_radius": 1},
    {"min_radius": 2, "start_radius": 3},
    {"second_pass_min_radius": 1},
])
def test_thresholds_below_start_radius_are_rejected(overrides):
    with pytest.raises(ConfigError):
        PackConfig(**overrides).validate()


def test_pack_refuses_untested_threshold():
    cfg = PackConfig(start_radius=3, min_radius=3)
    with pytest.raises(ConfigError):
        pack(PixelSet(6, 6, [(3, 3)]), FirstSeedSelector(), cfg, min_radius=2)


@pytest.mark.parametrize("cfg", [
    PackConfig(min_radius=2),
    PackConfig(min_radius=3, start_radius=3),
    PackConfig(min_radius=2, two_pass=True, max_radius=4),
])
def test_isolated_pixel_never_becomes_a_circle(cfg):
    result = run_packing(PixelSet(6, 6, [(3, 3)]), cfg)
    assert result.circles == []
    assert result.rejected >= 1


# --- packing loop ---

@pytest.mark.parametrize("backend", ["opencv", "scipy"])
def test_five_by_five_bright_image(backend):
    cfg = PackConfig(max_radius=25, min_radius=2, seed_strategy="edt", edt_backend=backend)
    pixels = _full(5, 5)
    result = pack(pixels, make_seed_selector(cfg), cfg)
    assert result.circles == [Circle(2, 2, 2)]
    assert len(pixels) == 0
    assert result.rejected == 12
    assert result.iterations == 13


def test_all_dark_image_packs_nothing():
    result = run_packing(PixelSet(16, 9), PackConfig())
    assert result.circles == []
    assert result.iterations == 0
    assert format_circles(result.circles, 9) == "[],"


def test_two_disjoint_blocks_give_two_circles():
    mask = np.zeros((40, 100), dtype=np.uint8)
    mask[10:30, 10:30] = 1
    mask[10:30, 60:80] = 1
    cfg = PackConfig(max_radius=25, min_radius=4, seed_strategy="edt")
    result = run_packing(PixelSet.from_mask(mask), cfg)

    assert len(result.circles) == 2
    blocks = [(10, 29), (60, 79)]
    hit = []
    for c in result.circles:
        for i, (lo, hi) in enumerate(blocks):
            if lo <= c.x <= hi:
                hit.append(i)
                assert all(lo <= x <= hi and 10 <= y <= 29 for x, y in disc_pixels(c.x, c.y, c.r))
    assert sorted(hit) == [0, 1]


@pytest.mark.parametrize("inner", [FirstSeedSelector(), RandomSeedSelector(5),
                                   DistanceTransformSeedSelector()])
def test_accepted_circles_are_valid_and_tight(inner):
    cfg = PackConfig(max_radius=6, min_radius=2)
    pixels = PixelSet.from_mask(_blob_mask())
    initial = len(pixels)
    selector = RecordingSelector(inner)
    result = pack(pixels, selector, cfg)

    assert result.circles
    assert result.iterations <= initial
    sizes = [len(snap) for _, snap in selector.snapshots]
    assert all(a > b for a, b in zip(sizes, sizes[1:]))

    before = {seed: snap for seed, snap in selector.snapshots if seed is not None}
    for c in result.circles:
        snap = before[(c.x, c.y)]
        assert c.r >= cfg.min_radius
        assert disc_entirely_valid(snap, c.x, c.y, c.r)
        assert c.r == cfg.max_radius or not disc_entirely_valid(snap, c.x, c.y, c.r + 1)


@pytest.mark.parametrize("strategy", ["first", "random", "edt"])
def test_packing_is_reproducible(strategy):
    cfg = PackConfig(seed_strategy=strategy, random_seed=3, max_radius=8, min_radius=2)
    targets = PixelSet.from_mask(_blob_mask())
    a = run_packing(targets, cfg)
    b = run_packing(targets, cfg)
    assert a.circles == b.circles
    assert format_circles(a.circles, 30) == format_circles(b.circles, 30)
    # targets are never consumed by run_packing
    assert len(targets) == int(_blob_mask().sum())


def test_overlap_margin_leaves_ring_behind():
    cfg = PackConfig(max_radius=25, min_radius=3, max_iterations=1)
    kept = _full(11, 11)
    result = pack(kept, DistanceTransformSeedSelector(), cfg.with_overrides(overlap_margin=1))
    assert result.circles == [Circle(5, 5, 5)]
    assert result.budget_exhausted
    assert (10, 5) in kept
    assert (9, 5) not in kept

    carved = _full(11, 11)
    pack(carved, DistanceTransformSeedSelector(), cfg)
    assert (10, 5) not in carved


def test_removal_radius_modes():
    cfg = PackConfig(overlap_margin=2)
    assert removal_radius(10, cfg) == 8
    assert removal_radius(1, cfg) == 0

    ratio = PackConfig(overlap_mode="ratio", min_radius=3, max_radius=25,
                       keep_ratio_small=1.0, keep_ratio_large=0.9)
    assert removal_radius(25, ratio) == 22
    assert removal_radius(3, ratio) == 3
    assert removal_radius(14, ratio) == 13


def test_two_pass_places_large_circles_first():
    cfg = PackConfig(max_radius=5, min_radius=3, two_pass=True, seed_strategy="edt")
    targets = _full(11, 11)
    result = run_packing(targets, cfg)

    assert result.first_pass == [Circle(5, 5, 5)]
    assert result.circles[0] == Circle(5, 5, 5)
    assert len(result.circles) > 1
    assert all(c.r >= cfg.second_pass_min_radius for c in result.circles[1:])
    assert len(targets) == 121


# --- config & output ---

def test_config_validation():
    with pytest.raises(ConfigError):
        PackConfig(min_radius=30, max_radius=25).validate()
    with pytest.raises(ConfigError):
        PackConfig(seed_strategy="spiral").validate()
    with pytest.raises(ValueError):
        PackConfig(keep_ratio_large=1.5).validate()


def test_config_from_mapping():
    cfg = PackConfig.from_mapping({"max_radius": 12, "seed_strategy": "random"})
    assert cfg.max_radius == 12
    assert cfg.seed_strategy == "random"
    with pytest.raises(ConfigError):
        PackConfig.from_mapping({"radius": 3})


def test_format_circles_flips_y():
    assert format_circles([Circle(1, 2, 3)], 10) == "[[1,8,3]],"
    assert format_circles([Circle(1, 2, 3), Circle(4, 0, 5)], 10) == "[[1,8,3],[4,10,5]],"


def test_circle_size_counts():
    circles = [Circle(0, 0, 3), Circle(1, 1, 5), Circle(2, 2, 3)]
    assert circle_size_counts(circles) == [(5, 1), (3, 2)]
