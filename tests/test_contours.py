import numpy as np
import pytest

from clickmask.contours import (
    is_hole,
    loop_bounds,
    loops_to_svg,
    loops_to_svg_path,
    signed_area,
    svg_to_base64,
    trace,
)


def _block(shape, y0, y1, x0, x1, value=1.0, base=None):
    mask = np.full(shape, -1.0, dtype=np.float32) if base is None else base
    mask[y0:y1, x0:x1] = value
    return mask


def test_empty_mask_gives_no_loops():
    assert trace(np.zeros((100, 100), dtype=np.float32)) == []
    assert trace(np.full((20, 30), -3.5, dtype=np.float32)) == []


def test_single_square_block():
    mask = _block((100, 100), 45, 55, 45, 55)
    loops = trace(mask, 1.0)
    assert len(loops) == 1
    x0, y0, x1, y1 = loop_bounds(loops[0])
    # block covers pixels 45..54 inclusive
    assert abs(x0 - 45) <= 1 and abs(y0 - 45) <= 1
    assert abs(x1 - 54) <= 1 and abs(y1 - 54) <= 1
    assert loops[0] == [(45.0, 45.0), (55.0, 45.0), (55.0, 55.0), (45.0, 55.0)]
    assert signed_area(loops[0]) == 100.0


def test_threshold_is_strictly_positive():
    mask = np.zeros((10, 10), dtype=np.float32)
    mask[2, 2] = 1e-3
    loops = trace(mask)
    assert len(loops) == 1
    assert signed_area(loops[0]) == 1.0


def test_scale_factor_applies_to_points():
    mask = _block((50, 50), 10, 20, 5, 15)
    loops = trace(mask, 2.0)
    assert loop_bounds(loops[0]) == (10.0, 20.0, 30.0, 40.0)


def test_disjoint_regions_in_raster_order():
    mask = _block((40, 40), 20, 30, 2, 8)
    mask[5:10, 30:35] = 1.0
    loops = trace(mask)
    assert len(loops) == 2
    # the upper region is reached first by the raster scan
    assert loop_bounds(loops[0]) == (30.0, 5.0, 35.0, 10.0)
    assert loop_bounds(loops[1]) == (2.0, 20.0, 8.0, 30.0)
    assert not any(is_hole(loop) for loop in loops)


def test_hole_has_opposite_winding():
    mask = _block((30, 30), 5, 15, 5, 15)
    mask[8:12, 8:12] = -1.0
    loops = trace(mask)
    assert len(loops) == 2
    outer, hole = loops
    assert signed_area(outer) == 100.0
    assert signed_area(hole) == -16.0
    assert is_hole(hole)
    assert loop_bounds(hole) == (8.0, 8.0, 12.0, 12.0)


def test_diagonal_pixels_stay_separate_loops():
    mask = np.array([[1.0, -1.0], [-1.0, 1.0]], dtype=np.float32)
    loops = trace(mask)
    assert loops == [
        [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)],
        [(1.0, 1.0), (2.0, 1.0), (2.0, 2.0), (1.0, 2.0)],
    ]


def test_l_shape_keeps_only_corners():
    mask = np.full((6, 6), -1.0, dtype=np.float32)
    mask[1:5, 1:3] = 1.0
    mask[3:5, 3:5] = 1.0
    loops = trace(mask)
    assert len(loops) == 1
    assert len(loops[0]) == 6
    assert signed_area(loops[0]) == 12.0


def test_region_touching_the_border():
    mask = np.ones((4, 5), dtype=np.float32)
    loops = trace(mask)
    assert loops == [[(0.0, 0.0), (5.0, 0.0), (5.0, 4.0), (0.0, 4.0)]]


def test_output_is_deterministic():
    rng = np.random.default_rng(3)
    mask = rng.normal(size=(64, 64)).astype(np.float32)
    assert trace(mask, 1.5) == trace(mask.copy(), 1.5)


def test_random_mask_loop_areas_match_pixel_count():
    rng = np.random.default_rng(11)
    mask = rng.normal(size=(48, 48)).astype(np.float32)
    loops = trace(mask)
    assert sum(signed_area(loop) for loop in loops) == float((mask > 0).sum())


def test_accepts_batched_single_channel_tensor():
    mask = _block((20, 20), 2, 6, 2, 6)[None, None]
    assert len(trace(mask)) == 1


def test_rejects_multi_channel_tensor():
    with pytest.raises(ValueError):
        trace(np.zeros((2, 10, 10), dtype=np.float32))


def test_simplify_reduces_points_on_a_disc():
    yy, xx = np.mgrid[0:80, 0:80]
    disc = (((xx - 40) ** 2 + (yy - 40) ** 2) < 30 ** 2).astype(np.float32) - 0.5
    raw = trace(disc)
    simplified = trace(disc, simplify_epsilon=1.5)
    assert len(simplified) == 1
    assert 3 <= len(simplified[0]) < len(raw[0])


def test_svg_path_and_document():
    loops = trace(_block((3, 3), 0, 1, 0, 1), 0.5)
    assert loops_to_svg_path(loops) == "M0 0 L0.5 0 L0.5 0.5 L0 0.5 Z"

    svg = loops_to_svg(loops, 10, 10, image_data_uri="data:image/png;base64,AAAA")
    assert svg.startswith("<svg")
    assert 'fill-rule="evenodd"' in svg
    assert "<image" in svg
    assert svg_to_base64(svg).startswith("data:image/svg+xml;base64,")


def test_svg_without_loops_has_no_path():
    assert "<path" not in loops_to_svg([], 4, 4)
