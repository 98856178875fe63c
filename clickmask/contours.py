# clickmask/contours.py
"""
Raster-to-vector tracing of a probability mask.

A pixel is inside when its value is > 0 (the sign boundary of the raw
logits). Every pixel side separating an inside pixel from an outside one
is a directed boundary edge, oriented so the inside pixel lies on the
right of the walking direction (y grows downwards). Linking those edges
gives closed rectilinear loops whose vertices sit on pixel corners:

- outer boundaries have positive shoelace area
- hole boundaries have negative shoelace area

so the result fills correctly under both the even-odd and nonzero rules.
"""

import base64
import html
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

Loop = List[Tuple[float, float]]

# Walking directions: E, S, W, N. (d + 1) % 4 is a right turn on screen.
_DX = (1, 0, -1, 0)
_DY = (0, 1, 0, -1)


# ==========================
# EDGE EXTRACTION
# ==========================

def _as_2d(mask: np.ndarray) -> np.ndarray:
    arr = np.asarray(mask)
    if arr.ndim > 2:
        if int(np.prod(arr.shape[:-2])) != 1:
            raise ValueError(f"mask must hold a single channel, got shape {arr.shape}")
        arr = arr.reshape(arr.shape[-2:])
    if arr.ndim != 2:
        raise ValueError(f"mask must be 2-D, got shape {arr.shape}")
    return arr


def _boundary_edges(inside: np.ndarray) -> Tuple[np.ndarray, Dict[Tuple[int, int], List[int]]]:
    """
    Return the start vertices of the eastward edges (row-major order) and a
    map from every edge start vertex to the directions leaving it.
    """
    padded = np.pad(inside, 1, mode="constant", constant_values=False)
    core = padded[1:-1, 1:-1]
    top = core & ~padded[:-2, 1:-1]
    right = core & ~padded[1:-1, 2:]
    bottom = core & ~padded[2:, 1:-1]
    left = core & ~padded[1:-1, :-2]

    outgoing: Dict[Tuple[int, int], List[int]] = {}

    def add(rows: np.ndarray, cols: np.ndarray, dx: int, dy: int, direction: int) -> None:
        for r, c in zip(rows.tolist(), cols.tolist()):
            outgoing.setdefault((c + dx, r + dy), []).append(direction)

    top_rows, top_cols = np.nonzero(top)
    add(top_rows, top_cols, 0, 0, 0)
    add(*np.nonzero(right), 1, 0, 1)
    add(*np.nonzero(bottom), 1, 1, 2)
    add(*np.nonzero(left), 0, 1, 3)

    starts = np.stack([top_cols, top_rows], axis=1) if top_rows.size else np.zeros((0, 2), dtype=np.int64)
    return starts, outgoing


def _walk_loop(
    start: Tuple[int, int],
    outgoing: Dict[Tuple[int, int], List[int]],
    visited: set,
) -> Loop:
    x, y = start
    d = 0
    vertices: List[Tuple[int, int]] = []
    directions: List[int] = []
    while True:
        visited.add((x, y, d))
        vertices.append((x, y))
        directions.append(d)
        x += _DX[d]
        y += _DY[d]
        options = outgoing[(x, y)]
        if len(options) == 1:
            nd = options[0]
        else:
            # saddle vertex: keep hugging the current pixel (4-connected foreground)
            nd = (d + 1) % 4
        d = nd
        if (x, y) == start and d == 0:
            break

    # keep corners only
    n = len(vertices)
    return [
        (float(vertices[i][0]), float(vertices[i][1]))
        for i in range(n)
        if directions[i] != directions[i - 1]
    ]


# ==========================
# PUBLIC API
# ==========================

def trace(
    mask: np.ndarray,
    display_scale_factor: float = 1.0,
    threshold: float = 0.0,
    simplify_epsilon: float = 0.0,
) -> List[Loop]:
    """
    Trace every closed boundary of ``mask > threshold``.

    Loops come out in raster-scan order of their first eastward boundary
    edge, so identical input always gives identical output. Each loop is
    implicitly closed (the first point is not repeated) and scaled by
    ``display_scale_factor``. An all-outside mask gives ``[]``.
    """
    inside = _as_2d(mask) > threshold
    if not inside.any():
        return []

    starts, outgoing = _boundary_edges(inside)
    visited: set = set()
    loops: List[Loop] = []
    for x, y in starts.tolist():
        if (x, y, 0) in visited:
            continue
        loop = _walk_loop((x, y), outgoing, visited)
        if simplify_epsilon > 0:
            loop = simplify_loop(loop, simplify_epsilon / display_scale_factor)
        loops.append([(px * display_scale_factor, py * display_scale_factor) for px, py in loop])
    return loops


def signed_area(loop: Sequence[Tuple[float, float]]) -> float:
    """Shoelace area; positive for outer boundaries, negative for holes."""
    n = len(loop)
    acc = 0.0
    for i in range(n):
        x0, y0 = loop[i]
        x1, y1 = loop[(i + 1) % n]
        acc += x0 * y1 - x1 * y0
    return acc / 2.0


def is_hole(loop: Sequence[Tuple[float, float]]) -> bool:
    return signed_area(loop) < 0


def loop_bounds(loop: Sequence[Tuple[float, float]]) -> Tuple[float, float, float, float]:
    xs = [p[0] for p in loop]
    ys = [p[1] for p in loop]
    return min(xs), min(ys), max(xs), max(ys)


def simplify_loop(loop: Loop, epsilon: float) -> Loop:
    """Douglas-Peucker on a closed loop; falls back to the input if it would degenerate."""
    if len(loop) <= 4:
        return loop
    cnt = np.array(loop, dtype=np.float32).reshape(-1, 1, 2)
    approx = cv2.approxPolyDP(cnt, epsilon, True).reshape(-1, 2)
    if len(approx) < 3:
        return loop
    return [(float(x), float(y)) for x, y in approx]


# ==========================
# SVG EXPORT
# ==========================

def _fmt(v: float) -> str:
    return f"{v:.3f}".rstrip("0").rstrip(".")


def loops_to_svg_path(loops: Sequence[Loop]) -> str:
    """One path ``d`` attribute: ``M x y L ... Z`` per loop."""
    parts = []
    for loop in loops:
        if not loop:
            continue
        d_parts = [("M" if i == 0 else "L") + f"{_fmt(x)} {_fmt(y)}" for i, (x, y) in enumerate(loop)]
        d_parts.append("Z")
        parts.append(" ".join(d_parts))
    return " ".join(parts)


def loops_to_svg(
    loops: Sequence[Loop],
    width: int,
    height: int,
    image_data_uri: Optional[str] = None,
    fill: str = "#00FF00",
    fill_opacity: float = 0.4,
) -> str:
    """
    Builds an SVG document containing:
    - the source image (optional)
    - the selection as a single even-odd filled path
    """
    svg_parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" '
        f'xmlns:xlink="http://www.w3.org/1999/xlink" '
        f'width="{width}" height="{height}" viewBox="0 0 {width} {height}">'
    ]

    if image_data_uri:
        data_uri_escaped = html.escape(image_data_uri, quote=True)
        svg_parts.append(
            f'<image x="0" y="0" width="{width}" height="{height}" '
            f'xlink:href="{data_uri_escaped}" />'
        )

    path_d = loops_to_svg_path(loops)
    if path_d:
        svg_parts.append(
            f'<path d="{path_d}" fill="{fill}" fill-opacity="{fill_opacity}" fill-rule="evenodd" />'
        )

    svg_parts.append("</svg>")
    return "".join(svg_parts)


def svg_to_base64(svg_str: str, data_uri: bool = True) -> str:
    """Return base64-encoded SVG, optionally as a data URI."""
    b = svg_str.encode("utf-8")
    b64 = base64.b64encode(b).decode("ascii")
    return f"data:image/svg+xml;base64,{b64}" if data_uri else b64
