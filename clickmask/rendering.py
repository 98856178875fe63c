# clickmask/rendering.py
"""
Raster outputs handed to the export/download side: the cutout (foreground
isolated through the traced outline) and its lasso-clipped variant.

Polygons are sampled at pixel centres with half-open edges: a pixel is
filled when its centre lies inside under the even-odd rule, and a centre
falling exactly on a right or bottom edge stays outside. Traced loops run
along pixel corners, so at scale 1 the fill reproduces the mask exactly.
"""

import base64
import io
from typing import List, Sequence, Tuple

import numpy as np
from PIL import Image

from . import config
from .logger import console


def _edges(polygons: Sequence[Sequence[Tuple[float, float]]], scale: float) -> np.ndarray:
    """Non-horizontal polygon edges as rows of (x0, y0, x1, y1), scaled."""
    chunks = []
    for poly in polygons:
        if len(poly) < 3:
            continue
        pts = np.asarray(poly, dtype=np.float64).reshape(-1, 2) * scale
        chunks.append(np.hstack([pts, np.roll(pts, -1, axis=0)]))
    if not chunks:
        return np.zeros((0, 4))
    edges = np.vstack(chunks)
    return edges[edges[:, 1] != edges[:, 3]]


def _fill_even_odd(
    polygons: Sequence[Sequence[Tuple[float, float]]],
    width: int,
    height: int,
    scale: float,
) -> np.ndarray:
    inside = np.zeros((height, width), dtype=bool)
    edges = _edges(polygons, scale)
    if edges.size == 0:
        return inside

    x0, y0, x1, y1 = edges.T
    centres_x = np.arange(width) + 0.5
    top = max(int(np.floor(min(y0.min(), y1.min()))), 0)
    bottom = min(int(np.ceil(max(y0.max(), y1.max()))), height)
    for row in range(top, bottom):
        yc = row + 0.5
        crossing = (y0 <= yc) != (y1 <= yc)
        if not crossing.any():
            continue
        t = (yc - y0[crossing]) / (y1[crossing] - y0[crossing])
        xs = np.sort(x0[crossing] + t * (x1[crossing] - x0[crossing]))
        inside[row] = np.searchsorted(xs, centres_x, side="right") % 2 == 1
    return inside


def selection_alpha(
    loops: Sequence[Sequence[Tuple[float, float]]],
    width: int,
    height: int,
    scale: float = 1.0,
) -> np.ndarray:
    """
    Fill all loops at once; holes drop out under the even-odd rule.
    ``scale`` takes loop coordinates to the output raster.
    """
    return _fill_even_odd(loops, width, height, scale).astype(np.uint8) * 255


def lasso_alpha(
    polygons: Sequence[Sequence[Tuple[float, float]]],
    width: int,
    height: int,
    scale: float = 1.0,
    min_points: int = config.MIN_LASSO_POINTS,
) -> np.ndarray:
    """Union of the freehand polygons; strokes shorter than ``min_points`` are dropped."""
    inside = np.zeros((height, width), dtype=bool)
    kept = [p for p in polygons if len(p) >= min_points]
    dropped = len(polygons) - len(kept)
    if dropped:
        console.log(f"[yellow]Dropped {dropped} lasso stroke(s) shorter than {min_points} points[/yellow]")
    for poly in kept:
        inside |= _fill_even_odd([poly], width, height, scale)
    return inside.astype(np.uint8) * 255


def apply_alpha(img: Image.Image, alpha: np.ndarray) -> np.ndarray:
    """Return an H x W x 4 array whose alpha is the image alpha limited by ``alpha``."""
    rgba = np.array(img.convert("RGBA"))
    rgba[..., 3] = np.minimum(rgba[..., 3], alpha)
    return rgba


def render_cutout(
    img: Image.Image,
    loops: Sequence[Sequence[Tuple[float, float]]],
    scale: float = 1.0,
) -> np.ndarray:
    """Foreground pixels of ``img`` inside the outline, transparent elsewhere."""
    return apply_alpha(img, selection_alpha(loops, img.width, img.height, scale))


def clip_cutout(
    cutout: np.ndarray,
    polygons: Sequence[Sequence[Tuple[float, float]]],
    scale: float = 1.0,
) -> np.ndarray:
    h, w = cutout.shape[:2]
    clipped = cutout.copy()
    clipped[..., 3] = np.minimum(clipped[..., 3], lasso_alpha(polygons, w, h, scale))
    return clipped


# ==========================
# ENCODING
# ==========================

def rgba_to_png_bytes(rgba: np.ndarray) -> bytes:
    img = Image.fromarray(rgba.astype("uint8"), "RGBA")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def png_bytes_to_data_uri(png_bytes: bytes) -> str:
    b64 = base64.b64encode(png_bytes).decode("ascii")
    return f"data:image/png;base64,{b64}"


def bounding_box(alpha: np.ndarray) -> List[int]:
    """[x0, y0, x1, y1] (exclusive) of non-transparent pixels, or [] when empty."""
    ys, xs = np.nonzero(alpha)
    if ys.size == 0:
        return []
    return [int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1]
