# clickmask/scaling.py
"""
Scale factors and point conversions between the four coordinate systems.

- Image space:   natural pixel coordinates of the loaded image
- Display space: Image space times the caller's display scale (on-screen/export)
- Upload space:  Image space times ``upload_scale`` (longest side = upload cap)
- Model space:   Upload space times ``onnx_scale`` (what click prompts are encoded in)

Every conversion is a multiplication or division; nothing is rounded here.
"""

import math
from dataclasses import dataclass
from typing import Tuple

from . import config

Point = Tuple[float, float]


# ==========================
# SCALE FACTORS
# ==========================

def compute_upload_scale(width: int, height: int, upload_cap: int = config.UPLOAD_IMAGE_SIZE) -> float:
    """Scale that makes the longest side equal ``upload_cap``."""
    _check_size(width, height)
    return upload_cap / max(width, height)


def compute_prompt_scale(
    width: int,
    height: int,
    image_size: int = config.PROMPT_IMAGE_SIZE,
    ceiling: int = config.PROMPT_MAX_SIDE,
) -> float:
    """
    Normalise the shortest side to ``image_size``; if that scaled extent
    would exceed ``ceiling``, clamp the scale so it equals ``ceiling``.
    """
    _check_size(width, height)
    d = min(width, height)
    scale = image_size / d
    if d * scale > ceiling:
        scale = ceiling / d
    return scale


def _check_size(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise ValueError(f"image size must be positive, got {width}x{height}")


@dataclass(frozen=True)
class ScaleModel:
    """Derived scale factors for one image; a pure function of its size."""

    width: int
    height: int
    upload_scale: float
    prompt_scale: float

    @classmethod
    def for_image(cls, width: int, height: int) -> "ScaleModel":
        return cls(
            width=width,
            height=height,
            upload_scale=compute_upload_scale(width, height),
            prompt_scale=compute_prompt_scale(width, height),
        )

    @property
    def onnx_scale(self) -> float:
        """Maps an Upload-space coordinate into Model space."""
        return self.prompt_scale / self.upload_scale

    # Upload-space extent; this is also the size of the full-resolution mask
    @property
    def mask_width(self) -> float:
        return self.width * self.upload_scale

    @property
    def mask_height(self) -> float:
        return self.height * self.upload_scale

    @property
    def upload_size(self) -> Tuple[int, int]:
        """Integer pixel size of the resized upload image."""
        return (
            max(1, int(round(self.width * self.upload_scale))),
            max(1, int(round(self.height * self.upload_scale))),
        )

    @property
    def model_input_width(self) -> float:
        return self.width * self.prompt_scale

    @property
    def model_input_height(self) -> float:
        return self.height * self.prompt_scale

    # ----- point conversions -----

    def upload_to_model(self, point: Point) -> Point:
        return _mul(point, self.onnx_scale)

    def model_to_upload(self, point: Point) -> Point:
        return _div(point, self.onnx_scale)

    def image_to_upload(self, point: Point) -> Point:
        return _mul(point, self.upload_scale)

    def upload_to_image(self, point: Point) -> Point:
        return _div(point, self.upload_scale)

    def display_to_model(self, point: Point, display_scale: float = 1.0) -> Point:
        return self.upload_to_model(self.image_to_upload(display_to_image(point, display_scale)))

    def model_to_display(self, point: Point, display_scale: float = 1.0) -> Point:
        return image_to_display(self.upload_to_image(self.model_to_upload(point)), display_scale)

    def mask_to_display_factor(self, display_scale: float = 1.0) -> float:
        """Factor taking a full-resolution mask pixel coordinate to Display space."""
        return display_scale / self.upload_scale


def display_to_image(point: Point, display_scale: float) -> Point:
    return _div(point, display_scale)


def image_to_display(point: Point, display_scale: float) -> Point:
    return _mul(point, display_scale)


def _mul(point: Point, factor: float) -> Point:
    return point[0] * factor, point[1] * factor


def _div(point: Point, factor: float) -> Point:
    return point[0] / factor, point[1] / factor


# ==========================
# HOST VIEWPORT
# ==========================

@dataclass(frozen=True)
class ViewportSize:
    width: int
    height: int
    scale_to_fit: float


def scale_to_fit(
    width: int,
    height: int,
    max_width: int = config.VIEWPORT_MAX_WIDTH,
    max_height: int = config.VIEWPORT_MAX_HEIGHT,
) -> float:
    _check_size(width, height)
    return min(max_width / width, max_height / height)


def viewport_for_image(width: int, height: int, show_ad: bool = config.SHOW_AD) -> ViewportSize:
    """Size the host should give the editor: fitted image plus toolbar rows."""
    s = scale_to_fit(width, height)
    extra = config.TOOLBAR_HEIGHT + (config.TOOLBAR_HEIGHT if show_ad else 0)
    return ViewportSize(
        width=math.ceil(width * s),
        height=math.ceil(height * s) + extra,
        scale_to_fit=s,
    )
