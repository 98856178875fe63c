# clickmask/errors.py
"""Error taxonomy for one loaded image and its click session."""

from typing import Optional


class ClickMaskError(Exception):
    """Base class; every error is scoped to the current image/session."""


class ImageLoadFailed(ClickMaskError):
    """The uploaded bytes are not a decodable image."""


class EmbeddingFetchFailed(ClickMaskError):
    """The embedding service failed or returned a malformed payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InferenceFailed(ClickMaskError):
    """The segmentation model call raised or returned unusable outputs."""
