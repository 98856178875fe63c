# clickmask/embedding.py
"""
One-shot embedding fetch for a loaded image.

The image is resized to Upload space (longest side = upload cap), encoded
in the source format and POSTed as the raw request body. The service
answers with JSON whose first element is a base64 little-endian float32
buffer of shape EMBEDDING_SHAPE.
"""

import asyncio
import base64
import binascii
import io
from typing import Any, Optional, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from . import config
from .db_cache import get_cached_embedding, make_embedding_key, store_cached_embedding
from .errors import EmbeddingFetchFailed, ImageLoadFailed
from .logger import console
from .metrics import EMBEDDING_CACHE_HITS, EMBEDDING_CACHE_MISSES, EMBEDDING_FETCH_SECONDS
from .scaling import ScaleModel

_SAVE_FORMATS = {"PNG", "JPEG", "WEBP", "GIF", "BMP", "TIFF"}


# ==========================
# IMAGE HELPERS
# ==========================

def load_image(data: bytes) -> Image.Image:
    """Decode uploaded bytes; raises ImageLoadFailed for anything unreadable."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageLoadFailed(f"cannot decode image: {exc}") from exc
    if img.width <= 0 or img.height <= 0:
        raise ImageLoadFailed("image has no pixels")
    return img


def base64_to_bytes(b64: str) -> bytes:
    """
    Accepts either raw base64 or data URI (data:image/png;base64,...)
    """
    header, _, payload = b64.partition(",")
    if payload == "":
        payload = header
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ImageLoadFailed(f"invalid base64 image: {exc}") from exc


def resize_for_upload(img: Image.Image, scale: ScaleModel) -> Tuple[bytes, str]:
    """Resize to Upload space and encode in the source format (PNG if unknown)."""
    fmt = (img.format or "PNG").upper()
    if fmt not in _SAVE_FORMATS:
        fmt = "PNG"
    resized = img.resize(scale.upload_size, Image.BILINEAR)
    if fmt == "JPEG" and resized.mode not in ("RGB", "L"):
        resized = resized.convert("RGB")
    buf = io.BytesIO()
    resized.save(buf, format=fmt)
    return buf.getvalue(), fmt


# ==========================
# PAYLOAD DECODING
# ==========================

def _payload_b64(payload: Any) -> str:
    if isinstance(payload, (list, tuple)) and payload:
        b64 = payload[0]
    elif isinstance(payload, str):
        b64 = payload
    else:
        raise EmbeddingFetchFailed("embedding response is not a non-empty list")
    if not isinstance(b64, str):
        raise EmbeddingFetchFailed("embedding entry is not a base64 string")
    return b64


def decode_embedding(payload: Any) -> np.ndarray:
    """Turn the service JSON (or its base64 entry) into a float32 tensor of EMBEDDING_SHAPE."""
    b64 = _payload_b64(payload)
    try:
        raw = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EmbeddingFetchFailed(f"embedding is not valid base64: {exc}") from exc

    expected = int(np.prod(config.EMBEDDING_SHAPE)) * 4
    if len(raw) != expected:
        raise EmbeddingFetchFailed(f"embedding has {len(raw)} bytes, expected {expected}")
    return np.frombuffer(raw, dtype="<f4").astype(np.float32).reshape(config.EMBEDDING_SHAPE)


# ==========================
# SERVICE CLIENT
# ==========================

class EmbeddingClient:
    def __init__(
        self,
        endpoint: str = config.EMBEDDING_ENDPOINT,
        timeout: float = config.EMBEDDING_TIMEOUT,
        use_cache: bool = True,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.use_cache = use_cache

    def _post(self, body: bytes) -> Any:
        try:
            response = requests.post(self.endpoint, data=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise EmbeddingFetchFailed(f"embedding service unreachable: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise EmbeddingFetchFailed(
                f"embedding service returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingFetchFailed(f"embedding response is not JSON: {exc}") from exc

    def fetch_sync(self, upload_bytes: bytes) -> np.ndarray:
        cache_key: Optional[str] = None
        if self.use_cache:
            cache_key = make_embedding_key(upload_bytes)
            cached = get_cached_embedding(cache_key)
            if cached is not None:
                console.log(f"[green]Embedding cache HIT for key {cache_key[:12]}...[/green]")
                EMBEDDING_CACHE_HITS.inc()
                return decode_embedding(cached)
            console.log(f"[yellow]Embedding cache MISS for key {cache_key[:12]}...[/yellow]")
            EMBEDDING_CACHE_MISSES.inc()

        with EMBEDDING_FETCH_SECONDS.time():
            payload = self._post(upload_bytes)
        b64 = _payload_b64(payload)
        embedding = decode_embedding(b64)

        if cache_key is not None:
            store_cached_embedding(cache_key, b64)
        return embedding

    async def fetch(self, img: Image.Image, scale: ScaleModel) -> np.ndarray:
        """Resize, POST and decode; the request runs in a worker thread."""
        upload_bytes, fmt = resize_for_upload(img, scale)
        console.log(
            f"[blue]Requesting embedding for {scale.width}x{scale.height} image "
            f"({fmt}, upload {scale.upload_size[0]}x{scale.upload_size[1]})[/blue]"
        )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.fetch_sync, upload_bytes)
