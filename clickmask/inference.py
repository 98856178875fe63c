# clickmask/inference.py
"""
Request assembly for the point-prompted decoder and interpretation of its
outputs.

The decoder keeps no state between calls: every call resends the whole
click history (re-encoded in Model space) plus the previous low-res mask.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import config
from .errors import InferenceFailed
from .logger import console
from .scaling import ScaleModel
from .session import Click, InferenceResult

# Decoder input / output names
FEED_EMBEDDING = "low_res_embedding"
FEED_POINT_COORDS = "point_coords"
FEED_POINT_LABELS = "point_labels"
FEED_IMAGE_SIZE = "image_size"
FEED_LAST_PRED_MASK = "last_pred_mask"
FEED_HAS_LAST_PRED = "has_last_pred"
OUTPUT_MASK = "output"
OUTPUT_LOW_RES_MASK = "mask"

# Padding prompt appended after the clicks when no box is given
PADDING_LABEL = -1.0


# ==========================
# CLICK ENCODING
# ==========================

def encode_click(click: Click, scale: ScaleModel, display_scale: float = 1.0) -> Dict[str, Any]:
    """Click in Display space -> prompt dict in Model space."""
    x, y = scale.display_to_model((click.x, click.y), display_scale)
    return {"x": x, "y": y, "width": None, "height": None, "clickType": click.click_type}


def build_feeds(
    embedding: np.ndarray,
    clicks: Sequence[Click],
    scale: ScaleModel,
    previous: Optional[InferenceResult] = None,
    display_scale: float = 1.0,
) -> Dict[str, np.ndarray]:
    """Assemble the decoder inputs for the full click history."""
    if not clicks:
        raise ValueError("at least one click is required")

    encoded = [encode_click(c, scale, display_scale) for c in clicks]
    n = len(encoded)
    point_coords = np.zeros((1, n + 1, 2), dtype=np.float32)
    point_labels = np.zeros((1, n + 1), dtype=np.float32)
    for i, prompt in enumerate(encoded):
        point_coords[0, i, 0] = prompt["x"]
        point_coords[0, i, 1] = prompt["y"]
        point_labels[0, i] = prompt["clickType"]
    point_labels[0, n] = PADDING_LABEL

    if previous is not None:
        last_pred = np.asarray(previous.low_res_mask, dtype=np.float32).reshape(config.LOW_RES_MASK_SHAPE)
        has_last = np.array([1.0], dtype=np.float32)
    else:
        last_pred = np.zeros(config.LOW_RES_MASK_SHAPE, dtype=np.float32)
        has_last = np.array([0.0], dtype=np.float32)

    return {
        FEED_EMBEDDING: np.asarray(embedding, dtype=np.float32),
        FEED_POINT_COORDS: point_coords,
        FEED_POINT_LABELS: point_labels,
        FEED_IMAGE_SIZE: np.array([scale.mask_height, scale.mask_width], dtype=np.float32),
        FEED_LAST_PRED_MASK: last_pred,
        FEED_HAS_LAST_PRED: has_last,
    }


# ==========================
# MODEL ADAPTER
# ==========================

class OnnxSegmentationModel:
    """Lazily loaded onnxruntime session for the decoder."""

    def __init__(self, model_path: str = config.MODEL_PATH, providers: Optional[List[str]] = None):
        self.model_path = model_path
        self.providers = providers or list(config.ONNX_PROVIDERS)
        self._session = None

    def _get_session(self):
        if self._session is None:
            import onnxruntime as ort

            sess_options = ort.SessionOptions()
            sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            self._session = ort.InferenceSession(self.model_path, sess_options, providers=self.providers)
            console.log(f"[green]Loaded decoder {self.model_path} ({', '.join(self.providers)})[/green]")
        return self._session

    def run(self, feeds: Dict[str, np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
        mask, low_res = self._get_session().run([OUTPUT_MASK, OUTPUT_LOW_RES_MASK], feeds)
        return mask, low_res


# ==========================
# ORCHESTRATOR
# ==========================

def _to_mask_2d(mask: np.ndarray) -> np.ndarray:
    arr = np.asarray(mask, dtype=np.float32)
    if arr.ndim > 2:
        arr = arr.reshape(arr.shape[-2:])
    if arr.ndim != 2:
        raise ValueError(f"unexpected mask shape {np.shape(mask)}")
    return arr


class InferenceOrchestrator:
    """
    Runs one decoder call per ``infer``. The embedding must belong to the
    image ``scale`` was computed for; that is the caller's responsibility.
    No retries: any failure surfaces as ``InferenceFailed``.
    """

    def __init__(self, model, scale: ScaleModel, display_scale: float = 1.0):
        self.model = model
        self.scale = scale
        self.display_scale = display_scale

    def run_sync(
        self,
        embedding: np.ndarray,
        clicks: Sequence[Click],
        previous: Optional[InferenceResult] = None,
    ) -> InferenceResult:
        try:
            feeds = build_feeds(embedding, clicks, self.scale, previous, self.display_scale)
            mask, low_res = self.model.run(feeds)
            return InferenceResult(
                mask=_to_mask_2d(mask),
                low_res_mask=np.asarray(low_res, dtype=np.float32).reshape(config.LOW_RES_MASK_SHAPE),
            )
        except InferenceFailed:
            raise
        except Exception as exc:
            raise InferenceFailed(f"decoder call failed: {exc}") from exc

    async def infer(
        self,
        embedding: np.ndarray,
        clicks: Sequence[Click],
        previous: Optional[InferenceResult] = None,
    ) -> InferenceResult:
        """The only suspension point of a click: the decoder runs in a worker thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.run_sync, embedding, list(clicks), previous)
