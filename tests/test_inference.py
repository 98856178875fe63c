import asyncio

import numpy as np
import pytest

from clickmask.errors import InferenceFailed
from clickmask.inference import (
    FEED_EMBEDDING,
    FEED_HAS_LAST_PRED,
    FEED_IMAGE_SIZE,
    FEED_LAST_PRED_MASK,
    FEED_POINT_COORDS,
    FEED_POINT_LABELS,
    InferenceOrchestrator,
    build_feeds,
    encode_click,
)
from clickmask.scaling import ScaleModel
from clickmask.session import Click, InferenceResult

EMBEDDING = np.zeros((1, 256, 64, 64), dtype=np.float32)


class FakeModel:
    def __init__(self, mask_shape=(512, 1024), fail=None):
        self.mask_shape = mask_shape
        self.fail = fail
        self.feeds = []

    def run(self, feeds):
        self.feeds.append(feeds)
        if self.fail is not None:
            raise self.fail
        mask = np.full((1, 1) + self.mask_shape, -1.0, dtype=np.float32)
        mask[0, 0, 10:20, 10:20] = 2.0
        low_res = np.full((1, 1, 256, 256), float(len(self.feeds)), dtype=np.float32)
        return mask, low_res


def test_encode_click_maps_display_to_model_space():
    scale = ScaleModel.for_image(2048, 1024)
    prompt = encode_click(Click(100.0, 50.0), scale, display_scale=0.5)
    assert prompt["width"] is None and prompt["height"] is None
    assert prompt["clickType"] == 1
    assert prompt["x"] == pytest.approx(200.0 * scale.prompt_scale)
    assert prompt["y"] == pytest.approx(100.0 * scale.prompt_scale)


def test_feeds_resend_every_click_plus_padding():
    scale = ScaleModel.for_image(2048, 1024)
    clicks = [Click(10, 20), Click(30, 40), Click(50, 60)]
    feeds = build_feeds(EMBEDDING, clicks, scale)

    assert feeds[FEED_EMBEDDING].shape == (1, 256, 64, 64)
    assert feeds[FEED_POINT_COORDS].shape == (1, 4, 2)
    assert feeds[FEED_POINT_LABELS].tolist() == [[1.0, 1.0, 1.0, -1.0]]
    assert feeds[FEED_POINT_COORDS][0, 3].tolist() == [0.0, 0.0]
    expected = np.array([[c.x, c.y] for c in clicks]) * scale.prompt_scale
    np.testing.assert_allclose(feeds[FEED_POINT_COORDS][0, :3], expected, rtol=1e-6)
    assert feeds[FEED_IMAGE_SIZE].tolist() == [512.0, 1024.0]


def test_first_call_uses_zero_continuity_mask():
    scale = ScaleModel.for_image(640, 480)
    feeds = build_feeds(EMBEDDING, [Click(1, 1)], scale)
    assert feeds[FEED_LAST_PRED_MASK].shape == (1, 1, 256, 256)
    assert not feeds[FEED_LAST_PRED_MASK].any()
    assert feeds[FEED_HAS_LAST_PRED].tolist() == [0.0]


def test_later_calls_feed_previous_low_res_mask():
    scale = ScaleModel.for_image(640, 480)
    previous = InferenceResult(mask=None, low_res_mask=np.full((1, 1, 256, 256), 3.0, dtype=np.float32))
    feeds = build_feeds(EMBEDDING, [Click(1, 1), Click(2, 2)], scale, previous)
    assert feeds[FEED_HAS_LAST_PRED].tolist() == [1.0]
    assert float(feeds[FEED_LAST_PRED_MASK].max()) == 3.0


def test_orchestrator_returns_2d_mask_and_continuity_mask():
    scale = ScaleModel.for_image(2048, 1024)
    model = FakeModel()
    orchestrator = InferenceOrchestrator(model, scale)
    result = asyncio.run(orchestrator.infer(EMBEDDING, [Click(5, 5)]))
    assert result.mask.shape == (512, 1024)
    assert result.low_res_mask.shape == (1, 1, 256, 256)
    assert len(model.feeds) == 1


def test_model_errors_surface_as_inference_failed():
    scale = ScaleModel.for_image(100, 100)
    orchestrator = InferenceOrchestrator(FakeModel(fail=RuntimeError("onnx exploded")), scale)
    with pytest.raises(InferenceFailed, match="onnx exploded"):
        asyncio.run(orchestrator.infer(EMBEDDING, [Click(5, 5)]))


def test_empty_click_list_is_an_inference_failure():
    orchestrator = InferenceOrchestrator(FakeModel(), ScaleModel.for_image(100, 100))
    with pytest.raises(InferenceFailed):
        orchestrator.run_sync(EMBEDDING, [])


def test_no_retry_on_failure():
    model = FakeModel(fail=RuntimeError("nope"))
    orchestrator = InferenceOrchestrator(model, ScaleModel.for_image(100, 100))
    with pytest.raises(InferenceFailed):
        orchestrator.run_sync(EMBEDDING, [Click(1, 1)])
    assert len(model.feeds) == 1
