import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from clickmask.contours import loop_bounds
from clickmask.editor import ImageEditor
from clickmask.errors import EmbeddingFetchFailed, ImageLoadFailed
from clickmask.inference import FEED_IMAGE_SIZE, FEED_POINT_COORDS, FEED_POINT_LABELS


def _image_bytes(size=(200, 100)):
    buf = io.BytesIO()
    Image.new("RGB", size, (120, 30, 200)).save(buf, format="PNG")
    return buf.getvalue()


class FakeEmbeddingClient:
    """Resolves immediately, or when ``gate`` is set; can fail instead."""

    def __init__(self, gate=None, fail=False):
        self.gate = gate
        self.fail = fail
        self.calls = 0

    async def fetch(self, img, scale):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise EmbeddingFetchFailed("service down", status_code=500)
        return np.zeros((1, 256, 64, 64), dtype=np.float32)


class BlobModel:
    """Positive square of radius 6 (upload pixels) around every click."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def run(self, feeds):
        self.calls.append(feeds)
        if self.fail:
            raise RuntimeError("decoder crashed")
        mask_h, mask_w = [int(round(v)) for v in feeds[FEED_IMAGE_SIZE]]
        onnx_scale = self.onnx_scale
        mask = np.full((mask_h, mask_w), -5.0, dtype=np.float32)
        labels = feeds[FEED_POINT_LABELS][0]
        for (mx, my), label in zip(feeds[FEED_POINT_COORDS][0], labels):
            if label != 1:
                continue
            ux, uy = int(mx / onnx_scale), int(my / onnx_scale)
            mask[max(0, uy - 6):uy + 6, max(0, ux - 6):ux + 6] = 5.0
        low_res = np.full((1, 1, 256, 256), float(len(self.calls)), dtype=np.float32)
        return mask, low_res


def _editor(model=None, client=None, **kwargs):
    model = model or BlobModel()
    editor = ImageEditor(model, client or FakeEmbeddingClient(), **kwargs)
    return editor, model


def _attach_scale(editor, model):
    model.onnx_scale = editor.scale.onnx_scale


def test_click_produces_outline_around_the_click():
    async def scenario():
        resized = []
        editor, model = _editor(on_resize=resized.append)
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        assert not editor.is_loading
        assert resized and resized[0].width == 800

        editor.add_click(50, 50)
        await editor.wait_idle()
        return editor, model

    editor, model = asyncio.run(scenario())
    assert len(editor.session.clicks) == len(editor.session.masks) == 1
    assert editor.traced and len(editor.traced) == 1
    x0, y0, x1, y1 = loop_bounds(editor.traced[0])
    assert x0 < 50 < x1 and y0 < 50 < y1
    assert len(model.calls) == 1


def test_display_scale_maps_outline_back_to_display_space():
    async def scenario():
        editor, model = _editor(display_scale=2.0)
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(100, 100)  # natural (50, 50)
        await editor.wait_idle()
        return editor

    editor = asyncio.run(scenario())
    x0, y0, x1, y1 = loop_bounds(editor.traced[0])
    assert x0 < 100 < x1 and y0 < 100 < y1
    assert editor.display_size == (400, 200)


def test_undo_restores_previous_outline_without_new_call():
    async def scenario():
        editor, model = _editor()
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(40, 40)
        await editor.wait_idle()
        after_first = editor.traced
        editor.add_click(150, 60)
        await editor.wait_idle()
        assert len(editor.traced) == 2
        editor.undo()
        return editor, model, after_first

    editor, model, after_first = asyncio.run(scenario())
    assert editor.traced == after_first
    assert len(model.calls) == 2
    assert len(editor.session.clicks) == 1


def test_second_call_carries_continuity_mask():
    async def scenario():
        editor, model = _editor()
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(40, 40)
        editor.add_click(150, 60)
        await editor.wait_idle()
        return model

    model = asyncio.run(scenario())
    assert len(model.calls) == 2
    assert model.calls[0]["has_last_pred"].tolist() == [0.0]
    assert model.calls[1]["has_last_pred"].tolist() == [1.0]
    assert float(model.calls[1]["last_pred_mask"].max()) == 1.0
    assert model.calls[1][FEED_POINT_COORDS].shape == (1, 3, 2)


def test_result_for_undone_click_is_dropped():
    async def scenario():
        gate = asyncio.Event()
        editor, model = _editor(client=FakeEmbeddingClient(gate=gate))
        editor.open_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(50, 50)  # waits for the embedding
        editor.undo()
        gate.set()
        await editor.embedding_task
        await editor.wait_idle()
        return editor

    editor = asyncio.run(scenario())
    assert editor.session.clicks == ()
    assert editor.session.masks == ()
    assert editor.traced is None


def test_result_for_cleared_session_is_dropped():
    async def scenario():
        gate = asyncio.Event()
        editor, model = _editor(client=FakeEmbeddingClient(gate=gate))
        editor.open_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(50, 50)
        editor.clear()
        gate.set()
        await editor.embedding_task
        await editor.wait_idle()
        return editor

    editor = asyncio.run(scenario())
    assert editor.session.masks == ()
    assert not editor.is_undoable


def test_decoder_failure_rolls_back_the_click():
    async def scenario():
        editor, model = _editor(model=BlobModel(fail=True))
        await editor.load_image(_image_bytes())
        editor.add_click(50, 50)
        await editor.wait_idle()
        return editor

    editor = asyncio.run(scenario())
    assert editor.session.clicks == ()
    assert editor.session.pending == ()
    assert not editor.is_undoable
    assert editor.traced is None


def test_embedding_failure_surfaces_and_rolls_back_waiting_clicks():
    async def scenario():
        gate = asyncio.Event()
        editor, model = _editor(client=FakeEmbeddingClient(gate=gate, fail=True))
        editor.open_image(_image_bytes())
        editor.add_click(10, 10)
        gate.set()
        with pytest.raises(EmbeddingFetchFailed):
            await editor.embedding_task
        await editor.wait_idle()
        return editor, model

    editor, model = asyncio.run(scenario())
    assert editor.is_loading
    assert editor.embedding_error == "service down"
    assert editor.session.pending == ()
    assert model.calls == []


def test_new_image_resets_the_session():
    async def scenario():
        client = FakeEmbeddingClient()
        editor, model = _editor(client=client)
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        editor.add_click(50, 50)
        await editor.wait_idle()
        await editor.load_image(_image_bytes((300, 300)))
        return editor, client

    editor, client = asyncio.run(scenario())
    assert client.calls == 2
    assert editor.session.clicks == ()
    assert editor.traced is None
    assert (editor.image.width, editor.image.height) == (300, 300)


def test_bad_image_is_rejected():
    async def scenario():
        editor, _ = _editor()
        with pytest.raises(ImageLoadFailed):
            await editor.load_image(b"nope")
        return editor

    editor = asyncio.run(scenario())
    assert editor.image is None


def test_render_and_clip_outputs():
    async def scenario():
        editor, model = _editor()
        await editor.load_image(_image_bytes())
        _attach_scale(editor, model)
        assert editor.render_png() is None
        editor.add_click(50, 50)
        await editor.wait_idle()
        return editor

    editor = asyncio.run(scenario())
    cutout = Image.open(io.BytesIO(editor.render_png()))
    assert cutout.size == (200, 100)
    alpha = np.array(cutout)[..., 3]

    # natural pixel centres sampled from the Upload-space mask
    s = editor.scale.upload_scale
    rows = np.floor((np.arange(100) + 0.5) * s).astype(int)
    cols = np.floor((np.arange(200) + 0.5) * s).astype(int)
    expected = editor.session.current.mask[np.ix_(rows, cols)] > 0
    assert expected[50, 50]
    assert ((alpha > 0) == expected).all()
    assert np.array_equal(editor.cutout()[..., 3], alpha)

    ring = [(50 + 20 * np.cos(a), 50 + 20 * np.sin(a)) for a in np.linspace(0, 2 * np.pi, 24, endpoint=False)]
    clipped = np.array(Image.open(io.BytesIO(editor.clip_png([ring]))))[..., 3]
    assert clipped[50, 50] == 255
    assert "<path" in editor.svg()
