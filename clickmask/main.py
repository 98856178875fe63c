# clickmask/main.py
from typing import Any, Dict, Optional

import numpy as np
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from .models import (
    ClickPayload,
    EditorCreatePayload,
    EditorStatus,
    LassoPayload,
    OutlineResult,
    RenderResult,
)
from .editor import ImageEditor
from .editor_manager import create_editor, delete_editor, get_editor
from .contours import is_hole, loops_to_svg_path
from .embedding import base64_to_bytes
from .errors import ImageLoadFailed
from .metrics import router as metrics_router
from .rendering import bounding_box, png_bytes_to_data_uri, rgba_to_png_bytes
from .logger import console

app = FastAPI(title="Click Mask API", version="1.0.0")

# Include /metrics endpoint
app.include_router(metrics_router)


def _entry_or_404(editor_id: str) -> Dict[str, Any]:
    entry = get_editor(editor_id)
    if not entry:
        raise HTTPException(status_code=404, detail="editor not found")
    return entry


def _ready_editor(editor_id: str) -> ImageEditor:
    entry = _entry_or_404(editor_id)
    if entry["status"] == "error":
        raise HTTPException(status_code=409, detail=entry.get("error") or "editor failed")
    return entry["editor"]


def _status(editor_id: str, entry: Dict[str, Any]) -> EditorStatus:
    editor: ImageEditor = entry["editor"]
    vp = editor.viewport
    return EditorStatus(
        id=editor_id,
        status=entry["status"],
        error=entry.get("error"),
        width=editor.image.width,
        height=editor.image.height,
        viewport={"width": vp.width, "height": vp.height, "scale_to_fit": vp.scale_to_fit},
        clicks=[{"x": c.x, "y": c.y} for c in editor.session.clicks],
        pending_clicks=[{"x": c.x, "y": c.y} for c in editor.session.pending],
        undoable=editor.is_undoable,
        has_mask=editor.session.current is not None,
    )


@app.get("/")
def read_root() -> Dict[str, str]:
    return {"status": "ok", "message": "Click Mask API"}


@app.post("/api/v1/editors")
async def submit_image(payload: EditorCreatePayload):
    """
    Decode the image, start its embedding request and immediately return
    the editor id + pending.

    Body:
      {
        "image": "<base64>",
        "display_scale": 1.0  # optional, Display / natural pixels
      }
    """
    if not payload.image:
        raise HTTPException(status_code=422, detail="image required")

    try:
        editor_id = create_editor(base64_to_bytes(payload.image), display_scale=payload.display_scale)
    except ImageLoadFailed as exc:
        console.log(f"[red]Rejected upload: {exc}[/red]")
        raise HTTPException(status_code=422, detail=str(exc))

    console.log(f"[blue]Created editor {editor_id}[/blue]")
    entry = get_editor(editor_id)
    return JSONResponse(status_code=202, content=_status(editor_id, entry).dict())


@app.get("/api/v1/editors/{editor_id}")
async def get_editor_status(editor_id: str) -> EditorStatus:
    return _status(editor_id, _entry_or_404(editor_id))


@app.post("/api/v1/editors/{editor_id}/clicks")
async def add_click(
    editor_id: str,
    payload: ClickPayload,
    wait: bool = Query(
        True,
        description="If true, respond after the decoder call for this click finishes",
    ),
) -> EditorStatus:
    editor = _ready_editor(editor_id)
    editor.add_click(payload.x, payload.y)
    if wait:
        await editor.wait_idle()
    return _status(editor_id, _entry_or_404(editor_id))


@app.post("/api/v1/editors/{editor_id}/undo")
async def undo(editor_id: str) -> EditorStatus:
    _ready_editor(editor_id).undo()
    return _status(editor_id, _entry_or_404(editor_id))


@app.post("/api/v1/editors/{editor_id}/clear")
async def clear(editor_id: str) -> EditorStatus:
    _ready_editor(editor_id).clear()
    return _status(editor_id, _entry_or_404(editor_id))


@app.get("/api/v1/editors/{editor_id}/outline")
async def get_outline(editor_id: str) -> OutlineResult:
    editor = _ready_editor(editor_id)
    loops = editor.traced or []
    return OutlineResult(
        paths=[[[x, y] for x, y in loop] for loop in loops],
        holes=[is_hole(loop) for loop in loops],
        svg_path=loops_to_svg_path(loops),
        svg=editor.svg(),
    )


def _render_result(rgba: Optional[np.ndarray]) -> RenderResult:
    if rgba is None:
        return RenderResult()
    png = rgba_to_png_bytes(rgba)
    return RenderResult(image=png_bytes_to_data_uri(png), bbox=bounding_box(rgba[..., 3]))


@app.get("/api/v1/editors/{editor_id}/render")
async def render(editor_id: str) -> RenderResult:
    return _render_result(_ready_editor(editor_id).cutout())


@app.post("/api/v1/editors/{editor_id}/clip")
async def clip(editor_id: str, payload: LassoPayload) -> RenderResult:
    polygons = [[(p.x, p.y) for p in poly] for poly in payload.polygons]
    return _render_result(_ready_editor(editor_id).clip(polygons))


@app.delete("/api/v1/editors/{editor_id}")
async def remove_editor(editor_id: str):
    if not delete_editor(editor_id):
        raise HTTPException(status_code=404, detail="editor not found")
    return {"id": editor_id, "status": "deleted"}
