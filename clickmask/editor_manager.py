# clickmask/editor_manager.py
"""
In-memory registry of editors, one per uploaded image.
Handles editor creation, background embedding loading and status tracking.
"""

import asyncio
import uuid
from typing import Any, Dict, Optional

from .editor import ImageEditor
from .embedding import EmbeddingClient
from .errors import EmbeddingFetchFailed
from .inference import OnnxSegmentationModel
from .logger import console
from .metrics import EDITORS_LIVE

# In-memory editor store; lost on restart
EDITORS: Dict[str, Dict[str, Any]] = {}

_MODEL: Optional[OnnxSegmentationModel] = None


def get_model():
    """Shared decoder, loaded on first use."""
    global _MODEL
    if _MODEL is None:
        _MODEL = OnnxSegmentationModel()
    return _MODEL


def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient()


async def watch_embedding(editor_id: str, editor: ImageEditor):
    """
    Background watcher that flips the entry to ready/error once the
    embedding request finishes.
    """
    entry = EDITORS.get(editor_id)
    if entry is None or editor.embedding_task is None:
        return
    try:
        await editor.embedding_task
    except EmbeddingFetchFailed as e:
        entry["status"] = "error"
        entry["error"] = str(e)
        console.log(f"[red]Editor {editor_id} failed to load embedding: {e}[/red]")
        return

    if editor.embedding is not None:
        entry["status"] = "ready"
        console.log(f"[green]Editor {editor_id} ready.[/green]")


def create_editor(image_bytes: bytes, display_scale: float = 1.0) -> str:
    """
    Decode the image, register an editor and schedule its embedding load.
    Must be called from a running event loop.

    Raises:
        ImageLoadFailed: the bytes are not a decodable image
    """
    resize_events = []
    editor = ImageEditor(
        get_model(),
        get_embedding_client(),
        display_scale=display_scale,
        on_resize=resize_events.append,
    )
    editor.open_image(image_bytes)

    editor_id = uuid.uuid4().hex
    EDITORS[editor_id] = {
        "status": "pending",
        "editor": editor,
        "error": None,
        "resize_events": resize_events,
    }
    EDITORS_LIVE.inc()

    loop = asyncio.get_running_loop()
    EDITORS[editor_id]["watcher"] = loop.create_task(watch_embedding(editor_id, editor))
    return editor_id


def get_editor(editor_id: str) -> Optional[Dict[str, Any]]:
    return EDITORS.get(editor_id)


def delete_editor(editor_id: str) -> bool:
    entry = EDITORS.pop(editor_id, None)
    if entry is None:
        return False
    entry["editor"].close()
    watcher = entry.get("watcher")
    if watcher is not None and not watcher.done():
        watcher.cancel()
    EDITORS_LIVE.dec()
    return True
