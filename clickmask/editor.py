# clickmask/editor.py
"""
One loaded image and its click session.

The editor carries out the effects returned by the session transitions:
it fetches the embedding once per image, runs decoder calls as asyncio
tasks tagged with the session generation, re-traces the outline whenever
the current mask changes and produces the raster outputs.

Everything except the embedding fetch and the decoder call runs
synchronously on the event loop thread.
"""

import asyncio
from typing import Callable, List, Optional, Sequence, Set, Tuple

import numpy as np
from PIL import Image

from . import config
from .contours import Loop, loops_to_svg, trace
from .embedding import EmbeddingClient, load_image
from .errors import EmbeddingFetchFailed, InferenceFailed
from .inference import InferenceOrchestrator
from .logger import console
from .metrics import CLEARS_TOTAL, CLICKS_TOTAL, INFERENCE_RESULTS, INFERENCE_SECONDS, UNDOS_TOTAL
from .rendering import clip_cutout, render_cutout, rgba_to_png_bytes
from .scaling import ScaleModel, ViewportSize, viewport_for_image
from .session import (
    CallInference,
    ClickRolledBack,
    ClickSession,
    Effect,
    ImageChanged,
    InferenceErrored,
    InferenceResult,
    InferenceSucceeded,
    RecomputeContour,
    RecomputeEmbedding,
    StaleDiscarded,
)


class ImageEditor:
    def __init__(
        self,
        model,
        embedding_client: Optional[EmbeddingClient] = None,
        display_scale: float = 1.0,
        on_resize: Optional[Callable[[ViewportSize], None]] = None,
        simplify_epsilon: float = config.CONTOUR_SIMPLIFY_EPSILON,
    ):
        if display_scale <= 0:
            raise ValueError("display_scale must be positive")
        self.model = model
        self.embedding_client = embedding_client or EmbeddingClient()
        self.display_scale = display_scale
        self.on_resize = on_resize
        self.simplify_epsilon = simplify_epsilon

        self.session = ClickSession()
        self.image: Optional[Image.Image] = None
        self.scale: Optional[ScaleModel] = None
        self.viewport: Optional[ViewportSize] = None
        self.orchestrator: Optional[InferenceOrchestrator] = None
        self.embedding: Optional[np.ndarray] = None
        self.embedding_error: Optional[str] = None
        self.embedding_task: Optional[asyncio.Task] = None
        self.traced: Optional[List[Loop]] = None

        self._image_generation: Optional[int] = None
        self._embedding_ready = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    # ==========================
    # IMAGE
    # ==========================

    def open_image(self, data: bytes) -> None:
        """
        Decode a new image and reset the session. Must run on the event
        loop; the embedding fetch is started as a task (``embedding_task``).
        """
        img = load_image(data)
        self.close()

        self.image = img
        self.scale = ScaleModel.for_image(img.width, img.height)
        self.orchestrator = InferenceOrchestrator(self.model, self.scale, self.display_scale)
        self.embedding = None
        self.embedding_error = None
        self._embedding_ready = asyncio.Event()

        self.viewport = viewport_for_image(img.width, img.height)
        if self.on_resize is not None:
            self.on_resize(self.viewport)

        console.log(
            f"[blue]Opened {img.width}x{img.height} image "
            f"(upload x{self.scale.upload_scale:.4f}, prompt x{self.scale.prompt_scale:.4f})[/blue]"
        )
        self._apply(self.session.dispatch(ImageChanged()))

    def close(self) -> None:
        """Cancel the embedding fetch and every decoder call in flight."""
        for task in list(self._tasks):
            task.cancel()
        if self.embedding_task is not None and not self.embedding_task.done():
            self.embedding_task.cancel()

    async def load_image(self, data: bytes) -> None:
        """Open the image and wait for its embedding; raises on either failure."""
        self.open_image(data)
        if self.embedding_task is not None:
            await self.embedding_task

    async def _refresh_embedding(self, generation: int, img: Image.Image, scale: ScaleModel) -> None:
        ready = self._embedding_ready
        try:
            embedding = await self.embedding_client.fetch(img, scale)
        except EmbeddingFetchFailed as exc:
            if generation == self._image_generation:
                self.embedding_error = str(exc)
                ready.set()
            console.log(f"[red]Embedding fetch failed: {exc}[/red]")
            raise

        if generation != self._image_generation:
            console.log("[yellow]Dropping embedding for a replaced image[/yellow]")
            return
        self.embedding = embedding
        ready.set()
        console.log("[green]Embedding ready[/green]")

    # ==========================
    # CLICKS
    # ==========================

    def add_click(self, x: float, y: float) -> None:
        """Record a click (Display space); its decoder call runs as a task."""
        self._require_image()
        CLICKS_TOTAL.inc()
        self._apply(self.session.add_click(x, y))

    def undo(self) -> None:
        UNDOS_TOTAL.inc()
        self._apply(self.session.undo())

    def clear(self) -> None:
        CLEARS_TOTAL.inc()
        self._apply(self.session.clear())

    async def wait_idle(self) -> None:
        """Wait until no decoder call is in flight or queued."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _infer(self, call: CallInference) -> None:
        ready = self._embedding_ready
        orchestrator = self.orchestrator
        try:
            await ready.wait()
            if self.embedding is None:
                raise InferenceFailed(f"no embedding for this image ({self.embedding_error})")
            with INFERENCE_SECONDS.time():
                result = await orchestrator.infer(self.embedding, call.clicks, call.previous)
        except InferenceFailed as exc:
            self._apply(self.session.dispatch(InferenceErrored(call.generation, str(exc))))
            return
        effects = self.session.dispatch(InferenceSucceeded(call.generation, result))
        if not any(isinstance(e, StaleDiscarded) for e in effects):
            INFERENCE_RESULTS.labels(outcome="applied").inc()
        self._apply(effects)

    # ==========================
    # EFFECTS
    # ==========================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _apply(self, effects: Sequence[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, RecomputeEmbedding):
                self._image_generation = effect.generation
                self.embedding_task = asyncio.get_running_loop().create_task(
                    self._refresh_embedding(effect.generation, self.image, self.scale)
                )
            elif isinstance(effect, CallInference):
                self._spawn(self._infer(effect))
            elif isinstance(effect, RecomputeContour):
                self._retrace(effect.result)
            elif isinstance(effect, StaleDiscarded):
                INFERENCE_RESULTS.labels(outcome="stale").inc()
                console.log(f"[yellow]Discarded stale decoder result (generation {effect.generation})[/yellow]")
            elif isinstance(effect, ClickRolledBack):
                INFERENCE_RESULTS.labels(outcome="failed").inc()
                console.log(
                    f"[red]Decoder failed, rolled back click ({effect.click.x:.1f}, {effect.click.y:.1f}): "
                    f"{effect.error}[/red]"
                )

    def _retrace(self, result: Optional[InferenceResult]) -> None:
        if result is None or self.scale is None:
            self.traced = None
            return
        factor = self.scale.mask_to_display_factor(self.display_scale)
        self.traced = trace(result.mask, factor, simplify_epsilon=self.simplify_epsilon)

    def _require_image(self) -> None:
        if self.image is None:
            raise RuntimeError("no image loaded")

    # ==========================
    # OUTPUTS
    # ==========================

    @property
    def is_loading(self) -> bool:
        return self.image is None or self.embedding is None

    @property
    def is_undoable(self) -> bool:
        return self.session.is_undoable

    @property
    def display_size(self) -> Tuple[int, int]:
        self._require_image()
        return (
            int(round(self.image.width * self.display_scale)),
            int(round(self.image.height * self.display_scale)),
        )

    def svg(self, image_data_uri: Optional[str] = None) -> str:
        w, h = self.display_size
        return loops_to_svg(self.traced or [], w, h, image_data_uri=image_data_uri)

    def cutout(self) -> Optional[np.ndarray]:
        """RGBA cutout at natural resolution, or None when nothing is selected."""
        self._require_image()
        if not self.traced:
            return None
        return render_cutout(self.image, self.traced, scale=1.0 / self.display_scale)

    def render_png(self) -> Optional[bytes]:
        rgba = self.cutout()
        return None if rgba is None else rgba_to_png_bytes(rgba)

    def clip(self, polygons: Sequence[Sequence[Tuple[float, float]]]) -> Optional[np.ndarray]:
        """Cutout clipped by lasso polygons drawn in Display space."""
        rgba = self.cutout()
        if rgba is None:
            return None
        return clip_cutout(rgba, polygons, scale=1.0 / self.display_scale)

    def clip_png(self, polygons: Sequence[Sequence[Tuple[float, float]]]) -> Optional[bytes]:
        rgba = self.clip(polygons)
        return None if rgba is None else rgba_to_png_bytes(rgba)
