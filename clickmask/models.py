# clickmask/models.py
from pydantic import BaseModel, Field
from typing import List, Optional


class Point(BaseModel):
    x: float
    y: float


class EditorCreatePayload(BaseModel):
    image: str  # base64 image (raw or data URI)
    display_scale: float = Field(1.0, gt=0)


class ClickPayload(BaseModel):
    x: float  # Display space
    y: float


class LassoPayload(BaseModel):
    polygons: List[List[Point]]  # closed freehand strokes in Display space


class Viewport(BaseModel):
    width: int
    height: int
    scale_to_fit: float


class EditorStatus(BaseModel):
    id: str
    status: str
    error: Optional[str] = None
    width: int
    height: int
    viewport: Viewport
    clicks: List[Point] = []
    pending_clicks: List[Point] = []
    undoable: bool = False
    has_mask: bool = False


class OutlineResult(BaseModel):
    paths: List[List[List[float]]]
    holes: List[bool]
    svg_path: str
    svg: str


class RenderResult(BaseModel):
    image: Optional[str] = None  # data:image/png;base64,...
    bbox: List[int] = []
