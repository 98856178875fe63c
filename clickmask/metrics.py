# clickmask/metrics.py
"""
Prometheus metrics and /metrics endpoint for the FastAPI app.
"""

from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# Session operations
CLICKS_TOTAL = Counter(
    "clickmask_clicks_total",
    "Total number of clicks added to editor sessions",
)

UNDOS_TOTAL = Counter(
    "clickmask_undos_total",
    "Total number of undo requests",
)

CLEARS_TOTAL = Counter(
    "clickmask_clears_total",
    "Total number of clear requests",
)

# Inference outcomes: applied, stale, failed
INFERENCE_RESULTS = Counter(
    "clickmask_inference_results_total",
    "Decoder calls by outcome",
    ["outcome"],
)

INFERENCE_SECONDS = Histogram(
    "clickmask_inference_seconds",
    "Time spent in one decoder call in seconds",
)

# Embedding service
EMBEDDING_FETCH_SECONDS = Histogram(
    "clickmask_embedding_fetch_seconds",
    "Time spent waiting for the embedding service in seconds",
)

EMBEDDING_CACHE_HITS = Counter(
    "clickmask_embedding_cache_hits_total",
    "Total number of embedding cache hits",
)

EMBEDDING_CACHE_MISSES = Counter(
    "clickmask_embedding_cache_misses_total",
    "Total number of embedding cache misses",
)

EDITORS_LIVE = Gauge(
    "clickmask_editors_live",
    "Number of editor sessions currently held in memory",
)


@router.get("/metrics")
def metrics() -> Response:
    """
    Expose Prometheus metrics in text format.
    """
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
