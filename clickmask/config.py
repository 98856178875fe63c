# clickmask/config.py
"""
Runtime configuration, read once from the environment at import time.
"""

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ==========================
# SCALE CONSTANTS
# ==========================

# Longest side of the image sent to the embedding service
UPLOAD_IMAGE_SIZE = int(os.getenv("CLICKMASK_UPLOAD_IMAGE_SIZE", "1024"))

# Click prompts are normalised so the shortest side maps to this size,
# clamped by PROMPT_MAX_SIDE
PROMPT_IMAGE_SIZE = int(os.getenv("CLICKMASK_PROMPT_IMAGE_SIZE", "500"))
PROMPT_MAX_SIDE = int(os.getenv("CLICKMASK_PROMPT_MAX_SIDE", "1333"))

# Tensor shapes fixed by the model
EMBEDDING_SHAPE = (1, 256, 64, 64)
LOW_RES_MASK_SHAPE = (1, 1, 256, 256)

# ==========================
# EXTERNAL SERVICES
# ==========================

EMBEDDING_ENDPOINT = os.getenv(
    "CLICKMASK_EMBEDDING_ENDPOINT", "http://localhost:8080/embedding"
)
EMBEDDING_TIMEOUT = float(os.getenv("CLICKMASK_EMBEDDING_TIMEOUT", "60"))

MODEL_PATH = os.getenv(
    "CLICKMASK_MODEL_PATH",
    "models/interactive_module_quantized_592547_2023_03_19_sam6_long_uncertain.onnx",
)
ONNX_PROVIDERS = [
    p.strip()
    for p in os.getenv("CLICKMASK_ONNX_PROVIDERS", "CPUExecutionProvider").split(",")
    if p.strip()
]

# ==========================
# HOST VIEWPORT
# ==========================

VIEWPORT_MAX_WIDTH = int(os.getenv("CLICKMASK_VIEWPORT_MAX_WIDTH", "800"))
VIEWPORT_MAX_HEIGHT = int(os.getenv("CLICKMASK_VIEWPORT_MAX_HEIGHT", "600"))
TOOLBAR_HEIGHT = int(os.getenv("CLICKMASK_TOOLBAR_HEIGHT", "52"))
SHOW_AD = _env_bool("CLICKMASK_SHOW_AD", False)

# ==========================
# OUTLINE / LASSO
# ==========================

MIN_LASSO_POINTS = int(os.getenv("CLICKMASK_MIN_LASSO_POINTS", "8"))
CONTOUR_SIMPLIFY_EPSILON = float(os.getenv("CLICKMASK_CONTOUR_SIMPLIFY_EPSILON", "0.0"))
