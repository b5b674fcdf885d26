"""
Credit pricing for generation and download.

Paid-generation models are charged when the job is created; free-generation
models are charged when the finished video is downloaded.
"""

import math
from typing import Optional

FREE_GENERATION_MODELS = {"veo3_fast", "sora2", "grok"}
PAID_GENERATION_MODELS = {"veo3", "sora2_pro", "kling_2_6"}

# ── Generation (paid models only) ────────────────────────────────────────────
GENERATION_COSTS = {
    "veo3": 150,        # per 8s segment
    "kling_2_6": 110,   # per 5-second block
}

SORA2_PRO_CREDIT_COSTS = {
    "standard_10s": 75,
    "standard_15s": 135,
    "hd_10s": 165,
    "hd_15s": 315,
}

# ── Download (free models only) ──────────────────────────────────────────────
DOWNLOAD_COSTS = {
    "veo3_fast": 20,    # per segment
    "sora2": 6,
    "grok": 20,         # per 6s segment
}

REPLICA_PHOTO_CREDITS = {
    "1K": 6,
    "2K": 6,
    "4K": 12,
}


def is_free_generation_model(model: str) -> bool:
    return model in FREE_GENERATION_MODELS


def is_paid_generation_model(model: str) -> bool:
    return model in PAID_GENERATION_MODELS


def segment_count_for_duration(duration: Optional[int], model: str) -> int:
    """How many clips a model needs to cover `duration` seconds."""
    if model == "kling_2_6":
        return 1
    if model == "sora2":
        if not duration or duration <= 10:
            return 1
        return math.ceil(duration / 10)

    segment_length = 6 if model == "grok" else 8
    max_segments = 10 if model == "grok" else 8
    if not duration or duration <= segment_length:
        return 1
    # half-up rounding, round() would send 2.5 to 2
    return max(1, min(max_segments, math.floor(duration / segment_length + 0.5)))


def generation_cost(model: str, duration: Optional[int] = None, quality: str = "standard") -> int:
    """Credits charged at creation time; 0 for free-generation models."""
    if is_free_generation_model(model):
        return 0
    if model == "sora2_pro":
        seconds = "15" if duration == 15 else "10"
        tier = "hd" if quality == "high" else "standard"
        return SORA2_PRO_CREDIT_COSTS[f"{tier}_{seconds}s"]
    if model == "veo3":
        return GENERATION_COSTS["veo3"] * segment_count_for_duration(duration, "veo3")
    if model == "kling_2_6":
        blocks = math.ceil(max(5, duration or 5) / 5)
        return GENERATION_COSTS["kling_2_6"] * blocks
    return 0


def download_cost(model: str, duration: Optional[int] = None, segment_count: Optional[int] = None) -> int:
    """Credits charged on first download; 0 for paid-generation models."""
    if is_paid_generation_model(model):
        return 0
    if model == "sora2":
        return DOWNLOAD_COSTS["sora2"]
    if model in ("veo3_fast", "grok"):
        segments = segment_count if segment_count and segment_count > 0 else segment_count_for_duration(duration, model)
        return DOWNLOAD_COSTS[model] * segments
    return 0


def replica_photo_credits(resolution: str = "2K") -> int:
    return REPLICA_PHOTO_CREDITS.get(resolution, REPLICA_PHOTO_CREDITS["2K"])


def segment_video_credits(model: str, duration: Optional[int], quality: str, segment_count: int) -> int:
    """Share of the project's generation cost charged to re-render one segment."""
    total = generation_cost(model, duration, quality)
    if total <= 0:
        return 0
    segments = segment_count if segment_count > 0 else 1
    return max(1, math.ceil(total / segments))


def generation_description(model: str) -> str:
    """Ledger description for the up-front generation charge."""
    return f"Video generation ({model.upper()})"
