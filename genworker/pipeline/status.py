"""
Task Status Normalizer.

Every provider reports task progress in its own shape:
  - Kie.ai jobs API   — data.state ("success" / "fail"), URLs in a JSON-encoded data.resultJson
  - Kie.ai Veo        — data.successFlag (0 pending, 1 success, 2/3 failed), data.response.resultUrls
  - Kie.ai legacy     — data.status ("SUCCESS", "GENERATE_FAILED", ...), URLs in results[] / works[]
  - fal.ai queue      — status ("IN_QUEUE", "IN_PROGRESS", "COMPLETED", "FAILED"), video.url

normalize_task_status() folds all of them into a TaskResult. It never raises:
anything it cannot read stays PENDING unless the payload carries an explicit failure flag.
"""

import json
import logging
from typing import Any, Optional

from .models import StageKind, TaskResult, TaskState

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"success", "succeeded", "completed", "complete"}
FAILED_STATES = {
    "fail", "failed", "error",
    "generate_failed", "create_task_failed", "sensitive_word_error",
}
FAILED_FLAGS = {2, 3}

CONTENT_POLICY_MARKERS = (
    "content polic",
    "violating content policies",
    "flagged by",
    "safety check failed",
)
RETRYABLE_FAIL_CODES = {"500"}

CONTENT_POLICY_MESSAGE = (
    "Content policy violation. Please try regenerating with a different prompt "
    "or adjust your requirements."
)

_URL_KEYS = ("resultUrl", "videoUrl", "video_url", "imageUrl", "image_url", "url")


# ── Helpers ──────────────────────────────────────────────────────────────────

def _first_url(value: Any) -> Optional[str]:
    """First non-empty string from a list of URLs (or a bare URL string)."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, str) and item:
                return item
            if isinstance(item, dict):
                nested = _url_from_keys(item)
                if nested:
                    return nested
    return None


def _url_from_keys(record: dict) -> Optional[str]:
    for key in _URL_KEYS:
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _decode_result_json(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Unparseable resultJson: {raw[:120]}")
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _unwrap(payload: dict) -> dict:
    """Strip the {"code", "msg", "data": {...}} envelope Kie.ai wraps records in."""
    data = payload.get("data")
    if isinstance(data, dict) and ("code" in payload or "msg" in payload or len(payload) == 1):
        return data
    return payload


# ── Result URL extraction (fixed precedence) ─────────────────────────────────

def extract_result_url(record: dict) -> Optional[str]:
    candidates = (
        lambda: _first_url(_decode_result_json(record.get("resultJson")).get("resultUrls")),
        lambda: _first_url((record.get("response") or {}).get("resultUrls")),
        lambda: _first_url(record.get("resultUrls")),
        lambda: _first_url((record.get("info") or {}).get("resultUrls")),
        lambda: (record.get("video") or {}).get("url"),
        lambda: _first_url(record.get("results")),
        lambda: _first_url(record.get("works")),
        lambda: _url_from_keys(record),
    )
    for candidate in candidates:
        try:
            url = candidate()
        except AttributeError:
            # a key held a non-dict where a dict was expected
            continue
        if isinstance(url, str) and url:
            return url
    return None


# ── State adapters (fixed precedence) ────────────────────────────────────────

def _state_from_state_field(record: dict) -> Optional[TaskState]:
    """Kie.ai jobs API."""
    state = record.get("state")
    if not isinstance(state, str) or not state:
        return None
    lowered = state.lower()
    if lowered in SUCCESS_STATES:
        return TaskState.SUCCESS
    if lowered in FAILED_STATES:
        return TaskState.FAILED
    return TaskState.PENDING


def _state_from_success_flag(record: dict) -> Optional[TaskState]:
    """Kie.ai Veo record-info."""
    flag = record.get("successFlag")
    if isinstance(flag, bool) or flag is None:
        return None
    try:
        flag = int(flag)
    except (TypeError, ValueError):
        return None
    if flag == 1:
        return TaskState.SUCCESS
    if flag in FAILED_FLAGS:
        return TaskState.FAILED
    return TaskState.PENDING


def _state_from_status_field(record: dict) -> Optional[TaskState]:
    """Kie.ai legacy endpoints and the fal.ai queue."""
    status = record.get("status")
    if not isinstance(status, str) or not status:
        return None
    lowered = status.lower()
    if lowered in SUCCESS_STATES:
        return TaskState.SUCCESS
    if lowered in FAILED_STATES:
        return TaskState.FAILED
    return TaskState.PENDING


STATE_ADAPTERS = (
    _state_from_state_field,
    _state_from_success_flag,
    _state_from_status_field,
)


# ── Errors ───────────────────────────────────────────────────────────────────

def _error_message(record: dict) -> Optional[str]:
    for key in ("failMsg", "errorMessage", "error_message", "error", "failReason"):
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return None


def is_content_policy_error(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in CONTENT_POLICY_MARKERS)


def friendly_error_message(message: Optional[str], default: str = "Generation failed") -> str:
    """Swap provider content-policy wording for something a user can act on."""
    if is_content_policy_error(message):
        return CONTENT_POLICY_MESSAGE
    return message or default


# ── Public API ───────────────────────────────────────────────────────────────

def normalize_task_status(stage: StageKind, payload: Any) -> TaskResult:
    """
    Interpret a raw provider poll response.

    Args:
        stage:   Which pipeline stage the task belongs to (image, video or merge).
        payload: The decoded JSON body returned by the provider's poll endpoint.

    Returns:
        TaskResult with a canonical PENDING / SUCCESS / FAILED status.
    """
    if not isinstance(payload, dict):
        logger.warning(f"[{stage.value}] Non-object poll payload treated as pending")
        return TaskResult()

    record = _unwrap(payload)

    state = None
    for adapter in STATE_ADAPTERS:
        state = adapter(record)
        if state is not None:
            break

    result_url = extract_result_url(record)

    if state is None:
        # a result with no recognizable state means the provider finished
        state = TaskState.SUCCESS if result_url else TaskState.PENDING

    if state == TaskState.FAILED:
        message = _error_message(record) or f"{stage.value.capitalize()} generation failed"
        fail_code = record.get("failCode", record.get("errorCode"))
        retryable = (
            (fail_code is not None and str(fail_code) in RETRYABLE_FAIL_CODES)
            or is_content_policy_error(message)
        )
        return TaskResult(status=TaskState.FAILED, error_message=message, retryable=retryable)

    if state == TaskState.SUCCESS:
        return TaskResult(status=TaskState.SUCCESS, result_url=result_url)

    return TaskResult(status=TaskState.PENDING)
