"""
Kie.ai integration — image frames and video clips.

Image generation goes through the unified jobs API (createTask / recordInfo).
Video generation is model-specific:
  - veo3, veo3_fast        → /veo/generate, polled at /veo/record-info
  - grok, kling_2_6, sora2 → /jobs/createTask, polled at /jobs/recordInfo

Both clients return raw poll payloads; status interpretation lives in
pipeline/status.py.
"""

import logging
from typing import Any, Optional

from .http_client import ResilientHttpClient, RetryPolicy
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

KIE_API_BASE = "https://api.kie.ai/api/v1"

# Map internal image model ids to Kie.ai jobs API model names
IMAGE_MODEL_NAMES = {
    "nano_banana": "google/nano-banana-edit",
    "nano_banana_pro": "nano-banana-pro",
    "seedream": "bytedance/seedream-v4-edit",
}

# Video models served by the Veo endpoint; everything else uses the jobs API
VEO_MODELS = {"veo3", "veo3_fast"}

JOBS_VIDEO_MODEL_NAMES = {
    "grok": "grok-imagine/image-to-video",
    "kling_2_6": "kling-2.6/image-to-video",
    "sora2": "sora-2-image-to-video",
    "sora2_pro": "sora-2-pro-image-to-video",
}

# Map video models to their STATUS polling path
MODEL_STATUS_PATHS = {
    "veo3": "veo/record-info",
    "veo3_fast": "veo/record-info",
}
DEFAULT_STATUS_PATH = "jobs/recordInfo"


def _task_id_from(response: Any, provider: str) -> str:
    """Pull data.taskId out of a Kie.ai {"code", "msg", "data"} response."""
    if not isinstance(response, dict):
        raise ProviderError(f"{provider} returned a non-object response: {response!r}"[:300])
    if response.get("code") not in (None, 200):
        raise ProviderError(f"{provider} rejected the task: {response.get('msg') or response}", status=response.get("code"))
    data = response.get("data") or {}
    task_id = data.get("taskId") or data.get("task_id") or response.get("taskId")
    if not task_id:
        raise ProviderError(f"{provider} submit returned no taskId: {response}"[:300])
    return task_id


class KieClient:
    """Authenticated Kie.ai HTTP client shared by the image and video providers."""

    def __init__(self, api_key: str, policy: Optional[RetryPolicy] = None, timeout: float = 60.0, transport=None):
        if not api_key:
            logger.warning("KIE_API_KEY not set — Kie.ai calls will be rejected")
        self.http = ResilientHttpClient(
            "Kie.ai",
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            policy=policy,
            timeout=timeout,
            transport=transport,
        )

    async def create_job(self, payload: dict) -> str:
        logger.info(f"Kie.ai createTask: model={payload.get('model')}")
        response = await self.http.request_json("POST", f"{KIE_API_BASE}/jobs/createTask", json=payload)
        return _task_id_from(response, "Kie.ai")

    async def record_info(self, task_id: str, status_path: str = DEFAULT_STATUS_PATH) -> dict:
        url = f"{KIE_API_BASE}/{status_path}"
        logger.debug(f"Polling status at {url}?taskId={task_id}")
        return await self.http.request_json("GET", url, params={"taskId": task_id})


class KieImageProvider:
    """Frame and cover generation via the Kie.ai jobs API."""

    def __init__(self, client: KieClient, default_model: str = "nano_banana_pro"):
        self._client = client
        self._default_model = default_model

    async def submit(self, params: dict[str, Any]) -> str:
        """
        Start an image task.

        Args:
            params: prompt (required), image_urls (reference images), aspect_ratio,
                    model (internal id), resolution ("1K", "2K", "4K").

        Returns:
            Kie.ai task id.
        """
        model = params.get("model") or self._default_model
        payload = {
            "model": IMAGE_MODEL_NAMES.get(model, model),
            "input": {
                "prompt": params["prompt"],
                "image_input": list(params.get("image_urls") or []),
                "aspect_ratio": params.get("aspect_ratio", "9:16"),
                "resolution": params.get("resolution", "1K"),
                "output_format": "png",
            },
        }
        return await self._client.create_job(payload)

    async def poll(self, task_id: str, **options: Any) -> dict[str, Any]:
        return await self._client.record_info(task_id)


class KieVideoProvider:
    """Video clip generation; Veo models use their own endpoint."""

    def __init__(self, client: KieClient, default_model: str = "veo3_fast"):
        self._client = client
        self._default_model = default_model

    async def submit(self, params: dict[str, Any]) -> str:
        """
        Start a video task from one or two frames.

        Args:
            params: prompt, model, aspect_ratio, duration (seconds) and image_urls —
                    [first_frame] for single-frame mode, [first_frame, closing_frame]
                    for first-and-last-frame mode.

        Returns:
            Kie.ai task id.
        """
        model = params.get("model") or self._default_model
        image_urls = [u for u in params.get("image_urls") or [] if u]
        prompt = params["prompt"]

        if model in VEO_MODELS:
            payload = {
                "prompt": prompt,
                "model": model,
                "aspectRatio": params.get("aspect_ratio", "9:16"),
                "generationType": "FIRST_AND_LAST_FRAMES_2_VIDEO",
                "imageUrls": image_urls,
                "enableAudio": True,
            }
            logger.info(f"Kie.ai veo/generate: model={model}, frames={len(image_urls)}")
            response = await self._client.http.request_json("POST", f"{KIE_API_BASE}/veo/generate", json=payload)
            return _task_id_from(response, "Kie.ai Veo")

        if model not in JOBS_VIDEO_MODEL_NAMES:
            raise ProviderError(f"Unsupported video model: {model}")

        model_input: dict[str, Any] = {
            "prompt": prompt,
            "image_urls": image_urls[:1],
        }
        if model == "grok":
            model_input["mode"] = "normal"
        elif model == "kling_2_6":
            seconds = min(80, max(5, round((params.get("duration") or 5) / 5) * 5))
            model_input["duration"] = str(seconds)
            model_input["sound"] = True
        else:
            model_input["aspect_ratio"] = "portrait" if params.get("aspect_ratio") == "9:16" else "landscape"
            model_input["n_frames"] = str(params.get("duration") or 10)

        return await self._client.create_job({"model": JOBS_VIDEO_MODEL_NAMES[model], "input": model_input})

    async def poll(self, task_id: str, **options: Any) -> dict[str, Any]:
        model = options.get("model") or self._default_model
        return await self._client.record_info(task_id, MODEL_STATUS_PATHS.get(model, DEFAULT_STATUS_PATH))
