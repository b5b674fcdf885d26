"""
fal.ai integration — stitching segment clips into one video.

fal.ai queue protocol:
  POST /{endpoint}                              → { request_id, ... }
  GET  /{endpoint}/requests/{request_id}/status → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{endpoint}/requests/{request_id}        → result payload ({ video: { url } })
"""

import logging
from typing import Any, Optional

from .http_client import ResilientHttpClient, RetryPolicy
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

FAL_API_BASE = "https://queue.fal.run"
MERGE_ENDPOINT = "fal-ai/ffmpeg-api/merge-videos"
MERGE_TARGET_FPS = 30

RESOLUTION_MAP = {
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
}


class FalMergeProvider:
    """Queue-based merge of segment videos via fal-ai/ffmpeg-api."""

    def __init__(
        self,
        api_key: str,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 60.0,
        transport=None,
    ):
        if not api_key:
            logger.warning("FAL_API_KEY not set — merge requests will be rejected")
        self.http = ResilientHttpClient(
            "fal.ai",
            headers={"Authorization": f"Key {api_key}", "Content-Type": "application/json"},
            policy=policy,
            timeout=timeout,
            transport=transport,
        )

    async def submit(self, params: dict[str, Any]) -> str:
        """
        Queue a merge of `params["video_urls"]` (in playback order).

        Returns:
            fal.ai request_id, used as the merge task id.
        """
        video_urls = list(params.get("video_urls") or [])
        if len(video_urls) < 2:
            raise ProviderError(f"Merge needs at least two clips, got {len(video_urls)}")

        input_data = {
            "video_urls": video_urls,
            "target_fps": MERGE_TARGET_FPS,
            "resolution": RESOLUTION_MAP.get(params.get("aspect_ratio", "16:9"), RESOLUTION_MAP["16:9"]),
        }
        logger.info(f"[fal] Submitting merge of {len(video_urls)} clips...")
        response = await self.http.request_json("POST", f"{FAL_API_BASE}/{MERGE_ENDPOINT}", json=input_data)

        request_id = response.get("request_id") if isinstance(response, dict) else None
        if not request_id:
            raise ProviderError(f"No request_id in fal.ai response: {response}"[:300])

        logger.info(f"[fal] Queued: request_id={request_id}")
        return request_id

    async def poll(self, task_id: str, **options: Any) -> dict[str, Any]:
        """Status payload; on COMPLETED the result body is folded in."""
        status_url = f"{FAL_API_BASE}/{MERGE_ENDPOINT}/requests/{task_id}/status"
        status_data = await self.http.request_json("GET", status_url)
        if not isinstance(status_data, dict):
            return {}

        if status_data.get("status") != "COMPLETED":
            return status_data

        result = await self.http.request_json("GET", f"{FAL_API_BASE}/{MERGE_ENDPOINT}/requests/{task_id}")
        if isinstance(result, dict):
            # some responses nest the payload under "data"
            body = result.get("data") if isinstance(result.get("data"), dict) else result
            return {**status_data, **body}
        return status_data
