"""
Gemini integration for the analysis and prompt-drafting steps.

- Analysis: Gemini Flash (vision) via REST — describes the uploaded inputs as JSON
- Prompts:  Gemini Flash (text) via REST — turns the analysis into cover + video prompts
"""

import base64
import json
import logging
from typing import Any, Optional

from .http_client import ResilientHttpClient, RetryPolicy
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"
ANALYSIS_MODEL = "gemini-2.0-flash"
PROMPT_MODEL = "gemini-2.0-flash"
MAX_INPUT_IMAGES = 4


def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


def _parse_json_response(text: str) -> dict:
    """Parse JSON from Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError:
                pass
        raise ProviderError(f"Gemini returned invalid JSON: {text[:200]}")


# =========================================================================
# Prompts
# =========================================================================

ANALYSIS_PROMPT = """You are a creative director preparing a short vertical video ad.

Study the attached reference images and describe them as a JSON object with this EXACT structure (no markdown, just raw JSON):
{
  "product": "what is being advertised, in one sentence",
  "subject": "who or what appears, if anyone",
  "setting": "where the scene takes place",
  "style": "visual style, palette and lighting",
  "key_features": ["up to 5 short selling points"]
}"""

PROMPT_DRAFTING_PROMPT = """You write generation prompts for an AI video ad pipeline.

Creative brief (JSON):
{analysis}

Extra instructions (JSON, may be empty):
{context}

Return a JSON object with this EXACT structure (no markdown, just raw JSON):
{{
  "cover_prompt": "a single photorealistic still that opens the ad, one paragraph",
  "video_prompt": "camera motion, action and dialogue for an 8-second clip that starts from the cover"
}}"""


class GeminiAnalyst:
    """Analysis and prompt drafting over the Gemini generateContent REST API."""

    def __init__(self, api_key: str, policy: Optional[RetryPolicy] = None, timeout: float = 60.0, transport=None):
        if not api_key:
            logger.warning("GEMINI_API_KEY not set — analysis steps will fail")
        self._api_key = api_key
        self.http = ResilientHttpClient("Gemini", policy=policy, timeout=timeout, transport=transport)

    def _api_url(self, model: str) -> str:
        return f"{API_BASE}/models/{model}:generateContent?key={self._api_key}"

    async def _download_image(self, url: str) -> dict:
        response = await self.http.request("GET", url, follow_redirects=True)
        return {
            "inlineData": {
                "mimeType": _guess_mime(url),
                "data": base64.b64encode(response.content).decode(),
            }
        }

    async def _generate_json(self, model: str, parts: list) -> dict:
        if not self._api_key:
            raise ProviderError("GEMINI_API_KEY not set")

        body = {
            "contents": [{"parts": parts}],
            "generationConfig": {"temperature": 0.4, "responseMimeType": "application/json"},
        }
        result = await self.http.request_json("POST", self._api_url(model), json=body)

        try:
            text = result["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Gemini response missing candidates: {str(result)[:200]}") from e
        return _parse_json_response(text)

    async def analyze_inputs(self, image_urls: list[str], context: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Describe the uploaded reference images.

        Args:
            image_urls: Public URLs of the user's inputs (first MAX_INPUT_IMAGES are used).
            context:    Optional hints (e.g. workflow kind) appended to the prompt.

        Returns:
            The analysis dict stored on the instance as analysis_result.
        """
        parts: list[dict] = []
        for url in image_urls[:MAX_INPUT_IMAGES]:
            parts.append(await self._download_image(url))

        prompt = ANALYSIS_PROMPT
        if context:
            prompt += f"\n\nContext: {json.dumps(context)}"
        parts.append({"text": prompt})

        logger.info(f"Gemini analysis of {len(image_urls[:MAX_INPUT_IMAGES])} image(s)")
        return await self._generate_json(ANALYSIS_MODEL, parts)

    async def draft_prompts(self, analysis: dict[str, Any], context: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Turn an analysis into {"cover_prompt", "video_prompt"}."""
        text = PROMPT_DRAFTING_PROMPT.format(
            analysis=json.dumps(analysis, ensure_ascii=False),
            context=json.dumps(context or {}, ensure_ascii=False),
        )
        prompts = await self._generate_json(PROMPT_MODEL, [{"text": text}])

        missing = [key for key in ("cover_prompt", "video_prompt") if not prompts.get(key)]
        if missing:
            raise ProviderError(f"Gemini prompts missing {', '.join(missing)}")
        return prompts
