"""
Resilient async HTTP client shared by every provider integration.

Retries 429 / 5xx and transport errors with exponential backoff:
  delay = base_delay * 2^attempt + random jitter (0–jitter_max s)
  a numeric Retry-After header overrides the computed delay

After the last attempt, or on any non-retryable status, the failure is
raised as a single ProviderError.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel

from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8, 16, 32
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RetryPolicy(BaseModel):
    max_retries: int = MAX_RETRIES
    base_delay: float = BASE_DELAY
    jitter_max: float = JITTER_MAX
    max_delay: float = 60.0
    retryable_status_codes: frozenset[int] = frozenset(RETRYABLE_STATUS_CODES)

    def delay_for(self, attempt: int, retry_after: Optional[str] = None) -> float:
        if retry_after and retry_after.isdigit():
            return min(float(retry_after), self.max_delay)
        delay = self.base_delay * (2 ** attempt) + random.uniform(0, self.jitter_max)
        return min(delay, self.max_delay)


class ResilientHttpClient:
    """
    Thin wrapper over httpx.AsyncClient with one failure type.

    Usage:
        client = ResilientHttpClient("Kie.ai", headers={"Authorization": f"Bearer {key}"})
        data = await client.request_json("GET", url, params={"taskId": task_id})
    """

    def __init__(
        self,
        provider: str,
        headers: Optional[dict] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        attempts = self.policy.max_retries + 1

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(attempts):
                try:
                    response = await client.request(method, url, headers=headers, **kwargs)
                except httpx.HTTPError as e:
                    if attempt >= self.policy.max_retries:
                        raise ProviderError(
                            f"{self.provider} request failed after {attempts} attempts: {e}"
                        ) from e
                    delay = self.policy.delay_for(attempt)
                    logger.warning(
                        f"{self.provider} request error on attempt {attempt + 1}/{attempts}: {e} "
                        f"— retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue

                if response.status_code < 400:
                    return response

                if response.status_code not in self.policy.retryable_status_codes:
                    raise ProviderError(
                        f"{self.provider} {response.status_code}: {response.text[:500]}",
                        status=response.status_code,
                    )

                if attempt >= self.policy.max_retries:
                    raise ProviderError(
                        f"{self.provider} {response.status_code} after {attempts} attempts (url={url})",
                        status=response.status_code,
                    )

                delay = self.policy.delay_for(attempt, response.headers.get("Retry-After"))
                logger.warning(
                    f"{self.provider} {response.status_code} on attempt {attempt + 1}/{attempts} "
                    f"— retrying in {delay:.1f}s (url={url})"
                )
                await self._sleep(delay)

        raise ProviderError(f"Request to {url} failed after {attempts} attempts")

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        response = await self.request(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.provider} returned invalid JSON: {response.text[:200]}",
                status=response.status_code,
            ) from e
