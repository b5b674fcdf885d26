"""Shared fixtures: in-memory store, scripted providers and a controllable clock."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from genworker import metrics
from genworker.config import SweepSettings
from genworker.pipeline.context import PipelineContext
from genworker.pipeline.errors import ProviderError
from genworker.pipeline.store import InMemoryStore


class FixedClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float):
        self.now += timedelta(minutes=minutes)


class FakeGenerationProvider:
    """Records submissions and replays scripted poll payloads (pending by default)."""

    def __init__(self, prefix: str):
        self.prefix = prefix
        self.submissions: list[dict] = []
        self.polls: list[str] = []
        self.payloads: dict[str, dict] = {}
        self.submit_error: Optional[Exception] = None

    async def submit(self, params: dict[str, Any]) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append(params)
        return f"{self.prefix}-{len(self.submissions)}"

    async def poll(self, task_id: str, **options: Any) -> dict[str, Any]:
        self.polls.append(task_id)
        return self.payloads.get(task_id, {"code": 200, "data": {"taskId": task_id, "state": "generating"}})

    def succeed(self, task_id: str, url: str):
        self.payloads[task_id] = {
            "code": 200,
            "data": {"taskId": task_id, "state": "success", "resultJson": json.dumps({"resultUrls": [url]})},
        }

    def fail(self, task_id: str, message: str = "Generation failed", fail_code: str = "400"):
        self.payloads[task_id] = {
            "code": 200,
            "data": {"taskId": task_id, "state": "fail", "failMsg": message, "failCode": fail_code},
        }


class FakeAnalyst:
    def __init__(self):
        self.analyses = 0
        self.drafts = 0
        self.error: Optional[Exception] = None

    async def analyze_inputs(self, image_urls, context=None):
        if self.error is not None:
            raise self.error
        self.analyses += 1
        return {"product": "running shoe", "style": "bright studio"}

    async def draft_prompts(self, analysis, context=None):
        self.drafts += 1
        return {"cover_prompt": "Shoe on a podium", "video_prompt": "Slow orbit around the shoe"}


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def image_provider() -> FakeGenerationProvider:
    return FakeGenerationProvider("img")


@pytest.fixture
def video_provider() -> FakeGenerationProvider:
    return FakeGenerationProvider("vid")


@pytest.fixture
def merge_provider() -> FakeGenerationProvider:
    return FakeGenerationProvider("merge")


@pytest.fixture
def analyst() -> FakeAnalyst:
    return FakeAnalyst()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def ctx(store, image_provider, video_provider, merge_provider, analyst, clock, sleeps) -> PipelineContext:
    async def record_sleep(seconds: float):
        sleeps.append(seconds)

    return PipelineContext(
        store=store,
        image_provider=image_provider,
        video_provider=video_provider,
        merge_provider=merge_provider,
        analyst=analyst,
        settings=SweepSettings(),
        clock=clock,
        sleep=record_sleep,
    )


@pytest.fixture
def provider_error() -> ProviderError:
    return ProviderError("Kie.ai 503 after 6 attempts", status=503)
