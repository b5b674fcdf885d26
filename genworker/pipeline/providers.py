"""
Interfaces the orchestrator expects from external generation providers.

Concrete clients live at the package root (kie.py, fal.py, gemini.py);
tests substitute in-memory fakes.
"""

from typing import Any, Optional, Protocol


class GenerationProvider(Protocol):
    """Long-running task API: submit once, poll until it settles."""

    async def submit(self, params: dict[str, Any]) -> str:
        """Start a task and return its provider task id."""

    async def poll(self, task_id: str, **options: Any) -> dict[str, Any]:
        """Raw status payload; interpreted by normalize_task_status()."""


class AnalysisProvider(Protocol):
    """LLM used for the analysis and prompt-drafting steps."""

    async def analyze_inputs(self, image_urls: list[str], context: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Describe the uploaded inputs (product, character, setting)."""

    async def draft_prompts(self, analysis: dict[str, Any], context: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Return {"cover_prompt": ..., "video_prompt": ...} for the pipeline."""
