"""
Explicit dependencies for the orchestrator.

The ledger, segment composer and sweep scheduler all receive one
PipelineContext instead of reaching for module-level clients.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..config import SweepSettings
from .credits import CreditLedger
from .providers import AnalysisProvider, GenerationProvider
from .store import WorkflowStore, utcnow


@dataclass
class PipelineContext:
    store: WorkflowStore
    image_provider: GenerationProvider
    video_provider: GenerationProvider
    merge_provider: GenerationProvider
    analyst: AnalysisProvider
    settings: SweepSettings = field(default_factory=SweepSettings)
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ledger: Optional[CreditLedger] = None  # built from store when omitted

    def __post_init__(self):
        if self.ledger is None:
            self.ledger = CreditLedger(self.store)
