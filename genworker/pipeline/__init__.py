"""
Generation Pipeline Orchestrator

Stateless, sweep-driven orchestration for:
  Single pipelines    — Analyze inputs → Draft prompts → Cover image → Video
  Segmented projects  — Per-segment first frame → approval → clip → merge
  Credits             — Up-front / download charges with compensating refunds
"""

from .context import PipelineContext
from .credits import CreditLedger
from .models import InstanceStatus, PipelineStep, SegmentStatus, WorkflowKind
from .resolver import pending_actions, resolve
from .routes import credits_router, cron_router, project_router
from .segments import SegmentComposer
from .status import normalize_task_status
from .sweep import SweepScheduler

__all__ = [
    "PipelineContext",
    "CreditLedger",
    "SegmentComposer",
    "SweepScheduler",
    "normalize_task_status",
    "resolve",
    "pending_actions",
    "cron_router",
    "project_router",
    "credits_router",
    "InstanceStatus",
    "PipelineStep",
    "SegmentStatus",
    "WorkflowKind",
]
