"""
Pydantic models and enums for the generation pipeline orchestrator.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return str(uuid4())


# ── Workflow Status ──────────────────────────────────────────────────────────

class InstanceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (InstanceStatus.PENDING, InstanceStatus.PROCESSING)
TERMINAL_STATUSES = (InstanceStatus.COMPLETED, InstanceStatus.FAILED)


class WorkflowKind(str, Enum):
    SINGLE = "single"
    SEGMENTED = "segmented"
    CHARACTER = "character"
    COMPETITOR_REPLICA = "competitor-replica"


class PipelineStep(str, Enum):
    QUEUED = "queued"
    ANALYZING_INPUTS = "analyzing_inputs"
    DRAFTING_PROMPTS = "drafting_prompts"
    GENERATING_COVER = "generating_cover"
    GENERATING_VIDEO = "generating_video"
    GENERATING_SEGMENT_FRAMES = "generating_segment_frames"
    GENERATING_SEGMENT_VIDEOS = "generating_segment_videos"
    AWAITING_MERGE = "awaiting_merge"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Segment Status ───────────────────────────────────────────────────────────

class SegmentStatus(str, Enum):
    PENDING_FIRST_FRAME = "pending_first_frame"
    AWAITING_PREV_FIRST_FRAME = "awaiting_prev_first_frame"
    GENERATING_FIRST_FRAME = "generating_first_frame"
    FIRST_FRAME_READY = "first_frame_ready"
    GENERATING_VIDEO = "generating_video"
    VIDEO_READY = "video_ready"
    FAILED = "failed"


class FrameKind(str, Enum):
    FIRST = "first"
    CLOSING = "closing"


# ── External Tasks ───────────────────────────────────────────────────────────

class StageKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    MERGE = "merge"


class TaskState(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TaskResult(BaseModel):
    """Canonical status of an external task, whatever the provider."""
    status: TaskState = TaskState.PENDING
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


# ── Generation Config ────────────────────────────────────────────────────────

class GenerationConfig(BaseModel):
    image_model: str = "nano_banana_pro"
    video_model: str = "veo3_fast"
    aspect_ratio: str = "9:16"  # 9:16, 16:9
    quality: str = "standard"  # standard, high
    duration: int = 8  # seconds
    segment_count: int = 1
    photo_only: bool = False


# ── Workflow Instance ────────────────────────────────────────────────────────

class WorkflowInstance(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    kind: WorkflowKind = WorkflowKind.SINGLE
    status: InstanceStatus = InstanceStatus.PENDING
    current_step: PipelineStep = PipelineStep.QUEUED
    progress_percent: int = 0
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)

    input_image_urls: list[str] = Field(default_factory=list)
    analysis_result: Optional[dict[str, Any]] = None
    prompts: Optional[dict[str, Any]] = None

    cover_task_id: Optional[str] = None
    video_task_id: Optional[str] = None
    merge_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    video_url: Optional[str] = None
    merged_video_url: Optional[str] = None
    segment_status: Optional[dict[str, Any]] = None

    credits_cost: int = 0
    credits_refunded: bool = False
    download_credits_used: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None  # every sweep visit
    last_progress_at: Optional[datetime] = None   # last state change; timeout base

    @property
    def progress_since(self) -> Optional[datetime]:
        return self.last_progress_at or self.last_processed_at or self.created_at

    @property
    def is_segmented(self) -> bool:
        return self.kind == WorkflowKind.SEGMENTED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Segment(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    segment_index: int
    prompt: dict[str, Any] = Field(default_factory=dict)  # structured scene description

    first_frame_task_id: Optional[str] = None
    first_frame_url: Optional[str] = None
    closing_frame_task_id: Optional[str] = None
    closing_frame_url: Optional[str] = None
    video_task_id: Optional[str] = None
    video_url: Optional[str] = None

    status: SegmentStatus = SegmentStatus.PENDING_FIRST_FRAME
    retry_count: int = 0
    error_message: Optional[str] = None
    video_generation_approved: bool = False
    is_continuation_from_prev: bool = False

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── Credit Ledger ────────────────────────────────────────────────────────────

class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"


class CreditTransaction(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    type: TransactionType
    amount: int  # usage is stored negative
    description: str
    linked_instance_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ChargeReceipt(BaseModel):
    """Handle for a completed charge, used to refund it later."""
    transaction_id: str
    user_id: str
    amount: int
    description: str
    instance_id: Optional[str] = None


# ── Step Resolution ──────────────────────────────────────────────────────────

class ActionKind(str, Enum):
    BEGIN = "begin"
    ANALYZE_INPUTS = "analyze_inputs"
    DRAFT_PROMPTS = "draft_prompts"
    SUBMIT_COVER = "submit_cover"
    POLL_COVER = "poll_cover"
    SUBMIT_VIDEO = "submit_video"
    POLL_VIDEO = "poll_video"
    SUBMIT_FIRST_FRAME = "submit_first_frame"
    POLL_FIRST_FRAME = "poll_first_frame"
    SUBMIT_CLOSING_FRAME = "submit_closing_frame"
    POLL_CLOSING_FRAME = "poll_closing_frame"
    SUBMIT_SEGMENT_VIDEO = "submit_segment_video"
    POLL_SEGMENT_VIDEO = "poll_segment_video"
    SUBMIT_MERGE = "submit_merge"
    POLL_MERGE = "poll_merge"
    COMPLETE = "complete"


class NextAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    stage: Optional[StageKind] = None
    segment_index: Optional[int] = None
    task_id: Optional[str] = None


class SweepResult(BaseModel):
    processed: int = 0
    completed: int = 0
    failed: int = 0


# ── API Request / Response Models ────────────────────────────────────────────

class RegenerateMode(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    BOTH = "both"
    NONE = "none"


class RegenerateSegmentRequest(BaseModel):
    """Regenerate one segment's first frame, its video, or both."""
    user_id: str
    regenerate: RegenerateMode = RegenerateMode.NONE
    prompt: Optional[dict[str, Any]] = Field(
        None,
        description="Partial prompt fields merged over the stored segment prompt",
    )

    @property
    def regenerate_photo(self) -> bool:
        return self.regenerate in (RegenerateMode.PHOTO, RegenerateMode.BOTH)

    @property
    def regenerate_video(self) -> bool:
        return self.regenerate in (RegenerateMode.VIDEO, RegenerateMode.BOTH)


class SegmentStatusResponse(BaseModel):
    segment: Segment
    segment_status: dict[str, Any] = Field(default_factory=dict)


class ProjectCreateRequest(BaseModel):
    """Create a workflow instance; paid models are charged up front."""
    user_id: str
    kind: WorkflowKind = WorkflowKind.SINGLE
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)
    input_image_urls: list[str] = Field(default_factory=list)
    prompts: Optional[dict[str, Any]] = None
    segment_prompts: list[dict[str, Any]] = Field(
        default_factory=list,
        description="One structured prompt per segment (segmented kind only)",
    )
    auto_approve_videos: bool = False


class ApproveSegmentRequest(BaseModel):
    user_id: str


class DownloadRequest(BaseModel):
    user_id: str


class ProjectResponse(BaseModel):
    instance: WorkflowInstance
    segments: list[Segment] = Field(default_factory=list)


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int


class DownloadResponse(BaseModel):
    video_url: str
    credits_charged: int = 0
