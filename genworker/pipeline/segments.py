"""
Segment Composition Manager.

A segmented project fans out into N ordered segments, each with its own
sub-pipeline:
  pending_first_frame → generating_first_frame → first_frame_ready
      → (user approval) → generating_video → video_ready
and fans back in through the merge gate once every clip exists.

Rules:
  - A continuation segment cannot render its first frame before its
    predecessor's first frame exists (ConflictError otherwise).
  - A video needs its own first frame; the closing frame falls back to the
    next segment's first frame, else the provider runs in single-frame mode.
  - Regenerating segment i never touches segment j's artifacts, and a stage
    already in flight rejects a second request with ConflictError.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from .context import PipelineContext
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from .models import (
    FrameKind,
    InstanceStatus,
    PipelineStep,
    RegenerateMode,
    RegenerateSegmentRequest,
    Segment,
    SegmentStatus,
    SegmentStatusResponse,
    StageKind,
    TaskState,
    WorkflowInstance,
)
from .pricing import replica_photo_credits, segment_video_credits
from .resolver import awaiting_predecessor, merge_gate
from .status import friendly_error_message, normalize_task_status

logger = logging.getLogger(__name__)

FRAME_RESOLUTION = "1K"
FRAME_PROGRESS_START = 25
VIDEO_PROGRESS_START = 70
AWAITING_MERGE_PROGRESS = 95

FRAME_FIELDS = {
    FrameKind.FIRST: ("first_frame_task_id", "first_frame_url"),
    FrameKind.CLOSING: ("closing_frame_task_id", "closing_frame_url"),
}


# ── Pure helpers ─────────────────────────────────────────────────────────────

def find_segment(segments: list[Segment], index: int) -> Optional[Segment]:
    return next((s for s in segments if s.segment_index == index), None)


def progress_stamp(now: datetime) -> dict[str, datetime]:
    """Columns written whenever an instance actually moves forward."""
    return {"last_processed_at": now, "last_progress_at": now}


def closing_frame_for(segment: Segment, segments: list[Segment]) -> Optional[str]:
    """Own closing frame, else the next segment's first frame, else None."""
    if segment.closing_frame_url:
        return segment.closing_frame_url
    following = find_segment(segments, segment.segment_index + 1)
    return following.first_frame_url if following else None


def frame_prompt(segment: Segment, kind: FrameKind) -> str:
    prompt = segment.prompt or {}
    description = (
        prompt.get(f"{kind.value}_frame_description")
        or prompt.get("description")
        or f"Opening shot of scene {segment.segment_index + 1}"
    )
    details = [
        description,
        f"Subject: {prompt['subject']}" if prompt.get("subject") else None,
        f"Style: {prompt['style']}" if prompt.get("style") else None,
        f"Environment: {prompt['setting']}" if prompt.get("setting") else None,
    ]
    if kind == FrameKind.FIRST and segment.is_continuation_from_prev and segment.segment_index > 0:
        details.append("Continue seamlessly from the reference frame: same subject, wardrobe and lighting.")
    return "\n".join(d for d in details if d)


def video_prompt(segment: Segment) -> str:
    prompt = segment.prompt or {}
    if prompt.get("video_prompt"):
        return prompt["video_prompt"]
    lines = [
        f"Action: {prompt['action']}" if prompt.get("action") else None,
        f"Subject: {prompt['subject']}" if prompt.get("subject") else None,
        f"Style: {prompt['style']}" if prompt.get("style") else None,
        f"Dialogue: {prompt['dialogue']}" if prompt.get("dialogue") else None,
    ]
    return "\n".join(line for line in lines if line) or f"Segment {segment.segment_index + 1} commercial beat"


def segment_status_summary(segments: list[Segment], merged_video_url: Optional[str] = None) -> dict[str, Any]:
    """Compact per-segment status stored on the parent instance."""
    return {
        "total": len(segments),
        "frames_ready": sum(1 for s in segments if s.first_frame_url),
        "videos_ready": sum(1 for s in segments if s.video_url),
        "failed": sum(1 for s in segments if s.status == SegmentStatus.FAILED),
        "merged_video_url": merged_video_url,
        "segments": [
            {
                "index": s.segment_index,
                "status": s.status.value,
                "first_frame_url": s.first_frame_url,
                "video_url": s.video_url,
                "error_message": s.error_message,
            }
            for s in segments
        ],
    }


def aggregate_progress(instance: WorkflowInstance, segments: list[Segment]) -> dict[str, Any]:
    """Parent step and progress derived from its segments."""
    total = len(segments) or 1
    frames_ready = sum(1 for s in segments if s.first_frame_url)
    videos_ready = sum(1 for s in segments if s.video_url)
    photo_only = instance.generation_config.photo_only

    if frames_ready < total:
        span = (AWAITING_MERGE_PROGRESS if photo_only else VIDEO_PROGRESS_START) - FRAME_PROGRESS_START
        step = PipelineStep.GENERATING_SEGMENT_FRAMES
        progress = FRAME_PROGRESS_START + round(frames_ready / total * span)
    elif photo_only:
        step = PipelineStep.AWAITING_MERGE
        progress = AWAITING_MERGE_PROGRESS
    elif videos_ready < total:
        step = PipelineStep.GENERATING_SEGMENT_VIDEOS
        span = AWAITING_MERGE_PROGRESS - VIDEO_PROGRESS_START
        progress = VIDEO_PROGRESS_START + round(videos_ready / total * span)
    elif instance.merge_task_id:
        step = PipelineStep.MERGING
        progress = AWAITING_MERGE_PROGRESS
    else:
        step = PipelineStep.AWAITING_MERGE
        progress = AWAITING_MERGE_PROGRESS

    return {
        "current_step": step,
        "progress_percent": progress,
        "segment_status": segment_status_summary(segments, instance.merged_video_url),
    }


# ── Composer ─────────────────────────────────────────────────────────────────

class SegmentComposer:
    """Drives the N-segment fan-out / fan-in of a segmented project."""

    def __init__(self, context: PipelineContext):
        self.ctx = context

    # ── Submission ───────────────────────────────────────────────────────

    async def submit_frame(
        self,
        instance: WorkflowInstance,
        segment: Segment,
        segments: list[Segment],
        kind: FrameKind = FrameKind.FIRST,
    ) -> str:
        """Submit a frame task without persisting it. Returns the task id."""
        references = list(instance.input_image_urls)

        if kind == FrameKind.FIRST and segment.is_continuation_from_prev and segment.segment_index > 0:
            if awaiting_predecessor(segment, segments):
                raise ConflictError(
                    f"Segment {segment.segment_index} continues from segment {segment.segment_index - 1}, "
                    f"whose first frame is not ready yet"
                )
            previous = find_segment(segments, segment.segment_index - 1)
            references.insert(0, previous.first_frame_url)

        cfg = instance.generation_config
        task_id = await self.ctx.image_provider.submit({
            "prompt": frame_prompt(segment, kind),
            "image_urls": references,
            "aspect_ratio": cfg.aspect_ratio,
            "model": cfg.image_model,
            "resolution": FRAME_RESOLUTION,
        })
        logger.info(f"[{instance.id}] segment {segment.segment_index} {kind.value} frame submitted: {task_id}")
        return task_id

    async def start_frame(
        self,
        instance: WorkflowInstance,
        segment: Segment,
        segments: list[Segment],
        kind: FrameKind = FrameKind.FIRST,
    ) -> Optional[Segment]:
        """Submit a frame task and claim the segment's task field. None if a racing sweep won."""
        task_field, url_field = FRAME_FIELDS[kind]
        task_id = await self.submit_frame(instance, segment, segments, kind)

        changes: dict[str, Any] = {task_field: task_id, url_field: None}
        if kind == FrameKind.FIRST:
            changes["status"] = SegmentStatus.GENERATING_FIRST_FRAME
            changes["error_message"] = None

        updated = await self.ctx.store.update_segment(segment.id, changes, expect={task_field: None, url_field: None})
        if updated is None:
            logger.warning(f"[{instance.id}] segment {segment.segment_index} {kind.value} frame already claimed — dropping {task_id}")
        return updated

    async def submit_video(
        self,
        instance: WorkflowInstance,
        segment: Segment,
        segments: list[Segment],
    ) -> str:
        """Submit a clip task without persisting it. Returns the task id."""
        if not segment.first_frame_url:
            raise ValidationError(
                f"Segment {segment.segment_index} has no first frame. "
                f"Regenerate the first frame before generating its video."
            )

        closing_url = closing_frame_for(segment, segments)
        image_urls = [segment.first_frame_url] + ([closing_url] if closing_url else [])
        cfg = instance.generation_config

        task_id = await self.ctx.video_provider.submit({
            "prompt": video_prompt(segment),
            "model": cfg.video_model,
            "aspect_ratio": cfg.aspect_ratio,
            "duration": cfg.duration,
            "image_urls": image_urls,
        })
        mode = "first+closing" if closing_url else "single-frame"
        logger.info(f"[{instance.id}] segment {segment.segment_index} video submitted ({mode}): {task_id}")
        return task_id

    async def start_video(
        self,
        instance: WorkflowInstance,
        segment: Segment,
        segments: list[Segment],
    ) -> Optional[Segment]:
        """Submit a clip task and claim video_task_id. None if a racing sweep won."""
        task_id = await self.submit_video(instance, segment, segments)
        updated = await self.ctx.store.update_segment(
            segment.id,
            {"video_task_id": task_id, "status": SegmentStatus.GENERATING_VIDEO},
            expect={"video_task_id": None, "video_url": None},
        )
        if updated is None:
            logger.warning(f"[{instance.id}] segment {segment.segment_index} video already claimed — dropping {task_id}")
        return updated

    # ── Polling ──────────────────────────────────────────────────────────

    async def poll_frame(self, instance: WorkflowInstance, segment: Segment, kind: FrameKind) -> bool:
        """Check a frame task. Returns True when the segment changed."""
        task_field, url_field = FRAME_FIELDS[kind]
        task_id = getattr(segment, task_field)

        payload = await self.ctx.image_provider.poll(task_id)
        result = normalize_task_status(StageKind.IMAGE, payload)

        if result.status == TaskState.PENDING:
            return False

        if result.status == TaskState.SUCCESS:
            if not result.result_url:
                raise ProviderError(f"Frame task {task_id} completed without an image URL")
            changes: dict[str, Any] = {url_field: result.result_url}
            if kind == FrameKind.FIRST:
                changes["status"] = SegmentStatus.FIRST_FRAME_READY
            updated = await self.ctx.store.update_segment(segment.id, changes, expect={task_field: task_id})
            if updated:
                logger.info(f"[{instance.id}] segment {segment.segment_index} {kind.value} frame ready")
            return updated is not None

        message = friendly_error_message(result.error_message, f"{kind.value.capitalize()} frame generation failed")
        updated = await self.ctx.store.update_segment(
            segment.id,
            {"status": SegmentStatus.FAILED, "error_message": message},
            expect={task_field: task_id},
        )
        logger.error(f"[{instance.id}] segment {segment.segment_index} {kind.value} frame failed: {message}")
        return updated is not None

    async def poll_video(self, instance: WorkflowInstance, segment: Segment, segments: list[Segment]) -> bool:
        """Check a clip task, resubmitting retryable provider failures. True when the segment changed."""
        task_id = segment.video_task_id
        payload = await self.ctx.video_provider.poll(task_id, model=instance.generation_config.video_model)
        result = normalize_task_status(StageKind.VIDEO, payload)

        if result.status == TaskState.PENDING:
            return False

        if result.status == TaskState.SUCCESS:
            if not result.result_url:
                raise ProviderError(f"Video task {task_id} completed without a video URL")
            updated = await self.ctx.store.update_segment(
                segment.id,
                {"video_url": result.result_url, "status": SegmentStatus.VIDEO_READY},
                expect={"video_task_id": task_id},
            )
            if updated:
                logger.info(f"[{instance.id}] segment {segment.segment_index} video ready")
            return updated is not None

        limit = self.ctx.settings.provider_retry_limit
        if result.retryable and segment.retry_count < limit:
            attempt = segment.retry_count + 1
            logger.warning(
                f"[{instance.id}] segment {segment.segment_index} retryable failure "
                f"({attempt}/{limit}): {result.error_message} — resubmitting"
            )
            new_task_id = await self.submit_video(instance, segment, segments)
            updated = await self.ctx.store.update_segment(
                segment.id,
                {
                    "video_task_id": new_task_id,
                    "status": SegmentStatus.GENERATING_VIDEO,
                    "retry_count": attempt,
                    "error_message": f"Retrying after server error (attempt {attempt}/{limit})",
                },
                expect={"video_task_id": task_id},
            )
            return updated is not None

        message = friendly_error_message(result.error_message, "Segment video generation failed")
        updated = await self.ctx.store.update_segment(
            segment.id,
            {"status": SegmentStatus.FAILED, "error_message": message, "video_task_id": None},
            expect={"video_task_id": task_id},
        )
        logger.error(f"[{instance.id}] segment {segment.segment_index} video failed: {message}")
        return updated is not None

    # ── Merge ────────────────────────────────────────────────────────────

    async def start_merge(self, instance: WorkflowInstance, segments: list[Segment]) -> Optional[WorkflowInstance]:
        if not merge_gate(segments, instance.generation_config.photo_only):
            raise ValidationError("Every segment needs a video before merging")

        ordered = sorted(segments, key=lambda s: s.segment_index)
        task_id = await self.ctx.merge_provider.submit({
            "video_urls": [s.video_url for s in ordered],
            "aspect_ratio": instance.generation_config.aspect_ratio,
        })
        updated = await self.ctx.store.update_instance(
            instance.id,
            {"merge_task_id": task_id, "current_step": PipelineStep.MERGING, **progress_stamp(self.ctx.clock())},
            expect={"merge_task_id": None},
        )
        if updated is None:
            logger.warning(f"[{instance.id}] merge already claimed — dropping {task_id}")
        else:
            logger.info(f"[{instance.id}] merge submitted: {task_id}")
        return updated

    # ── User-facing operations ───────────────────────────────────────────

    async def _load_owned(self, instance_id: str, user_id: str) -> tuple[WorkflowInstance, list[Segment]]:
        instance = await self.ctx.store.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Project not found")
        if instance.owner_id != user_id:
            raise ForbiddenError("You don't own this project")
        if not instance.is_segmented:
            raise ValidationError("Segment editing is only available for segmented projects")
        return instance, await self.ctx.store.list_segments(instance_id)

    async def regenerate_segment(
        self,
        instance_id: str,
        segment_index: int,
        request: RegenerateSegmentRequest,
    ) -> SegmentStatusResponse:
        """
        PATCH /projects/{id}/segments/{index}

        1. Verify ownership and that the requested stage is not already in flight
        2. Reject continuation segments whose predecessor frame is missing
        3. Reject video-only requests without a first frame (before any charge)
        4. Charge photo / video credits, submit tasks, persist the segment
        5. Any failure after a charge refunds every charge before re-raising

        Raises:
            NotFoundError, ForbiddenError, ValidationError, ConflictError,
            InsufficientCreditsError, ProviderError, PersistenceError
        """
        instance, segments = await self._load_owned(instance_id, request.user_id)
        segment = find_segment(segments, segment_index)
        if segment is None:
            raise NotFoundError(f"Segment {segment_index} not found")

        regenerate_photo = request.regenerate_photo
        regenerate_video = request.regenerate_video

        if regenerate_photo and segment.status == SegmentStatus.GENERATING_FIRST_FRAME:
            raise ConflictError("First frame regeneration already in progress. Please wait until it completes.")
        video_in_flight = segment.status == SegmentStatus.GENERATING_VIDEO or (
            segment.video_task_id is not None and not segment.video_url
        )
        if regenerate_video and video_in_flight:
            raise ConflictError("Video regeneration already running. Please wait until the current job finishes.")
        if request.regenerate != RegenerateMode.NONE and awaiting_predecessor(segment, segments):
            raise ConflictError(
                "Previous segment frame not ready. Wait for the previous segment to finish "
                "before regenerating this continuation segment."
            )
        if regenerate_video and not regenerate_photo and not segment.first_frame_url:
            raise ValidationError(
                "First frame missing. Please regenerate the first frame before regenerating the video."
            )

        working = segment.model_copy(update={"prompt": {**segment.prompt, **(request.prompt or {})}})
        cfg = instance.generation_config
        is_last = segment_index == max(s.segment_index for s in segments)
        changes: dict[str, Any] = {"prompt": working.prompt}

        async with self.ctx.ledger.compensating() as batch:
            if regenerate_photo:
                await batch.charge(
                    request.user_id,
                    replica_photo_credits(),
                    "Segment first frame regeneration",
                    instance.id,
                )
                changes.update({
                    "first_frame_task_id": await self.submit_frame(instance, working, segments, FrameKind.FIRST),
                    "first_frame_url": None,
                    "status": SegmentStatus.GENERATING_FIRST_FRAME,
                    "error_message": None,
                })
                # a video rendered from the old frame no longer matches it
                if segment.video_task_id or segment.video_url:
                    changes.update({"video_task_id": None, "video_url": None})
                if is_last and not cfg.photo_only:
                    changes.update({
                        "closing_frame_task_id": await self.submit_frame(instance, working, segments, FrameKind.CLOSING),
                        "closing_frame_url": None,
                    })

            if regenerate_video:
                await batch.charge(
                    request.user_id,
                    segment_video_credits(cfg.video_model, cfg.duration * len(segments), cfg.quality, len(segments)),
                    f"Segment video regeneration ({cfg.video_model.upper()})",
                    instance.id,
                )
                changes.update({"video_url": None, "video_task_id": None, "retry_count": 0, "error_message": None})
                if not regenerate_photo:
                    changes["video_task_id"] = await self.submit_video(instance, working, segments)
                    changes["status"] = SegmentStatus.GENERATING_VIDEO

            updated = await self.ctx.store.update_segment(segment.id, changes, expect={"status": segment.status})
            if updated is None:
                raise ConflictError("Segment changed while regenerating. Please retry.")

        segments = [updated if s.id == updated.id else s for s in segments]
        video_dropped = regenerate_video or bool(segment.video_task_id or segment.video_url)
        await self._refresh_parent(instance, segments, reopen=request.regenerate != RegenerateMode.NONE,
                                   invalidate_merge=video_dropped)

        logger.info(f"[{instance.id}] segment {segment_index} regenerate={request.regenerate.value} (charged {batch.total})")
        return SegmentStatusResponse(
            segment=updated,
            segment_status=segment_status_summary(segments, instance.merged_video_url),
        )

    async def approve_segment_video(self, instance_id: str, segment_index: int, user_id: str) -> SegmentStatusResponse:
        """Mark a segment's first frame as reviewed so the sweep may start its video."""
        instance, segments = await self._load_owned(instance_id, user_id)
        segment = find_segment(segments, segment_index)
        if segment is None:
            raise NotFoundError(f"Segment {segment_index} not found")
        if instance.generation_config.photo_only:
            raise ValidationError("Photo-only projects have no video stage")

        updated = await self.ctx.store.update_segment(segment.id, {"video_generation_approved": True})
        if updated is None:
            raise NotFoundError(f"Segment {segment_index} not found")

        segments = [updated if s.id == updated.id else s for s in segments]
        # restarts the step budget; the project may have idled for hours awaiting review
        if not instance.is_terminal:
            await self._refresh_parent(instance, segments)
        logger.info(f"[{instance.id}] segment {segment_index} video approved")
        return SegmentStatusResponse(
            segment=updated,
            segment_status=segment_status_summary(segments, instance.merged_video_url),
        )

    async def _refresh_parent(
        self,
        instance: WorkflowInstance,
        segments: list[Segment],
        reopen: bool = False,
        invalidate_merge: bool = False,
    ) -> Optional[WorkflowInstance]:
        changes = aggregate_progress(instance, segments)
        changes.update(progress_stamp(self.ctx.clock()))

        if invalidate_merge:
            changes.update({"merge_task_id": None, "merged_video_url": None, "video_url": None})
        if reopen and instance.status != InstanceStatus.PROCESSING:
            changes.update({"status": InstanceStatus.PROCESSING, "error_message": None, "retry_count": 0})

        return await self.ctx.store.update_instance(instance.id, changes)
