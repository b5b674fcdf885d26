"""
Sweep Scheduler — one stateless pass over every active workflow instance.

Each sweep:
  1. Loads up to `batch_size` pending/processing instances, least recently
     progressed first
  2. Fails instances whose step has made no progress within its budget
  3. Resolves the next action(s) and performs them: submit a provider task,
     poll one, or advance the step
  4. Records failures on the instance (retry_count, error_message) instead of
     raising, so one bad instance never blocks the rest of the batch
  5. Sleeps briefly between instances to spread provider load

All state lives in the store. Any number of sweeps may run at once; a sweep
that loses a compare-and-set race skips that action.
"""

import logging
import random
import time
from datetime import datetime, timedelta
from typing import Any, Optional

from .. import metrics
from .context import PipelineContext
from .errors import PipelineError, ProviderError, StepTimeoutError, TaskFailedError
from .models import (
    ACTIVE_STATUSES,
    ActionKind,
    ChargeReceipt,
    FrameKind,
    InstanceStatus,
    NextAction,
    PipelineStep,
    Segment,
    StageKind,
    SweepResult,
    TaskState,
    WorkflowInstance,
)
from .pricing import generation_description
from .resolver import pending_actions, resolve, resolve_parent
from .segments import SegmentComposer, aggregate_progress, find_segment, progress_stamp
from .status import friendly_error_message, normalize_task_status

logger = logging.getLogger(__name__)

# ── Step budgets (minutes without progress before the instance fails) ──────
STEP_TIMEOUT_MINUTES = {
    PipelineStep.QUEUED: 15,
    PipelineStep.ANALYZING_INPUTS: 15,
    PipelineStep.DRAFTING_PROMPTS: 15,
    PipelineStep.GENERATING_SEGMENT_FRAMES: 15,
    PipelineStep.GENERATING_COVER: 20,
    PipelineStep.GENERATING_VIDEO: 30,
    PipelineStep.GENERATING_SEGMENT_VIDEOS: 30,
    PipelineStep.AWAITING_MERGE: 30,
    PipelineStep.MERGING: 30,
}

COVER_RESOLUTION = "2K"

# ── Progress checkpoints for the single-artifact pipeline ───────────────────
PROGRESS_ANALYZING = 5
PROGRESS_DRAFTING = 15
PROGRESS_COVER = 25
PROGRESS_VIDEO = 50
PROGRESS_VIDEO_SUBMITTED = 60
PROGRESS_VIDEO_READY = 95
PROGRESS_DONE = 100


class SweepScheduler:
    """Drives every active instance one step closer to a terminal state."""

    def __init__(self, context: PipelineContext):
        self.ctx = context
        self.composer = SegmentComposer(context)

    # ═══════════════════════════════════════════════════════════════════════
    # Sweep
    # ═══════════════════════════════════════════════════════════════════════

    async def run_sweep(self) -> SweepResult:
        """
        Process one batch of active instances.

        Returns:
            SweepResult with how many instances were processed, and how many
            reached completed / failed during this sweep.
        """
        started = time.time()
        instances = await self.ctx.store.list_due_instances(ACTIVE_STATUSES, self.ctx.settings.batch_size)
        metrics.inc_counter("sweep.runs")
        metrics.set_gauge("sweep.due_instances", len(instances))

        result = SweepResult()
        for position, instance in enumerate(instances):
            if position > 0:
                await self._pause()

            with metrics.timed("sweep.instance"):
                final_status = await self.process_instance(instance)
            result.processed += 1
            if final_status == InstanceStatus.COMPLETED:
                result.completed += 1
            elif final_status == InstanceStatus.FAILED:
                result.failed += 1

        elapsed_ms = (time.time() - started) * 1000
        metrics.record_latency("sweep", elapsed_ms)
        metrics.inc_counter("sweep.processed", result.processed)
        metrics.inc_counter("sweep.completed", result.completed)
        metrics.inc_counter("sweep.failed", result.failed)
        logger.info(
            f"Sweep done in {elapsed_ms:.0f}ms: processed={result.processed} "
            f"completed={result.completed} failed={result.failed}"
        )
        return result

    async def _pause(self):
        settings = self.ctx.settings
        delay_ms = settings.delay_ms + random.uniform(0, settings.delay_jitter_ms)
        if delay_ms > 0:
            await self.ctx.sleep(delay_ms / 1000)

    async def process_instance(self, instance: WorkflowInstance) -> Optional[InstanceStatus]:
        """
        Advance one instance. Never raises.

        If even the failure bookkeeping cannot be written (store down), the
        instance is left as it is and picked up again by a later sweep.

        Returns:
            The instance's status after processing, or None if it vanished.
        """
        try:
            return await self._process(instance)
        except Exception as e:
            logger.error(f"[{instance.id}] could not record sweep outcome, leaving for next sweep: {e}", exc_info=True)
            metrics.inc_counter("sweep.unrecorded")
            metrics.record_error("sweep", "unrecorded", str(e), instance.id)
            return instance.status

    async def _process(self, instance: WorkflowInstance) -> Optional[InstanceStatus]:
        visited_at = self.ctx.clock()
        try:
            if instance.is_segmented:
                instance = await self._advance_segmented(instance)
            else:
                self._check_timeout(instance)
                instance = await self._advance_single(instance)

            if instance is not None and not instance.is_terminal and _untouched_since(instance, visited_at):
                instance = await self._touch(instance)

        except TaskFailedError as e:
            logger.error(f"[{instance.id}] task failed: {e.message}")
            metrics.record_error("sweep", "task_failed", e.message, instance.id)
            instance = await self._fail_instance(instance, friendly_error_message(e.message))

        except StepTimeoutError as e:
            logger.error(f"[{instance.id}] {e.message} (step={instance.current_step.value})")
            metrics.record_error("sweep", "timeout", e.message, instance.id)
            instance = await self._fail_instance(instance, e.message)

        except PipelineError as e:
            logger.warning(f"[{instance.id}] {type(e).__name__}: {e.message}")
            metrics.record_error("sweep", type(e).__name__, e.message, instance.id)
            instance = await self._record_error(instance, e.message)

        except Exception as e:
            logger.error(f"[{instance.id}] unexpected error during sweep: {e}", exc_info=True)
            metrics.record_error("sweep", type(e).__name__, str(e), instance.id)
            instance = await self._record_error(instance, str(e))

        return instance.status if instance else None

    def _check_timeout(self, instance: WorkflowInstance):
        """Raise StepTimeoutError when the current step has exceeded its budget."""
        minutes = STEP_TIMEOUT_MINUTES.get(instance.current_step)
        since = instance.progress_since
        if minutes is None or since is None:
            return
        if self.ctx.clock() - since > timedelta(minutes=minutes):
            raise StepTimeoutError(minutes)

    # ═══════════════════════════════════════════════════════════════════════
    # Failure handling
    # ═══════════════════════════════════════════════════════════════════════

    async def _record_error(self, instance: WorkflowInstance, message: str) -> Optional[WorkflowInstance]:
        """Count a transient error; fail the instance once the retry cap is reached."""
        current = await self.ctx.store.get_instance(instance.id)
        if current is None or current.is_terminal:
            return current

        attempts = current.retry_count + 1
        cap = self.ctx.settings.max_retries
        if attempts >= cap:
            return await self._fail_instance(
                current, f"Failed after {attempts} attempts: {message}", retry_count=attempts
            )

        updated = await self.ctx.store.update_instance(
            current.id,
            {"retry_count": attempts, "error_message": message, **self._visit_stamp(current)},
            expect={"retry_count": current.retry_count},
        )
        logger.info(f"[{current.id}] error {attempts}/{cap} recorded, will retry next sweep")
        return updated or await self.ctx.store.get_instance(current.id)

    async def _fail_instance(
        self,
        instance: WorkflowInstance,
        message: str,
        retry_count: Optional[int] = None,
    ) -> Optional[WorkflowInstance]:
        """Mark an instance failed and refund its up-front charge exactly once."""
        current = await self.ctx.store.get_instance(instance.id)
        if current is None or current.is_terminal:
            return current

        changes: dict[str, Any] = {
            "status": InstanceStatus.FAILED,
            "current_step": PipelineStep.FAILED,
            "error_message": message,
            **self._progress_stamp(),
        }
        if retry_count is not None:
            changes["retry_count"] = retry_count

        failed = await self.ctx.store.update_instance(current.id, changes, expect={"status": current.status})
        if failed is None:
            return await self.ctx.store.get_instance(current.id)

        logger.error(f"[{failed.id}] failed: {message}")
        await self._refund_generation(failed)
        return await self.ctx.store.get_instance(failed.id)

    async def _refund_generation(self, instance: WorkflowInstance):
        if instance.credits_cost <= 0 or instance.credits_refunded:
            return

        claimed = await self.ctx.store.update_instance(
            instance.id, {"credits_refunded": True}, expect={"credits_refunded": False}
        )
        if claimed is None:
            return

        receipt = ChargeReceipt(
            transaction_id="",
            user_id=instance.owner_id,
            amount=instance.credits_cost,
            description=generation_description(instance.generation_config.video_model),
            instance_id=instance.id,
        )
        try:
            await self.ctx.ledger.refund(receipt)
        except PipelineError as e:
            # unclaimed + failed is the reconciliation marker
            await self.ctx.store.update_instance(instance.id, {"credits_refunded": False})
            logger.error(f"[{instance.id}] refund of {instance.credits_cost} credits failed: {e.message}")
            metrics.record_error("sweep", "refund_failed", e.message, instance.id)
            return

        metrics.inc_counter("credits.refunds")
        logger.info(f"[{instance.id}] refunded {instance.credits_cost} credits to {instance.owner_id}")

    async def _retry_or_raise(
        self,
        instance: WorkflowInstance,
        task_field: str,
        message: Optional[str],
        retryable: bool,
    ) -> bool:
        """Clear a failed task so it is resubmitted, or raise TaskFailedError."""
        limit = self.ctx.settings.provider_retry_limit
        if not retryable or instance.retry_count >= limit:
            raise TaskFailedError(message or "Generation failed", retryable=retryable)

        attempt = instance.retry_count + 1
        logger.warning(f"[{instance.id}] retryable provider failure ({attempt}/{limit}): {message}")
        return await self._commit(
            instance,
            {
                task_field: None,
                "retry_count": attempt,
                "error_message": f"Retrying after server error (attempt {attempt}/{limit})",
            },
            expect={task_field: getattr(instance, task_field)},
        )

    async def _commit(
        self,
        instance: WorkflowInstance,
        changes: dict[str, Any],
        expect: Optional[dict] = None,
    ) -> bool:
        """Persist a state change and stamp both clocks. False when the race was lost."""
        changes = {**changes, **self._progress_stamp()}
        updated = await self.ctx.store.update_instance(instance.id, changes, expect=expect)
        if updated is None:
            logger.info(f"[{instance.id}] concurrent update won — skipping")
            return False
        return True

    # ── Clocks ──────────────────────────────────────────────────────────────
    # last_processed_at orders the batch; last_progress_at is the timeout base.

    def _progress_stamp(self) -> dict[str, Any]:
        return progress_stamp(self.ctx.clock())

    def _visit_stamp(self, instance: WorkflowInstance) -> dict[str, Any]:
        return {"last_processed_at": self.ctx.clock(), "last_progress_at": instance.progress_since}

    async def _touch(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Mark a visit that changed nothing so the instance rotates to the back of the batch."""
        updated = await self.ctx.store.update_instance(
            instance.id, self._visit_stamp(instance), expect={"status": instance.status}
        )
        return updated or await self.ctx.store.get_instance(instance.id) or instance

    async def _complete(self, instance: WorkflowInstance, segments: Optional[list[Segment]] = None) -> bool:
        changes: dict[str, Any] = {
            "status": InstanceStatus.COMPLETED,
            "current_step": PipelineStep.COMPLETED,
            "progress_percent": PROGRESS_DONE,
            "error_message": None,
        }
        if segments:
            ordered = sorted(segments, key=lambda s: s.segment_index)
            if instance.generation_config.photo_only:
                changes["cover_image_url"] = instance.cover_image_url or ordered[0].first_frame_url
            else:
                changes["video_url"] = instance.merged_video_url or ordered[0].video_url

        done = await self._commit(instance, changes, expect={"status": instance.status})
        if done:
            logger.info(f"[{instance.id}] completed")
        return done

    # ═══════════════════════════════════════════════════════════════════════
    # Single-artifact pipeline
    # ═══════════════════════════════════════════════════════════════════════

    async def _advance_single(self, instance: WorkflowInstance) -> WorkflowInstance:
        for _ in range(self.ctx.settings.max_actions_per_instance):
            action = resolve(instance)
            if action is None:
                break

            logger.info(f"[{instance.id}] {instance.current_step.value} → {action.kind.value} ({instance.progress_percent}%)")
            changed = await self._perform_single(instance, action)
            fresh = await self.ctx.store.get_instance(instance.id)
            if fresh is None:
                break
            instance = fresh
            if not changed or instance.is_terminal:
                break
        return instance

    async def _perform_single(self, instance: WorkflowInstance, action: NextAction) -> bool:
        handlers = {
            ActionKind.BEGIN: self._begin,
            ActionKind.ANALYZE_INPUTS: self._analyze_inputs,
            ActionKind.DRAFT_PROMPTS: self._draft_prompts,
            ActionKind.SUBMIT_COVER: self._submit_cover,
            ActionKind.POLL_COVER: self._poll_cover,
            ActionKind.SUBMIT_VIDEO: self._submit_video,
            ActionKind.POLL_VIDEO: self._poll_video,
            ActionKind.COMPLETE: self._complete,
        }
        return await handlers[action.kind](instance)

    async def _begin(self, instance: WorkflowInstance) -> bool:
        # replica projects arrive with prompts already drafted
        if instance.prompts:
            step, progress = PipelineStep.GENERATING_COVER, PROGRESS_COVER
        else:
            step, progress = PipelineStep.ANALYZING_INPUTS, PROGRESS_ANALYZING
        return await self._commit(
            instance,
            {"status": InstanceStatus.PROCESSING, "current_step": step, "progress_percent": progress},
            expect={"current_step": PipelineStep.QUEUED},
        )

    async def _analyze_inputs(self, instance: WorkflowInstance) -> bool:
        analysis = await self.ctx.analyst.analyze_inputs(
            instance.input_image_urls, context={"kind": instance.kind.value}
        )
        return await self._commit(
            instance,
            {
                "analysis_result": analysis,
                "current_step": PipelineStep.DRAFTING_PROMPTS,
                "progress_percent": PROGRESS_DRAFTING,
            },
            expect={"analysis_result": None},
        )

    async def _draft_prompts(self, instance: WorkflowInstance) -> bool:
        cfg = instance.generation_config
        prompts = await self.ctx.analyst.draft_prompts(
            instance.analysis_result,
            context={"aspect_ratio": cfg.aspect_ratio, "duration": cfg.duration, "photo_only": cfg.photo_only},
        )
        return await self._commit(
            instance,
            {
                "prompts": prompts,
                "current_step": PipelineStep.GENERATING_COVER,
                "progress_percent": PROGRESS_COVER,
            },
            expect={"prompts": None},
        )

    async def _submit_cover(self, instance: WorkflowInstance) -> bool:
        cfg = instance.generation_config
        task_id = await self.ctx.image_provider.submit({
            "prompt": instance.prompts.get("cover_prompt", ""),
            "image_urls": instance.input_image_urls,
            "aspect_ratio": cfg.aspect_ratio,
            "model": cfg.image_model,
            "resolution": COVER_RESOLUTION,
        })
        logger.info(f"[{instance.id}] cover submitted: {task_id}")
        return await self._commit(instance, {"cover_task_id": task_id}, expect={"cover_task_id": None})

    async def _poll_cover(self, instance: WorkflowInstance) -> bool:
        task_id = instance.cover_task_id
        payload = await self.ctx.image_provider.poll(task_id)
        result = normalize_task_status(StageKind.IMAGE, payload)

        if result.status == TaskState.PENDING:
            return False
        if result.status == TaskState.FAILED:
            return await self._retry_or_raise(instance, "cover_task_id", result.error_message, result.retryable)
        if not result.result_url:
            raise ProviderError(f"Cover task {task_id} completed but no result URL")

        logger.info(f"[{instance.id}] cover ready")
        changes: dict[str, Any] = {"cover_image_url": result.result_url, "error_message": None}
        if instance.generation_config.photo_only:
            changes["progress_percent"] = PROGRESS_VIDEO_READY
        else:
            changes.update({"current_step": PipelineStep.GENERATING_VIDEO, "progress_percent": PROGRESS_VIDEO})
        return await self._commit(instance, changes, expect={"cover_task_id": task_id})

    async def _submit_video(self, instance: WorkflowInstance) -> bool:
        cfg = instance.generation_config
        task_id = await self.ctx.video_provider.submit({
            "prompt": instance.prompts.get("video_prompt", ""),
            "model": cfg.video_model,
            "aspect_ratio": cfg.aspect_ratio,
            "duration": cfg.duration,
            "image_urls": [instance.cover_image_url],
        })
        logger.info(f"[{instance.id}] video submitted: {task_id}")
        return await self._commit(
            instance,
            {"video_task_id": task_id, "progress_percent": PROGRESS_VIDEO_SUBMITTED},
            expect={"video_task_id": None},
        )

    async def _poll_video(self, instance: WorkflowInstance) -> bool:
        task_id = instance.video_task_id
        payload = await self.ctx.video_provider.poll(task_id, model=instance.generation_config.video_model)
        result = normalize_task_status(StageKind.VIDEO, payload)

        if result.status == TaskState.PENDING:
            return False
        if result.status == TaskState.FAILED:
            return await self._retry_or_raise(instance, "video_task_id", result.error_message, result.retryable)
        if not result.result_url:
            raise ProviderError(f"Video task {task_id} completed but no result URL")

        logger.info(f"[{instance.id}] video ready")
        return await self._commit(
            instance,
            {"video_url": result.result_url, "progress_percent": PROGRESS_VIDEO_READY, "error_message": None},
            expect={"video_task_id": task_id},
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Segmented pipeline
    # ═══════════════════════════════════════════════════════════════════════

    async def _advance_segmented(self, instance: WorkflowInstance) -> WorkflowInstance:
        segments = await self.ctx.store.list_segments(instance.id)
        if not segments:
            raise PipelineError(f"Segmented project {instance.id} has no segments")

        # idle projects are waiting on the user (approval or a failed segment)
        if pending_actions(instance, segments):
            self._check_timeout(instance)

        for _ in range(self.ctx.settings.max_actions_per_instance):
            changed, segment_error = await self._run_segment_actions(instance, segments)

            segments = await self.ctx.store.list_segments(instance.id)
            instance = await self._sync_parent(instance, segments, changed)

            parent_action = resolve_parent(instance, segments)
            if parent_action and not instance.is_terminal:
                logger.info(f"[{instance.id}] parent → {parent_action.kind.value}")
                changed = await self._perform_parent(instance, segments, parent_action) or changed
                instance = await self.ctx.store.get_instance(instance.id) or instance

            if segment_error is not None:
                raise segment_error
            if not changed or instance.is_terminal:
                break

        return instance

    async def _run_segment_actions(
        self,
        instance: WorkflowInstance,
        segments: list[Segment],
    ) -> tuple[bool, Optional[PipelineError]]:
        """Run every segment's next action; one segment's error doesn't stop the others."""
        changed = False
        first_error: Optional[PipelineError] = None

        for action in pending_actions(instance, segments):
            if action.segment_index is None:
                continue
            segment = find_segment(segments, action.segment_index)
            try:
                if await self._perform_segment(instance, segment, segments, action):
                    changed = True
                    segments = await self.ctx.store.list_segments(instance.id)
            except PipelineError as e:
                logger.warning(f"[{instance.id}] segment {action.segment_index} {action.kind.value}: {e.message}")
                first_error = first_error or e

        return changed, first_error

    async def _perform_segment(
        self,
        instance: WorkflowInstance,
        segment: Segment,
        segments: list[Segment],
        action: NextAction,
    ) -> bool:
        kind = action.kind
        if kind == ActionKind.SUBMIT_FIRST_FRAME:
            return await self.composer.start_frame(instance, segment, segments, FrameKind.FIRST) is not None
        if kind == ActionKind.POLL_FIRST_FRAME:
            return await self.composer.poll_frame(instance, segment, FrameKind.FIRST)
        if kind == ActionKind.SUBMIT_CLOSING_FRAME:
            return await self.composer.start_frame(instance, segment, segments, FrameKind.CLOSING) is not None
        if kind == ActionKind.POLL_CLOSING_FRAME:
            return await self.composer.poll_frame(instance, segment, FrameKind.CLOSING)
        if kind == ActionKind.SUBMIT_SEGMENT_VIDEO:
            return await self.composer.start_video(instance, segment, segments) is not None
        if kind == ActionKind.POLL_SEGMENT_VIDEO:
            return await self.composer.poll_video(instance, segment, segments)
        raise PipelineError(f"Unexpected segment action {kind.value}")

    async def _sync_parent(
        self,
        instance: WorkflowInstance,
        segments: list[Segment],
        changed: bool,
    ) -> WorkflowInstance:
        """Roll segment progress up into the parent's step, progress and segment_status."""
        if not changed and instance.status != InstanceStatus.PENDING:
            return instance

        changes = aggregate_progress(instance, segments)
        changes["status"] = InstanceStatus.PROCESSING
        changes.update(self._progress_stamp())
        updated = await self.ctx.store.update_instance(instance.id, changes, expect={"status": instance.status})
        return updated or await self.ctx.store.get_instance(instance.id) or instance

    async def _perform_parent(
        self,
        instance: WorkflowInstance,
        segments: list[Segment],
        action: NextAction,
    ) -> bool:
        if action.kind == ActionKind.COMPLETE:
            return await self._complete(instance, segments)
        if action.kind == ActionKind.SUBMIT_MERGE:
            return await self.composer.start_merge(instance, segments) is not None
        if action.kind == ActionKind.POLL_MERGE:
            return await self._poll_merge(instance)
        raise PipelineError(f"Unexpected parent action {action.kind.value}")

    async def _poll_merge(self, instance: WorkflowInstance) -> bool:
        task_id = instance.merge_task_id
        payload = await self.ctx.merge_provider.poll(task_id)
        result = normalize_task_status(StageKind.MERGE, payload)

        if result.status == TaskState.PENDING:
            return False
        if result.status == TaskState.FAILED:
            return await self._retry_or_raise(instance, "merge_task_id", result.error_message, result.retryable)
        if not result.result_url:
            raise ProviderError(f"Merge task {task_id} completed but no result URL")

        logger.info(f"[{instance.id}] merge ready")
        return await self._commit(
            instance,
            {"merged_video_url": result.result_url, "video_url": result.result_url},
            expect={"merge_task_id": task_id},
        )


def _untouched_since(instance: WorkflowInstance, visited_at: datetime) -> bool:
    return instance.last_processed_at is None or instance.last_processed_at < visited_at
