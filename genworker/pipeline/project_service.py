"""
Project lifecycle outside the sweep: creation with the up-front credit
charge, owner-scoped reads, and the one-time download charge.
"""

import logging

from .context import PipelineContext
from .errors import ForbiddenError, NotFoundError, PipelineError, ValidationError
from .models import (
    DownloadResponse,
    InstanceStatus,
    PipelineStep,
    ProjectCreateRequest,
    ProjectResponse,
    Segment,
    WorkflowInstance,
    WorkflowKind,
)
from .pricing import download_cost, generation_cost, generation_description

logger = logging.getLogger(__name__)

MAX_SEGMENTS = 10


def _is_continuation(prompt: dict, index: int) -> bool:
    if index == 0:
        return False
    return bool(prompt.get("is_continuation_from_prev") or prompt.get("continue_from_previous"))


class ProjectService:
    def __init__(self, context: PipelineContext):
        self.ctx = context

    def _validate(self, request: ProjectCreateRequest):
        kind = request.kind
        if kind == WorkflowKind.SEGMENTED:
            if not request.segment_prompts:
                raise ValidationError("Segmented projects need at least one segment prompt")
            if len(request.segment_prompts) > MAX_SEGMENTS:
                raise ValidationError(f"At most {MAX_SEGMENTS} segments per project")
            return

        if kind == WorkflowKind.COMPETITOR_REPLICA:
            prompts = request.prompts or {}
            if not prompts.get("cover_prompt") or not prompts.get("video_prompt"):
                raise ValidationError("Replica projects need both cover_prompt and video_prompt")
            return

        if not request.input_image_urls and not request.prompts:
            raise ValidationError("Provide input images or prompts")

    async def create_instance(self, request: ProjectCreateRequest) -> ProjectResponse:
        """
        Create a workflow instance and charge paid models up front.

        The charge and the inserts run under one compensating scope, so a
        failed insert leaves the user's balance untouched.

        Raises:
            ValidationError, InsufficientCreditsError, PersistenceError
        """
        self._validate(request)

        cfg = request.generation_config.model_copy()
        segmented = request.kind == WorkflowKind.SEGMENTED
        if segmented:
            cfg.segment_count = len(request.segment_prompts)

        total_duration = cfg.duration * cfg.segment_count if segmented else cfg.duration
        cost = 0 if cfg.photo_only else generation_cost(cfg.video_model, total_duration, cfg.quality)

        instance = WorkflowInstance(
            owner_id=request.user_id,
            kind=request.kind,
            generation_config=cfg,
            input_image_urls=request.input_image_urls,
            prompts=request.prompts,
            credits_cost=cost,
        )

        async with self.ctx.ledger.compensating() as batch:
            await batch.charge(request.user_id, cost, generation_description(cfg.video_model), instance.id)
            stored = await self.ctx.store.insert_instance(instance)

            segments: list[Segment] = []
            if segmented:
                try:
                    segments = await self.ctx.store.insert_segments([
                        Segment(
                            project_id=stored.id,
                            segment_index=index,
                            prompt=prompt,
                            is_continuation_from_prev=_is_continuation(prompt, index),
                            video_generation_approved=request.auto_approve_videos,
                        )
                        for index, prompt in enumerate(request.segment_prompts)
                    ])
                except PipelineError:
                    # the charge is refunded by the enclosing scope
                    await self.ctx.store.update_instance(stored.id, {
                        "status": InstanceStatus.FAILED,
                        "current_step": PipelineStep.FAILED,
                        "error_message": "Project setup failed",
                        "credits_refunded": True,
                    })
                    raise

        logger.info(
            f"[{stored.id}] created {stored.kind.value} project for {request.user_id} "
            f"(model={cfg.video_model}, segments={len(segments)}, charged={cost})"
        )
        return ProjectResponse(instance=stored, segments=segments)

    async def _load_owned(self, instance_id: str, user_id: str) -> WorkflowInstance:
        instance = await self.ctx.store.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Project not found")
        if instance.owner_id != user_id:
            raise ForbiddenError("You don't own this project")
        return instance

    async def get_project(self, instance_id: str, user_id: str) -> ProjectResponse:
        instance = await self._load_owned(instance_id, user_id)
        segments = await self.ctx.store.list_segments(instance_id) if instance.is_segmented else []
        return ProjectResponse(instance=instance, segments=segments)

    async def record_download(self, instance_id: str, user_id: str) -> DownloadResponse:
        """
        Charge free-generation models on first download.

        The first download claims `download_credits_used`; later downloads of
        the same video, and downloads racing the first one, are free.
        """
        instance = await self._load_owned(instance_id, user_id)
        if instance.status != InstanceStatus.COMPLETED or not instance.video_url:
            raise ValidationError("Video is not ready for download yet")

        cfg = instance.generation_config
        cost = download_cost(cfg.video_model, cfg.duration, cfg.segment_count)
        if cost <= 0 or instance.download_credits_used > 0:
            return DownloadResponse(video_url=instance.video_url)

        async with self.ctx.ledger.compensating() as batch:
            receipt = await batch.charge(user_id, cost, f"Video download ({cfg.video_model.upper()})", instance.id)
            claimed = await self.ctx.store.update_instance(
                instance.id, {"download_credits_used": cost}, expect={"download_credits_used": 0}
            )

        if claimed is None:
            logger.info(f"[{instance.id}] download already charged by a concurrent request — refunding")
            await self.ctx.ledger.refund(receipt)
            return DownloadResponse(video_url=instance.video_url)

        logger.info(f"[{instance.id}] download charged {cost} credits to {user_id}")
        return DownloadResponse(video_url=instance.video_url, credits_charged=cost)
