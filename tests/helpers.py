"""Test helpers for seeding instances and segments."""

from typing import Optional

from genworker.pipeline.models import (
    GenerationConfig,
    InstanceStatus,
    PipelineStep,
    Segment,
    SegmentStatus,
    WorkflowInstance,
    WorkflowKind,
)
from genworker.pipeline.store import InMemoryStore


async def create_segmented_project(
    store: InMemoryStore,
    segment_count: int = 3,
    owner_id: str = "u1",
    video_model: str = "veo3_fast",
    continuations: tuple = (),
    approved: bool = False,
    photo_only: bool = False,
    **instance_fields,
) -> tuple[WorkflowInstance, list[Segment]]:
    """Insert a processing segmented project with fresh segments.

    Args:
        continuations: Segment indices marked as continuing from their predecessor.
        approved: Pre-approve every segment for video generation.
    """
    fields = dict(
        owner_id=owner_id,
        kind=WorkflowKind.SEGMENTED,
        status=InstanceStatus.PROCESSING,
        current_step=PipelineStep.GENERATING_SEGMENT_FRAMES,
        generation_config=GenerationConfig(
            video_model=video_model, segment_count=segment_count, photo_only=photo_only
        ),
    )
    fields.update(instance_fields)
    instance = await store.insert_instance(WorkflowInstance(**fields))
    segments = await store.insert_segments([
        Segment(
            project_id=instance.id,
            segment_index=index,
            prompt={"description": f"scene {index}"},
            is_continuation_from_prev=index in continuations,
            video_generation_approved=approved,
        )
        for index in range(segment_count)
    ])
    return instance, segments


async def with_first_frame(store: InMemoryStore, segment: Segment, url: Optional[str] = None) -> Segment:
    return await store.update_segment(segment.id, {
        "first_frame_task_id": f"frame-{segment.segment_index}",
        "first_frame_url": url or f"https://cdn/frame-{segment.segment_index}.png",
        "status": SegmentStatus.FIRST_FRAME_READY,
    })


async def with_video(store: InMemoryStore, segment: Segment) -> Segment:
    segment = await with_first_frame(store, segment)
    return await store.update_segment(segment.id, {
        "video_task_id": f"clip-{segment.segment_index}",
        "video_url": f"https://cdn/clip-{segment.segment_index}.mp4",
        "status": SegmentStatus.VIDEO_READY,
    })
