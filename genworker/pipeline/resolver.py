"""
Step Resolver — maps persisted workflow fields to the next action.

Pure functions: nothing here reads the clock, the store or a provider. The
sweep performs whatever action is returned and persists the outcome, so
resolving the same fields twice always yields the same answer.

Rows are checked in table order; the first satisfied row wins.
"""

from typing import Callable, NamedTuple, Optional

from .models import (
    ActionKind,
    NextAction,
    PipelineStep,
    Segment,
    SegmentStatus,
    StageKind,
    WorkflowInstance,
)


class TransitionRule(NamedTuple):
    step: PipelineStep
    precondition: Callable[[WorkflowInstance], bool]
    action: ActionKind
    stage: Optional[StageKind] = None
    task_field: Optional[str] = None


# ── Single-artifact pipeline ─────────────────────────────────────────────────

SINGLE_PIPELINE_RULES = (
    TransitionRule(
        PipelineStep.QUEUED,
        lambda i: True,
        ActionKind.BEGIN,
    ),
    TransitionRule(
        PipelineStep.ANALYZING_INPUTS,
        lambda i: i.analysis_result is None,
        ActionKind.ANALYZE_INPUTS,
    ),
    TransitionRule(
        PipelineStep.DRAFTING_PROMPTS,
        lambda i: i.analysis_result is not None and i.prompts is None,
        ActionKind.DRAFT_PROMPTS,
    ),
    TransitionRule(
        PipelineStep.GENERATING_COVER,
        lambda i: i.prompts is not None and i.cover_task_id is None and i.cover_image_url is None,
        ActionKind.SUBMIT_COVER,
        StageKind.IMAGE,
    ),
    TransitionRule(
        PipelineStep.GENERATING_COVER,
        lambda i: i.cover_task_id is not None and i.cover_image_url is None,
        ActionKind.POLL_COVER,
        StageKind.IMAGE,
        "cover_task_id",
    ),
    TransitionRule(
        PipelineStep.GENERATING_COVER,
        lambda i: i.cover_image_url is not None and i.generation_config.photo_only,
        ActionKind.COMPLETE,
    ),
    TransitionRule(
        PipelineStep.GENERATING_VIDEO,
        lambda i: i.cover_image_url is not None and i.video_task_id is None and i.video_url is None,
        ActionKind.SUBMIT_VIDEO,
        StageKind.VIDEO,
    ),
    TransitionRule(
        PipelineStep.GENERATING_VIDEO,
        lambda i: i.video_task_id is not None and i.video_url is None,
        ActionKind.POLL_VIDEO,
        StageKind.VIDEO,
        "video_task_id",
    ),
    TransitionRule(
        PipelineStep.GENERATING_VIDEO,
        lambda i: i.video_url is not None,
        ActionKind.COMPLETE,
    ),
)


def _resolve_single(instance: WorkflowInstance) -> Optional[NextAction]:
    for rule in SINGLE_PIPELINE_RULES:
        if rule.step == instance.current_step and rule.precondition(instance):
            task_id = getattr(instance, rule.task_field) if rule.task_field else None
            return NextAction(kind=rule.action, stage=rule.stage, task_id=task_id)
    return None


# ── Segmented pipeline ───────────────────────────────────────────────────────

def awaiting_predecessor(segment: Segment, segments: list[Segment]) -> bool:
    """True when a continuation segment's predecessor has no first frame yet."""
    if not segment.is_continuation_from_prev or segment.segment_index == 0:
        return False
    previous = next((s for s in segments if s.segment_index == segment.segment_index - 1), None)
    return previous is None or previous.first_frame_url is None


def merge_gate(segments: list[Segment], photo_only: bool = False) -> bool:
    """True iff every segment is ready for the final stitch."""
    if not segments:
        return False
    if photo_only:
        return all(s.first_frame_url for s in segments)
    return all(s.video_url for s in segments)


def _closing_frame_settled(segment: Segment) -> bool:
    return segment.closing_frame_task_id is None or segment.closing_frame_url is not None


def resolve_segment(
    instance: WorkflowInstance,
    segment: Segment,
    segments: list[Segment],
) -> Optional[NextAction]:
    """Next action for one segment, or None when it is waiting or done."""
    if segment.status == SegmentStatus.FAILED:
        return None

    index = segment.segment_index
    photo_only = instance.generation_config.photo_only
    is_last = index == max(s.segment_index for s in segments)

    if segment.first_frame_task_id is None and segment.first_frame_url is None:
        if awaiting_predecessor(segment, segments):
            return None
        return NextAction(kind=ActionKind.SUBMIT_FIRST_FRAME, stage=StageKind.IMAGE, segment_index=index)

    if segment.first_frame_url is None:
        return NextAction(
            kind=ActionKind.POLL_FIRST_FRAME,
            stage=StageKind.IMAGE,
            segment_index=index,
            task_id=segment.first_frame_task_id,
        )

    if segment.closing_frame_task_id is not None and segment.closing_frame_url is None:
        return NextAction(
            kind=ActionKind.POLL_CLOSING_FRAME,
            stage=StageKind.IMAGE,
            segment_index=index,
            task_id=segment.closing_frame_task_id,
        )

    if photo_only:
        return None

    if is_last and segment.closing_frame_task_id is None and segment.closing_frame_url is None:
        return NextAction(kind=ActionKind.SUBMIT_CLOSING_FRAME, stage=StageKind.IMAGE, segment_index=index)

    if segment.video_task_id is not None and segment.video_url is None:
        return NextAction(
            kind=ActionKind.POLL_SEGMENT_VIDEO,
            stage=StageKind.VIDEO,
            segment_index=index,
            task_id=segment.video_task_id,
        )

    if (
        segment.video_task_id is None
        and segment.video_url is None
        and segment.video_generation_approved
        and _closing_frame_settled(segment)
    ):
        return NextAction(kind=ActionKind.SUBMIT_SEGMENT_VIDEO, stage=StageKind.VIDEO, segment_index=index)

    return None


def resolve_parent(instance: WorkflowInstance, segments: list[Segment]) -> Optional[NextAction]:
    """Fan-in action for a segmented project once its segments allow it."""
    photo_only = instance.generation_config.photo_only
    if not merge_gate(segments, photo_only):
        return None

    if photo_only or len(segments) == 1:
        return NextAction(kind=ActionKind.COMPLETE)

    if instance.merged_video_url is not None:
        return NextAction(kind=ActionKind.COMPLETE)

    if instance.merge_task_id is None:
        return NextAction(kind=ActionKind.SUBMIT_MERGE, stage=StageKind.MERGE)

    return NextAction(kind=ActionKind.POLL_MERGE, stage=StageKind.MERGE, task_id=instance.merge_task_id)


# ── Public API ───────────────────────────────────────────────────────────────

def pending_actions(
    instance: WorkflowInstance,
    segments: Optional[list[Segment]] = None,
) -> list[NextAction]:
    """
    Every independent action available right now.

    Single pipelines yield at most one action. Segmented projects yield at
    most one per segment (in index order) followed by the parent action.
    """
    if instance.is_terminal:
        return []

    if not instance.is_segmented:
        action = _resolve_single(instance)
        return [action] if action else []

    if not segments:
        return []

    actions = [a for a in (resolve_segment(instance, s, segments) for s in segments) if a]
    parent = resolve_parent(instance, segments)
    if parent:
        actions.append(parent)
    return actions


def resolve(
    instance: WorkflowInstance,
    segments: Optional[list[Segment]] = None,
) -> Optional[NextAction]:
    """The next action for an instance, or None when nothing applies."""
    actions = pending_actions(instance, segments)
    return actions[0] if actions else None
