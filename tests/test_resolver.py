from genworker.pipeline.models import (
    ActionKind,
    GenerationConfig,
    InstanceStatus,
    PipelineStep,
    Segment,
    SegmentStatus,
    WorkflowInstance,
    WorkflowKind,
)
from genworker.pipeline.resolver import merge_gate, pending_actions, resolve


def _single(**fields) -> WorkflowInstance:
    return WorkflowInstance(**{"owner_id": "u1", "status": InstanceStatus.PROCESSING, **fields})


def _segmented(photo_only: bool = False, **fields) -> WorkflowInstance:
    return WorkflowInstance(
        **{
            "owner_id": "u1",
            "kind": WorkflowKind.SEGMENTED,
            "status": InstanceStatus.PROCESSING,
            "current_step": PipelineStep.GENERATING_SEGMENT_FRAMES,
            "generation_config": GenerationConfig(photo_only=photo_only),
            **fields,
        }
    )


def _segment(index: int, **fields) -> Segment:
    return Segment(project_id="p1", segment_index=index, **fields)


def _ready(index: int, **fields) -> Segment:
    defaults = dict(
        first_frame_task_id=f"f{index}",
        first_frame_url=f"https://cdn/f{index}.png",
        video_task_id=f"v{index}",
        video_url=f"https://cdn/v{index}.mp4",
        status=SegmentStatus.VIDEO_READY,
    )
    defaults.update(fields)
    return _segment(index, **defaults)


# ── Single pipeline table ────────────────────────────────────────────────────

def test_queued_begins():
    assert resolve(_single(status=InstanceStatus.PENDING)).kind == ActionKind.BEGIN


def test_single_pipeline_rows():
    prompts = {"cover_prompt": "c", "video_prompt": "v"}
    cases = [
        (_single(current_step=PipelineStep.ANALYZING_INPUTS), ActionKind.ANALYZE_INPUTS),
        (_single(current_step=PipelineStep.DRAFTING_PROMPTS, analysis_result={"a": 1}), ActionKind.DRAFT_PROMPTS),
        (_single(current_step=PipelineStep.GENERATING_COVER, prompts=prompts), ActionKind.SUBMIT_COVER),
        (_single(current_step=PipelineStep.GENERATING_COVER, prompts=prompts, cover_task_id="t1"), ActionKind.POLL_COVER),
        (
            _single(current_step=PipelineStep.GENERATING_VIDEO, prompts=prompts, cover_image_url="https://c"),
            ActionKind.SUBMIT_VIDEO,
        ),
        (
            _single(current_step=PipelineStep.GENERATING_VIDEO, cover_image_url="https://c", video_task_id="t2"),
            ActionKind.POLL_VIDEO,
        ),
        (
            _single(current_step=PipelineStep.GENERATING_VIDEO, cover_image_url="https://c", video_url="https://v"),
            ActionKind.COMPLETE,
        ),
    ]
    for instance, expected in cases:
        assert resolve(instance).kind == expected, instance.current_step


def test_poll_action_carries_task_id():
    instance = _single(current_step=PipelineStep.GENERATING_COVER, prompts={"cover_prompt": "c"}, cover_task_id="t9")
    action = resolve(instance)
    assert action.task_id == "t9"


def test_photo_only_completes_after_cover():
    instance = _single(
        current_step=PipelineStep.GENERATING_COVER,
        generation_config=GenerationConfig(photo_only=True),
        prompts={"cover_prompt": "c"},
        cover_task_id="t1",
        cover_image_url="https://c",
    )
    assert resolve(instance).kind == ActionKind.COMPLETE


def test_unmatched_and_terminal_states_resolve_to_none():
    # analysis step that already has its result waits for the step to move on
    assert resolve(_single(current_step=PipelineStep.ANALYZING_INPUTS, analysis_result={"a": 1})) is None
    assert resolve(_single(status=InstanceStatus.COMPLETED, current_step=PipelineStep.COMPLETED)) is None
    assert resolve(_single(status=InstanceStatus.FAILED, current_step=PipelineStep.GENERATING_COVER)) is None


def test_resolution_is_idempotent():
    instance = _single(current_step=PipelineStep.GENERATING_COVER, prompts={"cover_prompt": "c"}, cover_task_id="t1")
    assert resolve(instance) == resolve(instance)
    assert pending_actions(instance) == pending_actions(instance)


def test_every_step_resolves_without_error():
    for step in PipelineStep:
        for status in InstanceStatus:
            resolve(_single(status=status, current_step=step))


# ── Segmented ────────────────────────────────────────────────────────────────

def test_fresh_segments_submit_first_frames_except_waiting_continuations():
    instance = _segmented()
    segments = [_segment(0), _segment(1, is_continuation_from_prev=True), _segment(2)]

    actions = pending_actions(instance, segments)
    assert [(a.kind, a.segment_index) for a in actions] == [
        (ActionKind.SUBMIT_FIRST_FRAME, 0),
        (ActionKind.SUBMIT_FIRST_FRAME, 2),
    ]


def test_continuation_unblocks_once_predecessor_frame_exists():
    instance = _segmented()
    segments = [
        _segment(0, first_frame_task_id="f0", first_frame_url="https://f0", status=SegmentStatus.FIRST_FRAME_READY),
        _segment(1, is_continuation_from_prev=True),
    ]
    actions = pending_actions(instance, segments)
    assert (ActionKind.SUBMIT_FIRST_FRAME, 1) in [(a.kind, a.segment_index) for a in actions]


def test_last_segment_gets_a_closing_frame_before_its_video():
    instance = _segmented()
    last = _segment(
        0,
        first_frame_task_id="f0",
        first_frame_url="https://f0",
        video_generation_approved=True,
        status=SegmentStatus.FIRST_FRAME_READY,
    )
    assert resolve(instance, [last]).kind == ActionKind.SUBMIT_CLOSING_FRAME

    closing_pending = last.model_copy(update={"closing_frame_task_id": "c0"})
    assert resolve(instance, [closing_pending]).kind == ActionKind.POLL_CLOSING_FRAME

    closing_done = closing_pending.model_copy(update={"closing_frame_url": "https://c0"})
    assert resolve(instance, [closing_done]).kind == ActionKind.SUBMIT_SEGMENT_VIDEO


def test_video_waits_for_approval():
    instance = _segmented()
    segments = [
        _segment(0, first_frame_task_id="f0", first_frame_url="https://f0", status=SegmentStatus.FIRST_FRAME_READY),
        _segment(1, first_frame_task_id="f1", first_frame_url="https://f1", closing_frame_task_id="c1",
                 closing_frame_url="https://c1", status=SegmentStatus.FIRST_FRAME_READY),
    ]
    assert pending_actions(instance, segments) == []


def test_failed_segment_is_left_alone():
    instance = _segmented()
    segments = [_segment(0, status=SegmentStatus.FAILED, first_frame_task_id="f0")]
    assert pending_actions(instance, segments) == []


def test_merge_gate():
    assert merge_gate([]) is False
    assert merge_gate([_ready(0), _ready(1)]) is True
    assert merge_gate([_ready(0), _ready(1, video_url=None)]) is False
    assert merge_gate([_ready(0, video_url=None)], photo_only=True) is True


def test_parent_merges_then_completes():
    instance = _segmented(current_step=PipelineStep.AWAITING_MERGE)
    segments = [_ready(0), _ready(1)]

    assert resolve(instance, segments).kind == ActionKind.SUBMIT_MERGE

    merging = instance.model_copy(update={"merge_task_id": "m1"})
    action = resolve(merging, segments)
    assert action.kind == ActionKind.POLL_MERGE
    assert action.task_id == "m1"

    merged = merging.model_copy(update={"merged_video_url": "https://m"})
    assert resolve(merged, segments).kind == ActionKind.COMPLETE


def test_single_segment_completes_without_merge():
    instance = _segmented(current_step=PipelineStep.AWAITING_MERGE)
    assert resolve(instance, [_ready(0)]).kind == ActionKind.COMPLETE


def test_segmented_without_segments_has_nothing_to_do():
    assert pending_actions(_segmented(), []) == []
