import pytest

from genworker.pipeline.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from genworker.pipeline.models import (
    FrameKind,
    InstanceStatus,
    PipelineStep,
    RegenerateMode,
    RegenerateSegmentRequest,
    SegmentStatus,
    TransactionType,
)
from genworker.pipeline.segments import SegmentComposer, aggregate_progress
from tests.helpers import create_segmented_project, with_first_frame, with_video

pytestmark = pytest.mark.asyncio


async def _balance_matches_ledger(ctx, user_id: str) -> bool:
    history = await ctx.ledger.list_transactions(user_id, limit=1000)
    return sum(t.amount for t in history) == await ctx.ledger.get_balance(user_id)


async def _assert_charge_refunded(ctx, user_id: str):
    history = await ctx.ledger.list_transactions(user_id, limit=1000)
    usage = [t for t in history if t.type == TransactionType.USAGE]
    refunds = [t for t in history if t.type == TransactionType.REFUND]
    assert len(usage) == 1
    assert len(refunds) == 1
    assert refunds[0].amount == -usage[0].amount
    assert refunds[0].description == f"{usage[0].description} refund"
    assert refunds[0].linked_instance_id == usage[0].linked_instance_id


# ── Frames ───────────────────────────────────────────────────────────────────

async def test_continuation_frame_waits_for_predecessor(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store, continuations=(1,))
    composer = SegmentComposer(ctx)

    with pytest.raises(ConflictError):
        await composer.start_frame(instance, segments[1], segments, FrameKind.FIRST)

    assert image_provider.submissions == []
    stored = (await store.list_segments(instance.id))[1]
    assert stored.first_frame_task_id is None
    assert stored.status == SegmentStatus.PENDING_FIRST_FRAME


async def test_continuation_frame_references_predecessor(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store, continuations=(1,))
    await with_first_frame(store, segments[0], "https://cdn/prev.png")
    segments = await store.list_segments(instance.id)

    updated = await SegmentComposer(ctx).start_frame(instance, segments[1], segments, FrameKind.FIRST)

    assert updated.first_frame_task_id == "img-1"
    assert updated.status == SegmentStatus.GENERATING_FIRST_FRAME
    assert image_provider.submissions[0]["image_urls"][0] == "https://cdn/prev.png"


async def test_second_frame_claim_loses_race(ctx, store):
    instance, segments = await create_segmented_project(store)
    composer = SegmentComposer(ctx)

    first = await composer.start_frame(instance, segments[0], segments, FrameKind.FIRST)
    # stale copy from a concurrent sweep
    second = await composer.start_frame(instance, segments[0], segments, FrameKind.FIRST)

    assert first is not None
    assert second is None
    assert (await store.list_segments(instance.id))[0].first_frame_task_id == "img-1"


async def test_closing_frame_failure_fails_segment(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store, segment_count=1)
    segment = await with_first_frame(store, segments[0])
    segment = await store.update_segment(segment.id, {"closing_frame_task_id": "close-1"})
    image_provider.fail("close-1", "bad reference image")

    changed = await SegmentComposer(ctx).poll_frame(instance, segment, FrameKind.CLOSING)

    assert changed is True
    stored = (await store.list_segments(instance.id))[0]
    assert stored.status == SegmentStatus.FAILED
    assert stored.error_message == "bad reference image"


# ── Videos ───────────────────────────────────────────────────────────────────

async def test_video_requires_first_frame(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store)

    with pytest.raises(ValidationError):
        await SegmentComposer(ctx).start_video(instance, segments[0], segments)
    assert video_provider.submissions == []


async def test_video_closing_frame_falls_back_to_next_first_frame(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store, segment_count=2)
    await with_first_frame(store, segments[0], "https://cdn/a.png")
    await with_first_frame(store, segments[1], "https://cdn/b.png")
    segments = await store.list_segments(instance.id)

    await SegmentComposer(ctx).start_video(instance, segments[0], segments)

    assert video_provider.submissions[0]["image_urls"] == ["https://cdn/a.png", "https://cdn/b.png"]


async def test_video_prefers_own_closing_frame_then_single_frame(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store, segment_count=2)
    await with_first_frame(store, segments[0], "https://cdn/a.png")
    last = await with_first_frame(store, segments[1], "https://cdn/b.png")
    await store.update_segment(last.id, {"closing_frame_url": "https://cdn/b-end.png"})
    segments = await store.list_segments(instance.id)
    composer = SegmentComposer(ctx)

    await composer.start_video(instance, segments[1], segments)
    assert video_provider.submissions[-1]["image_urls"] == ["https://cdn/b.png", "https://cdn/b-end.png"]

    lone, lone_segments = await create_segmented_project(store, segment_count=1)
    only = await with_first_frame(store, lone_segments[0], "https://cdn/solo.png")
    await composer.start_video(lone, only, [only])
    assert video_provider.submissions[-1]["image_urls"] == ["https://cdn/solo.png"]


async def test_retryable_video_failure_resubmits(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store, segment_count=2)
    await with_first_frame(store, segments[0])
    await with_first_frame(store, segments[1])
    segments = await store.list_segments(instance.id)
    composer = SegmentComposer(ctx)

    started = await composer.start_video(instance, segments[0], segments)
    video_provider.fail(started.video_task_id, "internal error", fail_code="500")

    assert await composer.poll_video(instance, started, segments) is True
    stored = (await store.list_segments(instance.id))[0]
    assert stored.video_task_id == "vid-2"
    assert stored.retry_count == 1
    assert stored.status == SegmentStatus.GENERATING_VIDEO


async def test_video_failure_past_retry_limit_fails_segment(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store, segment_count=2)
    await with_first_frame(store, segments[0])
    segment = await store.update_segment(segments[0].id, {"video_task_id": "vid-x", "retry_count": 3})
    video_provider.fail("vid-x", "internal error", fail_code="500")

    await SegmentComposer(ctx).poll_video(instance, segment, await store.list_segments(instance.id))

    stored = (await store.list_segments(instance.id))[0]
    assert stored.status == SegmentStatus.FAILED
    assert stored.video_task_id is None


# ── Regeneration ─────────────────────────────────────────────────────────────

async def test_video_regeneration_without_first_frame_is_rejected_before_charging(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store, video_model="veo3")
    await ctx.ledger.grant("u1", 500)
    request = RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.VIDEO)

    with pytest.raises(ValidationError):
        await SegmentComposer(ctx).regenerate_segment(instance.id, 1, request)

    assert await ctx.ledger.get_balance("u1") == 500
    assert len(await ctx.ledger.list_transactions("u1")) == 1
    assert video_provider.submissions == []


async def test_photo_regeneration_charges_and_submits(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store)
    await ctx.ledger.grant("u1", 20)
    request = RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO, prompt={"style": "neon"})

    response = await SegmentComposer(ctx).regenerate_segment(instance.id, 1, request)

    assert response.segment.status == SegmentStatus.GENERATING_FIRST_FRAME
    assert response.segment.first_frame_task_id == "img-1"
    assert response.segment.prompt == {"description": "scene 1", "style": "neon"}
    assert len(image_provider.submissions) == 1
    assert await ctx.ledger.get_balance("u1") == 14

    usage = (await ctx.ledger.list_transactions("u1"))[0]
    assert usage.type == TransactionType.USAGE
    assert usage.description == "Segment first frame regeneration"
    assert usage.linked_instance_id == instance.id


async def test_photo_regeneration_of_last_segment_renders_closing_frame(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store, segment_count=2)
    await ctx.ledger.grant("u1", 20)
    request = RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)

    response = await SegmentComposer(ctx).regenerate_segment(instance.id, 1, request)

    assert len(image_provider.submissions) == 2
    assert response.segment.closing_frame_task_id == "img-2"


async def test_photo_regeneration_drops_in_flight_video(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store)
    await with_first_frame(store, segments[1])
    await store.update_segment(segments[1].id, {"status": SegmentStatus.GENERATING_VIDEO, "video_task_id": "v-old"})
    await ctx.ledger.grant("u1", 20)

    response = await SegmentComposer(ctx).regenerate_segment(
        instance.id, 1, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
    )

    assert response.segment.status == SegmentStatus.GENERATING_FIRST_FRAME
    assert response.segment.video_task_id is None
    assert response.segment.video_url is None


async def test_photo_regeneration_invalidates_finished_video_and_merge(ctx, store):
    instance, segments = await create_segmented_project(
        store,
        merge_task_id="m1",
        merged_video_url="https://cdn/merged.mp4",
        video_url="https://cdn/merged.mp4",
    )
    for segment in segments:
        await with_video(store, segment)
    await ctx.ledger.grant("u1", 20)

    response = await SegmentComposer(ctx).regenerate_segment(
        instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
    )

    assert response.segment.video_url is None
    assert response.segment.video_task_id is None
    parent = await store.get_instance(instance.id)
    assert parent.merge_task_id is None
    assert parent.merged_video_url is None
    assert parent.current_step == PipelineStep.GENERATING_SEGMENT_FRAMES


async def test_video_regeneration_reopens_completed_project(ctx, store, video_provider):
    instance, segments = await create_segmented_project(
        store,
        video_model="veo3",
        status=InstanceStatus.COMPLETED,
        current_step=PipelineStep.COMPLETED,
        merge_task_id="m1",
        merged_video_url="https://cdn/merged.mp4",
        video_url="https://cdn/merged.mp4",
    )
    for segment in segments:
        await with_video(store, segment)
    await ctx.ledger.grant("u1", 500)
    request = RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.VIDEO)

    response = await SegmentComposer(ctx).regenerate_segment(instance.id, 1, request)

    assert response.segment.status == SegmentStatus.GENERATING_VIDEO
    assert response.segment.video_url is None
    assert video_provider.submissions[0]["image_urls"] == [
        "https://cdn/frame-1.png",
        "https://cdn/frame-2.png",
    ]
    # veo3: 450 credits over 3 segments
    assert await ctx.ledger.get_balance("u1") == 350

    parent = await store.get_instance(instance.id)
    assert parent.status == InstanceStatus.PROCESSING
    assert parent.merge_task_id is None
    assert parent.merged_video_url is None
    assert parent.current_step == PipelineStep.GENERATING_SEGMENT_VIDEOS


async def test_regeneration_leaves_other_segments_untouched(ctx, store):
    instance, segments = await create_segmented_project(store)
    for segment in segments:
        await with_video(store, segment)
    before = await store.list_segments(instance.id)
    await ctx.ledger.grant("u1", 20)

    await SegmentComposer(ctx).regenerate_segment(
        instance.id, 1, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.BOTH)
    )

    after = await store.list_segments(instance.id)
    for index in (0, 2):
        assert after[index].model_dump(exclude={"updated_at"}) == before[index].model_dump(exclude={"updated_at"})


async def test_regeneration_rejects_in_flight_stages(ctx, store):
    instance, segments = await create_segmented_project(store)
    await store.update_segment(segments[0].id, {"status": SegmentStatus.GENERATING_FIRST_FRAME})
    await with_first_frame(store, segments[1])
    await store.update_segment(segments[1].id, {"status": SegmentStatus.GENERATING_VIDEO, "video_task_id": "v"})
    await ctx.ledger.grant("u1", 100)
    composer = SegmentComposer(ctx)

    with pytest.raises(ConflictError):
        await composer.regenerate_segment(instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO))
    with pytest.raises(ConflictError):
        await composer.regenerate_segment(instance.id, 1, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.VIDEO))

    assert await ctx.ledger.get_balance("u1") == 100


async def test_video_regeneration_rejected_while_video_task_pending(ctx, store, video_provider):
    instance, segments = await create_segmented_project(store)
    await with_first_frame(store, segments[0])
    await store.update_segment(segments[0].id, {"video_task_id": "v-old"})
    await ctx.ledger.grant("u1", 500)

    with pytest.raises(ConflictError):
        await SegmentComposer(ctx).regenerate_segment(
            instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.VIDEO)
        )

    assert video_provider.submissions == []
    assert await ctx.ledger.get_balance("u1") == 500
    assert (await store.list_segments(instance.id))[0].video_task_id == "v-old"


async def test_regeneration_of_blocked_continuation_is_rejected(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store, continuations=(2,))
    await ctx.ledger.grant("u1", 100)

    with pytest.raises(ConflictError):
        await SegmentComposer(ctx).regenerate_segment(
            instance.id, 2, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
        )

    stored = (await store.list_segments(instance.id))[2]
    assert stored.model_dump(exclude={"updated_at"}) == segments[2].model_dump(exclude={"updated_at"})
    assert image_provider.submissions == []
    assert await ctx.ledger.get_balance("u1") == 100


async def test_provider_failure_refunds_regeneration(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store)
    await ctx.ledger.grant("u1", 100)
    image_provider.submit_error = ProviderError("Kie.ai 500 after 6 attempts", status=500)

    with pytest.raises(ProviderError):
        await SegmentComposer(ctx).regenerate_segment(
            instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
        )

    assert await ctx.ledger.get_balance("u1") == 100
    assert await _balance_matches_ledger(ctx, "u1")
    await _assert_charge_refunded(ctx, "u1")


async def test_persistence_failure_refunds_regeneration(ctx, store, monkeypatch):
    instance, segments = await create_segmented_project(store)
    await ctx.ledger.grant("u1", 100)

    async def broken_update(segment_id, changes, expect=None):
        raise PersistenceError("update workflow_segments failed")

    monkeypatch.setattr(store, "update_segment", broken_update)

    with pytest.raises(PersistenceError):
        await SegmentComposer(ctx).regenerate_segment(
            instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
        )

    assert await ctx.ledger.get_balance("u1") == 100
    assert await _balance_matches_ledger(ctx, "u1")
    await _assert_charge_refunded(ctx, "u1")


async def test_insufficient_credits_for_regeneration(ctx, store, image_provider):
    instance, segments = await create_segmented_project(store)
    await ctx.ledger.grant("u1", 5)

    with pytest.raises(InsufficientCreditsError):
        await SegmentComposer(ctx).regenerate_segment(
            instance.id, 0, RegenerateSegmentRequest(user_id="u1", regenerate=RegenerateMode.PHOTO)
        )

    assert image_provider.submissions == []
    assert await ctx.ledger.get_balance("u1") == 5


async def test_regeneration_ownership_and_lookup(ctx, store):
    instance, _ = await create_segmented_project(store)
    composer = SegmentComposer(ctx)

    with pytest.raises(ForbiddenError):
        await composer.regenerate_segment(instance.id, 0, RegenerateSegmentRequest(user_id="intruder"))
    with pytest.raises(NotFoundError):
        await composer.regenerate_segment("missing", 0, RegenerateSegmentRequest(user_id="u1"))
    with pytest.raises(NotFoundError):
        await composer.regenerate_segment(instance.id, 7, RegenerateSegmentRequest(user_id="u1"))


async def test_prompt_only_update_is_free(ctx, store, image_provider):
    instance, _ = await create_segmented_project(store)

    response = await SegmentComposer(ctx).regenerate_segment(
        instance.id, 0, RegenerateSegmentRequest(user_id="u1", prompt={"action": "jump"})
    )

    assert response.segment.prompt["action"] == "jump"
    assert image_provider.submissions == []
    assert await ctx.ledger.get_balance("u1") == 0


# ── Approval & progress ──────────────────────────────────────────────────────

async def test_approve_segment_video(ctx, store, clock):
    instance, _ = await create_segmented_project(store)
    clock.advance(90)

    response = await SegmentComposer(ctx).approve_segment_video(instance.id, 2, "u1")

    assert response.segment.video_generation_approved is True
    assert response.segment_status["total"] == 3
    assert (await store.get_instance(instance.id)).last_progress_at == clock()


async def test_aggregate_progress(store):
    instance, segments = await create_segmented_project(store, segment_count=2)
    assert aggregate_progress(instance, segments)["progress_percent"] == 25

    await with_first_frame(store, segments[0])
    half = await store.list_segments(instance.id)
    summary = aggregate_progress(instance, half)
    assert summary["current_step"] == PipelineStep.GENERATING_SEGMENT_FRAMES
    assert summary["progress_percent"] == 47

    await with_video(store, segments[0])
    await with_first_frame(store, segments[1])
    videos = aggregate_progress(instance, await store.list_segments(instance.id))
    assert videos["current_step"] == PipelineStep.GENERATING_SEGMENT_VIDEOS
    assert videos["progress_percent"] == 82

    await with_video(store, segments[1])
    done = aggregate_progress(instance, await store.list_segments(instance.id))
    assert done["current_step"] == PipelineStep.AWAITING_MERGE
    assert done["progress_percent"] == 95
    assert done["segment_status"]["videos_ready"] == 2
