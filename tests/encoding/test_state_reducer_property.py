"""Tests for the persisted webhook state reducer.

**Feature: encoding-gateway, Property 7: Idempotent State Reduction**
**Validates: reductions are order independent, redeliveries are no-ops, and
events for untracked jobs are rejected**
"""

import asyncio
import gc
from itertools import permutations

import pytest
from sqlalchemy import func, select

from encoding_gateway.modules.encoding.exceptions import StateConflictError
from encoding_gateway.modules.encoding.models import (
    EncodingJob,
    EncodingJobStatus,
    VideoQuality,
    WebhookEventRecord,
)
from encoding_gateway.modules.encoding.reducer import EncodingStateReducer, VideoLockRegistry
from encoding_gateway.modules.encoding.repository import EncodingJobRepository, VideoRepository

LADDER = [VideoQuality.Q1080P, VideoQuality.Q720P, VideoQuality.Q480P]


async def deliver(session_maker, event, locks=None):
    async with session_maker() as session:
        return await EncodingStateReducer(session, locks=locks).apply(event)


class TestOrderIndependence:
    """Persisted state is the same for every delivery order."""

    @pytest.mark.asyncio
    async def test_all_permutations_produce_identical_state(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        """**Feature: encoding-gateway, Property 7: Idempotent State Reduction**

        For every permutation of {job.started, quality.completed(720p),
        quality.completed(480p), job.completed}, the final video, job and
        variant state SHALL be identical.
        """
        snapshots = []
        for index, order in enumerate(permutations(range(4))):
            video_id = f"vid_perm_{index}"
            job_id = await seed_cycle(video_id, LADDER)
            factory = event_factory(job_id, video_id)
            events = [
                factory.started(0),
                factory.quality_completed(1, "720p"),
                factory.quality_completed(2, "480p"),
                factory.completed(3, []),
            ]
            for position in order:
                await deliver(session_maker, events[position])
            snapshots.append(await read_state(video_id))

        first = snapshots[0]
        assert first["video"]["status"] == "ready"
        assert [v["status"] for v in first["variants"]] == ["skipped", "ready", "ready"]  # 1080p, 480p, 720p
        for snapshot in snapshots[1:]:
            assert snapshot == first

    @pytest.mark.asyncio
    async def test_partial_failure_scenario_is_persisted(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        job_id = await seed_cycle("vid_partial", LADDER)
        factory = event_factory(job_id, "vid_partial")

        for event in (
            factory.completed(3, []),
            factory.failed(2, quality="480p"),
            factory.quality_completed(1, "720p"),
            factory.started(0),
        ):
            await deliver(session_maker, event)

        state = await read_state("vid_partial")
        variants = {v["quality"]: v for v in state["variants"]}
        assert variants["1080p"]["status"] == "skipped"
        assert variants["720p"]["status"] == "ready"
        assert variants["720p"]["width"] == 1280
        assert variants["720p"]["output_path"] == "videos/encoded/<video>/720p.mp4"
        assert variants["480p"]["status"] == "error"
        assert state["video"]["status"] == "ready"
        assert state["video"]["progress"] == 67
        assert state["video"]["duration"] == 120
        assert state["video"]["source_width"] == 1920
        assert state["jobs"][0]["status"] == "completed"
        assert state["jobs"][0]["started_at"] is not None
        assert state["jobs"][0]["last_error"] is None
        assert state["jobs"][0]["error_code"] is None

    @pytest.mark.asyncio
    async def test_zero_ready_variants_fails_encoding(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        job_id = await seed_cycle("vid_none", [VideoQuality.Q720P])
        factory = event_factory(job_id, "vid_none")

        await deliver(session_maker, factory.failed(1, quality="720p"))
        await deliver(session_maker, factory.completed(2, []))

        state = await read_state("vid_none")
        assert state["video"]["status"] == "failed_encoding"
        assert state["video"]["last_error"] == "No quality variant completed"
        assert state["jobs"][0]["status"] == "failed"


class TestIdempotence:
    """Redeliveries and stale events change nothing."""

    @pytest.mark.asyncio
    async def test_duplicate_completion_leaves_state_byte_identical(
        self, session_maker, seed_cycle, read_state, event_factory
    ) -> None:
        """**Feature: encoding-gateway, Property 7: Idempotent State Reduction**

        Delivering the same job.completed twice SHALL leave every column,
        including update timestamps and the ledger, unchanged.
        """
        job_id = await seed_cycle("vid_dup", LADDER)
        factory = event_factory(job_id, "vid_dup")
        await deliver(session_maker, factory.started(0))
        await deliver(session_maker, factory.quality_completed(1, "720p"))
        completed = factory.completed(2, ["720p"])

        first = await deliver(session_maker, completed)
        before = await read_state("vid_dup", include_volatile=True)
        second = await deliver(session_maker, completed)
        after = await read_state("vid_dup", include_volatile=True)

        assert first.applied is True
        assert second.applied is False
        assert second.reason == "duplicate"
        assert after == before

    @pytest.mark.asyncio
    async def test_older_event_for_same_key_is_ignored(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        job_id = await seed_cycle("vid_stale", LADDER)
        factory = event_factory(job_id, "vid_stale")
        await deliver(session_maker, factory.started(0))
        await deliver(session_maker, factory.progress(10, 80, "1080p"))
        before = await read_state("vid_stale", include_volatile=True)

        result = await deliver(session_maker, factory.progress(5, 20, "1080p"))

        assert result.applied is False
        assert result.reason == "stale"
        assert await read_state("vid_stale", include_volatile=True) == before
        variant = next(v for v in before["variants"] if v["quality"] == "1080p")
        assert variant["progress"] == 80

    @pytest.mark.asyncio
    async def test_newer_event_replaces_ledger_entry(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        job_id = await seed_cycle("vid_newer", LADDER)
        factory = event_factory(job_id, "vid_newer")

        await deliver(session_maker, factory.progress(1, 20))
        await deliver(session_maker, factory.progress(2, 65))

        state = await read_state("vid_newer")
        assert state["jobs"][0]["progress"] == 65
        async with session_maker() as session:
            count = await session.scalar(
                select(func.count()).select_from(WebhookEventRecord).where(WebhookEventRecord.job_id == job_id)
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_match_sequential_result(
        self, session_maker, seed_cycle, read_state, event_factory
    ) -> None:
        concurrent_job = await seed_cycle("vid_concurrent", LADDER)
        sequential_job = await seed_cycle("vid_sequential", LADDER)

        def cycle(job_id, video_id):
            factory = event_factory(job_id, video_id)
            return [
                factory.started(0),
                factory.quality_completed(1, "1080p"),
                factory.quality_completed(2, "720p"),
                factory.thumbnail(2),
                factory.completed(3, []),
            ]

        await asyncio.gather(*(deliver(session_maker, e) for e in cycle(concurrent_job, "vid_concurrent")))
        for event in cycle(sequential_job, "vid_sequential"):
            await deliver(session_maker, event)

        concurrent = await read_state("vid_concurrent")
        assert concurrent == await read_state("vid_sequential")
        assert concurrent["video"]["status"] == "ready"


class TestStateConflicts:
    """Events that do not belong to a tracked encode cycle."""

    @pytest.mark.asyncio
    async def test_unknown_job_is_a_conflict(self, session_maker, seed_cycle, event_factory) -> None:
        await seed_cycle("vid_known", LADDER)
        with pytest.raises(StateConflictError) as exc_info:
            await deliver(session_maker, event_factory("job_missing", "vid_known").started(0))
        assert exc_info.value.job_id == "job_missing"

    @pytest.mark.asyncio
    async def test_video_mismatch_is_a_conflict(self, session_maker, seed_cycle, read_state, event_factory) -> None:
        job_id = await seed_cycle("vid_owner", LADDER)
        await seed_cycle("vid_other", LADDER)
        before = await read_state("vid_other", include_volatile=True)

        with pytest.raises(StateConflictError):
            await deliver(session_maker, event_factory(job_id, "vid_other").completed(1, ["720p"]))
        assert await read_state("vid_other", include_volatile=True) == before

    @pytest.mark.asyncio
    async def test_superseded_job_is_a_conflict(self, session_maker, seed_cycle, event_factory) -> None:
        old_job = await seed_cycle("vid_retry", LADDER)
        async with session_maker() as session:
            new_job = await EncodingJobRepository(session).create("job_new", "vid_retry", LADDER, attempt_number=2)
            video = await VideoRepository(session).get_by_id("vid_retry")
            video.current_job_id = new_job.id
            await session.commit()

        with pytest.raises(StateConflictError):
            await deliver(session_maker, event_factory(old_job, "vid_retry").started(0))
        result = await deliver(session_maker, event_factory("job_new", "vid_retry").started(0))
        assert result.applied is True

    @pytest.mark.asyncio
    async def test_cancelled_job_is_a_conflict(self, session_maker, seed_cycle, event_factory) -> None:
        job_id = await seed_cycle("vid_cancel", LADDER)
        async with session_maker() as session:
            job = await session.get(EncodingJob, job_id)
            job.status = EncodingJobStatus.CANCELLED.value
            await session.commit()

        with pytest.raises(StateConflictError):
            await deliver(session_maker, event_factory(job_id, "vid_cancel").started(0))


class TestVideoLockRegistry:
    """Per-video locks."""

    def test_same_video_shares_a_lock(self) -> None:
        registry = VideoLockRegistry()
        assert registry.lock_for("vid_a") is registry.lock_for("vid_a")

    def test_different_videos_get_different_locks(self) -> None:
        registry = VideoLockRegistry()
        held = registry.lock_for("vid_a")
        assert registry.lock_for("vid_b") is not held

    def test_unused_locks_are_dropped(self) -> None:
        registry = VideoLockRegistry()
        registry.lock_for("vid_a")
        gc.collect()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_other_videos_do_not_wait(self) -> None:
        registry = VideoLockRegistry()
        async with registry.lock_for("vid_a"):
            lock_b = registry.lock_for("vid_b")
            await asyncio.wait_for(lock_b.acquire(), timeout=1)
            lock_b.release()
