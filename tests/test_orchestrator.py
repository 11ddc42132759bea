"""Tests for per-frame recognition orchestration."""

from __future__ import annotations

import asyncio

import numpy as np

from facegate.core.models import DecisionReason
from facegate.recognition.backends import RawDetection
from facegate.recognition.gallery import GalleryRecord
from facegate.recognition.orchestrator import OrchestratorState, frame_from_array

from fakes import (
    MODEL_VERSION,
    BlockingDetectionBackend,
    FakeDetectionBackend,
    FixedEmbeddingBackend,
    FixedLivenessBackend,
    RaisingBackend,
    RaisingSink,
    SlowSink,
    make_frame,
    unit,
)


class TestHappyPath:
    async def test_known_face_is_emitted(self, make_orchestrator):
        orch, parts = await make_orchestrator()
        decision = await orch.process_frame(make_frame(1000))

        assert decision.emitted
        assert decision.reason is None
        assert decision.match.person_id == "alice"
        assert decision.match.display_name == "Alice"
        assert decision.match.confidence > 0.99
        assert decision.liveness.is_live
        assert decision.faces_detected == 1
        assert decision.face_crop is not None
        assert parts["sink"].decisions == [decision]
        assert orch.state is OrchestratorState.IDLE

    async def test_only_first_face_is_processed(self, make_orchestrator):
        detections = [
            RawDetection(box=(0.1, 0.1, 0.3, 0.3), score=0.99),
            RawDetection(box=(0.5, 0.5, 0.3, 0.3), score=0.98),
        ]
        orch, parts = await make_orchestrator(detection=FakeDetectionBackend(detections))
        decision = await orch.process_frame(make_frame(1000))

        assert decision.faces_detected == 2
        assert decision.observation.bbox.left == 0.1 * 64
        assert parts["liveness"].calls == 1
        assert parts["embedding"].calls == 1

    async def test_unknown_face_is_emitted_with_unknown_key(self, make_orchestrator):
        orch, parts = await make_orchestrator(embedding=FixedEmbeddingBackend(unit(0, 0, 1, 0)))
        decision = await orch.process_frame(make_frame(1000))

        assert decision.emitted
        assert decision.match.person_id is None
        assert decision.match.key == "unknown"
        assert orch.cooldown_state.last_event_key == "unknown"

    async def test_unknown_face_suppressed_when_disabled(self, make_orchestrator):
        orch, parts = await make_orchestrator(
            embedding=FixedEmbeddingBackend(unit(0, 0, 1, 0)), emit_unknown=False
        )
        decision = await orch.process_frame(make_frame(1000))

        assert not decision.emitted
        assert decision.reason is DecisionReason.UNKNOWN_SUPPRESSED
        assert parts["sink"].decisions == []

    async def test_timings_recorded(self, make_orchestrator):
        orch, _ = await make_orchestrator()
        decision = await orch.process_frame(make_frame(1000))
        assert decision.timings.total_ms >= 0
        assert decision.to_dict()["timings_ms"]["detection"] >= 0


class TestLivenessGate:
    async def test_spoof_short_circuits(self, make_orchestrator):
        orch, parts = await make_orchestrator(liveness=FixedLivenessBackend(0.1))
        decision = await orch.process_frame(make_frame(1000))

        assert not decision.emitted
        assert decision.reason is DecisionReason.SPOOF
        assert decision.match is None
        assert parts["embedding"].calls == 0
        assert parts["matcher"].calls == 0
        assert parts["sink"].decisions == []

    async def test_backend_failure_rejects_face(self, make_orchestrator):
        orch, parts = await make_orchestrator(liveness=RaisingBackend())
        decision = await orch.process_frame(make_frame(1000))

        assert decision.reason is DecisionReason.LIVENESS_FAILED
        assert decision.liveness.failed
        assert parts["embedding"].calls == 0


class TestStageFailures:
    async def test_no_face(self, make_orchestrator):
        orch, parts = await make_orchestrator(detection=FakeDetectionBackend([]))
        decision = await orch.process_frame(make_frame(1000))

        assert decision.reason is DecisionReason.NO_FACE
        assert decision.faces_detected == 0
        assert parts["liveness"].calls == 0

    async def test_detector_exception(self, make_orchestrator):
        orch, parts = await make_orchestrator(detection=RaisingBackend())
        decision = await orch.process_frame(make_frame(1000))

        assert decision.reason is DecisionReason.DETECTION_FAILED
        assert parts["liveness"].calls == 0

    async def test_detector_timeout(self, make_orchestrator):
        backend = BlockingDetectionBackend()
        orch, parts = await make_orchestrator(detection=backend, backend_timeout_s=0.05)
        try:
            decision = await orch.process_frame(make_frame(1000))
        finally:
            backend.release.set()

        assert decision.reason is DecisionReason.DETECTION_FAILED
        assert orch.state is OrchestratorState.IDLE

    async def test_embedding_exception(self, make_orchestrator):
        orch, parts = await make_orchestrator(embedding=RaisingBackend())
        decision = await orch.process_frame(make_frame(1000))

        assert decision.reason is DecisionReason.EMBEDDING_FAILED
        assert decision.liveness.is_live
        assert parts["matcher"].calls == 0

    async def test_embedding_wrong_dimension(self, make_orchestrator):
        orch, parts = await make_orchestrator(
            embedding=FixedEmbeddingBackend(np.ones(7, dtype=np.float32))
        )
        decision = await orch.process_frame(make_frame(1000))
        assert decision.reason is DecisionReason.EMBEDDING_FAILED

    async def test_sink_failure_does_not_break_cycle(self, make_orchestrator):
        sink = RaisingSink()
        orch, _ = await make_orchestrator(sink=sink)
        decision = await orch.process_frame(make_frame(1000))

        assert decision.emitted
        assert sink.calls == 1
        assert orch.state is OrchestratorState.IDLE

    async def test_slow_sink_does_not_stall_pipeline(self, make_orchestrator):
        sink = SlowSink(5.0)
        orch, _ = await make_orchestrator(sink=sink, backend_timeout_s=0.2)

        first = await asyncio.wait_for(orch.process_frame(make_frame(1000)), 2)
        assert first.emitted
        assert sink.decisions == []
        assert orch.state is OrchestratorState.IDLE

        second = await orch.process_frame(make_frame(10_000))
        assert second is not None

    async def test_failure_leaves_cooldown_untouched(self, make_orchestrator):
        orch, _ = await make_orchestrator(detection=RaisingBackend())
        await orch.process_frame(make_frame(1000))
        assert orch.cooldown_state.last_event_timestamp_ms is None


class TestCooldown:
    async def test_same_person_suppressed_within_interval(self, make_orchestrator):
        orch, parts = await make_orchestrator(cooldown_min_interval_ms=3000)
        first = await orch.process_frame(make_frame(1000))
        second = await orch.process_frame(make_frame(2000))

        assert first.emitted
        assert not second.emitted
        assert second.reason is DecisionReason.COOLDOWN
        assert second.match.person_id == "alice"
        assert len(parts["sink"].decisions) == 1

    async def test_same_person_emitted_after_interval(self, make_orchestrator):
        orch, _ = await make_orchestrator(cooldown_min_interval_ms=3000)
        await orch.process_frame(make_frame(1000))
        later = await orch.process_frame(make_frame(4000))
        assert later.emitted

    async def test_different_person_overrides_cooldown(self, make_orchestrator):
        embedding = FixedEmbeddingBackend(unit(1, 0, 0, 0))
        orch, parts = await make_orchestrator(embedding=embedding, cooldown_min_interval_ms=3000)

        a = await orch.process_frame(make_frame(1000))
        embedding.vector = unit(0, 1, 0, 0)
        b = await orch.process_frame(make_frame(1010))

        assert a.emitted and a.match.person_id == "alice"
        assert b.emitted and b.match.person_id == "bob"
        assert orch.cooldown_state.last_event_key == "bob"
        assert orch.cooldown_state.last_event_timestamp_ms == 1010
        assert [d.match.person_id for d in parts["sink"].decisions] == ["alice", "bob"]


class TestBackpressure:
    async def test_single_cycle_in_flight(self, make_orchestrator):
        backend = BlockingDetectionBackend()
        orch, parts = await make_orchestrator(detection=backend)

        first = asyncio.create_task(orch.process_frame(make_frame(1000)))
        try:
            await asyncio.to_thread(backend.entered.wait, 5)
            assert orch.state is OrchestratorState.DETECTING

            dropped = await orch.process_frame(make_frame(1033))
            assert dropped is None
        finally:
            backend.release.set()
        decision = await first

        assert decision.emitted
        assert backend.calls == 1
        assert orch.stats["frames_dropped"] == 1
        assert orch.stats["cycles_completed"] == 1

    async def test_state_claimed_before_first_await(self, make_orchestrator):
        backend = BlockingDetectionBackend()
        orch, _ = await make_orchestrator(detection=backend)

        task = asyncio.create_task(orch.process_frame(make_frame(1000)))
        await asyncio.sleep(0)
        try:
            assert orch.state is not OrchestratorState.IDLE
        finally:
            backend.release.set()
        await task

    async def test_throttle_drops_close_frames(self, make_orchestrator):
        orch, parts = await make_orchestrator(min_frame_interval_ms=500)
        assert await orch.process_frame(make_frame(1000)) is not None
        assert await orch.process_frame(make_frame(1200)) is None
        assert await orch.process_frame(make_frame(1500)) is not None
        assert orch.stats["frames_throttled"] == 1


class TestShutdown:
    async def test_aclose_abandons_inflight_cycle(self, make_orchestrator):
        backend = BlockingDetectionBackend()
        orch, parts = await make_orchestrator(detection=backend)

        task = asyncio.create_task(orch.process_frame(make_frame(1000)))
        try:
            await asyncio.to_thread(backend.entered.wait, 5)
            await orch.aclose()
            assert await task is None
        finally:
            backend.release.set()

        assert orch.closed
        assert orch.state is OrchestratorState.IDLE
        assert parts["sink"].decisions == []

    async def test_closed_orchestrator_drops_frames(self, make_orchestrator):
        orch, parts = await make_orchestrator()
        await orch.aclose()
        assert await orch.process_frame(make_frame(1000)) is None
        assert parts["detection"].calls == 0


class TestGallerySwap:
    async def test_refresh_between_frames_is_visible(self, make_orchestrator, people_store):
        embedding = FixedEmbeddingBackend(unit(0, 0, 1, 0))
        orch, _ = await make_orchestrator(embedding=embedding, emit_unknown=False)
        assert (await orch.process_frame(make_frame(1000))).reason is (
            DecisionReason.UNKNOWN_SUPPRESSED
        )

        people_store.records.append(
            GalleryRecord("carol", "Carol", embedding=unit(0, 0, 1, 0), model_version=MODEL_VERSION)
        )
        await orch.gallery.refresh()
        decision = await orch.process_frame(make_frame(2000))
        assert decision.match.person_id == "carol"


class TestFrameFromArray:
    def test_explicit_timestamp(self):
        frame = frame_from_array(np.zeros((4, 6, 3), dtype=np.uint8), 42)
        assert (frame.width, frame.height, frame.timestamp_ms) == (6, 4, 42)

    def test_monotonic_default(self):
        a = frame_from_array(np.zeros((4, 4, 3), dtype=np.uint8))
        b = frame_from_array(np.zeros((4, 4, 3), dtype=np.uint8))
        assert b.timestamp_ms >= a.timestamp_ms
