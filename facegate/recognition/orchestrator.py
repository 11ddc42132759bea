"""Per-frame recognition orchestration with backpressure and debounce.

``RecognitionOrchestrator`` sequences detection → liveness → embedding →
matching → decision for the first face of each accepted frame. At most one
cycle is in flight; frames arriving meanwhile are dropped, since a
real-time overlay has no use for stale frames. Every backend call runs in a
worker thread under a timeout, and every per-stage failure ends the cycle
with a suppressed decision instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

import numpy as np

from facegate.core.models import (
    CooldownState,
    DecisionReason,
    EmbeddingVector,
    FaceObservation,
    Frame,
    LivenessVerdict,
    MatchResult,
    RecognitionDecision,
    StageTimings,
)
from facegate.exceptions import DetectionFailure, EmbeddingBackendFailure
from facegate.recognition import cooldown
from facegate.recognition.detection import DetectionResult, FaceDetector, align_face, crop_face
from facegate.recognition.embeddings import EmbeddingExtractor
from facegate.recognition.gallery import Gallery
from facegate.recognition.liveness import LivenessGate
from facegate.recognition.matcher import Matcher

logger = logging.getLogger("facegate.recognition.orchestrator")

T = TypeVar("T")


class OrchestratorState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    LIVENESS = "liveness"
    EMBEDDING = "embedding"
    MATCHING = "matching"
    DECIDING = "deciding"


@runtime_checkable
class CaptureSink(Protocol):
    """Receives emitted decisions; responsible for storage and alerting."""

    async def submit(self, decision: RecognitionDecision) -> None: ...


def _elapsed_ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0


class RecognitionOrchestrator:
    """Turns a stream of frames into debounced recognition decisions.

    Parameters
    ----------
    detector, gate, extractor, matcher :
        Pipeline stages, injected so backends can be swapped or faked.
    gallery : Gallery
        Source of the snapshot used for each matching pass.
    sink : CaptureSink | None
        Receives emitted decisions only.
    cooldown_min_interval_ms : int
        Minimum spacing between events with the same match key.
    backend_timeout_s : float
        Per-stage timeout; a breach counts as a backend failure.
    min_frame_interval_ms : int
        Frames closer than this to the last accepted frame are dropped.
    emit_unknown : bool
        Whether faces with no gallery match are forwarded to the sink.
    """

    def __init__(
        self,
        detector: FaceDetector,
        gate: LivenessGate,
        extractor: EmbeddingExtractor,
        gallery: Gallery,
        matcher: Matcher,
        sink: CaptureSink | None = None,
        *,
        cooldown_min_interval_ms: int = 3000,
        backend_timeout_s: float = 2.0,
        min_frame_interval_ms: int = 0,
        emit_unknown: bool = True,
    ) -> None:
        self.detector = detector
        self.gate = gate
        self.extractor = extractor
        self.gallery = gallery
        self.matcher = matcher
        self.sink = sink
        self.backend_timeout_s = backend_timeout_s
        self.min_frame_interval_ms = min_frame_interval_ms
        self.emit_unknown = emit_unknown

        self._cooldown = CooldownState(min_interval_ms=cooldown_min_interval_ms)
        self._state = OrchestratorState.IDLE
        self._closed = False
        self._inflight: asyncio.Future[Any] | None = None
        self._last_accepted_ts: int | None = None
        self._last_seen_ts: int | None = None
        self._counters = {
            "frames_received": 0,
            "frames_dropped": 0,
            "frames_throttled": 0,
            "cycles_completed": 0,
            "decisions_emitted": 0,
            "decisions_suppressed": 0,
        }

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def cooldown_state(self) -> CooldownState:
        return self._cooldown

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self._counters)
        out["state"] = self._state.value
        out["last_event_key"] = self._cooldown.last_event_key
        out["cooldown_remaining_ms"] = (
            cooldown.remaining_ms(self._cooldown, self._last_seen_ts)
            if self._last_seen_ts is not None
            else 0
        )
        return out

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_frame(self, frame: Frame) -> RecognitionDecision | None:
        """Run one recognition cycle, or return *None* if the frame is dropped.

        Frames are dropped while a cycle is in flight, after :meth:`aclose`,
        and when they arrive within ``min_frame_interval_ms`` of the last
        accepted frame.
        """
        self._counters["frames_received"] += 1
        self._last_seen_ts = frame.timestamp_ms

        if self._closed or self._state is not OrchestratorState.IDLE:
            self._counters["frames_dropped"] += 1
            logger.debug(
                "Dropping frame: orchestrator %s",
                "closed" if self._closed else self._state.value,
                extra={"frame_ts": frame.timestamp_ms},
            )
            return None

        if (
            self.min_frame_interval_ms
            and self._last_accepted_ts is not None
            and frame.timestamp_ms - self._last_accepted_ts < self.min_frame_interval_ms
        ):
            self._counters["frames_throttled"] += 1
            return None

        # Claim the worker before the first await.
        self._state = OrchestratorState.DETECTING
        self._last_accepted_ts = frame.timestamp_ms
        try:
            decision = await self._run_cycle(frame)
        except asyncio.CancelledError:
            if self._closed:
                logger.info("Cycle abandoned on shutdown", extra={"frame_ts": frame.timestamp_ms})
                return None
            raise
        finally:
            self._state = OrchestratorState.IDLE

        self._counters["cycles_completed"] += 1
        if decision.emitted:
            self._counters["decisions_emitted"] += 1
        else:
            self._counters["decisions_suppressed"] += 1
        return decision

    async def aclose(self) -> None:
        """Stop accepting frames and cancel any outstanding backend call."""
        self._closed = True
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            inflight.cancel()
            try:
                await inflight
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("In-flight backend call failed during shutdown", exc_info=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _call_backend(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking stage in a worker thread under the backend timeout."""
        fut = asyncio.ensure_future(
            asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.backend_timeout_s)
        )
        self._inflight = fut
        try:
            return await fut
        finally:
            self._inflight = None

    async def _run_cycle(self, frame: Frame) -> RecognitionDecision:
        timings = StageTimings()

        # Detection
        t0 = time.perf_counter()
        try:
            detections: DetectionResult = await self._call_backend(self.detector.detect, frame)
        except asyncio.TimeoutError:
            logger.warning(
                "Detection timed out after %.2fs",
                self.backend_timeout_s,
                extra={"stage": "detection", "frame_ts": frame.timestamp_ms},
            )
            detections = DetectionResult(failure=DetectionFailure("Detection timed out"))
        except Exception as exc:
            logger.warning(
                "Detector raised",
                exc_info=True,
                extra={"stage": "detection", "frame_ts": frame.timestamp_ms},
            )
            detections = DetectionResult(failure=DetectionFailure(str(exc)))
        timings.detection_ms = _elapsed_ms(t0)

        if detections.failure is not None:
            return self._suppressed(frame, DecisionReason.DETECTION_FAILED, timings)
        if not detections:
            return self._suppressed(frame, DecisionReason.NO_FACE, timings)

        # Only the first face is recognized; the rest are ignored this cycle.
        observation = detections[0]
        faces = len(detections)
        face_crop = crop_face(frame, observation)

        # Liveness
        self._state = OrchestratorState.LIVENESS
        t0 = time.perf_counter()
        try:
            verdict: LivenessVerdict = await self._call_backend(self.gate.check, face_crop)
        except asyncio.TimeoutError:
            logger.warning(
                "Liveness check timed out; rejecting face",
                extra={"stage": "liveness", "frame_ts": frame.timestamp_ms},
            )
            verdict = self.gate.failed_verdict()
        except Exception:
            logger.warning(
                "Liveness gate raised; rejecting face",
                exc_info=True,
                extra={"stage": "liveness", "frame_ts": frame.timestamp_ms},
            )
            verdict = self.gate.failed_verdict()
        timings.liveness_ms = _elapsed_ms(t0)

        if not verdict.is_live:
            reason = DecisionReason.LIVENESS_FAILED if verdict.failed else DecisionReason.SPOOF
            return self._suppressed(frame, reason, timings, observation, faces, verdict)

        # Embedding
        self._state = OrchestratorState.EMBEDDING
        t0 = time.perf_counter()
        try:
            embedding: EmbeddingVector = await self._call_backend(
                self._embed, frame, observation
            )
        except Exception as exc:
            logger.warning(
                "No embedding for face: %s",
                getattr(exc, "message", None) or type(exc).__name__,
                exc_info=not isinstance(exc, (EmbeddingBackendFailure, asyncio.TimeoutError)),
                extra={"stage": "embedding", "frame_ts": frame.timestamp_ms},
            )
            timings.embedding_ms = _elapsed_ms(t0)
            return self._suppressed(
                frame, DecisionReason.EMBEDDING_FAILED, timings, observation, faces, verdict
            )
        timings.embedding_ms = _elapsed_ms(t0)

        # Matching
        self._state = OrchestratorState.MATCHING
        t0 = time.perf_counter()
        match = self.matcher.match(embedding, self.gallery.snapshot())
        timings.matching_ms = _elapsed_ms(t0)

        # Decision
        self._state = OrchestratorState.DECIDING
        if match.person_id is None and not self.emit_unknown:
            return self._suppressed(
                frame,
                DecisionReason.UNKNOWN_SUPPRESSED,
                timings,
                observation,
                faces,
                verdict,
                match,
            )

        emit, new_state = cooldown.decide(self._cooldown, match.key, frame.timestamp_ms)
        if not emit:
            return self._suppressed(
                frame, DecisionReason.COOLDOWN, timings, observation, faces, verdict, match
            )

        self._cooldown = new_state
        decision = RecognitionDecision(
            frame_timestamp_ms=frame.timestamp_ms,
            observation=observation,
            liveness=verdict,
            match=match,
            emitted=True,
            faces_detected=faces,
            timings=timings,
            face_crop=face_crop,
        )
        logger.info(
            "Recognition event: %s (confidence %.3f)",
            match.key,
            match.confidence,
            extra={
                "frame_ts": frame.timestamp_ms,
                "person_id": match.person_id,
                "duration_ms": round(timings.total_ms, 3),
            },
        )
        await self._deliver(decision)
        return decision

    def _embed(self, frame: Frame, observation: FaceObservation) -> EmbeddingVector:
        try:
            aligned = align_face(frame, observation)
        except Exception as exc:
            raise EmbeddingBackendFailure(f"Face alignment failed: {exc}") from exc
        return self.extractor.embed(aligned)

    async def _deliver(self, decision: RecognitionDecision) -> None:
        """Hand an emitted decision to the sink, bounded by the backend timeout."""
        if self.sink is None:
            return
        fut = asyncio.ensure_future(
            asyncio.wait_for(self.sink.submit(decision), timeout=self.backend_timeout_s)
        )
        self._inflight = fut
        try:
            await fut
        except asyncio.TimeoutError:
            logger.warning(
                "Capture sink timed out after %.2fs; decision not stored",
                self.backend_timeout_s,
                extra={"frame_ts": decision.frame_timestamp_ms, "stage": "sink"},
            )
        except Exception:
            logger.warning(
                "Capture sink rejected decision",
                exc_info=True,
                extra={"frame_ts": decision.frame_timestamp_ms, "stage": "sink"},
            )
        finally:
            self._inflight = None

    def _suppressed(
        self,
        frame: Frame,
        reason: DecisionReason,
        timings: StageTimings,
        observation: FaceObservation | None = None,
        faces: int = 0,
        verdict: LivenessVerdict | None = None,
        match: MatchResult | None = None,
    ) -> RecognitionDecision:
        logger.debug(
            "Decision suppressed: %s",
            reason.value,
            extra={
                "frame_ts": frame.timestamp_ms,
                "reason": reason.value,
                "person_id": match.person_id if match else None,
            },
        )
        return RecognitionDecision(
            frame_timestamp_ms=frame.timestamp_ms,
            observation=observation,
            liveness=verdict,
            match=match,
            emitted=False,
            reason=reason,
            faces_detected=faces,
            timings=timings,
        )


def frame_from_array(pixels: np.ndarray, timestamp_ms: int | None = None) -> Frame:
    """Wrap an RGB array as a frame, stamping it with the monotonic clock if needed."""
    if timestamp_ms is None:
        timestamp_ms = time.monotonic_ns() // 1_000_000
    return Frame.from_array(pixels, timestamp_ms)
