"""Add a person to the gallery from a single face image."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import numpy as np

from facegate.core.models import EmbeddingVector, FaceObservation, Frame
from facegate.exceptions import EmbeddingBackendFailure, EnrollmentError
from facegate.recognition.detection import FaceDetector, align_face, crop_face
from facegate.recognition.embeddings import EmbeddingExtractor
from facegate.recognition.liveness import LivenessGate

logger = logging.getLogger("facegate.recognition.enrollment")

T = TypeVar("T")


class EnrollmentStore(Protocol):
    async def add_face(
        self,
        person_id: str,
        display_name: str,
        embedding: np.ndarray | None = None,
        model_version: str | None = None,
        raw_features: np.ndarray | None = None,
        quality_score: float | None = None,
    ) -> dict[str, Any]: ...


async def _run_stage(stage: str, timeout_s: float, fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking backend call off the event loop under a timeout."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        raise EnrollmentError(f"Face {stage} timed out after {timeout_s:.1f}s") from exc


def _embed(extractor: EmbeddingExtractor, frame: Frame, observation: FaceObservation) -> EmbeddingVector:
    return extractor.embed(align_face(frame, observation))


async def enroll_image(
    image: np.ndarray,
    person_id: str,
    display_name: str,
    detector: FaceDetector,
    gate: LivenessGate | None,
    extractor: EmbeddingExtractor,
    store: EnrollmentStore,
    *,
    timeout_s: float = 2.0,
) -> dict[str, Any]:
    """Detect, verify, embed and persist the first face in ``image``.

    Liveness is only required when ``gate`` is given; batch imports of
    curated photos pass *None*. Each backend stage runs in a worker thread
    and is bounded by ``timeout_s``. The caller refreshes the gallery
    afterwards.

    Raises:
        EnrollmentError: no usable face, the face is not live, embedding
            failed, or a stage timed out.
    """
    person_id = person_id.strip()
    if not person_id:
        raise EnrollmentError("person_id must not be empty")

    try:
        frame = Frame.from_array(image, timestamp_ms=0)
    except ValueError as exc:
        raise EnrollmentError(f"Invalid image: {exc}") from exc

    result = await _run_stage("detection", timeout_s, detector.detect, frame)
    if result.failure is not None:
        raise EnrollmentError(f"Face detection failed: {result.failure.message}")
    if not result:
        raise EnrollmentError("No face detected in image")
    observation = result[0]

    liveness_score = None
    if gate is not None:
        verdict = await _run_stage(
            "liveness check", timeout_s, gate.check, crop_face(frame, observation)
        )
        if not verdict.is_live:
            raise EnrollmentError(f"Face failed liveness check (score {verdict.score:.3f})")
        liveness_score = verdict.score

    try:
        embedding = await _run_stage("embedding", timeout_s, _embed, extractor, frame, observation)
    except EmbeddingBackendFailure as exc:
        raise EnrollmentError(f"Embedding failed: {exc.message}") from exc

    record = await store.add_face(
        person_id=person_id,
        display_name=display_name or person_id,
        embedding=embedding.vector,
        model_version=embedding.model_version,
        quality_score=observation.quality_score,
    )
    logger.info(
        "Enrolled face for %s (quality %.3f)",
        person_id,
        observation.quality_score,
        extra={"person_id": person_id},
    )
    record["liveness_score"] = liveness_score
    record["faces_detected"] = len(result)
    return record
