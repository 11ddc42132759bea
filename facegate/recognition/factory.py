"""Build pipeline components from settings.

Optional backends (MediaPipe, ONNX Runtime) are only imported when selected;
a missing package or model path surfaces as ``ConfigurationError``.
"""

from __future__ import annotations

import logging

from facegate.config import Settings
from facegate.exceptions import ConfigurationError
from facegate.recognition.detection import (
    CenterCropDetectionBackend,
    FaceDetector,
    MediaPipeDetectionBackend,
)
from facegate.recognition.embeddings import (
    BlockMeanEmbeddingBackend,
    EmbeddingExtractor,
    OnnxEmbeddingBackend,
)
from facegate.recognition.gallery import Gallery, GalleryStore
from facegate.recognition.liveness import LivenessGate, OnnxLivenessBackend, TextureLivenessBackend
from facegate.recognition.matcher import Matcher
from facegate.recognition.orchestrator import CaptureSink, RecognitionOrchestrator

logger = logging.getLogger("facegate.recognition.factory")


def _require_model(path: str | None, option: str) -> str:
    if not path:
        msg = f"{option} must be set when the onnx backend is selected"
        raise ConfigurationError(msg)
    return path


def build_detector(cfg: Settings) -> FaceDetector:
    if cfg.detector_backend == "mediapipe":
        try:
            backend = MediaPipeDetectionBackend(min_confidence=cfg.detection_min_confidence)
        except ImportError as exc:
            msg = "FG_DETECTOR_BACKEND=mediapipe requires the mediapipe package"
            raise ConfigurationError(msg) from exc
    else:
        backend = CenterCropDetectionBackend()
    return FaceDetector(
        backend=backend,
        min_confidence=cfg.detection_min_confidence,
        max_input_side=cfg.max_input_side,
    )


def build_liveness_gate(cfg: Settings) -> LivenessGate:
    if cfg.liveness_backend == "onnx":
        path = _require_model(cfg.liveness_model_path, "FG_LIVENESS_MODEL_PATH")
        try:
            backend = OnnxLivenessBackend(path)
        except ImportError as exc:
            msg = "FG_LIVENESS_BACKEND=onnx requires the onnxruntime package"
            raise ConfigurationError(msg) from exc
    else:
        backend = TextureLivenessBackend()
    return LivenessGate(backend=backend, threshold=cfg.liveness_threshold)


def build_extractor(cfg: Settings) -> EmbeddingExtractor:
    if cfg.embedding_backend == "onnx":
        path = _require_model(cfg.embedding_model_path, "FG_EMBEDDING_MODEL_PATH")
        try:
            backend = OnnxEmbeddingBackend(path)
        except ImportError as exc:
            msg = "FG_EMBEDDING_BACKEND=onnx requires the onnxruntime package"
            raise ConfigurationError(msg) from exc
    else:
        backend = BlockMeanEmbeddingBackend(cfg.embedding_dimension)
    return EmbeddingExtractor(backend=backend, dimension=cfg.embedding_dimension)


def build_matcher(cfg: Settings) -> Matcher:
    return Matcher(metric=cfg.similarity_metric, accept_threshold=cfg.effective_accept_threshold)


def build_orchestrator(
    cfg: Settings,
    store: GalleryStore,
    sink: CaptureSink | None = None,
) -> RecognitionOrchestrator:
    """Wire a complete orchestrator; the caller is responsible for the first gallery refresh."""
    detector = build_detector(cfg)
    gate = build_liveness_gate(cfg)
    extractor = build_extractor(cfg)
    gallery = Gallery(store, dimension=cfg.embedding_dimension, model_version=extractor.model_version)

    orchestrator = RecognitionOrchestrator(
        detector=detector,
        gate=gate,
        extractor=extractor,
        gallery=gallery,
        matcher=build_matcher(cfg),
        sink=sink,
        cooldown_min_interval_ms=cfg.cooldown_min_interval_ms,
        backend_timeout_s=cfg.backend_timeout_s,
        min_frame_interval_ms=cfg.min_frame_interval_ms,
        emit_unknown=cfg.emit_unknown,
    )
    logger.info(
        "Pipeline built: detector=%s liveness=%s embedding=%s",
        detector.backend_name,
        gate.backend_name,
        extractor.backend_name,
    )
    return orchestrator


def backend_summary(orchestrator: RecognitionOrchestrator) -> dict[str, str]:
    """Backend names for health checks and startup logs."""
    return {
        "detector": orchestrator.detector.backend_name,
        "liveness": orchestrator.gate.backend_name,
        "embedding": orchestrator.extractor.backend_name,
        "model_version": orchestrator.extractor.model_version,
    }
