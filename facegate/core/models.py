"""Domain models for the recognition pipeline.

- Frame: one camera image plus a monotonic capture timestamp
- FaceObservation: a detected face in frame space, tied to its frame by timestamp
- LivenessVerdict / EmbeddingVector / MatchResult: per-face stage outputs
- GalleryEntry: a known identity loaded from the gallery store
- CooldownState: the orchestrator's debounce memory
- RecognitionDecision: the unit handed to the capture sink
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

UNKNOWN_KEY = "unknown"


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle (left, top, right, bottom)."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def is_well_formed(self) -> bool:
        return self.left <= self.right and self.top <= self.bottom

    @classmethod
    def from_xywh(cls, x: float, y: float, w: float, h: float) -> Rect:
        return cls(left=x, top=y, right=x + w, bottom=y + h)

    def as_xywh(self) -> tuple[float, float, float, float]:
        return (self.left, self.top, self.width, self.height)

    def to_dict(self) -> dict[str, float]:
        return {
            "left": self.left,
            "top": self.top,
            "right": self.right,
            "bottom": self.bottom,
        }


# ---------------------------------------------------------------------------
# Frames and observations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Frame:
    """An RGB camera frame. Owned by the caller for one processing call."""

    pixels: np.ndarray = field(repr=False)  # (H, W, 3) uint8
    width: int
    height: int
    timestamp_ms: int

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            msg = f"Frame pixels must be (H, W, 3), got {self.pixels.shape}"
            raise ValueError(msg)
        h, w = self.pixels.shape[:2]
        if (w, h) != (self.width, self.height):
            msg = f"Frame size {self.width}x{self.height} does not match pixels {w}x{h}"
            raise ValueError(msg)

    @classmethod
    def from_array(cls, pixels: np.ndarray, timestamp_ms: int) -> Frame:
        """Build a frame from an (H, W, 3) array, taking dimensions from its shape."""
        h, w = pixels.shape[:2]
        return cls(pixels=pixels, width=int(w), height=int(h), timestamp_ms=int(timestamp_ms))


@dataclass(frozen=True)
class FaceLandmarks:
    """5-point facial landmarks (pixel coordinates)."""

    left_eye: tuple[float, float]
    right_eye: tuple[float, float]
    nose_tip: tuple[float, float]
    mouth_left: tuple[float, float]
    mouth_right: tuple[float, float]


@dataclass(frozen=True)
class FaceObservation:
    """A single detected face in frame space."""

    bbox: Rect
    landmarks: FaceLandmarks | None
    confidence: float
    quality_score: float
    frame_timestamp_ms: int


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LivenessVerdict:
    """Result of a liveness check.

    ``failed`` marks a fail-closed verdict produced because the backend
    could not score the crop.
    """

    is_live: bool
    score: float  # 0.0 (spoof) – 1.0 (live)
    failed: bool = False


@dataclass(frozen=True)
class EmbeddingVector:
    """A fixed-length, L2-normalized face embedding."""

    vector: np.ndarray = field(repr=False)  # (dim,) float32
    model_version: str

    @property
    def dim(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class GalleryEntry:
    """A known identity.

    ``embedding`` is the normalized mean of every enrolled face of the
    person; ``samples`` holds those faces as unit rows (K, D) and is what the
    matcher scores against. ``raw_features`` holds the legacy un-normalized
    map, if any.
    """

    person_id: str
    display_name: str
    embedding: EmbeddingVector
    raw_features: np.ndarray | None = field(default=None, repr=False)
    samples: np.ndarray | None = field(default=None, repr=False)

    @property
    def sample_matrix(self) -> np.ndarray:
        if self.samples is None:
            return self.embedding.vector.reshape(1, -1)
        return self.samples


@dataclass(frozen=True)
class MatchResult:
    """Closest gallery entry, or ``person_id=None`` when nothing cleared the threshold."""

    person_id: str | None
    confidence: float
    display_name: str | None = None

    @property
    def key(self) -> str:
        """Debounce key: the matched person id, or ``"unknown"``."""
        return self.person_id if self.person_id is not None else UNKNOWN_KEY


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CooldownState:
    min_interval_ms: int
    last_event_timestamp_ms: int | None = None
    last_event_key: str | None = None


class DecisionReason(str, Enum):
    NO_FACE = "no_face"
    DETECTION_FAILED = "detection_failed"
    SPOOF = "spoof"
    LIVENESS_FAILED = "liveness_failed"
    EMBEDDING_FAILED = "embedding_failed"
    COOLDOWN = "cooldown"
    UNKNOWN_SUPPRESSED = "unknown_suppressed"


@dataclass
class StageTimings:
    """Wall-clock milliseconds spent in each stage of one cycle."""

    detection_ms: float = 0.0
    liveness_ms: float = 0.0
    embedding_ms: float = 0.0
    matching_ms: float = 0.0

    @property
    def total_ms(self) -> float:
        return self.detection_ms + self.liveness_ms + self.embedding_ms + self.matching_ms


@dataclass(frozen=True)
class RecognitionDecision:
    """Outcome of one orchestration cycle."""

    frame_timestamp_ms: int
    observation: FaceObservation | None
    liveness: LivenessVerdict | None
    match: MatchResult | None
    emitted: bool
    reason: DecisionReason | None = None
    faces_detected: int = 0
    timings: StageTimings = field(default_factory=StageTimings)
    face_crop: np.ndarray | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly summary (no pixel data)."""
        return {
            "frame_timestamp_ms": self.frame_timestamp_ms,
            "emitted": self.emitted,
            "reason": self.reason.value if self.reason is not None else None,
            "faces_detected": self.faces_detected,
            "bbox": self.observation.bbox.to_dict() if self.observation else None,
            "detection_confidence": self.observation.confidence if self.observation else None,
            "liveness": (
                {"is_live": self.liveness.is_live, "score": self.liveness.score}
                if self.liveness
                else None
            ),
            "match": (
                {
                    "person_id": self.match.person_id,
                    "display_name": self.match.display_name,
                    "confidence": self.match.confidence,
                }
                if self.match
                else None
            ),
            "timings_ms": {
                "detection": round(self.timings.detection_ms, 3),
                "liveness": round(self.timings.liveness_ms, 3),
                "embedding": round(self.timings.embedding_ms, 3),
                "matching": round(self.timings.matching_ms, 3),
            },
        }
