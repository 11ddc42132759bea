"""Face detection adapter, landmark alignment, and quality scoring.

``FaceDetector`` wraps a :class:`~facegate.recognition.backends.DetectionBackend`
and turns its relative boxes into :class:`FaceObservation` values in frame
pixels. Backend errors and malformed output never escape ``detect``: they
produce an empty result carrying a ``DetectionFailure``.

Two backends ship with FaceGate: MediaPipe (imported lazily, so the package
works without it installed) and a center-crop heuristic that assumes one
roughly centered face, useful for tests and fixed-mount kiosks.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import numpy as np
from PIL import Image

from facegate.core.models import FaceLandmarks, FaceObservation, Frame, Rect
from facegate.exceptions import DetectionFailure
from facegate.recognition.backends import DetectionBackend, RawDetection

logger = logging.getLogger("facegate.recognition.detection")

# Target output size after alignment
ALIGNED_SIZE = (112, 112)


def _compute_quality(image_array: np.ndarray) -> float:
    """Estimate face image quality from sharpness and brightness.

    Returns a score in [0, 1] where 1 = ideal quality.
    """
    gray = image_array.astype(np.float64)
    if gray.ndim == 3:
        gray = np.mean(gray, axis=2)
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0

    # Sharpness via Laplacian variance (approximated with finite diffs)
    laplacian = (
        gray[:-2, 1:-1] + gray[2:, 1:-1] + gray[1:-1, :-2] + gray[1:-1, 2:] - 4 * gray[1:-1, 1:-1]
    )
    sharpness_score = min(float(np.var(laplacian)) / 500.0, 1.0)

    # Brightness: ideal mean around 127
    brightness_score = 1.0 - abs(float(np.mean(gray)) - 127.0) / 127.0

    contrast_score = min(float(np.std(gray)) / 64.0, 1.0)

    return round(0.5 * sharpness_score + 0.3 * brightness_score + 0.2 * contrast_score, 4)


def _clamped_box(frame: Frame, bbox: Rect) -> tuple[int, int, int, int]:
    """Integer (left, top, right, bottom) inside the frame, at least 1px each way."""
    left = min(max(int(bbox.left), 0), frame.width - 1)
    top = min(max(int(bbox.top), 0), frame.height - 1)
    right = min(max(int(math.ceil(bbox.right)), left + 1), frame.width)
    bottom = min(max(int(math.ceil(bbox.bottom)), top + 1), frame.height)
    return left, top, right, bottom


def crop_face(frame: Frame, observation: FaceObservation) -> np.ndarray:
    """Copy the observation's bounding box out of the frame (clamped to bounds)."""
    left, top, right, bottom = _clamped_box(frame, observation.bbox)
    return frame.pixels[top:bottom, left:right].copy()


def align_face(
    frame: Frame,
    observation: FaceObservation,
    output_size: tuple[int, int] = ALIGNED_SIZE,
) -> np.ndarray:
    """Align a face crop using eye-center rotation + scale.

    Rotates the frame about the eye midpoint so the eye line is horizontal,
    then crops the bounding box and resizes to ``output_size``. Without
    landmarks the box is cropped and resized as-is.
    """
    pil_img = Image.fromarray(frame.pixels.astype(np.uint8))
    lm = observation.landmarks
    if lm is not None:
        le = np.array(lm.left_eye)
        re = np.array(lm.right_eye)
        eye_center = (le + re) / 2.0
        angle = float(np.degrees(np.arctan2(re[1] - le[1], re[0] - le[0])))
        pil_img = pil_img.rotate(angle, center=(float(eye_center[0]), float(eye_center[1])))

    box = _clamped_box(frame, observation.bbox)
    cropped = pil_img.crop(box).resize(output_size, Image.Resampling.LANCZOS)
    return np.asarray(cropped)


@dataclass(frozen=True)
class DetectionResult:
    """Faces found in one frame, in backend order.

    Behaves as a read-only sequence of :class:`FaceObservation`. When the
    backend failed, the sequence is empty and ``failure`` explains why.
    """

    faces: tuple[FaceObservation, ...] = ()
    failure: DetectionFailure | None = None

    def __len__(self) -> int:
        return len(self.faces)

    def __iter__(self) -> Iterator[FaceObservation]:
        return iter(self.faces)

    def __getitem__(self, index: int) -> FaceObservation:
        return self.faces[index]

    def __bool__(self) -> bool:
        return bool(self.faces)


def _finite(*values: float) -> bool:
    return all(math.isfinite(v) for v in values)


class FaceDetector:
    """Adapts a detection backend to frame-space face observations."""

    def __init__(
        self,
        backend: DetectionBackend | None = None,
        min_confidence: float = 0.5,
        max_input_side: int = 640,
    ) -> None:
        self.backend = backend or CenterCropDetectionBackend()
        self.min_confidence = min_confidence
        self.max_input_side = max_input_side

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def _prepare(self, frame: Frame) -> np.ndarray:
        """Downscale large frames; relative backend coordinates make this transparent."""
        longest = max(frame.width, frame.height)
        if longest <= self.max_input_side:
            return frame.pixels
        scale = self.max_input_side / longest
        size = (max(int(frame.width * scale), 1), max(int(frame.height * scale), 1))
        resized = Image.fromarray(frame.pixels.astype(np.uint8)).resize(
            size, Image.Resampling.BILINEAR
        )
        return np.asarray(resized)

    def detect(self, frame: Frame) -> DetectionResult:
        """Detect faces in a frame.

        Returns a ``DetectionResult``; never raises for backend problems.
        """
        try:
            raw = self.backend.detect(self._prepare(frame))
            faces = self._adapt(frame, raw)
        except DetectionFailure as exc:
            logger.warning(
                "Malformed detector output: %s", exc.message, extra={"stage": "detection"}
            )
            return DetectionResult(failure=exc)
        except Exception as exc:
            logger.warning(
                "Detection backend %s failed",
                self.backend_name,
                exc_info=True,
                extra={"stage": "detection", "frame_ts": frame.timestamp_ms},
            )
            return DetectionResult(failure=DetectionFailure(f"{type(exc).__name__}: {exc}"))
        return DetectionResult(faces=tuple(faces))

    def _adapt(self, frame: Frame, raw: Sequence[RawDetection]) -> list[FaceObservation]:
        if raw is None or isinstance(raw, (str, bytes)):
            raise DetectionFailure(f"Detector returned {type(raw).__name__}, expected a sequence")

        w, h = frame.width, frame.height
        faces: list[FaceObservation] = []
        for i, det in enumerate(raw):
            try:
                x, y, bw, bh = (float(v) for v in det.box)
                score = float(det.score)
                keypoints = [(float(px), float(py)) for px, py in det.keypoints]
            except (AttributeError, TypeError, ValueError) as exc:
                raise DetectionFailure(f"Detection {i} is malformed: {exc}") from exc
            if not _finite(x, y, bw, bh, score) or bw <= 0 or bh <= 0:
                raise DetectionFailure(f"Detection {i} has an invalid box {det.box!r}")

            if score < self.min_confidence:
                continue

            bbox = Rect(
                left=max(x * w, 0.0),
                top=max(y * h, 0.0),
                right=min((x + bw) * w, float(w)),
                bottom=min((y + bh) * h, float(h)),
            )
            if bbox.width <= 0 or bbox.height <= 0:
                # Entirely outside the frame
                continue

            landmarks = None
            if len(keypoints) >= 5 and _finite(*(c for kp in keypoints[:5] for c in kp)):
                px = [(kx * w, ky * h) for kx, ky in keypoints[:5]]
                landmarks = FaceLandmarks(
                    left_eye=px[0],
                    right_eye=px[1],
                    nose_tip=px[2],
                    mouth_left=px[3],
                    mouth_right=px[4],
                )

            provisional = FaceObservation(
                bbox=bbox,
                landmarks=landmarks,
                confidence=score,
                quality_score=0.0,
                frame_timestamp_ms=frame.timestamp_ms,
            )
            quality = _compute_quality(crop_face(frame, provisional))
            faces.append(
                FaceObservation(
                    bbox=bbox,
                    landmarks=landmarks,
                    confidence=score,
                    quality_score=quality,
                    frame_timestamp_ms=frame.timestamp_ms,
                )
            )
        return faces


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class MediaPipeDetectionBackend:
    """MediaPipe short/full-range face detection."""

    name = "mediapipe"

    def __init__(self, min_confidence: float = 0.5, model_selection: int = 1) -> None:
        import mediapipe as mp  # type: ignore[import-untyped]

        mp_face = mp.solutions.face_detection  # type: ignore[attr-defined]
        self._detector = mp_face.FaceDetection(
            model_selection=model_selection,
            min_detection_confidence=min_confidence,
        )
        logger.info("MediaPipe face detector initialized")

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        results = self._detector.process(image)
        if not results.detections:
            return []

        out: list[RawDetection] = []
        for det in results.detections:
            bb = det.location_data.relative_bounding_box
            kps = det.location_data.relative_keypoints
            out.append(
                RawDetection(
                    box=(bb.xmin, bb.ymin, bb.width, bb.height),
                    score=float(det.score[0]),
                    keypoints=[(kp.x, kp.y) for kp in kps[:5]],
                )
            )
        return sorted(out, key=lambda d: d.score, reverse=True)


class CenterCropDetectionBackend:
    """Simple center-crop heuristic detector (no external deps).

    Assumes a single face centered in the image, occupying the central
    60% horizontally and 70% vertically.
    """

    name = "heuristic"

    def __init__(self, confidence: float = 0.95) -> None:
        self.confidence = confidence

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        mx, my = 0.2, 0.15
        bw, bh = 1.0 - 2 * mx, 1.0 - 2 * my
        cx, cy = 0.5, 0.5
        # Synthetic landmarks based on face proportions
        keypoints = [
            (cx - bw * 0.15, cy - bh * 0.1),
            (cx + bw * 0.15, cy - bh * 0.1),
            (cx, cy + bh * 0.05),
            (cx - bw * 0.1, cy + bh * 0.2),
            (cx + bw * 0.1, cy + bh * 0.2),
        ]
        return [RawDetection(box=(mx, my, bw, bh), score=self.confidence, keypoints=keypoints)]
