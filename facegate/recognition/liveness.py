"""Passive liveness gate for anti-spoofing.

``LivenessGate`` owns the live/spoof threshold and the fail-closed policy:
whatever goes wrong in the backend, the verdict is "not live".

Backends:
- ``TextureLivenessBackend`` analyzes texture, frequency, and color-space
  cues of printed photos and screen replays (numpy only, no model files).
- ``OnnxLivenessBackend`` runs a MiniFASNet-style anti-spoof classifier.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from PIL import Image

from facegate.core.models import LivenessVerdict
from facegate.exceptions import LivenessBackendFailure
from facegate.recognition.backends import LivenessBackend

logger = logging.getLogger("facegate.recognition.liveness")


def _moire_score(gray: np.ndarray) -> float:
    """Detect moiré patterns indicative of screen replay attacks.

    Moiré patterns create periodic high-frequency noise. We measure
    the ratio of high-frequency energy to total energy using simple
    finite-difference approximations.
    """
    dx = np.diff(gray.astype(np.float64), axis=1)
    dy = np.diff(gray.astype(np.float64), axis=0)

    d2x = np.diff(dx, axis=1)
    d2y = np.diff(dy, axis=0)

    hf_energy = float(np.mean(d2x**2) + np.mean(d2y**2))
    total_energy = float(np.mean(dx**2) + np.mean(dy**2)) + 1e-10

    # Live faces have ratio < 1.5, screen replays > 2.0 typically
    ratio = hf_energy / total_energy
    return float(np.clip(1.0 - (ratio - 1.0) / 2.0, 0.0, 1.0))


def _frequency_score(gray: np.ndarray) -> float:
    """Analyze frequency distribution for naturalness.

    Real faces have a characteristic 1/f frequency falloff.
    Printed or screen-displayed faces have different spectral profiles.
    """
    magnitude = np.abs(np.fft.fftshift(np.fft.fft2(gray.astype(np.float64))))

    h, w = magnitude.shape
    cy, cx = h // 2, w // 2
    y_coords, x_coords = np.ogrid[:h, :w]
    dist = np.sqrt((y_coords - cy) ** 2 + (x_coords - cx) ** 2)

    low = float(np.mean(magnitude[dist < min(h, w) * 0.1]))
    mid = float(np.mean(magnitude[(dist >= min(h, w) * 0.1) & (dist < min(h, w) * 0.3)]))
    high = float(np.mean(magnitude[dist >= min(h, w) * 0.3]))

    if low == 0:
        return 0.5

    mid_ratio = mid / (low + 1e-10)
    high_ratio = high / (low + 1e-10)

    # Ideal: mid_ratio ~ 0.1-0.3, high_ratio ~ 0.01-0.05
    mid_score = float(np.clip(1.0 - abs(mid_ratio - 0.2) / 0.3, 0.0, 1.0))
    high_score = float(np.clip(1.0 - abs(high_ratio - 0.03) / 0.1, 0.0, 1.0))

    return (mid_score + high_score) / 2.0


def _color_score(image: np.ndarray) -> float:
    """Analyze color-space properties for liveness cues.

    Live faces have characteristic skin-tone distributions and
    color variance that differ from printed/screen images.
    """
    if image.ndim != 3 or image.shape[2] < 3:
        return 0.5

    r = image[:, :, 0].astype(np.float64)
    g = image[:, :, 1].astype(np.float64)
    b = image[:, :, 2].astype(np.float64)

    color_var = float(np.std(r) + np.std(g) + np.std(b)) / 3.0
    var_score = float(np.clip(color_var / 40.0, 0.0, 1.0))

    total = r + g + b + 1e-10
    r_ratio = np.mean(r / total)
    g_ratio = np.mean(g / total)

    # Skin typically: R > 0.36, G ~ 0.28-0.34
    skin_score = 1.0
    if r_ratio < 0.33 or g_ratio > 0.38:
        skin_score = 0.5

    return float(0.6 * var_score + 0.4 * skin_score)


class TextureLivenessBackend:
    """Weighted combination of moiré, frequency, and color cues."""

    name = "texture"

    def checks(self, face_crop: np.ndarray) -> dict[str, float]:
        """Return the individual cue scores, rounded to 4 places."""
        gray = face_crop
        if face_crop.ndim == 3:
            gray = np.mean(face_crop, axis=2).astype(np.uint8)
        return {
            "moire": round(_moire_score(gray), 4),
            "frequency": round(_frequency_score(gray), 4),
            "color": round(_color_score(face_crop), 4),
        }

    def score(self, face_crop: np.ndarray) -> float:
        c = self.checks(face_crop)
        return round(0.35 * c["moire"] + 0.35 * c["frequency"] + 0.30 * c["color"], 4)


class OnnxLivenessBackend:
    """Anti-spoof classifier exported to ONNX.

    Expects an (N, 3, S, S) float input and class logits as output; the
    softmax probability of ``live_class_index`` is the liveness score.
    """

    name = "onnx"

    def __init__(
        self,
        model_path: str,
        input_size: int = 80,
        live_class_index: int = 1,
    ) -> None:
        import onnxruntime as ort  # type: ignore[import-untyped]

        opts = ort.SessionOptions()
        opts.intra_op_num_threads = 1
        self._session = ort.InferenceSession(model_path, sess_options=opts)
        self._input_name = self._session.get_inputs()[0].name
        self.input_size = input_size
        self.live_class_index = live_class_index
        logger.info("ONNX liveness model loaded: %s", model_path)

    def score(self, face_crop: np.ndarray) -> float:
        resized = Image.fromarray(face_crop.astype(np.uint8)).resize(
            (self.input_size, self.input_size), Image.Resampling.BILINEAR
        )
        img = np.asarray(resized, dtype=np.float32).transpose(2, 0, 1)[np.newaxis, ...]
        logits = np.asarray(self._session.run(None, {self._input_name: img})[0]).reshape(-1)
        exp = np.exp(logits - np.max(logits))
        probs = exp / np.sum(exp)
        return float(probs[self.live_class_index])


class LivenessGate:
    """Classifies face crops as live or spoofed, failing closed."""

    def __init__(self, backend: LivenessBackend | None = None, threshold: float = 0.5) -> None:
        self.backend = backend or TextureLivenessBackend()
        self.threshold = threshold

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def check(self, face_crop: np.ndarray) -> LivenessVerdict:
        """Run the liveness backend on one face crop.

        Any backend failure yields ``LivenessVerdict(False, 0.0, failed=True)``.
        """
        try:
            if face_crop.size == 0:
                raise LivenessBackendFailure("Empty face crop")
            score = float(self.backend.score(face_crop))
            if not math.isfinite(score) or not 0.0 <= score <= 1.0:
                raise LivenessBackendFailure(f"Liveness score out of range: {score}")
        except Exception:
            logger.warning(
                "Liveness backend %s failed; rejecting face",
                self.backend_name,
                exc_info=True,
                extra={"stage": "liveness"},
            )
            return self.failed_verdict()

        return LivenessVerdict(is_live=score >= self.threshold, score=score)

    @staticmethod
    def failed_verdict() -> LivenessVerdict:
        """Fail-closed verdict used for backend errors and timeouts."""
        return LivenessVerdict(is_live=False, score=0.0, failed=True)
