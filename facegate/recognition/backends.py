"""Capability interfaces for swappable inference backends.

Each pipeline stage talks to one small protocol. The adapters in
``detection``, ``liveness`` and ``embeddings`` own pre/post-processing and
failure policy; a backend only has to score pixels.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class RawDetection:
    """Backend output for one face, in coordinates relative to the input image.

    ``box`` is (xmin, ymin, width, height) and ``keypoints`` are (x, y) pairs,
    all as fractions of the image size. Keypoint order: left eye, right eye,
    nose tip, left mouth corner, right mouth corner.
    """

    box: tuple[float, float, float, float]
    score: float
    keypoints: Sequence[tuple[float, float]] = ()


@runtime_checkable
class DetectionBackend(Protocol):
    name: str

    def detect(self, image: np.ndarray) -> Sequence[RawDetection]:
        """Return raw detections for an (H, W, 3) uint8 RGB image."""
        ...


@runtime_checkable
class LivenessBackend(Protocol):
    name: str

    def score(self, face_crop: np.ndarray) -> float:
        """Return a liveness score in [0, 1] for an (H, W, 3) uint8 face crop."""
        ...


@runtime_checkable
class EmbeddingBackend(Protocol):
    name: str
    model_version: str
    input_size: tuple[int, int]

    def embed(self, face: np.ndarray) -> np.ndarray:
        """Return a 1-D feature vector for an (H, W, 3) float32 face in [-1, 1]."""
        ...
