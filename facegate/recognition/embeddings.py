"""Face embedding extraction.

``EmbeddingExtractor`` prepares an aligned, liveness-approved crop for an
:class:`~facegate.recognition.backends.EmbeddingBackend`, then validates and
L2-normalizes what comes back. Output length is fixed by the model; a vector
of any other length is rejected rather than compared.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import numpy as np
from PIL import Image

from facegate.core.models import EmbeddingVector
from facegate.exceptions import EmbeddingBackendFailure, EmbeddingDimensionError
from facegate.recognition.backends import EmbeddingBackend

logger = logging.getLogger("facegate.recognition.embeddings")

DEFAULT_INPUT_SIZE = (112, 112)


def _infer_model_name(model_path: str) -> str:
    """Infer a human-readable model name from the file path."""
    stem = Path(model_path).stem.lower()
    if "mobilefacenet" in stem or "mobile" in stem:
        return "onnx-mobilefacenet"
    if "facenet" in stem:
        return "onnx-facenet"
    if "r100" in stem or "buffalo_l" in stem or "glintr100" in stem:
        return "onnx-arcface-r100"
    if "r50" in stem or "w600k" in stem:
        return "onnx-arcface-r50"
    return f"onnx-{stem}"


class OnnxEmbeddingBackend:
    """ArcFace / FaceNet style embedding model run through ONNX Runtime."""

    name = "onnx"

    def __init__(self, model_path: str, model_name: str | None = None) -> None:
        import onnxruntime as ort  # type: ignore[import-untyped]

        t0 = time.monotonic()
        opts = ort.SessionOptions()
        opts.intra_op_num_threads = 2
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        self._session = ort.InferenceSession(model_path, sess_options=opts)
        elapsed = time.monotonic() - t0

        self.model_path = model_path
        self.model_version = model_name or _infer_model_name(model_path)

        inp = self._session.get_inputs()[0]
        out = self._session.get_outputs()[0]
        self._input_name = inp.name
        # NCHW; dynamic dims come back as strings
        h, w = inp.shape[2], inp.shape[3]
        self.input_size = (
            (int(h), int(w)) if isinstance(h, int) and isinstance(w, int) else DEFAULT_INPUT_SIZE
        )
        logger.info(
            "ONNX model loaded: %s (%.2fs) | input=%s %s | output=%s %s",
            self.model_version,
            elapsed,
            inp.name,
            inp.shape,
            out.name,
            out.shape,
        )

    def embed(self, face: np.ndarray) -> np.ndarray:
        img = face.transpose(2, 0, 1)[np.newaxis, ...].astype(np.float32)
        outputs = self._session.run(None, {self._input_name: img})
        return np.asarray(outputs[0]).flatten()


class BlockMeanEmbeddingBackend:
    """Deterministic embedding from block-averaged pixel intensities.

    Produces a reproducible vector from pixel data without a trained
    model. Not suitable for real recognition.
    """

    name = "fallback"
    input_size = DEFAULT_INPUT_SIZE

    def __init__(self, dimension: int = 512) -> None:
        self.dimension = dimension
        self.model_version = f"block-mean-v1-{dimension}"

    def embed(self, face: np.ndarray) -> np.ndarray:
        gray = face
        if gray.ndim == 3:
            gray = np.mean(face, axis=2)
        flat = gray.astype(np.float64).ravel()

        block_size = max(len(flat) // self.dimension, 1)
        features = np.zeros(self.dimension, dtype=np.float64)
        for i in range(min(self.dimension, len(flat) // block_size)):
            block = flat[i * block_size : (i + 1) * block_size]
            # Shift into [0, 2] so uniform mid-gray crops still give a non-zero vector
            features[i] = np.mean(block) + 1.0
        return features


class EmbeddingExtractor:
    """Maps aligned face crops to fixed-length, unit-norm embeddings."""

    def __init__(self, backend: EmbeddingBackend | None = None, dimension: int = 512) -> None:
        self.backend = backend or BlockMeanEmbeddingBackend(dimension)
        self.dimension = dimension

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @property
    def model_version(self) -> str:
        return self.backend.model_version

    @property
    def model_info(self) -> dict:
        """Return model metadata for health checks."""
        return {
            "backend": self.backend_name,
            "model_version": self.model_version,
            "embedding_dim": self.dimension,
            "input_size": list(self.backend.input_size),
        }

    def _prepare(self, aligned_face: np.ndarray) -> np.ndarray:
        """Resize to the backend input size and normalize to [-1, 1]."""
        face = aligned_face.astype(np.uint8)
        if face.ndim == 2:
            face = np.stack([face] * 3, axis=-1)
        h, w = self.backend.input_size
        if face.shape[:2] != (h, w):
            face = np.asarray(Image.fromarray(face).resize((w, h), Image.Resampling.BILINEAR))
        return (face.astype(np.float32) - 127.5) / 127.5

    def embed(self, aligned_face: np.ndarray) -> EmbeddingVector:
        """Extract an embedding from an aligned, liveness-approved face crop.

        Raises:
            EmbeddingBackendFailure: the backend raised or returned an unusable vector.
            EmbeddingDimensionError: the vector length is not ``dimension``.
        """
        if aligned_face.size == 0:
            raise EmbeddingBackendFailure("Empty face crop")
        try:
            raw = self.backend.embed(self._prepare(aligned_face))
        except Exception as exc:
            msg = f"Embedding backend {self.backend_name} failed: {type(exc).__name__}: {exc}"
            raise EmbeddingBackendFailure(msg) from exc

        vector = np.asarray(raw, dtype=np.float64).reshape(-1)
        if len(vector) != self.dimension:
            msg = f"Expected {self.dimension}-d embedding, got {len(vector)}"
            raise EmbeddingDimensionError(msg)
        if not np.all(np.isfinite(vector)):
            raise EmbeddingBackendFailure("Embedding contains non-finite values")

        norm = np.linalg.norm(vector)
        if norm == 0:
            raise EmbeddingBackendFailure("Embedding has zero norm")

        return EmbeddingVector(
            vector=(vector / norm).astype(np.float32),
            model_version=self.model_version,
        )
