"""Backend, store and sink test doubles."""

from __future__ import annotations

import asyncio
import threading
import time

import numpy as np

from facegate.core.models import Frame
from facegate.recognition.backends import RawDetection
from facegate.recognition.gallery import GalleryRecord
from facegate.recognition.matcher import Matcher

DIM = 4
MODEL_VERSION = "fake-v1"

# Relative keypoints for a face in the middle of the image
KEYPOINTS = [(0.4, 0.4), (0.6, 0.4), (0.5, 0.5), (0.42, 0.62), (0.58, 0.62)]


def make_frame(timestamp_ms: int = 1000, size: int = 64, seed: int = 0) -> Frame:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, (size, size, 3), dtype=np.uint8)
    return Frame.from_array(pixels, timestamp_ms)


def unit(*values: float) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32)
    return vec / np.linalg.norm(vec)


# ---------------------------------------------------------------------------
# Backend doubles
# ---------------------------------------------------------------------------


class FakeDetectionBackend:
    """Returns a fixed list of detections and counts calls."""

    name = "fake"

    def __init__(self, detections: list[RawDetection] | None = None) -> None:
        if detections is None:
            detections = [RawDetection(box=(0.25, 0.25, 0.5, 0.5), score=0.99, keypoints=KEYPOINTS)]
        self.detections = detections
        self.calls = 0

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        self.calls += 1
        return list(self.detections)


class BlockingDetectionBackend(FakeDetectionBackend):
    """Blocks the worker thread until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=5)
        return list(self.detections)


class SlowDetectionBackend(FakeDetectionBackend):
    """Sleeps in the worker thread before answering."""

    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self.delay_s = delay_s

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        time.sleep(self.delay_s)
        return super().detect(image)


class RaisingBackend:
    """Backend double whose every call raises."""

    name = "raising"
    model_version = MODEL_VERSION
    input_size = (16, 16)

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args):
        self.calls += 1
        raise RuntimeError("backend exploded")

    detect = _fail
    score = _fail
    embed = _fail


class FixedLivenessBackend:
    name = "fixed"

    def __init__(self, value: float = 0.9) -> None:
        self.value = value
        self.calls = 0

    def score(self, face_crop: np.ndarray) -> float:
        self.calls += 1
        return self.value


class FixedEmbeddingBackend:
    """Returns ``vector`` regardless of the input face."""

    name = "fixed"
    model_version = MODEL_VERSION
    input_size = (16, 16)

    def __init__(self, vector: np.ndarray | None = None) -> None:
        self.vector = unit(1, 0, 0, 0) if vector is None else vector
        self.calls = 0

    def embed(self, face: np.ndarray) -> np.ndarray:
        self.calls += 1
        return np.array(self.vector, dtype=np.float32)


class CountingMatcher(Matcher):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0

    def match(self, query, snapshot):
        self.calls += 1
        return super().match(query, snapshot)


class ListStore:
    """In-memory gallery store."""

    def __init__(self, records: list[GalleryRecord] | None = None) -> None:
        self.records = list(records or [])
        self.fail = False
        self.loads = 0

    async def load_all(self) -> list[GalleryRecord]:
        self.loads += 1
        if self.fail:
            raise OSError("store offline")
        return list(self.records)


class RecordingSink:
    def __init__(self) -> None:
        self.decisions = []

    async def submit(self, decision) -> None:
        self.decisions.append(decision)


class RaisingSink:
    def __init__(self) -> None:
        self.calls = 0

    async def submit(self, decision) -> None:
        self.calls += 1
        raise RuntimeError("sink offline")




class SlowSink(RecordingSink):
    """Takes ``delay_s`` on the event loop before recording."""

    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self.delay_s = delay_s

    async def submit(self, decision) -> None:
        await asyncio.sleep(self.delay_s)
        await super().submit(decision)
