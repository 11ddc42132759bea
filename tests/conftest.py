"""Shared fixtures for FaceGate tests."""

from __future__ import annotations

import pytest
import pytest_asyncio
from fakes import (
    DIM,
    MODEL_VERSION,
    CountingMatcher,
    FakeDetectionBackend,
    FixedEmbeddingBackend,
    FixedLivenessBackend,
    ListStore,
    RecordingSink,
    unit,
)
from httpx import ASGITransport, AsyncClient

import facegate.api.app as app_module
from facegate.config import Settings
from facegate.recognition.detection import FaceDetector
from facegate.recognition.embeddings import EmbeddingExtractor
from facegate.recognition.gallery import Gallery, GalleryRecord
from facegate.recognition.liveness import LivenessGate
from facegate.recognition.orchestrator import RecognitionOrchestrator
from facegate.storage.database import Database


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def people_store() -> ListStore:
    return ListStore(
        [
            GalleryRecord("alice", "Alice", embedding=unit(1, 0, 0, 0), model_version=MODEL_VERSION),
            GalleryRecord("bob", "Bob", embedding=unit(0, 1, 0, 0), model_version=MODEL_VERSION),
        ]
    )


@pytest.fixture
def make_orchestrator(people_store):
    """Factory building an orchestrator from doubles; returns (orchestrator, parts)."""

    async def _make(
        detection=None,
        liveness=None,
        embedding=None,
        sink=None,
        store=None,
        **kwargs,
    ):
        parts = {
            "detection": detection or FakeDetectionBackend(),
            "liveness": liveness or FixedLivenessBackend(0.9),
            "embedding": embedding or FixedEmbeddingBackend(),
            "sink": sink if sink is not None else RecordingSink(),
            "matcher": CountingMatcher("cosine"),
        }
        gallery = Gallery(store or people_store, dimension=DIM, model_version=MODEL_VERSION)
        await gallery.refresh()
        orchestrator = RecognitionOrchestrator(
            detector=FaceDetector(parts["detection"]),
            gate=LivenessGate(parts["liveness"], threshold=0.5),
            extractor=EmbeddingExtractor(parts["embedding"], dimension=DIM),
            gallery=gallery,
            matcher=parts["matcher"],
            sink=parts["sink"],
            **kwargs,
        )
        return orchestrator, parts

    return _make


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def client(tmp_path):
    """HTTP test client wired to a fresh database and an always-live gate."""
    cfg = Settings(db_path=str(tmp_path / "api_test.db"), cooldown_min_interval_ms=0)
    orchestrator = await app_module.startup(cfg)
    orchestrator.gate = LivenessGate(FixedLivenessBackend(0.9))

    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await app_module.shutdown()
