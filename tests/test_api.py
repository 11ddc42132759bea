"""Tests for the FaceGate HTTP surface."""

from __future__ import annotations

import io

import numpy as np
import pytest_asyncio
from fakes import FixedLivenessBackend
from httpx import ASGITransport, AsyncClient
from PIL import Image

import facegate.api.app as app_module
from facegate.config import Settings
from facegate.recognition.liveness import LivenessGate


def _png(seed: int = 11, size: tuple[int, int] = (160, 120)) -> bytes:
    """Noise image; PNG keeps pixels identical between enrollment and recognition."""
    w, h = size
    pixels = np.random.default_rng(seed).integers(0, 256, (h, w, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


async def _enroll(client, person_id="alice", display_name="Alice", seed=11):
    return await client.post(
        "/gallery/enroll",
        files={"image": ("face.png", _png(seed), "image/png")},
        data={"person_id": person_id, "display_name": display_name},
    )


async def _submit(client, timestamp_ms=1000, seed=11, **data):
    return await client.post(
        "/frames",
        files={"image": ("frame.png", _png(seed), "image/png")},
        data={"timestamp_ms": str(timestamp_ms), **{k: str(v) for k, v in data.items()}},
    )


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"
        assert body["backends"]["detector"] == "heuristic"
        assert body["gallery_size"] == 0
        assert body["pipeline"]["state"] == "idle"


class TestGallery:
    async def test_enroll_and_list(self, client):
        resp = await _enroll(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["person_id"] == "alice"
        assert body["gallery_size"] == 1

        people = (await client.get("/gallery/people")).json()
        assert people["total"] == 1
        assert people["people"][0]["display_name"] == "Alice"

        count = (await client.get("/gallery/count")).json()
        assert count == {"faces": 1, "identities": 1}

    async def test_enroll_rejects_spoof(self, client):
        app_module._orchestrator.gate = LivenessGate(FixedLivenessBackend(0.1))
        resp = await _enroll(client)
        assert resp.status_code == 400
        assert resp.json()["error"] == "enrollment_error"

    async def test_enroll_bad_image(self, client):
        resp = await client.post(
            "/gallery/enroll",
            files={"image": ("face.png", b"not an image", "image/png")},
            data={"person_id": "alice"},
        )
        assert resp.status_code == 400

    async def test_delete_person(self, client):
        await _enroll(client)
        resp = await client.delete("/gallery/people/alice")
        assert resp.status_code == 200
        assert resp.json() == {"person_id": "alice", "faces_deleted": 1, "gallery_size": 0}

        missing = await client.delete("/gallery/people/alice")
        assert missing.status_code == 404
        body = missing.json()
        assert body["error"] == "not_found"
        assert "request_id" in body

    async def test_refresh(self, client):
        await _enroll(client)
        resp = await client.post("/gallery/refresh")
        assert resp.status_code == 200
        assert resp.json()["loaded"] == 1


class TestFrames:
    async def test_enrolled_person_recognized(self, client):
        await _enroll(client)
        resp = await _submit(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["emitted"] is True
        assert body["match"]["person_id"] == "alice"
        assert body["match"]["confidence"] > 0.99
        assert body["display_bbox"] is None

    async def test_spoof_suppressed(self, client):
        app_module._orchestrator.gate = LivenessGate(FixedLivenessBackend(0.1))
        body = (await _submit(client)).json()
        assert body["emitted"] is False
        assert body["reason"] == "spoof"
        assert body["match"] is None

    async def test_display_bbox_mirrored(self, client):
        body = (
            await _submit(client, view_width=160, view_height=120, front_facing="true")
        ).json()
        bbox = body["bbox"]
        display = body["display_bbox"]
        assert display["left"] == 160 - bbox["right"]
        assert display["right"] == 160 - bbox["left"]
        assert display["top"] == bbox["top"]

    async def test_invalid_view_size(self, client):
        resp = await _submit(client, view_width=0, view_height=120)
        assert resp.status_code == 400
        assert resp.json()["error"] == "configuration_error"

    async def test_empty_upload(self, client):
        resp = await client.post("/frames", files={"image": ("f.png", b"", "image/png")})
        assert resp.status_code == 400

    async def test_emitted_decision_stored_as_capture(self, client):
        await _enroll(client)
        await _submit(client)

        captures = (await client.get("/captures")).json()["captures"]
        assert len(captures) == 1
        assert captures[0]["person_id"] == "alice"

        thumb = await client.get(f"/captures/{captures[0]['id']}/thumbnail")
        assert thumb.status_code == 200
        assert thumb.headers["content-type"] == "image/jpeg"

    async def test_missing_thumbnail(self, client):
        resp = await client.get("/captures/nope/thumbnail")
        assert resp.status_code == 404


@pytest_asyncio.fixture
async def throttled_client(tmp_path):
    cfg = Settings(db_path=str(tmp_path / "throttle.db"), min_frame_interval_ms=10_000)
    orchestrator = await app_module.startup(cfg)
    orchestrator.gate = LivenessGate(FixedLivenessBackend(0.9))
    transport = ASGITransport(app=app_module.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app_module.shutdown()


class TestBackpressure:
    async def test_dropped_frame_is_429(self, throttled_client):
        first = await _submit(throttled_client, timestamp_ms=1000)
        second = await _submit(throttled_client, timestamp_ms=2000)
        assert first.status_code == 200
        assert second.status_code == 429
        body = second.json()
        assert body["error"] == "frame_dropped"
        assert body["frame_timestamp_ms"] == 2000


class TestNotStarted:
    async def test_endpoints_report_unavailable(self):
        transport = ASGITransport(app=app_module.app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            health = await ac.get("/health")
            frames = await ac.post("/frames", files={"image": ("f.png", _png(), "image/png")})
        assert health.json()["status"] == "starting"
        assert frames.status_code == 503
