"""Async SQLite storage for the face gallery and capture records.

Uses aiosqlite for async access. ``SqliteGalleryStore`` implements the
gallery store contract on top of the ``gallery_faces`` table; the capture
sink writes emitted decisions into ``captures``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite
import numpy as np

from facegate.exceptions import StorageError
from facegate.recognition.gallery import GalleryRecord

logger = logging.getLogger("facegate.storage")

DEFAULT_DB_PATH = Path(os.environ.get("FG_DB_PATH", "facegate.db"))

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS gallery_faces (
    id TEXT PRIMARY KEY,
    person_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    embedding BLOB,
    raw_features BLOB,
    embedding_dim INTEGER NOT NULL,
    model_version TEXT,
    quality_score REAL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_gallery_person
    ON gallery_faces (person_id);

CREATE INDEX IF NOT EXISTS idx_gallery_created_at
    ON gallery_faces (created_at);

CREATE TABLE IF NOT EXISTS captures (
    id TEXT PRIMARY KEY,
    captured_at TEXT NOT NULL,
    frame_timestamp_ms INTEGER NOT NULL,
    person_id TEXT,
    display_name TEXT,
    confidence REAL NOT NULL,
    liveness_score REAL,
    bbox TEXT NOT NULL DEFAULT '{}',
    face_jpeg BLOB
);

CREATE INDEX IF NOT EXISTS idx_captures_captured_at
    ON captures (captured_at);

CREATE INDEX IF NOT EXISTS idx_captures_person
    ON captures (person_id);
"""


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_blob(vec: np.ndarray | None) -> bytes | None:
    if vec is None:
        return None
    return np.asarray(vec, dtype=np.float32).reshape(-1).tobytes()


def _from_blob(blob: bytes | None) -> np.ndarray | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()


class Database:
    """Async SQLite connection holder."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("Database not connected")
        return self._db

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()
        logger.info("Connected to SQLite database at %s", self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Captures
    # ------------------------------------------------------------------

    async def insert_capture(
        self,
        frame_timestamp_ms: int,
        person_id: str | None,
        display_name: str | None,
        confidence: float,
        liveness_score: float | None,
        bbox: dict[str, float],
        face_jpeg: bytes | None = None,
    ) -> dict[str, Any]:
        capture_id = str(uuid4())
        captured_at = _utcnow_iso()
        await self.db.execute(
            "INSERT INTO captures "
            "(id, captured_at, frame_timestamp_ms, person_id, display_name, confidence, "
            "liveness_score, bbox, face_jpeg) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                capture_id,
                captured_at,
                frame_timestamp_ms,
                person_id,
                display_name,
                confidence,
                liveness_score,
                json.dumps(bbox),
                face_jpeg,
            ),
        )
        await self.db.commit()
        return {
            "id": capture_id,
            "captured_at": captured_at,
            "frame_timestamp_ms": frame_timestamp_ms,
            "person_id": person_id,
            "display_name": display_name,
            "confidence": confidence,
            "liveness_score": liveness_score,
            "bbox": bbox,
            "has_thumbnail": face_jpeg is not None,
        }

    async def list_captures(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        cursor = await self.db.execute(
            "SELECT id, captured_at, frame_timestamp_ms, person_id, display_name, confidence, "
            "liveness_score, bbox, face_jpeg IS NOT NULL "
            "FROM captures ORDER BY captured_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        rows = await cursor.fetchall()
        return [
            {
                "id": r[0],
                "captured_at": r[1],
                "frame_timestamp_ms": r[2],
                "person_id": r[3],
                "display_name": r[4],
                "confidence": r[5],
                "liveness_score": r[6],
                "bbox": json.loads(r[7]),
                "has_thumbnail": bool(r[8]),
            }
            for r in rows
        ]

    async def get_capture_thumbnail(self, capture_id: str) -> bytes | None:
        cursor = await self.db.execute(
            "SELECT face_jpeg FROM captures WHERE id = ?", (capture_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None


class SqliteGalleryStore:
    """Gallery store backed by the ``gallery_faces`` table.

    A person may have several face rows (one per enrolled image). Loading
    yields them oldest first, so the gallery keeps the newest enrollment.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    async def load_all(self) -> list[GalleryRecord]:
        cursor = await self.database.db.execute(
            "SELECT person_id, display_name, embedding, raw_features, model_version "
            "FROM gallery_faces ORDER BY created_at ASC, rowid ASC"
        )
        rows = await cursor.fetchall()
        return [
            GalleryRecord(
                person_id=r[0],
                display_name=r[1],
                embedding=_from_blob(r[2]),
                raw_features=_from_blob(r[3]),
                model_version=r[4],
            )
            for r in rows
        ]

    async def add_face(
        self,
        person_id: str,
        display_name: str,
        embedding: np.ndarray | None = None,
        model_version: str | None = None,
        raw_features: np.ndarray | None = None,
        quality_score: float | None = None,
    ) -> dict[str, Any]:
        """Insert one face row. Returns the stored record summary."""
        if embedding is None and raw_features is None:
            raise ValueError("A gallery face needs an embedding or raw features")
        source = embedding if embedding is not None else raw_features
        dim = int(np.asarray(source).size)

        entry_id = str(uuid4())
        now = _utcnow_iso()
        await self.database.db.execute(
            "INSERT INTO gallery_faces "
            "(id, person_id, display_name, embedding, raw_features, embedding_dim, "
            "model_version, quality_score, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry_id,
                person_id,
                display_name,
                _to_blob(embedding),
                _to_blob(raw_features),
                dim,
                model_version,
                quality_score,
                now,
            ),
        )
        await self.database.db.commit()
        logger.info("Stored gallery face for %s (entry %s)", person_id, entry_id)
        return {
            "entry_id": entry_id,
            "person_id": person_id,
            "display_name": display_name,
            "embedding_dim": dim,
            "model_version": model_version,
            "quality_score": quality_score,
            "created_at": now,
        }

    async def list_people(self) -> list[dict[str, Any]]:
        """List enrolled people with face counts, most recently enrolled first."""
        cursor = await self.database.db.execute(
            "SELECT person_id, MAX(display_name), COUNT(*), MAX(created_at) AS latest "
            "FROM gallery_faces GROUP BY person_id ORDER BY latest DESC"
        )
        rows = await cursor.fetchall()
        return [
            {
                "person_id": r[0],
                "display_name": r[1],
                "face_count": r[2],
                "latest_enrollment": r[3],
            }
            for r in rows
        ]

    async def delete_person(self, person_id: str) -> int:
        """Delete all faces for a person. Returns count deleted."""
        cursor = await self.database.db.execute(
            "DELETE FROM gallery_faces WHERE person_id = ?", (person_id,)
        )
        await self.database.db.commit()
        deleted = cursor.rowcount
        if deleted:
            logger.info("Deleted %d gallery faces for %s", deleted, person_id)
        return deleted

    async def count(self) -> int:
        cursor = await self.database.db.execute("SELECT COUNT(*) FROM gallery_faces")
        row = await cursor.fetchone()
        return row[0] if row else 0
