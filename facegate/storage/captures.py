"""Capture sink that persists emitted decisions and fans them out live."""

from __future__ import annotations

import io
import logging
from typing import Any, Protocol

import numpy as np
from PIL import Image

from facegate.core.models import RecognitionDecision
from facegate.storage.database import Database

logger = logging.getLogger("facegate.storage.captures")

THUMBNAIL_SIZE = (160, 160)


class Broadcaster(Protocol):
    def broadcast(self, event_data: dict[str, Any]) -> int: ...


def encode_thumbnail(face_crop: np.ndarray | None, quality: int = 85) -> bytes | None:
    """JPEG-encode a face crop, bounded to ``THUMBNAIL_SIZE``."""
    if face_crop is None or face_crop.size == 0:
        return None
    img = Image.fromarray(face_crop.astype(np.uint8))
    img.thumbnail(THUMBNAIL_SIZE)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


class DatabaseCaptureSink:
    """Stores each emitted decision in ``captures`` and broadcasts it."""

    def __init__(self, database: Database, broadcaster: Broadcaster | None = None) -> None:
        self.database = database
        self.broadcaster = broadcaster

    async def submit(self, decision: RecognitionDecision) -> None:
        match = decision.match
        observation = decision.observation
        record = await self.database.insert_capture(
            frame_timestamp_ms=decision.frame_timestamp_ms,
            person_id=match.person_id if match else None,
            display_name=match.display_name if match else None,
            confidence=match.confidence if match else 0.0,
            liveness_score=decision.liveness.score if decision.liveness else None,
            bbox=observation.bbox.to_dict() if observation else {},
            face_jpeg=encode_thumbnail(decision.face_crop),
        )
        logger.debug(
            "Capture %s stored",
            record["id"],
            extra={"frame_ts": decision.frame_timestamp_ms, "person_id": record["person_id"]},
        )
        if self.broadcaster is not None:
            self.broadcaster.broadcast(
                {"event_type": "recognition", "capture": record, "decision": decision.to_dict()}
            )
