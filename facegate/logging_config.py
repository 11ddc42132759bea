"""Structured logging configuration for FaceGate.

Environment variables:
    FG_LOG_FORMAT  -- ``json`` for structured JSON output, ``text`` for human-readable (default).
    FG_LOG_LEVEL   -- Python log level name (default: ``INFO``).
"""

from __future__ import annotations

import logging
import os
import traceback
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from facegate.config import Settings

# LogRecord attributes lifted into top-level JSON fields when present.
STRUCTURED_FIELDS = (
    "frame_ts",
    "person_id",
    "reason",
    "stage",
    "duration_ms",
    "request_id",
    "path",
    "method",
    "status_code",
)


def _is_json_mode() -> bool:
    """Return True when structured JSON logging is requested."""
    return os.environ.get("FG_LOG_FORMAT", "text").lower() == "json"


def _get_log_level() -> int:
    """Return the numeric log level from FG_LOG_LEVEL (default INFO)."""
    name = os.environ.get("FG_LOG_LEVEL", "INFO").upper()
    numeric = getattr(logging, name, None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter that emits one JSON object per log line.

    Uses ``pythonjsonlogger`` under the hood but injects the pipeline
    specific fields (frame_ts, person_id, reason, stage, duration_ms)
    when they are present on the LogRecord.
    """

    def __init__(self) -> None:
        super().__init__()
        from pythonjsonlogger.json import JsonFormatter

        self._inner = JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        extras: dict[str, Any] = {}
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                extras[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            extras["traceback"] = traceback.format_exception(*record.exc_info)
            # Keep the traceback out of the free-form message.
            record.exc_info = None
            record.exc_text = None

        for k, v in extras.items():
            setattr(record, k, v)

        return self._inner.format(record)


def setup_logging() -> None:
    """Configure the root logger according to FG_LOG_FORMAT and FG_LOG_LEVEL."""
    level = _get_log_level()
    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers so we don't double-log during tests.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if _is_json_mode():
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root.addHandler(handler)


def log_startup_info(
    backends: dict[str, str] | None = None, cfg: Settings | None = None
) -> None:
    """Emit a structured startup log line with pipeline configuration.

    ``cfg`` defaults to the module-level settings.
    """
    import facegate
    from facegate.config import settings

    cfg = cfg or settings
    logger = logging.getLogger("facegate")
    logger.info(
        "FaceGate started",
        extra={
            "version": facegate.__version__,
            "similarity_metric": cfg.similarity_metric,
            "accept_threshold": cfg.effective_accept_threshold,
            "cooldown_min_interval_ms": cfg.cooldown_min_interval_ms,
            "backends": backends or {},
        },
    )
