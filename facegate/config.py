"""Centralized configuration for FaceGate.

Uses Pydantic BaseSettings with environment variable loading and validation.
All FG_* environment variables are validated at import time.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# Acceptance threshold used when FG_ACCEPT_THRESHOLD is unset. Euclidean scores
# are negative distances between unit vectors, so the threshold is negative too.
DEFAULT_ACCEPT_THRESHOLDS = {"cosine": 0.6, "euclidean": -0.9}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = {"env_prefix": "FG_", "case_sensitive": False, "extra": "ignore"}

    # Matching
    similarity_metric: str = Field(
        default="cosine", description="Similarity metric: cosine or euclidean"
    )
    accept_threshold: float | None = Field(
        default=None, description="Minimum score for a gallery match (metric default if unset)"
    )
    embedding_dimension: int = Field(
        default=512, ge=1, description="Embedding length produced by the extraction model"
    )

    # Decision policy
    cooldown_min_interval_ms: int = Field(
        default=3000, ge=0, description="Minimum interval between events with the same key"
    )
    emit_unknown: bool = Field(
        default=True, description="Emit capture events for faces with no gallery match"
    )
    min_frame_interval_ms: int = Field(
        default=0, ge=0, description="Drop frames arriving sooner than this after the last one"
    )

    # Liveness
    liveness_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Minimum liveness score to treat a face as live"
    )

    # Detection
    detection_min_confidence: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Minimum detector confidence"
    )
    max_input_side: int = Field(
        default=640, ge=32, description="Frames are downscaled to this longest side before detection"
    )

    # Backends
    detector_backend: str = Field(default="heuristic", description="heuristic or mediapipe")
    liveness_backend: str = Field(default="texture", description="texture or onnx")
    embedding_backend: str = Field(default="fallback", description="fallback or onnx")
    embedding_model_path: str | None = Field(default=None, description="ONNX embedding model")
    liveness_model_path: str | None = Field(default=None, description="ONNX anti-spoof model")
    backend_timeout_s: float = Field(
        default=2.0, gt=0.0, description="Per-call timeout for inference backends"
    )

    # Storage
    db_path: str = Field(default="facegate.db", description="SQLite database path")

    # Logging
    log_format: str = Field(default="text", description="Log format: text or json")
    log_level: str = Field(default="INFO", description="Python log level")

    # Server
    host: str = Field(default="0.0.0.0", description="Server bind host")  # noqa: S104
    port: int = Field(default=8000, ge=1, le=65535, description="Server bind port")
    cors_origins: str = Field(default="*", description="Comma-separated CORS origins")

    @field_validator("similarity_metric")
    @classmethod
    def validate_similarity_metric(cls, v: str) -> str:
        v = v.lower()
        if v not in DEFAULT_ACCEPT_THRESHOLDS:
            msg = f"FG_SIMILARITY_METRIC must be 'cosine' or 'euclidean', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("detector_backend")
    @classmethod
    def validate_detector_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("heuristic", "mediapipe"):
            msg = f"FG_DETECTOR_BACKEND must be 'heuristic' or 'mediapipe', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("liveness_backend")
    @classmethod
    def validate_liveness_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("texture", "onnx"):
            msg = f"FG_LIVENESS_BACKEND must be 'texture' or 'onnx', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("embedding_backend")
    @classmethod
    def validate_embedding_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("fallback", "onnx"):
            msg = f"FG_EMBEDDING_BACKEND must be 'fallback' or 'onnx', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "json"):
            msg = f"FG_LOG_FORMAT must be 'text' or 'json', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        import logging

        v = v.upper()
        if not hasattr(logging, v):
            msg = f"FG_LOG_LEVEL must be a valid Python log level, got '{v}'"
            raise ValueError(msg)
        return v

    @property
    def effective_accept_threshold(self) -> float:
        """Return the configured acceptance threshold or the metric default."""
        if self.accept_threshold is not None:
            return self.accept_threshold
        return DEFAULT_ACCEPT_THRESHOLDS[self.similarity_metric]

    @property
    def cors_origin_list(self) -> list[str]:
        """Return parsed list of CORS origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Singleton - validated at import time.
settings = Settings()
