"""Custom exception hierarchy for FaceGate.

Per-face pipeline failures are recovered inside the orchestrator and surface
as suppressed decisions; the HTTP error handler translates any exception that
does escape into a consistent JSON response.
"""

from __future__ import annotations


class FaceGateError(Exception):
    """Base exception for all FaceGate errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str = "An internal error occurred") -> None:
        self.message = message
        super().__init__(message)


class DetectionFailure(FaceGateError):
    """Detection backend raised, timed out, or returned malformed output."""

    status_code = 502
    error_type = "detection_failure"


class LivenessBackendFailure(FaceGateError):
    """Liveness backend raised, timed out, or returned an invalid score."""

    status_code = 502
    error_type = "liveness_backend_failure"


class EmbeddingBackendFailure(FaceGateError):
    """Embedding backend raised, timed out, or produced an unusable vector."""

    status_code = 502
    error_type = "embedding_backend_failure"


class EmbeddingDimensionError(EmbeddingBackendFailure):
    """Embedding length differs from the configured model dimension."""

    error_type = "embedding_dimension_error"


class GalleryLoadFailure(FaceGateError):
    """The gallery store could not be read during a refresh."""

    status_code = 503
    error_type = "gallery_load_failure"


class ConfigurationError(FaceGateError):
    """A component was used before configuration or configured with bad values."""

    status_code = 400
    error_type = "configuration_error"


class EnrollmentError(FaceGateError):
    """A face image could not be enrolled in the gallery."""

    status_code = 400
    error_type = "enrollment_error"


class NotFoundError(FaceGateError):
    """Requested resource was not found."""

    status_code = 404
    error_type = "not_found"


class StorageError(FaceGateError):
    """Database or storage layer failure."""

    status_code = 503
    error_type = "storage_error"
