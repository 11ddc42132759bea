"""Nearest-identity search over a gallery snapshot.

Linear scan: galleries are tens to low hundreds of entries. A larger
gallery would swap this class for an approximate nearest-neighbor index
behind the same ``match`` signature.
"""

from __future__ import annotations

import logging

import numpy as np

from facegate.config import DEFAULT_ACCEPT_THRESHOLDS
from facegate.core.models import EmbeddingVector, MatchResult
from facegate.recognition.gallery import GallerySnapshot

logger = logging.getLogger("facegate.recognition.matcher")


class Matcher:
    """Best-score gallery search with an inclusive acceptance threshold.

    Parameters
    ----------
    metric : str
        ``cosine`` (similarity) or ``euclidean`` (negative distance). Fixed for
        the lifetime of the matcher so scores are never mixed.
    accept_threshold : float | None
        Minimum score for a positive match; metric default when *None*.
    """

    def __init__(self, metric: str = "cosine", accept_threshold: float | None = None) -> None:
        if metric not in DEFAULT_ACCEPT_THRESHOLDS:
            msg = f"Unknown similarity metric '{metric}'"
            raise ValueError(msg)
        self.metric = metric
        self.accept_threshold = (
            accept_threshold
            if accept_threshold is not None
            else DEFAULT_ACCEPT_THRESHOLDS[metric]
        )

    def scores(self, query: EmbeddingVector, snapshot: GallerySnapshot) -> np.ndarray:
        """Score every snapshot entry against ``query``.

        A person enrolled with several faces scores as their closest face.
        Entries of another dimension or model version score ``-inf``.
        """
        n = len(snapshot)
        out = np.full(n, -np.inf, dtype=np.float64)
        if n == 0 or snapshot.matrix is None or snapshot.matrix.shape[1] != query.dim:
            return out

        q = query.vector.astype(np.float64)
        mat = snapshot.matrix.astype(np.float64)
        if self.metric == "cosine":
            norms = np.linalg.norm(mat, axis=1) * np.linalg.norm(q)
            with np.errstate(divide="ignore", invalid="ignore"):
                raw = np.where(norms > 0, mat @ q / norms, 0.0)
        else:
            raw = -np.linalg.norm(mat - q, axis=1)

        best = np.full(n, -np.inf, dtype=np.float64)
        np.maximum.at(best, snapshot.owners, raw)

        comparable = np.array(
            [e.embedding.model_version == query.model_version for e in snapshot.entries]
        )
        out[comparable] = best[comparable]
        return out

    def match(self, query: EmbeddingVector, snapshot: GallerySnapshot) -> MatchResult:
        """Return the best gallery entry for ``query``, or an unknown result."""
        scores = self.scores(query, snapshot)
        if len(scores) == 0 or not np.any(np.isfinite(scores)):
            return MatchResult(person_id=None, confidence=0.0)

        best_score = float(np.max(scores))
        # Exact ties go to the lexicographically smallest person_id
        tied = [snapshot.entries[i] for i in np.flatnonzero(scores == best_score)]
        best = min(tied, key=lambda e: e.person_id)
        logger.debug("Best candidate %s score=%.4f", best.person_id, best_score)

        if best_score >= self.accept_threshold:
            return MatchResult(
                person_id=best.person_id,
                confidence=best_score,
                display_name=best.display_name,
            )
        return MatchResult(person_id=None, confidence=best_score)
