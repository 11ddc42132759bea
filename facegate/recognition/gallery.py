"""In-memory face gallery with copy-on-write snapshots.

The gallery loads known identities from an external store and serves
immutable ``GallerySnapshot`` values to the matcher. ``refresh()`` builds a
complete new snapshot before swapping the active reference, so a match in
progress always sees one consistent gallery and readers never lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np

from facegate.core.models import EmbeddingVector, GalleryEntry
from facegate.exceptions import GalleryLoadFailure

logger = logging.getLogger("facegate.recognition.gallery")


@dataclass(frozen=True)
class GalleryRecord:
    """One row as delivered by a gallery store.

    Either ``embedding`` or ``raw_features`` must be present. Raw features
    are the legacy un-normalized vectors stored by older enrollments.
    """

    person_id: str
    display_name: str
    embedding: np.ndarray | None = field(default=None, repr=False)
    raw_features: np.ndarray | None = field(default=None, repr=False)
    model_version: str | None = None


@runtime_checkable
class GalleryStore(Protocol):
    async def load_all(self) -> Sequence[GalleryRecord]: ...


@dataclass(frozen=True)
class GallerySnapshot:
    """Immutable view of the gallery for one matching pass.

    ``matrix`` stacks the sample rows of every entry; ``owners[i]`` is the
    index into ``entries`` of the person row ``i`` belongs to.
    """

    entries: tuple[GalleryEntry, ...] = ()
    matrix: np.ndarray | None = field(default=None, repr=False)  # (R, D) float32
    owners: np.ndarray | None = field(default=None, repr=False)  # (R,) intp
    version: int = 0

    @classmethod
    def build(cls, entries: Sequence[GalleryEntry], version: int = 0) -> GallerySnapshot:
        entries = tuple(entries)
        matrix = owners = None
        if entries:
            blocks = [e.sample_matrix.astype(np.float32) for e in entries]
            matrix = np.concatenate(blocks, axis=0)
            owners = np.concatenate(
                [np.full(len(b), i, dtype=np.intp) for i, b in enumerate(blocks)]
            )
            matrix.setflags(write=False)
            owners.setflags(write=False)
        return cls(entries=entries, matrix=matrix, owners=owners, version=version)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def person_ids(self) -> list[str]:
        return [e.person_id for e in self.entries]


@dataclass
class RefreshResult:
    """Outcome of ``Gallery.refresh``. ``error`` is set when the old snapshot was kept."""

    ok: bool
    loaded: int = 0
    conflicts: list[str] = field(default_factory=list)
    skipped: int = 0
    error: GalleryLoadFailure | None = None


def _l2_normalize(vec: np.ndarray) -> np.ndarray | None:
    norm = float(np.linalg.norm(vec))
    if norm == 0 or not np.isfinite(norm):
        return None
    return (vec / norm).astype(np.float32)


@dataclass(frozen=True)
class _Sample:
    display_name: str
    vector: np.ndarray  # unit, float32
    model_version: str
    raw_features: np.ndarray | None


def _merge(person_id: str, rows: list[_Sample]) -> GalleryEntry:
    """Fold every enrolled face of a person into one entry, latest row last."""
    samples = np.stack([r.vector for r in rows], axis=0)
    samples.setflags(write=False)
    centroid = _l2_normalize(samples.astype(np.float64).mean(axis=0))
    if centroid is None:
        # Opposing samples cancel out; fall back to the latest face
        centroid = rows[-1].vector
    raw = next((r.raw_features for r in reversed(rows) if r.raw_features is not None), None)
    return GalleryEntry(
        person_id=person_id,
        display_name=rows[-1].display_name,
        embedding=EmbeddingVector(vector=centroid, model_version=rows[-1].model_version),
        raw_features=raw,
        samples=samples,
    )


class Gallery:
    """Known identities, refreshed from a store and read via snapshots.

    Parameters
    ----------
    store : GalleryStore
        Source of gallery records; only read from :meth:`refresh`.
    dimension : int
        Embedding length of the active extraction model.
    model_version : str | None
        Active extraction model. Records tagged with a different version
        are skipped; untagged legacy records are adopted.
    """

    def __init__(self, store: GalleryStore, dimension: int, model_version: str | None = None) -> None:
        self.store = store
        self.dimension = dimension
        self.model_version = model_version
        self._snapshot = GallerySnapshot()
        self._refresh_lock = asyncio.Lock()

    def snapshot(self) -> GallerySnapshot:
        """Return the active snapshot (lock-free)."""
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    async def refresh(self) -> RefreshResult:
        """Reload from the store and atomically swap the active snapshot.

        A store failure leaves the previous snapshot active and is reported
        in the returned ``RefreshResult``.
        """
        async with self._refresh_lock:
            try:
                records = await self.store.load_all()
            except Exception as exc:
                failure = GalleryLoadFailure(f"Gallery store load failed: {exc}")
                logger.warning(
                    "Gallery refresh failed; keeping %d cached entries",
                    len(self._snapshot),
                    exc_info=True,
                )
                return RefreshResult(ok=False, loaded=len(self._snapshot), error=failure)

            grouped: dict[str, list[_Sample]] = {}
            conflicts: list[str] = []
            skipped = 0
            for record in records:
                sample = self._to_sample(record)
                if sample is None:
                    skipped += 1
                    continue
                rows = grouped.setdefault(record.person_id, [])
                if rows and rows[0].model_version != sample.model_version:
                    skipped += 1
                    logger.warning(
                        "Skipping %s face from model %s; person already enrolled with %s",
                        record.person_id,
                        sample.model_version,
                        rows[0].model_version,
                        extra={"person_id": record.person_id},
                    )
                    continue
                if rows and rows[-1].display_name != sample.display_name:
                    conflicts.append(record.person_id)
                    logger.warning(
                        "Conflicting display names for %s (%r, %r); keeping the later one",
                        record.person_id,
                        rows[-1].display_name,
                        sample.display_name,
                        extra={"person_id": record.person_id},
                    )
                rows.append(sample)

            snapshot = GallerySnapshot.build(
                [_merge(person_id, rows) for person_id, rows in grouped.items()],
                version=self._snapshot.version + 1,
            )
            self._snapshot = snapshot

        logger.info(
            "Gallery refreshed: %d identities from %d faces (%d conflicts, %d skipped)",
            len(snapshot),
            len(records) - skipped,
            len(conflicts),
            skipped,
        )
        return RefreshResult(ok=True, loaded=len(snapshot), conflicts=conflicts, skipped=skipped)

    def _to_sample(self, record: GalleryRecord) -> _Sample | None:
        if (
            self.model_version is not None
            and record.model_version is not None
            and record.model_version != self.model_version
        ):
            logger.warning(
                "Skipping %s: model %s does not match active model %s",
                record.person_id,
                record.model_version,
                self.model_version,
                extra={"person_id": record.person_id},
            )
            return None

        source = record.embedding if record.embedding is not None else record.raw_features
        if source is None:
            logger.warning(
                "Skipping %s: record has neither embedding nor raw features",
                record.person_id,
                extra={"person_id": record.person_id},
            )
            return None

        vec = np.asarray(source, dtype=np.float64).reshape(-1)
        if len(vec) != self.dimension:
            logger.warning(
                "Skipping %s: %d-d vector, expected %d",
                record.person_id,
                len(vec),
                self.dimension,
                extra={"person_id": record.person_id},
            )
            return None

        unit = _l2_normalize(vec)
        if unit is None:
            logger.warning(
                "Skipping %s: degenerate vector",
                record.person_id,
                extra={"person_id": record.person_id},
            )
            return None

        version = record.model_version or self.model_version or "unknown"
        raw = None
        if record.embedding is None and record.raw_features is not None:
            raw = np.asarray(record.raw_features, dtype=np.float32).reshape(-1)
        return _Sample(record.display_name, unit, version, raw)
