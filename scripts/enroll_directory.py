#!/usr/bin/env python3
"""Enroll a directory tree of face images into the FaceGate gallery.

Layout: one sub-directory per person, named by person_id, holding that
person's images.

Usage:
    python scripts/enroll_directory.py faces/
    python scripts/enroll_directory.py faces/ --db /var/lib/facegate.db --no-liveness
    python scripts/enroll_directory.py faces/ --names names.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError

from facegate.config import Settings
from facegate.exceptions import EnrollmentError
from facegate.logging_config import setup_logging
from facegate.recognition.enrollment import enroll_image
from facegate.recognition.factory import build_detector, build_extractor, build_liveness_gate
from facegate.storage.database import Database, SqliteGalleryStore

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp"}


def _iter_images(root: Path):
    for person_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for path in sorted(person_dir.iterdir()):
            if path.suffix.lower() in IMAGE_SUFFIXES:
                yield person_dir.name, path


async def enroll_directory(
    root: Path,
    cfg: Settings,
    names: dict[str, str],
    require_liveness: bool,
) -> tuple[int, int]:
    detector = build_detector(cfg)
    gate = build_liveness_gate(cfg) if require_liveness else None
    extractor = build_extractor(cfg)

    db = Database(cfg.db_path)
    await db.connect()
    store = SqliteGalleryStore(db)
    enrolled = failed = 0
    try:
        for person_id, path in _iter_images(root):
            try:
                with Image.open(path) as img:
                    pixels = np.asarray(img.convert("RGB"), dtype=np.uint8)
                await enroll_image(
                    pixels,
                    person_id,
                    names.get(person_id, person_id),
                    detector=detector,
                    gate=gate,
                    extractor=extractor,
                    store=store,
                    timeout_s=cfg.backend_timeout_s,
                )
            except (EnrollmentError, UnidentifiedImageError, OSError) as exc:
                failed += 1
                print(f"  FAIL {path}: {exc}", file=sys.stderr)
                continue
            enrolled += 1
            print(f"  ok   {person_id:<20} {path.name}")
    finally:
        await db.close()
    return enrolled, failed


def main() -> None:
    parser = argparse.ArgumentParser(description="Enroll a <person_id>/<image> directory tree")
    parser.add_argument("root", type=str, help="Directory with one sub-directory per person")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path")
    parser.add_argument(
        "--names", type=str, default=None, help="JSON file mapping person_id to display name"
    )
    parser.add_argument(
        "--no-liveness", action="store_true", help="Skip the liveness check for curated photos"
    )
    args = parser.parse_args()

    root = Path(args.root)
    if not root.is_dir():
        print(f"Not a directory: {root}", file=sys.stderr)
        sys.exit(1)

    names: dict[str, str] = {}
    if args.names:
        with open(args.names) as f:
            names = json.load(f)

    setup_logging()
    cfg = Settings(db_path=args.db) if args.db else Settings()
    enrolled, failed = asyncio.run(
        enroll_directory(root, cfg, names, require_liveness=not args.no_liveness)
    )
    print(f"Enrolled {enrolled} images ({failed} failed) into {cfg.db_path}")
    if enrolled == 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
