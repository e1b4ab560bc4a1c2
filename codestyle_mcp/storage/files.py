# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Filesystem helpers shared by the manifest store, fetcher and sync engine.

Every write that lands in the cache goes through a sibling temp file followed by
``os.replace`` so readers only ever see the old or the new content.
"""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

_HASH_CHUNK = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str | None:
    """Return the hex digest of ``path`` or None when it cannot be read."""
    try:
        digest = hashlib.sha256()
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(_HASH_CHUNK), b""):
                digest.update(chunk)
        return digest.hexdigest()
    except OSError:
        logger.debug("Failed to hash %s", path, exc_info=True)
        return None


def temp_path_for(destination: Path) -> Path:
    """Create an empty temp file next to ``destination`` and return its path."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".part", dir=destination.parent
    )
    os.close(fd)
    return Path(tmp_name)


def commit_temp(tmp_path: Path, destination: Path) -> None:
    """Flush ``tmp_path`` to disk and move it over ``destination``."""
    with tmp_path.open("rb+") as fh:
        os.fsync(fh.fileno())
    os.replace(tmp_path, destination)


def discard_temp(tmp_path: Path) -> None:
    try:
        tmp_path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Failed to remove temp file %s", tmp_path, exc_info=True)


def atomic_write_bytes(destination: Path, data: bytes) -> None:
    tmp_path = temp_path_for(destination)
    try:
        tmp_path.write_bytes(data)
        commit_temp(tmp_path, destination)
    except BaseException:
        discard_temp(tmp_path)
        raise


def atomic_write_text(destination: Path, text: str) -> None:
    atomic_write_bytes(destination, text.encode("utf-8"))
