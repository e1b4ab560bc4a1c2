# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Bring one cached template group in line with its remote descriptor.

Only files whose hash differs from the local manifest (or that are missing on
disk) are fetched. The manifest is written once, after every file has been
attempted, and the search index is told about the group afterwards.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter

from .fetcher import ContentFetcher
from .repository import RepositoryCache
from .schema import (DuplicateTemplateFileError, IndexEntry, Manifest,
                     RemoteGroupDescriptor, TemplateFile)
from .storage.files import atomic_write_text

logger = logging.getLogger(__name__)

# Callback invoked with the refreshed index entry of a changed group
GroupChangedFn = Callable[[IndexEntry], None]

_DRIVE_RE = re.compile(r"^[A-Za-z]:$")


class SyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILURE = "FAILURE"


@dataclass
class SyncReport:
    group_id: str
    artifact_id: str
    status: SyncStatus
    fetched: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    changed: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "group_id": self.group_id,
            "artifact_id": self.artifact_id,
            "status": self.status.value,
            "fetched": list(self.fetched),
            "unchanged": list(self.unchanged),
            "failed": dict(self.failed),
            "changed": self.changed,
            "message": self.message,
        }


class UnsafePathError(ValueError):
    """A descriptor names a path that would escape the cache root."""


def _check_segment(kind: str, value: str) -> None:
    if not value or not value.strip():
        raise UnsafePathError(f"empty {kind}")
    if "/" in value or "\\" in value or value in (".", "..") or _DRIVE_RE.match(value):
        raise UnsafePathError(f"unsafe {kind}: {value!r}")


def validate_descriptor(remote: RemoteGroupDescriptor) -> Manifest:
    """Check path safety and filename uniqueness; return the remote manifest."""
    _check_segment("group id", remote.group_id)
    _check_segment("artifact id", remote.artifact_id)
    for item in remote.files:
        _check_segment("version", item.version)
        _check_segment("filename", item.filename)
        for seg in item.directory_segments:
            if seg == ".." or _DRIVE_RE.match(seg):
                raise UnsafePathError(f"unsafe file path: {item.file_path!r}")
    return Manifest(TemplateFile.model_validate(item.model_dump()) for item in remote.files)


class SyncEngine:
    """Diff remote descriptors against the cache and fetch what changed."""

    def __init__(
        self,
        cache: RepositoryCache,
        fetcher: ContentFetcher,
        *,
        on_group_changed: GroupChangedFn | None = None,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.on_group_changed = on_group_changed
        self._locks_guard = threading.Lock()
        self._group_locks: dict[tuple[str, str], threading.Lock] = {}

    @contextmanager
    def _group_lock(self, group_id: str, artifact_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._group_locks.setdefault((group_id, artifact_id), threading.Lock())
        with lock:
            yield

    def sync_many(self, descriptors: Iterable[RemoteGroupDescriptor]) -> list[SyncReport]:
        return [self.sync(descriptor) for descriptor in descriptors]

    def sync(self, remote: RemoteGroupDescriptor) -> SyncReport:
        group_id, artifact_id = remote.group_id, remote.artifact_id
        try:
            declared = validate_descriptor(remote)
        except (UnsafePathError, DuplicateTemplateFileError) as exc:
            logger.error("Rejecting descriptor %s/%s: %s", group_id, artifact_id, exc)
            return SyncReport(group_id, artifact_id, SyncStatus.FAILURE, message=str(exc))

        start = perf_counter()
        with self._group_lock(group_id, artifact_id):
            report = self._sync_locked(group_id, artifact_id, declared, remote.description)
        logger.info(
            "sync %s/%s status=%s fetched=%d unchanged=%d failed=%d duration=%.3fs",
            group_id,
            artifact_id,
            report.status.value,
            len(report.fetched),
            len(report.unchanged),
            len(report.failed),
            perf_counter() - start,
        )

        if report.changed and report.status is not SyncStatus.FAILURE:
            self._signal_index(group_id, artifact_id)
        return report

    def _sync_locked(
        self,
        group_id: str,
        artifact_id: str,
        declared: Manifest,
        description: str,
    ) -> SyncReport:
        report = SyncReport(group_id, artifact_id, SyncStatus.SUCCESS)
        local = self.cache.load_manifest(group_id, artifact_id)
        merged = Manifest(local.files if local is not None else ())
        # A brand-new empty group still gets a manifest
        dirty = local is None and len(declared) == 0

        for item in declared:
            existing = merged.get(item.filename)
            same_hash = existing is not None and existing.sha256 == item.sha256
            # A present file with the right hash needs no transfer, even when
            # the manifest entry was lost.
            if self.cache.is_present(group_id, artifact_id, item):
                report.unchanged.append(item.filename)
                if not same_hash or existing != item:
                    merged.upsert(item)
                    dirty = True
                continue

            source = self.fetcher.source_for(item.sha256)
            if source is None:
                report.failed[item.filename] = "no content source configured"
                continue
            destination = self.cache.file_path_for(group_id, artifact_id, item)
            result = self.fetcher.fetch(source, destination, item.sha256)
            if not result.ok:
                report.failed[item.filename] = result.reason or "fetch failed"
                continue
            report.fetched.append(item.filename)
            merged.upsert(item)
            dirty = True

        if dirty:
            try:
                self.cache.manifests.save(group_id, artifact_id, merged)
            except OSError as exc:
                logger.error(
                    "Failed to persist manifest for %s/%s: %s", group_id, artifact_id, exc
                )
                report.status = SyncStatus.FAILURE
                report.message = f"manifest write failed: {exc}"
                return report
            report.changed = True

        if self._write_readme(group_id, artifact_id, merged, description):
            report.changed = True

        if report.failed:
            present = len(report.fetched) + len(report.unchanged)
            report.status = SyncStatus.PARTIAL_FAILURE if present else SyncStatus.FAILURE
            report.message = "; ".join(f"{name}: {why}" for name, why in report.failed.items())
        return report

    def _write_readme(
        self, group_id: str, artifact_id: str, manifest: Manifest, description: str
    ) -> bool:
        text = (description or "").strip()
        version = manifest.latest_version
        if not text or not version:
            return False
        readme = self.cache.readme_path(group_id, artifact_id, version)
        if readme.exists():
            return False
        try:
            atomic_write_text(readme, text + "\n")
        except OSError as exc:
            logger.warning("Failed to write description %s: %s", readme, exc)
            return False
        return True

    def _signal_index(self, group_id: str, artifact_id: str) -> None:
        if self.on_group_changed is None:
            return
        try:
            entry = self.cache.index_entry_for(group_id, artifact_id)
            if entry is None:
                logger.warning(
                    "Manifest for %s/%s vanished before index update", group_id, artifact_id
                )
                return
            self.on_group_changed(entry)
        except Exception as exc:
            logger.error(
                "Index update for %s/%s failed: %s", group_id, artifact_id, exc, exc_info=True
            )
