# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Filesystem mirror of the remote template repository.

Layout::

    <root>/<groupId>/<artifactId>/meta.json
    <root>/<groupId>/<artifactId>/<version>/README.md            (optional)
    <root>/<groupId>/<artifactId>/<version>/<filePath>/<filename>

The cache is the source of truth for everything the search index knows. This
class only reads; writes are driven by :class:`~codestyle_mcp.sync.SyncEngine`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

from .analysis import extract_path_keywords
from .schema import IndexEntry, Manifest, TemplateFile
from .storage.files import sha256_file
from .storage.manifest import MANIFEST_FILENAME, ManifestStore

logger = logging.getLogger(__name__)

README_FILENAME = "README.md"


class RepositoryCache:
    def __init__(self, root: Path, *, index_dir: Path | None = None):
        self.root = root
        self.manifests = ManifestStore(root)
        # Directory names never treated as template groups
        self._skip_names = {index_dir.name} if index_dir is not None else set()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def group_dir(self, group_id: str, artifact_id: str) -> Path:
        return self.root / group_id / artifact_id

    def manifest_path(self, group_id: str, artifact_id: str) -> Path:
        return self.manifests.path_for(group_id, artifact_id)

    def file_path_for(self, group_id: str, artifact_id: str, item: TemplateFile) -> Path:
        return self.group_dir(group_id, artifact_id).joinpath(
            item.version, *item.directory_segments, item.filename
        )

    def readme_path(self, group_id: str, artifact_id: str, version: str) -> Path:
        return self.group_dir(group_id, artifact_id) / version / README_FILENAME

    def _skip_dir(self, name: str) -> bool:
        return name.startswith(".") or name in self._skip_names

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def load_manifest(self, group_id: str, artifact_id: str) -> Manifest | None:
        return self.manifests.load(group_id, artifact_id)

    def is_present(self, group_id: str, artifact_id: str, item: TemplateFile) -> bool:
        """True iff the file exists on disk and matches the manifest hash."""
        path = self.file_path_for(group_id, artifact_id, item)
        if not path.is_file():
            return False
        actual = sha256_file(path)
        if actual != item.sha256:
            logger.info(
                "Hash mismatch for %s (expected %s, found %s); treating as absent",
                path,
                item.sha256,
                actual,
            )
            return False
        return True

    def read_content(self, group_id: str, artifact_id: str, item: TemplateFile) -> str | None:
        path = self.file_path_for(group_id, artifact_id, item)
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            logger.debug("Failed to read template content %s", path, exc_info=True)
            return None

    def resolve_exact(self, exact_path: str) -> TemplateFile | None:
        """Resolve ``group/artifact/version/[dirs/]filename`` to a present file."""
        parts = [p for p in exact_path.replace("\\", "/").split("/") if p]
        if len(parts) < 4:
            logger.debug("resolve_exact: %r has too few segments", exact_path)
            return None
        group_id, artifact_id, version = parts[0], parts[1], parts[2]
        filename = parts[-1]
        manifest = self.load_manifest(group_id, artifact_id)
        if manifest is None:
            return None
        item = manifest.get(filename)
        if item is None or item.version != version:
            return None
        requested_dirs = [d.lower() for d in parts[3:-1]]
        if requested_dirs and requested_dirs != [d.lower() for d in item.directory_segments]:
            logger.debug(
                "resolve_exact: %r matched %s but directories differ", exact_path, item.filename
            )
            return None
        if not self.is_present(group_id, artifact_id, item):
            return None
        return item

    def read_description(
        self, group_id: str, artifact_id: str, manifest: Manifest | None
    ) -> str:
        """README of the latest version, else file descriptions, else the artifact id."""
        if manifest is None or len(manifest) == 0:
            return artifact_id
        latest = manifest.latest_version
        if latest:
            readme = self.readme_path(group_id, artifact_id, latest)
            try:
                text = readme.read_text(encoding="utf-8", errors="replace").strip()
                if text:
                    return text
            except FileNotFoundError:
                pass
            except OSError:
                logger.debug("Failed to read %s", readme, exc_info=True)
        descriptions = list(dict.fromkeys(f.description.strip() for f in manifest if f.description))
        if descriptions:
            return " ".join(descriptions)
        return artifact_id

    def index_entry_for(
        self, group_id: str, artifact_id: str, manifest: Manifest | None = None
    ) -> IndexEntry | None:
        if manifest is None:
            manifest = self.load_manifest(group_id, artifact_id)
            if manifest is None:
                return None
        return IndexEntry(
            group_id=group_id,
            artifact_id=artifact_id,
            description=self.read_description(group_id, artifact_id, manifest),
            path_keywords=tuple(extract_path_keywords(f.file_path for f in manifest)),
            manifest_path=str(self.manifest_path(group_id, artifact_id)),
        )

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------
    def _iter_group_dirs(self) -> Iterator[tuple[str, str, Path]]:
        try:
            group_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
        except FileNotFoundError:
            return
        for group_dir in group_dirs:
            if self._skip_dir(group_dir.name):
                continue
            try:
                artifact_dirs = sorted(p for p in group_dir.iterdir() if p.is_dir())
            except OSError:
                logger.debug("Failed to list %s", group_dir, exc_info=True)
                continue
            for artifact_dir in artifact_dirs:
                if artifact_dir.name.startswith("."):
                    continue
                yield group_dir.name, artifact_dir.name, artifact_dir

    def enumerate_manifests(self) -> Iterator[tuple[str, str, Manifest]]:
        """Yield every readable manifest; re-scans the tree on each call."""
        for group_id, artifact_id, artifact_dir in self._iter_group_dirs():
            meta = artifact_dir / MANIFEST_FILENAME
            if not meta.is_file():
                continue
            manifest = self.manifests.load_path(meta)
            if manifest is None:
                continue
            yield group_id, artifact_id, manifest

    def iter_index_entries(self) -> Iterator[IndexEntry]:
        for group_id, artifact_id, manifest in self.enumerate_manifests():
            try:
                entry = self.index_entry_for(group_id, artifact_id, manifest)
            except Exception as exc:
                logger.warning("Skipping %s/%s: %s", group_id, artifact_id, exc, exc_info=True)
                continue
            if entry is not None:
                yield entry

    # ------------------------------------------------------------------
    # Staleness probes (recursive, like the on-disk layout allows nesting)
    # ------------------------------------------------------------------
    def _walk_manifests(self) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if not self._skip_dir(d)]
            if MANIFEST_FILENAME in filenames:
                yield Path(dirpath) / MANIFEST_FILENAME

    def count_manifests(self) -> int:
        return sum(1 for _ in self._walk_manifests())

    def has_manifest_newer_than(self, timestamp: float) -> bool:
        for path in self._walk_manifests():
            try:
                if path.stat().st_mtime > timestamp:
                    return True
            except FileNotFoundError:
                continue
        return False
