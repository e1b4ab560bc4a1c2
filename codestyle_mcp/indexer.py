# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Full-text index over cached template groups.

One entry per (groupId, artifactId), searchable over group id, artifact id,
description and path keywords. The index is a derived projection of the
repository cache and can always be rebuilt from it.

On disk the index is a set of generation directories plus a ``CURRENT``
pointer::

    <index_dir>/CURRENT              -> "gen-1718000000000000000"
    <index_dir>/gen-<ns>/terms.rocksdb
    <index_dir>/gen-<ns>/entries.db

A full rebuild stages a fresh generation, flips ``CURRENT`` with an atomic
replace and only then drops the previous one, so an interrupted rebuild leaves
the last completed build in place.
"""

from __future__ import annotations

import logging
import math
import shutil
import time
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Protocol

import numpy as np

from .analysis import parse_query, split_exact_query, tokenize
from .locks import ReadWriteLock
from .schema import IndexEntry
from .storage.files import atomic_write_text
from .storage.metadata import EntryRow, MetadataStore
from .storage.terms import TermIndex

logger = logging.getLogger(__name__)

POINTER_FILENAME = "CURRENT"
GENERATION_PREFIX = "gen-"
TERMS_DIRNAME = "terms.rocksdb"
ENTRIES_FILENAME = "entries.db"

# BM25 parameters
BM25_K1 = 1.2
BM25_B = 0.75


@dataclass(frozen=True)
class ScoredResult:
    group_id: str
    artifact_id: str
    description: str
    manifest_path: str
    score: float

    def to_dict(self) -> dict[str, object]:
        return {
            "group_id": self.group_id,
            "artifact_id": self.artifact_id,
            "description": self.description,
            "manifest_path": self.manifest_path,
            "score": self.score,
        }


@dataclass(frozen=True)
class FreshnessSnapshot:
    """State of the cache when the current build started."""

    built_at: float
    manifest_count: int


class EntrySource(Protocol):
    def iter_index_entries(self) -> Iterable[IndexEntry]: ...

    def count_manifests(self) -> int: ...


class _Generation:
    """Open handles of one generation directory."""

    def __init__(self, path: Path):
        self.path = path
        self.terms = TermIndex(path / TERMS_DIRNAME)
        try:
            self.metadata = MetadataStore(path / ENTRIES_FILENAME)
        except Exception:
            self.terms.close()
            raise

    @property
    def name(self) -> str:
        return self.path.name

    def close(self) -> None:
        self.terms.close()
        self.metadata.close()


def _term_counts(entry: IndexEntry) -> Counter[str]:
    return Counter(tokenize(entry.searchable_text))


class SearchIndex:
    """Generation-swapped inverted index guarded by a reader/writer lock."""

    def __init__(self, index_dir: Path):
        self.index_dir = index_dir
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self._lock = ReadWriteLock()
        self._generation: _Generation | None = None
        self._snapshot: FreshnessSnapshot | None = None
        self._open_current()

    # ------------------------------------------------------------------
    # Generation management
    # ------------------------------------------------------------------
    @property
    def pointer_path(self) -> Path:
        return self.index_dir / POINTER_FILENAME

    def _read_pointer(self) -> str | None:
        try:
            name = self.pointer_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError:
            logger.warning("Unreadable index pointer %s", self.pointer_path, exc_info=True)
            return None
        if not name.startswith(GENERATION_PREFIX) or "/" in name or "\\" in name:
            logger.warning("Ignoring malformed index pointer %r", name)
            return None
        return name

    def _open_current(self) -> None:
        name = self._read_pointer()
        if name is not None:
            path = self.index_dir / name
            if not path.is_dir():
                logger.warning("Index generation %s is missing; index needs a rebuild", path)
            else:
                generation = None
                try:
                    generation = _Generation(path)
                    info = generation.metadata.get_build_info()
                    snapshot = FreshnessSnapshot(
                        built_at=float(info["built_at"]),
                        manifest_count=int(info["manifest_count"]),
                    )
                except Exception as exc:
                    logger.warning(
                        "Index generation %s is unreadable (%s); index needs a rebuild",
                        path,
                        exc,
                    )
                    if generation is not None:
                        generation.close()
                else:
                    self._generation = generation
                    self._snapshot = snapshot
                    logger.info(
                        "Opened search index generation %s (built_at=%.3f manifests=%d)",
                        name,
                        snapshot.built_at,
                        snapshot.manifest_count,
                    )
        self._sweep_generations(keep=self._generation.name if self._generation else None)

    def _sweep_generations(self, keep: str | None) -> None:
        """Remove generation directories other than ``keep``."""
        for child in self.index_dir.iterdir():
            if not child.is_dir() or not child.name.startswith(GENERATION_PREFIX):
                continue
            if child.name == keep:
                continue
            logger.debug("Removing stale index generation %s", child)
            shutil.rmtree(child, ignore_errors=True)

    def _new_generation_path(self) -> Path:
        while True:
            path = self.index_dir / f"{GENERATION_PREFIX}{time.time_ns()}"
            if not path.exists():
                return path

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def rebuild_all(
        self,
        entries: Iterable[IndexEntry],
        *,
        manifest_count: int | None = None,
        started_at: float | None = None,
    ) -> int:
        """Replace the whole index with ``entries``; return the entry count.

        Holds the write lock throughout, so readers wait and never observe a
        partial generation. On error the staged generation is discarded and
        the previous one stays current.
        """
        if started_at is None:
            started_at = time.time()
        start = perf_counter()
        with self._lock.write_locked():
            staging = self._new_generation_path()
            generation: _Generation | None = None
            try:
                generation = _Generation(staging)
                indexed = 0
                for entry in entries:
                    try:
                        self._insert(generation, entry)
                    except Exception as exc:
                        logger.warning(
                            "Skipping %s/%s during rebuild: %s",
                            entry.group_id,
                            entry.artifact_id,
                            exc,
                        )
                        continue
                    indexed += 1
                if manifest_count is None:
                    manifest_count = indexed
                generation.metadata.set_build_info(
                    built_at=started_at,
                    manifest_count=manifest_count,
                    entry_count=indexed,
                )
                generation.metadata.commit()
                generation.terms.commit()
                atomic_write_text(self.pointer_path, staging.name + "\n")
            except BaseException:
                logger.error("Index rebuild into %s failed; keeping previous build", staging)
                if generation is not None:
                    generation.close()
                shutil.rmtree(staging, ignore_errors=True)
                raise

            previous = self._generation
            self._generation = generation
            self._snapshot = FreshnessSnapshot(built_at=started_at, manifest_count=manifest_count)
            if previous is not None:
                previous.close()
                shutil.rmtree(previous.path, ignore_errors=True)

        logger.info(
            "Rebuilt search index generation=%s entries=%d manifests=%d duration=%.3fs",
            staging.name,
            indexed,
            manifest_count,
            perf_counter() - start,
        )
        return indexed

    def rebuild_from(self, source: EntrySource) -> int:
        """Rebuild from a repository cache, snapshotting its manifest count first."""
        started_at = time.time()
        manifest_count = source.count_manifests()
        return self.rebuild_all(
            source.iter_index_entries(),
            manifest_count=manifest_count,
            started_at=started_at,
        )

    def update_one(self, entry: IndexEntry) -> bool:
        """Replace the entry for ``entry.key``; False when the index was never built."""
        with self._lock.write_locked():
            generation = self._generation
            if generation is None:
                logger.warning(
                    "update_one(%s/%s) ignored: index has not been built",
                    entry.group_id,
                    entry.artifact_id,
                )
                return False
            existing = generation.metadata.find_entry(entry.group_id, entry.artifact_id)
            removed: dict[str, int] = {}
            try:
                if existing is not None:
                    removed = self._delete(generation, existing.id)
                self._insert(generation, entry)
            except Exception:
                logger.error(
                    "update_one(%s/%s) failed; restoring previous entry",
                    entry.group_id,
                    entry.artifact_id,
                )
                # Undo the uncommitted SQLite delete, then put the postings back
                generation.metadata.rollback()
                if existing is not None and removed:
                    generation.terms.add_entry(existing.id, removed)
                generation.terms.commit()
                raise
            generation.metadata.commit()
            generation.terms.commit()
        logger.info("Updated index entry %s/%s", entry.group_id, entry.artifact_id)
        return True

    def remove_one(self, group_id: str, artifact_id: str) -> bool:
        with self._lock.write_locked():
            generation = self._generation
            if generation is None:
                return False
            existing = generation.metadata.find_entry(group_id, artifact_id)
            if existing is None:
                return False
            self._delete(generation, existing.id)
            generation.metadata.commit()
            generation.terms.commit()
        logger.info("Removed index entry %s/%s", group_id, artifact_id)
        return True

    @staticmethod
    def _insert(generation: _Generation, entry: IndexEntry) -> int:
        counts = _term_counts(entry)
        entry_id = generation.metadata.insert_entry(
            entry.group_id,
            entry.artifact_id,
            entry.description,
            " ".join(entry.path_keywords),
            entry.manifest_path,
            sum(counts.values()),
            TermIndex.serialize_term_counts(dict(counts)),
        )
        try:
            generation.terms.add_entry(entry_id, dict(counts))
        except Exception:
            generation.terms.remove_entry(entry_id, counts)
            generation.metadata.delete_entry(entry_id)
            raise
        return entry_id

    @staticmethod
    def _delete(generation: _Generation, entry_id: int) -> dict[str, int]:
        """Drop an entry and its postings; return the removed term counts."""
        blob = generation.metadata.get_entry_terms_blob(entry_id)
        terms = TermIndex.deserialize_term_counts(blob) if blob else {}
        if terms:
            generation.terms.remove_entry(entry_id, terms)
        else:
            # No cached term list; scan postings for the id
            for term, postings in list(generation.terms.iter_items()):
                if entry_id in postings:
                    terms[term] = postings.pop(entry_id)
                    generation.terms.set_postings(term, postings)
        generation.metadata.delete_entry(entry_id)
        return terms

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, text: str, limit: int | None = None) -> list[ScoredResult]:
        """Exact ``group/artifact`` lookup or ranked free-text search."""
        text = (text or "").strip()
        if not text:
            return []
        start = perf_counter()
        with self._lock.read_locked():
            generation = self._generation
            if generation is None:
                return []
            exact = split_exact_query(text)
            if exact is not None:
                row = generation.metadata.find_entry(*exact)
                results = [self._to_result(row, 1.0)] if row is not None else []
            else:
                results = self._free_text(generation, text)
        if limit is not None:
            results = results[:limit]
        logger.debug(
            "query %r exact=%s results=%d duration=%.3fs",
            text,
            exact is not None,
            len(results),
            perf_counter() - start,
        )
        return results

    def _free_text(self, generation: _Generation, text: str) -> list[ScoredResult]:
        parsed = parse_query(text)
        if parsed.is_empty():
            return []
        total_docs, total_length = generation.metadata.length_stats()
        if total_docs == 0:
            return []

        postings = {term: generation.terms.get_postings(term) for term in parsed.positive_terms}
        if parsed.must:
            required = [set(postings[t]) for t in parsed.must]
            candidates = set.intersection(*required)
        else:
            candidates = set()
            for term in parsed.should:
                candidates.update(postings[term])
        for term in parsed.must_not:
            candidates.difference_update(generation.terms.get_postings(term))
        if not candidates:
            return []

        rows = generation.metadata.get_entries(sorted(candidates))
        ids = np.array(sorted(rows), dtype=np.int64)
        if ids.size == 0:
            return []
        lengths = np.array([rows[int(i)].length for i in ids], dtype=np.float64)
        avg_length = (total_length / total_docs) or 1.0
        norm = BM25_K1 * (1.0 - BM25_B + BM25_B * lengths / avg_length)

        scores = np.zeros(ids.size, dtype=np.float64)
        for term, term_postings in postings.items():
            if not term_postings:
                continue
            df = len(term_postings)
            idf = math.log(1.0 + (total_docs - df + 0.5) / (df + 0.5))
            tf = np.array([term_postings.get(int(i), 0) for i in ids], dtype=np.float64)
            scores += idf * (tf * (BM25_K1 + 1.0)) / (tf + norm)

        # Highest score first; lower entry id (scan order) wins ties
        order = np.lexsort((ids, -scores))
        return [self._to_result(rows[int(ids[k])], float(scores[k])) for k in order]

    @staticmethod
    def _to_result(row: EntryRow, score: float) -> ScoredResult:
        return ScoredResult(
            group_id=row.group_id,
            artifact_id=row.artifact_id,
            description=row.description or "",
            manifest_path=row.manifest_path or "",
            score=score,
        )

    def is_built(self) -> bool:
        return self._generation is not None

    def snapshot(self) -> FreshnessSnapshot | None:
        return self._snapshot

    def stats(self) -> dict[str, object]:
        with self._lock.read_locked():
            generation = self._generation
            snapshot = self._snapshot
            if generation is None:
                return {"built": False, "index_dir": str(self.index_dir)}
            return {
                "built": True,
                "index_dir": str(self.index_dir),
                "generation": generation.name,
                "entries": generation.metadata.count_entries(),
                "terms": generation.terms.count(),
                "built_at": snapshot.built_at if snapshot else None,
                "manifest_count": snapshot.manifest_count if snapshot else None,
            }

    def close(self) -> None:
        with self._lock.write_locked():
            if self._generation is not None:
                self._generation.close()
                self._generation = None
