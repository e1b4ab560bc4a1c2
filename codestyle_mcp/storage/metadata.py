# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""SQLite entry store for one search-index generation.

Holds the stored fields of every index entry, the per-entry term counts used
for fast removals, and the build info recorded when the generation completed.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryRow:
    id: int
    group_id: str
    artifact_id: str
    description: str
    manifest_path: str
    length: int


class MetadataStore:
    def __init__(self, db_path: Path, *, timeout: float = 60.0):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=timeout)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=60000;")
        # Serializes statement execution on the shared connection
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id TEXT NOT NULL,
                    artifact_id TEXT NOT NULL,
                    description TEXT,
                    path_keywords TEXT,
                    manifest_path TEXT,
                    length INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(group_id, artifact_id)
                )
            """
            )

            # Cached per-entry term counts for delete-before-add updates
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS entry_terms (
                    entry_id INTEGER PRIMARY KEY,
                    terms BLOB
                )
            """
            )

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS build_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """
            )
            self.conn.commit()

    def close(self) -> None:
        try:
            self.conn.close()
        except Exception:
            logger.debug("Error closing metadata database", exc_info=True)

    def commit(self) -> None:
        with self._lock:
            self.conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self.conn.rollback()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def insert_entry(
        self,
        group_id: str,
        artifact_id: str,
        description: str,
        path_keywords: str,
        manifest_path: str,
        length: int,
        terms_blob: bytes,
    ) -> int:
        """Insert an entry and its term cache; the caller commits."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO entries (
                    group_id, artifact_id, description, path_keywords, manifest_path, length
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (group_id, artifact_id, description, path_keywords, manifest_path, length),
            )
            entry_id = int(cur.lastrowid)
            cur.execute(
                "INSERT OR REPLACE INTO entry_terms (entry_id, terms) VALUES (?, ?)",
                (entry_id, terms_blob),
            )
            return entry_id

    def delete_entry(self, entry_id: int) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            self.conn.execute("DELETE FROM entry_terms WHERE entry_id = ?", (entry_id,))

    def find_entry(self, group_id: str, artifact_id: str) -> EntryRow | None:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT id, group_id, artifact_id, description, manifest_path, length
                FROM entries WHERE group_id = ? AND artifact_id = ?
                """,
                (group_id, artifact_id),
            ).fetchone()
        return EntryRow(*row) if row else None

    def get_entries(self, entry_ids: list[int]) -> dict[int, EntryRow]:
        if not entry_ids:
            return {}
        found: dict[int, EntryRow] = {}
        # Stay well under SQLITE_MAX_VARIABLE_NUMBER
        for start in range(0, len(entry_ids), 500):
            chunk = entry_ids[start : start + 500]
            stmt = (
                "SELECT id, group_id, artifact_id, description, manifest_path, length "
                "FROM entries WHERE id IN ({})".format(",".join("?" * len(chunk)))
            )
            with self._lock:
                rows = self.conn.execute(stmt, chunk).fetchall()
            for row in rows:
                found[int(row[0])] = EntryRow(*row)
        return found

    def get_entry_terms_blob(self, entry_id: int) -> bytes | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT terms FROM entry_terms WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        if not row or row[0] is None:
            return None
        return row[0]

    def count_entries(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0])

    def length_stats(self) -> tuple[int, int]:
        """Return (entry count, total token length)."""
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(length), 0) FROM entries"
            ).fetchone()
        return int(row[0]), int(row[1])

    # ------------------------------------------------------------------
    # Build info
    # ------------------------------------------------------------------
    def set_build_info(self, **values: object) -> None:
        with self._lock:
            self.conn.executemany(
                "INSERT OR REPLACE INTO build_info (key, value) VALUES (?, ?)",
                [(k, str(v)) for k, v in values.items()],
            )

    def get_build_info(self) -> dict[str, str]:
        with self._lock:
            rows = self.conn.execute("SELECT key, value FROM build_info").fetchall()
        return {str(k): str(v) for k, v in rows}
