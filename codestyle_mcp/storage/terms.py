# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Term postings store backed by rocksdict.

Each key is a UTF-8 encoded term; each value is a zlib-compressed posting list
mapping entry ids to the term frequency inside that entry.
"""

from __future__ import annotations

import json
import logging
import zlib
from collections.abc import Iterator
from pathlib import Path

from rocksdict import Rdict

logger = logging.getLogger(__name__)

# Posting format tags
_PAIRS_U32 = b"\x04"
_PAIRS_U64 = b"\x05"


class TermIndex:
    def __init__(self, path: Path):
        path.mkdir(parents=True, exist_ok=True)
        self.path = path
        try:
            self._rd = Rdict(str(path))
        except Exception:
            logger.exception("Failed to initialize rocksdict term store at %s", path)
            raise

    @staticmethod
    def serialize_postings(postings: dict[int, int]) -> bytes:
        if not postings:
            return zlib.compress(b"")
        ids = sorted(int(x) for x in postings)
        width = 4 if ids[-1] < (1 << 32) else 8
        prefix = _PAIRS_U32 if width == 4 else _PAIRS_U64
        body = b"".join(
            i.to_bytes(width, "little") + int(postings[i]).to_bytes(4, "little")
            for i in ids
        )
        return zlib.compress(prefix + body)

    @staticmethod
    def deserialize_postings(blob: bytes) -> dict[int, int]:
        try:
            raw = zlib.decompress(blob)
        except zlib.error:
            logger.debug("Failed to decompress postings", exc_info=True)
            return {}
        if not raw:
            return {}
        prefix, body = raw[:1], raw[1:]
        if prefix == _PAIRS_U32:
            width = 4
        elif prefix == _PAIRS_U64:
            width = 8
        else:
            logger.debug("Unknown postings format tag %r", prefix)
            return {}
        step = width + 4
        postings: dict[int, int] = {}
        for off in range(0, len(body) - step + 1, step):
            doc_id = int.from_bytes(body[off : off + width], "little")
            tf = int.from_bytes(body[off + width : off + step], "little")
            postings[doc_id] = tf
        return postings

    @staticmethod
    def serialize_term_counts(counts: dict[str, int]) -> bytes:
        return zlib.compress(json.dumps(counts, ensure_ascii=False, sort_keys=True).encode("utf-8"))

    @staticmethod
    def deserialize_term_counts(blob: bytes) -> dict[str, int]:
        try:
            parsed = json.loads(zlib.decompress(blob).decode("utf-8"))
        except (zlib.error, ValueError):
            logger.debug("Failed to deserialize term counts", exc_info=True)
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): int(v) for k, v in parsed.items()}

    def get_postings(self, term: str) -> dict[int, int]:
        raw = self._rd.get(term.encode("utf-8"))
        if raw is None:
            return {}
        return self.deserialize_postings(raw)

    def set_postings(self, term: str, postings: dict[int, int]) -> None:
        if not postings:
            self.delete(term)
            return
        self._rd[term.encode("utf-8")] = self.serialize_postings(postings)

    def add_entry(self, entry_id: int, counts: dict[str, int]) -> None:
        for term, tf in counts.items():
            postings = self.get_postings(term)
            postings[entry_id] = tf
            self.set_postings(term, postings)

    def remove_entry(self, entry_id: int, terms: set[str] | dict[str, int]) -> None:
        for term in terms:
            postings = self.get_postings(term)
            if entry_id not in postings:
                continue
            del postings[entry_id]
            self.set_postings(term, postings)

    def delete(self, term: str) -> None:
        try:
            del self._rd[term.encode("utf-8")]
        except KeyError:
            pass

    def iter_items(self) -> Iterator[tuple[str, dict[int, int]]]:
        for k, v in self._rd.items():
            key = k.decode("utf-8") if isinstance(k, (bytes, bytearray)) else str(k)
            yield key, self.deserialize_postings(v)

    def count(self) -> int:
        return sum(1 for _ in self._rd.keys())

    def commit(self) -> None:
        try:
            self._rd.flush()
        except Exception:
            logger.debug("rocksdict flush failed", exc_info=True)

    def close(self) -> None:
        try:
            self._rd.close()
        except Exception:
            logger.debug("Error closing rocksdict", exc_info=True)
