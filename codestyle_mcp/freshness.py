# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Throttled staleness check between the repository cache and the search index."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from .indexer import FreshnessSnapshot, SearchIndex
from .repository import RepositoryCache

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 5.0


class FreshnessMonitor:
    """Rebuild the index when the cached manifests drift from the last build.

    The check runs at most once per ``interval_seconds``. A failed check is
    logged and otherwise ignored; it never reaches the caller.
    """

    def __init__(
        self,
        index: SearchIndex,
        cache: RepositoryCache,
        *,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.index = index
        self.cache = cache
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._last_checked: float | None = None

    @property
    def last_checked(self) -> float | None:
        return self._last_checked

    def check_and_maybe_rebuild(self) -> bool:
        """Return True when this call rebuilt the index."""
        now = self._clock()
        with self._lock:
            if self._last_checked is not None and now - self._last_checked < self.interval_seconds:
                return False
            self._last_checked = now

        try:
            snapshot = self.index.snapshot()
            if snapshot is None:
                logger.debug("Freshness check skipped: index has never been built")
                return False
            if not self.cache.root.is_dir():
                logger.debug("Freshness check skipped: %s does not exist", self.cache.root)
                return False
            reason = self.stale_reason(snapshot)
            if reason is None:
                return False
            logger.info("Search index is stale (%s); rebuilding", reason)
            self.index.rebuild_from(self.cache)
            return True
        except Exception:
            logger.debug("Freshness check failed", exc_info=True)
            return False

    def stale_reason(self, snapshot: FreshnessSnapshot) -> str | None:
        count = self.cache.count_manifests()
        if count != snapshot.manifest_count:
            return f"manifest count {snapshot.manifest_count} -> {count}"
        if self.cache.has_manifest_newer_than(snapshot.built_at):
            return "manifest modified after last build"
        return None
