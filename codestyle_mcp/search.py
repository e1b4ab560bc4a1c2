# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Public query entry point.

``QueryEngine.search`` never raises: every failure is turned into an
``ERROR`` outcome carrying ``"search failed: <message>"``.

Zero-result policy: when remote search is enabled, a query with no local hits
asks the remote catalog (``describe`` for ``group/artifact`` queries,
``search`` otherwise), syncs whatever comes back and queries once more. The
same policy applies to every caller of ``search``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter

from . import layout
from .analysis import split_exact_query
from .freshness import FreshnessMonitor
from .indexer import ScoredResult, SearchIndex
from .remote import RemoteCatalog
from .repository import RepositoryCache
from .schema import Manifest, RemoteGroupDescriptor
from .sync import SyncEngine, SyncStatus

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    NOT_FOUND = "not_found"
    DETAIL = "detail"
    NAMESPACE = "namespace"
    DISAMBIGUATION = "disambiguation"
    ERROR = "error"


@dataclass
class SearchOutcome:
    kind: OutcomeKind
    query: str
    message: str = ""
    group_id: str | None = None
    artifact_id: str | None = None
    description: str = ""
    tree: str = ""
    variables: str = ""
    content: str = ""
    count: int = 0
    listing: str = ""
    candidates: list[ScoredResult] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind.value, "query": self.query}
        if self.message:
            payload["message"] = self.message
        if self.kind is OutcomeKind.DETAIL:
            payload.update(
                group_id=self.group_id,
                artifact_id=self.artifact_id,
                description=self.description,
                tree=self.tree,
                variables=self.variables,
                content=self.content,
                missing_files=list(self.missing_files),
            )
        elif self.kind is OutcomeKind.NAMESPACE:
            payload.update(group_id=self.group_id, count=self.count, listing=self.listing)
        elif self.kind is OutcomeKind.DISAMBIGUATION:
            payload.update(
                count=self.count,
                listing=self.listing,
                candidates=[c.to_dict() for c in self.candidates],
            )
        return payload


class QueryEngine:
    def __init__(
        self,
        index: SearchIndex,
        cache: RepositoryCache,
        monitor: FreshnessMonitor,
        *,
        sync: SyncEngine | None = None,
        catalog: RemoteCatalog | None = None,
        remote_search_enabled: bool = False,
    ):
        self.index = index
        self.cache = cache
        self.monitor = monitor
        self.sync = sync
        self.catalog = catalog
        self.remote_search_enabled = remote_search_enabled

    def _remote(self) -> tuple[RemoteCatalog, SyncEngine] | None:
        if not self.remote_search_enabled or self.catalog is None or self.sync is None:
            return None
        return self.catalog, self.sync

    @property
    def remote_enabled(self) -> bool:
        return self._remote() is not None

    def search(self, text: str | None) -> SearchOutcome:
        query = (text or "").strip()
        if not query:
            return SearchOutcome(OutcomeKind.NOT_FOUND, query="", message="empty query")
        start = perf_counter()
        try:
            outcome = self._search(query)
        except Exception as exc:
            logger.error("search %r failed: %s", query, exc, exc_info=True)
            outcome = SearchOutcome(OutcomeKind.ERROR, query=query, message=f"search failed: {exc}")
        logger.info(
            "search %r -> %s duration=%.3fs", query, outcome.kind.value, perf_counter() - start
        )
        return outcome

    def _search(self, query: str) -> SearchOutcome:
        self.monitor.check_and_maybe_rebuild()
        if not self.index.is_built():
            logger.info("Search index has never been built; building now")
            self.index.rebuild_from(self.cache)

        results = self.index.query(query)
        remote = self._remote()
        if not results and remote is not None and self._pull_remote(*remote, query):
            results = self.index.query(query)
        return self._classify(query, results)

    # ------------------------------------------------------------------
    # Remote fallback
    # ------------------------------------------------------------------
    @staticmethod
    def _remote_descriptors(catalog: RemoteCatalog, query: str) -> list[RemoteGroupDescriptor]:
        exact = split_exact_query(query)
        if exact is not None:
            descriptor = catalog.describe(*exact)
            return [descriptor] if descriptor is not None else []
        return catalog.search(query)

    def _pull_remote(self, catalog: RemoteCatalog, sync: SyncEngine, query: str) -> bool:
        """Sync remote matches into the cache and index; True if any landed."""
        landed = False
        for descriptor in self._remote_descriptors(catalog, query):
            report = sync.sync(descriptor)
            if report.status is SyncStatus.FAILURE:
                continue
            landed = True
            # update_one is idempotent, so groups the sync left untouched
            # still become visible
            entry = self.cache.index_entry_for(descriptor.group_id, descriptor.artifact_id)
            if entry is not None:
                self.index.update_one(entry)
        return landed

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------
    def _classify(self, query: str, results: list[ScoredResult]) -> SearchOutcome:
        if not results:
            return SearchOutcome(
                OutcomeKind.NOT_FOUND, query=query, message=f"no template matches {query!r}"
            )
        if len(results) == 1:
            return self._detail(query, results[0])
        group_ids = {r.group_id for r in results}
        if len(group_ids) == 1:
            return SearchOutcome(
                OutcomeKind.NAMESPACE,
                query=query,
                group_id=results[0].group_id,
                count=len(results),
                listing=layout.namespace_listing(results),
                candidates=list(results),
            )
        return SearchOutcome(
            OutcomeKind.DISAMBIGUATION,
            query=query,
            count=len(results),
            listing=layout.candidates_listing(results),
            candidates=list(results),
        )

    def _missing(self, group_id: str, artifact_id: str, manifest: Manifest) -> list[str]:
        return [
            item.filename
            for item in manifest
            if not self.cache.is_present(group_id, artifact_id, item)
        ]

    def _detail(self, query: str, result: ScoredResult) -> SearchOutcome:
        group_id, artifact_id = result.group_id, result.artifact_id
        manifest = self.cache.load_manifest(group_id, artifact_id)
        missing = self._missing(group_id, artifact_id, manifest) if manifest is not None else []

        remote = self._remote()
        if (manifest is None or missing) and remote is not None:
            catalog, sync = remote
            descriptor = catalog.describe(group_id, artifact_id)
            if descriptor is not None:
                sync.sync(descriptor)
                manifest = self.cache.load_manifest(group_id, artifact_id)
                missing = (
                    self._missing(group_id, artifact_id, manifest) if manifest is not None else []
                )

        if manifest is None:
            return SearchOutcome(
                OutcomeKind.NOT_FOUND,
                query=query,
                message=f"template group {group_id}/{artifact_id} is no longer cached",
            )

        present = [item for item in manifest if item.filename not in missing]
        contents = [self.cache.read_content(group_id, artifact_id, item) for item in present]
        if missing:
            logger.warning(
                "Template group %s/%s is missing %d file(s): %s",
                group_id,
                artifact_id,
                len(missing),
                ", ".join(missing),
            )
        return SearchOutcome(
            OutcomeKind.DETAIL,
            query=query,
            group_id=group_id,
            artifact_id=artifact_id,
            description=self.cache.read_description(group_id, artifact_id, manifest),
            tree=layout.tree_string(group_id, artifact_id, manifest),
            variables=layout.variables_string(manifest),
            content=layout.content_string(contents),
            count=1,
            missing_files=missing,
        )
