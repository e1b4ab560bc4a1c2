# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Composition root for the template cache service.

``init_runtime()`` wires every component exactly once at startup; the op
functions below are what the tool layer and the admin API call into.
"""

from __future__ import annotations

import logging
import logging.handlers
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config import Config, get_config
from .fetcher import ContentFetcher
from .freshness import FreshnessMonitor
from .indexer import SearchIndex
from .remote import HttpRemoteCatalog
from .repository import RepositoryCache
from .schema import RemoteGroupDescriptor
from .search import QueryEngine
from .sync import SyncEngine

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: Optional[Config] = None) -> None:
    """Configure the root logger from ``server.log_level`` / ``server.log_file``."""
    cfg = config or get_config()
    level = getattr(logging, cfg.log_level, logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if cfg.log_file:
        log_path = Path(cfg.log_file).expanduser()
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                logging.handlers.RotatingFileHandler(
                    log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
                )
            )
        except OSError as exc:
            logging.getLogger(__name__).warning("Cannot open log file %s: %s", log_path, exc)

    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers, force=True)


@dataclass
class Runtime:
    config: Config
    cache: RepositoryCache
    fetcher: ContentFetcher
    index: SearchIndex
    sync: SyncEngine
    monitor: FreshnessMonitor
    engine: QueryEngine
    catalog: Optional[HttpRemoteCatalog] = None

    def close(self) -> None:
        self.index.close()
        self.fetcher.close()
        if self.catalog is not None:
            self.catalog.close()


_RUNTIME: Optional[Runtime] = None
_RUNTIME_LOCK = threading.Lock()


def build_runtime(config: Config) -> Runtime:
    repo_dir = config.repository_dir
    repo_dir.mkdir(parents=True, exist_ok=True)
    index_dir = config.index_path

    cache = RepositoryCache(repo_dir, index_dir=index_dir)
    fetcher = ContentFetcher.from_config(config)
    index = SearchIndex(index_dir)
    sync = SyncEngine(cache, fetcher, on_group_changed=index.update_one)
    monitor = FreshnessMonitor(
        index, cache, interval_seconds=config.index_check_interval_seconds
    )
    catalog = HttpRemoteCatalog.from_config(config)
    engine = QueryEngine(
        index,
        cache,
        monitor,
        sync=sync,
        catalog=catalog,
        remote_search_enabled=config.remote_search_enabled,
    )
    return Runtime(
        config=config,
        cache=cache,
        fetcher=fetcher,
        index=index,
        sync=sync,
        monitor=monitor,
        engine=engine,
        catalog=catalog,
    )


def init_runtime(config: Optional[Config] = None) -> Runtime:
    """Create the process-wide runtime. Calling it twice is an error."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is not None:
            raise RuntimeError("runtime already initialized")
        cfg = config or get_config()
        runtime = build_runtime(cfg)
        logger.info(
            "Template cache at %s, index at %s (remote search %s)",
            cfg.repository_dir,
            cfg.index_path,
            "enabled" if cfg.remote_search_enabled else "disabled",
        )
        if cfg.index_rebuild_on_startup:
            try:
                runtime.index.rebuild_from(runtime.cache)
            except Exception:
                logger.exception("Startup index rebuild failed; first query will retry")
        _RUNTIME = runtime
        return runtime


def get_runtime() -> Runtime:
    if _RUNTIME is None:
        raise RuntimeError("runtime not initialized; call init_runtime() first")
    return _RUNTIME


def shutdown_runtime() -> None:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            return
        try:
            _RUNTIME.close()
        finally:
            _RUNTIME = None


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------
def search_op(query: str) -> Dict[str, Any]:
    return get_runtime().engine.search(query).to_dict()


def sync_op(descriptor: Dict[str, Any]) -> Dict[str, Any]:
    """Sync one group from a raw descriptor payload."""
    remote = RemoteGroupDescriptor.model_validate(descriptor)
    return get_runtime().sync.sync(remote).to_dict()


def rebuild_index_op() -> Dict[str, Any]:
    runtime = get_runtime()
    count = runtime.index.rebuild_from(runtime.cache)
    return {"status": "completed", "entries": count, "stats": runtime.index.stats()}


def get_index_stats_op() -> Dict[str, Any]:
    return get_runtime().index.stats()
