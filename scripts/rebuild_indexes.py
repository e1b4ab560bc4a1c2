#!/usr/bin/env python3
#
# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Rebuild the template search index from the local repository cache.

This script:
1. Loads configuration (config.json or environment)
2. Scans every cached meta.json under repository.dir
3. Builds a fresh index generation and swaps it in
4. Prints the resulting index statistics
"""

import argparse
import logging
import sys
from pathlib import Path

# Ensure repository root is on sys.path for direct script execution
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codestyle_mcp.config import load_config  # noqa: E402
from codestyle_mcp.indexer import SearchIndex  # noqa: E402
from codestyle_mcp.repository import RepositoryCache  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s - %(message)s'
)
logger = logging.getLogger(__name__)


def rebuild(config_path: Path | None = None) -> dict:
    config = load_config(config_path)
    repo_dir = config.repository_dir
    if not repo_dir.is_dir():
        raise FileNotFoundError(f"repository directory does not exist: {repo_dir}")

    cache = RepositoryCache(repo_dir, index_dir=config.index_path)
    index = SearchIndex(config.index_path)
    try:
        entries = index.rebuild_from(cache)
        logger.info("Indexed %d template groups from %s", entries, repo_dir)
        return index.stats()
    finally:
        index.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--config", type=Path, default=None, help="path to config.json")
    args = parser.parse_args(argv)

    print("=" * 80)
    print("CODESTYLE TEMPLATES - REBUILD SEARCH INDEX")
    print("=" * 80)
    print()

    try:
        stats = rebuild(args.config)
    except Exception as exc:
        logger.error("Rebuild failed: %s", exc)
        return 1

    for key, value in stats.items():
        print(f"  {key}: {value}")
    print()
    print("Done.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
