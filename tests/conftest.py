# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for the template cache tests.
"""

import hashlib
import shutil
import tempfile
from pathlib import Path

import pytest

from codestyle_mcp.fetcher import ContentFetcher
from codestyle_mcp.freshness import FreshnessMonitor
from codestyle_mcp.indexer import SearchIndex
from codestyle_mcp.repository import RepositoryCache
from codestyle_mcp.schema import (Manifest, RemoteGroupDescriptor,
                                  TemplateFile)
from codestyle_mcp.storage.manifest import ManifestStore
from codestyle_mcp.sync import SyncEngine


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BlobSource:
    """Content-addressed directory served to the fetcher through file:// URIs."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def base_url(self) -> str:
        return self.root.as_uri()

    def put(self, content: str) -> str:
        data = content.encode("utf-8")
        sha = hashlib.sha256(data).hexdigest()
        (self.root / sha).write_bytes(data)
        return sha

    def remove(self, sha: str) -> None:
        (self.root / sha).unlink(missing_ok=True)


class FakeCatalog:
    def __init__(self):
        self.groups: dict[tuple[str, str], RemoteGroupDescriptor] = {}
        self.describe_calls: list[tuple[str, str]] = []
        self.search_calls: list[str] = []

    def add(self, descriptor: RemoteGroupDescriptor) -> None:
        self.groups[(descriptor.group_id, descriptor.artifact_id)] = descriptor

    def describe(self, group_id, artifact_id):
        self.describe_calls.append((group_id, artifact_id))
        return self.groups.get((group_id, artifact_id))

    def search(self, text):
        self.search_calls.append(text)
        needle = text.lower()
        return [
            d
            for d in self.groups.values()
            if needle in d.description.lower() or needle in d.artifact_id.lower()
        ]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def repo_root(temp_dir):
    root = temp_dir / "repository"
    root.mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def index_dir(repo_root):
    return repo_root / ".search-index"


@pytest.fixture
def blobs(temp_dir):
    return BlobSource(temp_dir / "blobs")


@pytest.fixture
def cache(repo_root, index_dir):
    return RepositoryCache(repo_root, index_dir=index_dir)


@pytest.fixture
def fetcher(blobs):
    f = ContentFetcher(blobs.base_url, max_retries=0, retry_backoff_seconds=0)
    yield f
    f.close()


@pytest.fixture
def index(index_dir):
    idx = SearchIndex(index_dir)
    yield idx
    idx.close()


@pytest.fixture
def sync_engine(cache, fetcher, index):
    return SyncEngine(cache, fetcher, on_group_changed=index.update_one)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(index, cache, clock):
    return FreshnessMonitor(index, cache, interval_seconds=5.0, clock=clock)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def make_group(repo_root):
    """Write a cached template group (content files, meta.json, optional README)."""

    def _make(
        group_id,
        artifact_id,
        files=None,
        *,
        version="1.0.0",
        readme=None,
    ):
        files = files or [("/src/main/java/controller", "Controller.java.ftl", "class ${name} {}")]
        items = []
        for row in files:
            file_path, filename, content = row[:3]
            description = row[3] if len(row) > 3 else ""
            data = content.encode("utf-8")
            item = TemplateFile(
                file_path=file_path,
                filename=filename,
                version=version,
                sha256=hashlib.sha256(data).hexdigest(),
                description=description,
            )
            target = repo_root / group_id / artifact_id / Path(item.relative_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            items.append(item)
        manifest = Manifest(items)
        ManifestStore(repo_root).save(group_id, artifact_id, manifest)
        if readme is not None:
            readme_path = repo_root / group_id / artifact_id / version / "README.md"
            readme_path.write_text(readme, encoding="utf-8")
        return manifest

    return _make


@pytest.fixture
def remote_group(blobs):
    """Build a RemoteGroupDescriptor whose contents are stored in ``blobs``."""

    def _make(group_id, artifact_id, files, *, description="", version="1.0.0", store=True):
        entries = []
        for row in files:
            file_path, filename, content = row[:3]
            sha = hashlib.sha256(content.encode("utf-8")).hexdigest()
            if store:
                blobs.put(content)
            entry = {
                "filePath": file_path,
                "filename": filename,
                "version": version,
                "sha256": sha,
                "description": row[3] if len(row) > 3 else "",
            }
            if len(row) > 4:
                entry["inputVariables"] = row[4]
            entries.append(entry)
        return RemoteGroupDescriptor.model_validate(
            {
                "groupId": group_id,
                "artifactId": artifact_id,
                "description": description,
                "files": entries,
            }
        )

    return _make
