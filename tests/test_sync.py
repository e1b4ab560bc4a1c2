# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import hashlib
import threading

import httpx

from codestyle_mcp.fetcher import ContentFetcher
from codestyle_mcp.storage.files import sha256_file
from codestyle_mcp.sync import SyncEngine, SyncStatus

CRUD_FILES = [
    ("/src/main/java/controller", "Controller.java.ftl", "class ${name}Controller {}", "controller"),
    ("/src/main/resources/mapper", "Mapper.xml.ftl", "<mapper/>", "mapper"),
]


def _assert_all_present(cache, group_id, artifact_id):
    manifest = cache.load_manifest(group_id, artifact_id)
    assert manifest is not None
    for item in manifest:
        path = cache.file_path_for(group_id, artifact_id, item)
        assert sha256_file(path) == item.sha256


def test_sync_new_group_fetches_everything(sync_engine, cache, remote_group):
    remote = remote_group("top.codestyle", "crud", CRUD_FILES, description="CRUD scaffolding")
    report = sync_engine.sync(remote)
    assert report.status is SyncStatus.SUCCESS
    assert sorted(report.fetched) == ["Controller.java.ftl", "Mapper.xml.ftl"]
    assert report.changed
    _assert_all_present(cache, "top.codestyle", "crud")
    readme = cache.readme_path("top.codestyle", "crud", "1.0.0")
    assert readme.read_text(encoding="utf-8").strip() == "CRUD scaffolding"


def test_resync_unchanged_group_fetches_nothing(sync_engine, cache, remote_group, blobs):
    remote = remote_group("g", "a", CRUD_FILES)
    sync_engine.sync(remote)
    # Content is no longer retrievable, but nothing needs fetching
    for _, _, content, *_ in CRUD_FILES:
        blobs.remove(hashlib.sha256(content.encode()).hexdigest())
    report = sync_engine.sync(remote)
    assert report.status is SyncStatus.SUCCESS
    assert report.fetched == []
    assert sorted(report.unchanged) == ["Controller.java.ftl", "Mapper.xml.ftl"]
    assert not report.changed


def test_hash_mismatch_on_disk_triggers_refetch(sync_engine, cache, remote_group):
    remote = remote_group("g", "a", CRUD_FILES)
    sync_engine.sync(remote)
    item = cache.load_manifest("g", "a").get("Mapper.xml.ftl")
    cache.file_path_for("g", "a", item).write_text("corrupted", encoding="utf-8")

    report = sync_engine.sync(remote)
    assert report.status is SyncStatus.SUCCESS
    assert report.fetched == ["Mapper.xml.ftl"]
    _assert_all_present(cache, "g", "a")


def test_changed_file_is_replaced(sync_engine, cache, remote_group):
    sync_engine.sync(remote_group("g", "a", CRUD_FILES))
    updated = [CRUD_FILES[0], ("/src/main/resources/mapper", "Mapper.xml.ftl", "<mapper v2/>")]
    report = sync_engine.sync(remote_group("g", "a", updated))
    assert report.fetched == ["Mapper.xml.ftl"]
    item = cache.load_manifest("g", "a").get("Mapper.xml.ftl")
    assert cache.file_path_for("g", "a", item).read_text(encoding="utf-8") == "<mapper v2/>"


def test_partial_failure_when_one_file_404s(cache, index, remote_group):
    b_body = b"b template"

    def handler(request):
        if request.url.path.endswith(hashlib.sha256(b_body).hexdigest()):
            return httpx.Response(200, content=b_body)
        return httpx.Response(404)

    fetcher = ContentFetcher(
        "http://files.test/files",
        retry_backoff_seconds=0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    engine = SyncEngine(cache, fetcher, on_group_changed=index.update_one)
    remote = remote_group(
        "g", "a", [("/tpl", "a.ftl", "a template"), ("/tpl", "b.ftl", "b template")], store=False
    )
    report = engine.sync(remote)

    assert report.status is SyncStatus.PARTIAL_FAILURE
    assert report.fetched == ["b.ftl"]
    assert report.failed == {"a.ftl": "not found"}
    manifest = cache.load_manifest("g", "a")
    assert cache.is_present("g", "a", manifest.get("b.ftl"))
    assert manifest.get("a.ftl") is None
    assert not (cache.group_dir("g", "a") / "1.0.0" / "tpl" / "a.ftl").exists()


def test_failed_refetch_keeps_previous_entry(sync_engine, cache, remote_group):
    sync_engine.sync(remote_group("g", "a", CRUD_FILES))
    updated = [CRUD_FILES[0], ("/src/main/resources/mapper", "Mapper.xml.ftl", "<v2/>")]
    report = sync_engine.sync(remote_group("g", "a", updated, store=False))
    assert report.status is SyncStatus.PARTIAL_FAILURE
    assert "Mapper.xml.ftl" in report.failed
    kept = cache.load_manifest("g", "a").get("Mapper.xml.ftl")
    assert cache.is_present("g", "a", kept)


def test_nothing_present_is_failure(sync_engine, cache, remote_group):
    report = sync_engine.sync(remote_group("g", "a", CRUD_FILES, store=False))
    assert report.status is SyncStatus.FAILURE
    assert set(report.failed) == {"Controller.java.ftl", "Mapper.xml.ftl"}


def test_duplicate_filenames_fail_the_descriptor(sync_engine, cache, remote_group):
    remote = remote_group("g", "a", [("/a", "x.ftl", "1"), ("/b", "X.FTL", "2")])
    report = sync_engine.sync(remote)
    assert report.status is SyncStatus.FAILURE
    assert "duplicate" in report.message
    assert cache.load_manifest("g", "a") is None


def test_unsafe_paths_are_rejected(sync_engine, cache, remote_group, repo_root):
    report = sync_engine.sync(remote_group("g", "a", [("/../../etc", "x.ftl", "1")]))
    assert report.status is SyncStatus.FAILURE
    report = sync_engine.sync(remote_group("..", "a", [("/src", "x.ftl", "1")]))
    assert report.status is SyncStatus.FAILURE
    report = sync_engine.sync(remote_group("g", "a", [("/src", "x.ftl", "1")], version="../v"))
    assert report.status is SyncStatus.FAILURE
    assert not (repo_root.parent / "etc").exists()


def test_sync_signals_index_update(cache, fetcher, remote_group):
    seen = []
    engine = SyncEngine(cache, fetcher, on_group_changed=seen.append)
    engine.sync(remote_group("g", "a", CRUD_FILES, description="CRUD"))
    assert [e.key for e in seen] == [("g", "a")]
    assert seen[0].description == "CRUD"

    # Nothing changed: no signal
    engine.sync(remote_group("g", "a", CRUD_FILES, description="CRUD"))
    assert len(seen) == 1


def test_index_callback_failure_does_not_change_result(cache, fetcher, remote_group):
    def boom(entry):
        raise RuntimeError("index unavailable")

    engine = SyncEngine(cache, fetcher, on_group_changed=boom)
    report = engine.sync(remote_group("g", "a", CRUD_FILES))
    assert report.status is SyncStatus.SUCCESS


def test_lost_manifest_adopts_present_files(sync_engine, cache, remote_group):
    remote = remote_group("g", "a", CRUD_FILES)
    sync_engine.sync(remote)
    cache.manifest_path("g", "a").unlink()
    report = sync_engine.sync(remote)
    assert report.status is SyncStatus.SUCCESS
    assert report.fetched == []
    assert len(cache.load_manifest("g", "a")) == 2


def test_report_to_dict(sync_engine, remote_group):
    data = sync_engine.sync(remote_group("g", "a", CRUD_FILES)).to_dict()
    assert data["status"] == "SUCCESS"
    assert data["group_id"] == "g"
    assert data["failed"] == {}


def test_sync_many_isolates_groups(sync_engine, cache, remote_group):
    good = remote_group("g", "good", [("/x", "a.ftl", "A")])
    bad = remote_group("g", "bad", [("/x", "b.ftl", "B")], store=False)

    reports = sync_engine.sync_many([good, bad])

    assert [r.status for r in reports] == [SyncStatus.SUCCESS, SyncStatus.FAILURE]
    assert cache.load_manifest("g", "good") is not None
    assert cache.load_manifest("g", "bad") is None


class _GatedFetcher:
    """Blocks fetches for one artifact until the gate opens."""

    def __init__(self, inner, artifact_id):
        self.inner = inner
        self.artifact_id = artifact_id
        self.entered = threading.Event()
        self.gate = threading.Event()

    def source_for(self, sha256):
        return self.inner.source_for(sha256)

    def fetch(self, source, destination, expected_sha256=None):
        if self.artifact_id in destination.parts:
            self.entered.set()
            self.gate.wait(5)
        return self.inner.fetch(source, destination, expected_sha256)


def test_different_groups_sync_concurrently(cache, fetcher, remote_group):
    gated = _GatedFetcher(fetcher, "slow")
    engine = SyncEngine(cache, gated)
    slow = remote_group("g", "slow", [("/x", "a.ftl", "slow content")])
    fast = remote_group("g", "fast", [("/x", "b.ftl", "fast content")])

    slow_reports = []
    slow_thread = threading.Thread(target=lambda: slow_reports.append(engine.sync(slow)))
    slow_thread.start()
    try:
        assert gated.entered.wait(5)

        fast_reports = []
        fast_thread = threading.Thread(target=lambda: fast_reports.append(engine.sync(fast)))
        fast_thread.start()
        fast_thread.join(5)

        assert not fast_thread.is_alive()
        assert fast_reports[0].status is SyncStatus.SUCCESS
        assert slow_thread.is_alive()
    finally:
        gated.gate.set()
        slow_thread.join(5)

    assert slow_reports[0].status is SyncStatus.SUCCESS
    _assert_all_present(cache, "g", "slow")


def test_same_group_syncs_serialize(cache, fetcher, remote_group):
    gated = _GatedFetcher(fetcher, "crud")
    engine = SyncEngine(cache, gated)
    remote = remote_group("g", "crud", [("/x", "a.ftl", "content")])

    reports = []
    first = threading.Thread(target=lambda: reports.append(engine.sync(remote)))
    first.start()
    try:
        assert gated.entered.wait(5)
        second = threading.Thread(target=lambda: reports.append(engine.sync(remote)))
        second.start()
        second.join(0.2)
        assert second.is_alive()
    finally:
        gated.gate.set()
        first.join(5)
    second.join(5)

    # The second sync ran after the first finished and found nothing to fetch
    assert sorted((r.fetched, r.unchanged) for r in reports) == [([], ["a.ftl"]), (["a.ftl"], [])]
