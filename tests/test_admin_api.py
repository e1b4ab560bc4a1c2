# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import json
from unittest.mock import patch

import pytest
from starlette.testclient import TestClient

from codestyle_mcp import config as config_module
from codestyle_mcp import server
from codestyle_mcp.admin_api import app
from codestyle_mcp.config import load_config


def _base_cfg():
    return {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 8766,
        "api_key": None,
        "require_api_key": False,
        "allowed_ips": ["127.0.0.1", "testclient"],
    }


@pytest.fixture
def runtime(tmp_path, blobs, monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(
        json.dumps(
            {
                "repository": {"dir": str(tmp_path / "repo")},
                "fetch": {"base_url": blobs.base_url, "max_retries": 0},
                "admin": {"api_key": "hunter2"},
            }
        )
    )
    rt = server.init_runtime(load_config(cfg_path))
    yield rt
    server.shutdown_runtime()


@pytest.fixture
def admin_cfg():
    with patch("codestyle_mcp.admin_api._get_admin_cfg") as mock_cfg:
        mock_cfg.return_value = _base_cfg()
        yield mock_cfg


def test_admin_api_disabled():
    with patch("codestyle_mcp.admin_api._get_admin_cfg") as mock_cfg:
        mock_cfg.return_value = {"enabled": False}
        client = TestClient(app)
        response = client.get("/admin/status")
        assert response.status_code == 503
        assert response.json() == {"error": "admin_disabled"}


def test_admin_api_ip_not_allowed():
    with patch("codestyle_mcp.admin_api._get_admin_cfg") as mock_cfg:
        cfg = _base_cfg()
        cfg["allowed_ips"] = ["127.0.0.1"]
        mock_cfg.return_value = cfg
        response = TestClient(app).get("/admin/status")
        assert response.status_code == 403
        assert response.json()["reason"] == "ip_not_allowed"


def test_admin_api_auth_required(runtime):
    with patch("codestyle_mcp.admin_api._get_admin_cfg") as mock_cfg:
        cfg = _base_cfg()
        cfg["api_key"] = "secret"
        mock_cfg.return_value = cfg
        client = TestClient(app)

        assert client.get("/admin/status").status_code == 401
        assert client.get("/admin/status", headers={"X-Admin-Key": "wrong"}).status_code == 401
        assert client.get("/admin/status", headers={"X-Admin-Key": "secret"}).status_code == 200


def test_admin_api_missing_required_key_returns_503():
    with patch("codestyle_mcp.admin_api._get_admin_cfg") as mock_cfg:
        cfg = _base_cfg()
        cfg["require_api_key"] = True
        mock_cfg.return_value = cfg
        response = TestClient(app).get("/admin/status")
        assert response.status_code == 503
        assert response.json()["error"] == "configuration_error"


def test_status_before_runtime_is_not_ready(admin_cfg, monkeypatch):
    monkeypatch.setattr(server, "_RUNTIME", None)
    response = TestClient(app).get("/admin/status")
    assert response.status_code == 503
    assert response.json()["error"] == "not_ready"


def test_status_reports_index(admin_cfg, runtime):
    response = TestClient(app).get("/admin/status")
    assert response.status_code == 200
    data = response.json()
    assert data["admin"]["enabled"] is True
    assert data["index"]["built"] is True
    assert data["index"]["manifest_count"] == 0
    assert data["repository"]["remote_search_enabled"] is False


def test_config_view_masks_key(admin_cfg, runtime):
    response = TestClient(app).get("/admin/config")
    assert response.status_code == 200
    assert response.json()["admin"]["api_key"] == "***"


def test_sync_then_search(admin_cfg, runtime, remote_group):
    client = TestClient(app)
    descriptor = remote_group(
        "top.codestyle",
        "crud",
        [("/src/main/java", "Controller.java.ftl", "class ${className} {}")],
        description="CRUD controller",
    )

    response = client.post("/admin/sync", json=descriptor.model_dump(by_alias=True))
    assert response.status_code == 200
    assert response.json()["status"] == "SUCCESS"

    response = client.get("/admin/search", params={"q": "crud"})
    assert response.status_code == 200
    data = response.json()
    assert data["kind"] == "detail"
    assert "class ${className} {}" in data["content"]


def test_sync_rejects_bad_payload(admin_cfg, runtime):
    client = TestClient(app)
    response = client.post("/admin/sync", content=b"{not json", headers={"content-type": "application/json"})
    assert response.status_code == 400

    response = client.post("/admin/sync", json={"groupId": "g"})
    assert response.status_code == 400
    assert response.json()["error"] == "bad_request"


def test_rebuild_and_stats(admin_cfg, runtime):
    client = TestClient(app)
    response = client.post("/admin/index/rebuild")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = client.get("/admin/index/stats")
    assert response.status_code == 200
    assert response.json()["built"] is True


def test_internal_errors_are_reported(admin_cfg, runtime, monkeypatch):
    def boom():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(runtime.index, "stats", boom)
    response = TestClient(app).get("/admin/index/stats")
    assert response.status_code == 500
    assert response.json() == {"error": "internal_error", "detail": "disk on fire"}
