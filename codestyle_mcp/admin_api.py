from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import get_config
from .server import (
    get_index_stats_op,
    get_runtime,
    rebuild_index_op,
    search_op,
    sync_op,
)

logger = logging.getLogger("codestyle_admin")


def _get_admin_cfg() -> Dict[str, Any]:
    config = get_config()
    return {
        "enabled": config.admin_enabled,
        "host": config.admin_host,
        "port": config.admin_port,
        "api_key": config.admin_api_key,
        "require_api_key": config.admin_require_api_key,
        "allowed_ips": config.admin_allowed_ips,
    }


def _is_allowed_ip(ip: Optional[str], cfg: Dict[str, Any]) -> bool:
    if not ip:
        return False
    allowed = set(cfg.get("allowed_ips") or ["127.0.0.1", "::1"])
    return ip in allowed


async def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Common gate for all admin endpoints.

    - Enforce local-only IP (admin.allowed_ips)
    - Refuse to serve when an API key is required but none is configured
    - Enforce X-Admin-Key header if admin.api_key is set
    """
    client = request.client
    client_ip = client.host if client else None
    cfg = _get_admin_cfg()

    if not cfg.get("enabled"):
        logger.warning("Admin API called but admin.enabled=false")
        return JSONResponse({"error": "admin_disabled"}, status_code=503)

    if not _is_allowed_ip(client_ip, cfg):
        logger.warning("Admin access denied from IP %r", client_ip)
        return JSONResponse(
            {"error": "forbidden", "reason": "ip_not_allowed"},
            status_code=403,
        )

    api_key = cfg.get("api_key")
    if cfg.get("require_api_key") and not api_key:
        logger.error("admin.require_api_key is set but admin.api_key is empty")
        return JSONResponse(
            {"error": "configuration_error", "detail": "admin.api_key is not configured"},
            status_code=503,
        )

    if api_key:
        header_key = request.headers.get("x-admin-key")
        if header_key != api_key:
            logger.warning("Admin access denied due to invalid API key")
            return JSONResponse({"error": "unauthorized"}, status_code=401)

    return None


def _internal_error(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", name, exc)
    return JSONResponse(
        {"error": "internal_error", "detail": str(exc)},
        status_code=500,
    )


async def admin_status(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    cfg = _get_admin_cfg()
    try:
        runtime = get_runtime()
    except RuntimeError as exc:
        return JSONResponse({"error": "not_ready", "detail": str(exc)}, status_code=503)

    snapshot = runtime.index.snapshot()
    payload: Dict[str, Any] = {
        "admin": {
            "host": cfg["host"],
            "port": cfg["port"],
            "enabled": cfg["enabled"],
        },
        "repository": {
            "dir": str(runtime.cache.root),
            "remote_base_url": runtime.config.remote_base_url,
            "remote_search_enabled": runtime.config.remote_search_enabled,
        },
        "index": {
            "path": str(runtime.index.index_dir),
            "built": runtime.index.is_built(),
            "built_at": snapshot.built_at if snapshot else None,
            "manifest_count": snapshot.manifest_count if snapshot else None,
        },
        "freshness": {
            "interval_seconds": runtime.monitor.interval_seconds,
            "last_checked": runtime.monitor.last_checked,
        },
    }
    return JSONResponse(payload)


async def admin_index_rebuild(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(rebuild_index_op())
    except Exception as exc:
        return _internal_error("admin_index_rebuild", exc)


async def admin_index_stats(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        return JSONResponse(get_index_stats_op())
    except Exception as exc:
        return _internal_error("admin_index_stats", exc)


async def admin_sync(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "bad_request", "detail": "invalid JSON"}, status_code=400)

    try:
        return JSONResponse(sync_op(body))
    except ValidationError as exc:
        return JSONResponse(
            {"error": "bad_request", "detail": exc.errors(include_url=False)},
            status_code=400,
        )
    except Exception as exc:
        return _internal_error("admin_sync", exc)


async def admin_search(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    query = request.query_params.get("q", "")
    try:
        return JSONResponse(search_op(query))
    except Exception as exc:
        return _internal_error("admin_search", exc)


async def admin_config_view(request: Request) -> Response:
    if (resp := await require_admin(request)) is not None:
        return resp

    raw = dict(get_config().config_data)
    admin = raw.get("admin")
    if isinstance(admin, dict) and admin.get("api_key"):
        raw["admin"] = {**admin, "api_key": "***"}
    return JSONResponse(raw)


routes = [
    Route("/admin/status", admin_status, methods=["GET"]),
    Route("/admin/index/rebuild", admin_index_rebuild, methods=["POST"]),
    Route("/admin/index/stats", admin_index_stats, methods=["GET"]),
    Route("/admin/sync", admin_sync, methods=["POST"]),
    Route("/admin/search", admin_search, methods=["GET"]),
    Route("/admin/config", admin_config_view, methods=["GET"]),
]

app = Starlette(debug=False, routes=routes)
