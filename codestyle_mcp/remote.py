# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""HTTP client for the remote template catalog.

Only descriptors come from here; file content is pulled separately by
:class:`~codestyle_mcp.fetcher.ContentFetcher`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .schema import RemoteGroupDescriptor

logger = logging.getLogger(__name__)


class RemoteCatalog(Protocol):
    def describe(self, group_id: str, artifact_id: str) -> RemoteGroupDescriptor | None: ...

    def search(self, text: str) -> list[RemoteGroupDescriptor]: ...


def _parse_descriptors(payload: Any) -> list[RemoteGroupDescriptor]:
    if isinstance(payload, dict):
        # Accept both a bare list and {"items": [...]} / {"data": [...]}
        payload = payload.get("items", payload.get("data", [payload]))
    if not isinstance(payload, list):
        return []
    descriptors = []
    for item in payload:
        try:
            descriptors.append(RemoteGroupDescriptor.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed remote descriptor: %s", exc)
    return descriptors


class HttpRemoteCatalog:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        connect_timeout_seconds: float = 5.0,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            follow_redirects=True,
        )

    @classmethod
    def from_config(cls, config) -> "HttpRemoteCatalog | None":
        if not config.remote_base_url:
            return None
        return cls(
            config.remote_base_url,
            timeout_seconds=config.fetch_timeout_seconds,
            connect_timeout_seconds=config.fetch_connect_timeout_seconds,
        )

    def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any | None:
        try:
            response = self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Remote catalog request %s failed: %s", url, exc)
            return None
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning("Remote catalog %s returned HTTP %d", url, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Remote catalog %s returned invalid JSON", url)
            return None

    def describe(self, group_id: str, artifact_id: str) -> RemoteGroupDescriptor | None:
        url = f"{self.base_url}/templates/{quote(group_id, safe='')}/{quote(artifact_id, safe='')}"
        payload = self._get_json(url)
        if payload is None:
            return None
        descriptors = _parse_descriptors(payload)
        for descriptor in descriptors:
            if descriptor.group_id == group_id and descriptor.artifact_id == artifact_id:
                return descriptor
        return None

    def search(self, text: str) -> list[RemoteGroupDescriptor]:
        payload = self._get_json(f"{self.base_url}/templates/search", params={"q": text})
        if payload is None:
            return []
        descriptors = _parse_descriptors(payload)
        logger.info("Remote catalog search %r returned %d groups", text, len(descriptors))
        return descriptors

    def close(self) -> None:
        if self._owns_client:
            try:
                self._client.close()
            except Exception:
                logger.debug("Error closing remote catalog client", exc_info=True)
