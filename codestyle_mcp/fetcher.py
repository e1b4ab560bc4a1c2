# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Content retrieval for the local template mirror.

Sources are URI-like descriptors. ``file://`` sources are copied from the local
filesystem, ``http(s)://`` sources are downloaded with bounded retries. The
destination only ever receives a complete, verified file.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import httpx
from tenacity import (RetryError, Retrying, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from .storage.files import commit_temp, discard_temp, sha256_file, temp_path_for

logger = logging.getLogger(__name__)

_STREAM_CHUNK = 64 * 1024


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    reason: str = ""
    attempts: int = 0


class _RetryableFetchError(Exception):
    """Transport-level failure that may succeed on another attempt."""


class _TerminalFetchError(Exception):
    """Failure that retrying cannot fix (404, other 4xx, hash mismatch)."""


class ContentFetcher:
    """Fetch template content into the cache, all-or-nothing."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        max_retries: int = 2,
        timeout_seconds: float = 10.0,
        connect_timeout_seconds: float = 5.0,
        retry_backoff_seconds: float = 0.5,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            follow_redirects=True,
        )

    @classmethod
    def from_config(cls, config) -> "ContentFetcher":
        return cls(
            config.fetch_base_url,
            max_retries=config.fetch_max_retries,
            timeout_seconds=config.fetch_timeout_seconds,
            connect_timeout_seconds=config.fetch_connect_timeout_seconds,
            retry_backoff_seconds=config.fetch_retry_backoff_seconds,
        )

    def source_for(self, sha256: str) -> str | None:
        """Build the source descriptor for a content hash."""
        if not self.base_url:
            return None
        return f"{self.base_url}/{sha256}"

    def fetch(
        self,
        source: str,
        destination: Path,
        expected_sha256: str | None = None,
    ) -> FetchResult:
        scheme = urlparse(source).scheme.lower()
        if scheme == "file":
            return self._fetch_file(source, destination, expected_sha256)
        if scheme in ("http", "https"):
            return self._fetch_http(source, destination, expected_sha256)
        logger.error("Unsupported source scheme %r for %s", scheme, source)
        return FetchResult(False, f"unsupported scheme: {scheme or '<none>'}")

    def close(self) -> None:
        if self._owns_client:
            try:
                self._client.close()
            except Exception:
                logger.debug("Error closing HTTP client", exc_info=True)

    # ------------------------------------------------------------------
    # file://
    # ------------------------------------------------------------------
    def _fetch_file(
        self, source: str, destination: Path, expected_sha256: str | None
    ) -> FetchResult:
        parsed = urlparse(source)
        src = Path(url2pathname(unquote(parsed.path)))
        if parsed.netloc and parsed.netloc != "localhost":
            src = Path(f"//{parsed.netloc}") / src
        if not src.is_file():
            logger.warning("Local source does not exist: %s", src)
            return FetchResult(False, "source not found", attempts=1)

        tmp_path = temp_path_for(destination)
        try:
            shutil.copyfile(src, tmp_path)
            self._verify(tmp_path, expected_sha256)
            commit_temp(tmp_path, destination)
        except _TerminalFetchError as exc:
            discard_temp(tmp_path)
            logger.warning("Rejected copy of %s: %s", src, exc)
            return FetchResult(False, str(exc), attempts=1)
        except OSError as exc:
            discard_temp(tmp_path)
            logger.error("Copy %s -> %s failed: %s", src, destination, exc)
            return FetchResult(False, f"copy failed: {exc}", attempts=1)
        logger.info("Copied %s -> %s", src, destination)
        return FetchResult(True, attempts=1)

    # ------------------------------------------------------------------
    # http(s)://
    # ------------------------------------------------------------------
    def _fetch_http(
        self, source: str, destination: Path, expected_sha256: str | None
    ) -> FetchResult:
        attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(_RetryableFetchError),
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._download_once(source, destination, expected_sha256, attempts)
        except _TerminalFetchError as exc:
            logger.warning("Download of %s failed: %s", source, exc)
            return FetchResult(False, str(exc), attempts=attempts)
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            logger.error("Download of %s failed: %s", source, exc)
            return FetchResult(False, f"download failed: {exc}", attempts=attempts)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error(
                "Giving up on %s after %d attempts: %s", source, attempts, last
            )
            return FetchResult(False, f"transport error: {last}", attempts=attempts)
        logger.info("Downloaded %s -> %s", source, destination)
        return FetchResult(True, attempts=attempts)

    def _download_once(
        self,
        source: str,
        destination: Path,
        expected_sha256: str | None,
        attempt_number: int,
    ) -> None:
        tmp_path = temp_path_for(destination)
        try:
            try:
                with self._client.stream("GET", source) as response:
                    status = response.status_code
                    if status == 404:
                        raise _TerminalFetchError("not found")
                    if 500 <= status < 600:
                        raise _RetryableFetchError(f"server error {status}")
                    if status != 200:
                        raise _TerminalFetchError(f"unexpected status {status}")
                    with tmp_path.open("wb") as fh:
                        for chunk in response.iter_bytes(_STREAM_CHUNK):
                            fh.write(chunk)
            except httpx.TransportError as exc:
                raise _RetryableFetchError(f"{type(exc).__name__}: {exc}") from exc
            self._verify(tmp_path, expected_sha256)
            commit_temp(tmp_path, destination)
        except _RetryableFetchError as exc:
            discard_temp(tmp_path)
            logger.warning("Download attempt %d of %s failed: %s", attempt_number, source, exc)
            raise
        except BaseException:
            discard_temp(tmp_path)
            raise

    @staticmethod
    def _verify(tmp_path: Path, expected_sha256: str | None) -> None:
        if not expected_sha256:
            return
        actual = sha256_file(tmp_path)
        if actual != expected_sha256.lower():
            raise _TerminalFetchError(
                f"hash mismatch: expected {expected_sha256}, got {actual}"
            )
