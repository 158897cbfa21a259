# =============================================================================
# Document Fetcher — Resolve document_ref to Raw Bytes
# =============================================================================
#
# The upload handler stores the raw PDF somewhere and hands the queue an
# opaque locator. Three forms are accepted:
#
#   https://cdn.example.com/raw/abc.pdf   → HTTP GET (httpx, explicit timeout)
#   file:///srv/uploads/abc.pdf           → local file
#   uploads/abc.pdf                       → key relative to storage_root
#
# Every failure (DNS, timeout, non-2xx, missing file, oversized body) is
# raised as FetchError, which the worker reports as a retryable job failure.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import unquote, urlsplit

import httpx

from pdf_ingest.config import Settings, settings
from pdf_ingest.exceptions import FetchError

logger = logging.getLogger(__name__)


class DocumentFetcher:
    """Fetch document bytes by URL or storage key. Safe to share across threads."""

    def __init__(
        self,
        storage_root: str | Path,
        *,
        timeout: float = 30.0,
        max_bytes: int | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._storage_root = Path(storage_root)
        self._timeout = timeout
        self._max_bytes = max_bytes
        self._http = http_client or httpx.Client(timeout=timeout, follow_redirects=True)

    def fetch(self, document_ref: str) -> bytes:
        """
        Return the raw bytes behind document_ref.

        Raises:
            FetchError: the document could not be retrieved.
        """
        parts = urlsplit(document_ref)
        if parts.scheme in ("http", "https"):
            data = self._fetch_http(document_ref)
        elif parts.scheme == "file":
            data = self._read_file(Path(unquote(parts.path)))
        elif parts.scheme and len(parts.scheme) > 1:
            # Single-letter "schemes" are Windows drive letters
            raise FetchError(f"Unsupported document_ref scheme: {parts.scheme!r}")
        else:
            data = self._read_file(self._resolve_key(document_ref))

        if self._max_bytes is not None and len(data) > self._max_bytes:
            raise FetchError(
                f"Document exceeds {self._max_bytes} bytes ({len(data)} bytes): {document_ref}"
            )
        logger.debug("Fetched %d bytes from %s", len(data), document_ref)
        return data

    def close(self) -> None:
        self._http.close()

    def _fetch_http(self, url: str) -> bytes:
        try:
            response = self._http.get(url, timeout=self._timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url} after {self._timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"Fetching {url} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        return response.content

    def _resolve_key(self, key: str) -> Path:
        root = self._storage_root.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise FetchError(f"Storage key escapes storage root: {key}")
        return path

    def _read_file(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise FetchError(f"Document not found: {path}") from exc
        except OSError as exc:
            raise FetchError(f"Failed to read {path}: {exc}") from exc


def build_fetcher(config: Settings | None = None) -> DocumentFetcher:
    """Build the production fetcher from settings."""
    cfg = config or settings
    return DocumentFetcher(
        cfg.storage_root,
        timeout=cfg.fetch_timeout_seconds,
        max_bytes=cfg.fetch_max_bytes,
    )
