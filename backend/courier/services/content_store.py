"""Content stores that resolve a message's opaque content reference at delivery.

The engine never looks inside content. ``put`` hands back an opaque ref and
``resolve`` turns that ref into something deliverable: inline bytes for the
filesystem store, a link for the HTTP store.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from courier.errors import ContentNotFound, ContentStoreTimeout
from courier.utils.crypto import sha256_hash

logger = logging.getLogger(__name__)

_REF_PATTERN = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True, slots=True)
class ResolvedContent:
    """Deliverable form of a content reference."""

    ref: str
    data: bytes | None = None
    url: str | None = None


class ContentStore(Protocol):
    async def put(self, data: bytes) -> str: ...

    async def get(self, ref: str) -> bytes: ...

    async def resolve(self, ref: str) -> ResolvedContent: ...


class FileContentStore:
    """Content-addressed blobs on the local filesystem.

    Blobs are stored as ``<root>/<ab>/<sha256>`` so a ref is the SHA-256 of
    its bytes and identical uploads share storage.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path_for(self, ref: str) -> Path:
        if not _REF_PATTERN.match(ref):
            raise ContentNotFound(f"Malformed content reference: {ref!r}")
        return self._root / ref[:2] / ref

    def _write(self, data: bytes) -> str:
        ref = sha256_hash(data)
        path = self._path_for(ref)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        return ref

    def _read(self, ref: str) -> bytes:
        path = self._path_for(ref)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ContentNotFound(f"Content {ref} not found") from None

    async def put(self, data: bytes) -> str:
        ref = await asyncio.to_thread(self._write, data)
        logger.debug("Stored content %s (%d bytes)", ref, len(data))
        return ref

    async def get(self, ref: str) -> bytes:
        return await asyncio.to_thread(self._read, ref)

    async def resolve(self, ref: str) -> ResolvedContent:
        data = await self.get(ref)
        return ResolvedContent(ref=ref, data=data)


class HttpContentStore:
    """Blob service reachable over HTTP.

    Expects ``POST /blobs`` returning ``{"ref": ...}`` and ``GET|HEAD
    /blobs/{ref}``. Resolution only checks existence and hands back the
    download link; recipients fetch the bytes themselves.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the shared HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ContentStoreTimeout(f"Content store timed out on {method} {path}") from exc
        except httpx.TransportError as exc:
            raise ContentStoreTimeout(f"Content store unreachable: {exc}") from exc

    async def put(self, data: bytes) -> str:
        resp = await self._request(
            "POST",
            "/blobs",
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if resp.status_code >= 500:
            raise ContentStoreTimeout(f"Content store error {resp.status_code}")
        resp.raise_for_status()
        return resp.json()["ref"]

    async def get(self, ref: str) -> bytes:
        resp = await self._request("GET", f"/blobs/{ref}")
        self._check(resp, ref)
        return resp.content

    async def resolve(self, ref: str) -> ResolvedContent:
        resp = await self._request("HEAD", f"/blobs/{ref}")
        self._check(resp, ref)
        return ResolvedContent(ref=ref, url=f"{self._base_url}/blobs/{ref}")

    @staticmethod
    def _check(resp: httpx.Response, ref: str) -> None:
        if resp.status_code == 404:
            raise ContentNotFound(f"Content {ref} not found")
        if resp.status_code >= 500:
            raise ContentStoreTimeout(f"Content store error {resp.status_code} for {ref}")
        resp.raise_for_status()


def build_content_store(settings) -> FileContentStore | HttpContentStore:
    """Pick the content store for the current configuration."""
    if settings.content_store_url:
        return HttpContentStore(settings.content_store_url, timeout=settings.io_timeout_seconds)
    settings.content_dir.mkdir(parents=True, exist_ok=True)
    return FileContentStore(settings.content_dir)
