"""File connector: local files under the file root, plus HTTP, TCP and S3 transfers."""

from __future__ import annotations

import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator
from urllib.parse import urlparse

import httpx
from aiobotocore.session import get_session

from ..automation.errors import ActionError
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


def _resolve_path(root: Path, raw_path: str) -> Path:
    candidate = Path(raw_path)
    path = (candidate if candidate.is_absolute() else root / candidate).resolve()
    try:
        path.relative_to(root.resolve())
    except ValueError as exc:
        raise ActionError(f"Path escapes file root: {raw_path}", "invalid_path") from exc
    return path


def _to_bytes(content: Any) -> bytes:
    if content is None:
        return b""
    if isinstance(content, bytes):
        return content
    return str(content).encode()


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _describe(data: bytes) -> dict:
    """Content as text when it decodes as UTF-8, base64 otherwise."""
    try:
        return {"content": data.decode(), "encoding": "utf-8", "size": len(data)}
    except UnicodeDecodeError:
        return {"content": base64.b64encode(data).decode(), "encoding": "base64", "size": len(data)}


@register
class FileConnector(BaseConnector):
    """Serves ``file_operation`` operations.

    ``open`` / ``write`` / ``delete`` work on paths inside ``settings.file_root``.
    ``download`` / ``upload`` move content between the file root and a remote
    location over HTTP, raw TCP (``tcp://host:port``) or S3.
    """

    kind = "file"

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.file_root)

    @property
    def root(self) -> Path:
        return Path(self.settings.file_root)

    async def execute(
        self,
        operation: str,
        protocol: str | None = None,
        url: str | None = None,
        source_path: str | None = None,
        target_path: str | None = None,
        bucket: str | None = None,
        content: Any = None,
    ) -> dict:
        if operation == "open":
            path = self._local(source_path)
            if not path.is_file():
                self._fail(f"Local file not found: {source_path}", "not_found")
            data = await asyncio.to_thread(path.read_bytes)
            return {"path": source_path, **_describe(data)}

        if operation == "write":
            path = self._local(target_path)
            data = _to_bytes(content)
            await asyncio.to_thread(_write, path, data)
            return {"path": target_path, "size": len(data)}

        if operation == "download":
            data = await self._download(protocol, url, bucket, source_path)
            if target_path:
                path = self._local(target_path)
                await asyncio.to_thread(_write, path, data)
            logger.info("Downloaded %d bytes over %s", len(data), protocol)
            return {"path": target_path, **_describe(data)}

        if operation == "upload":
            if content is not None:
                data = _to_bytes(content)
            else:
                path = self._local(source_path)
                if not path.is_file():
                    self._fail(f"Local file not found: {source_path}", "not_found")
                data = await asyncio.to_thread(path.read_bytes)
            location = await self._upload(protocol, url, bucket, target_path, data)
            logger.info("Uploaded %d bytes to %s", len(data), location)
            return {"location": location, "size": len(data)}

        if operation == "delete":
            raw = target_path or source_path
            if raw and not url and not bucket:
                path = self._local(raw)
                if not path.exists():
                    self._fail(f"File not found: {raw}", "not_found")
                await asyncio.to_thread(path.unlink)
                return {"path": raw, "deleted": True}
            location = await self._delete_remote(protocol, url, bucket, raw)
            return {"location": location, "deleted": True}

        self._fail(f"Unknown file operation: {operation}", "invalid_operation")

    def _local(self, raw_path: str | None) -> Path:
        if not raw_path:
            self._fail("A local path is required", "invalid_config")
        return _resolve_path(self.root, raw_path)

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    async def _download(
        self, protocol: str | None, url: str | None, bucket: str | None, key: str | None
    ) -> bytes:
        if protocol == "s3":
            bucket, key = self._s3_location(bucket, key or url)
            async with self._s3_client() as s3:
                try:
                    response = await s3.get_object(Bucket=bucket, Key=key)
                except s3.exceptions.NoSuchKey as e:
                    raise ActionError(f"Object not found: s3://{bucket}/{key}", "not_found") from e
                return await response["Body"].read()

        if protocol == "tcp":
            return await self._tcp_exchange(url, request=(key or "").encode())

        if not url:
            self._fail("Download needs a URL", "invalid_config")
        try:
            resp = await self.http.get(url, timeout=self.settings.http_timeout)
        except httpx.HTTPError as e:
            raise ActionError(f"Download from {url} failed: {e}", "network_error") from e
        if resp.status_code == 404:
            self._fail(f"Remote file not found: {url}", "not_found")
        if resp.status_code >= 400:
            self._fail(f"Download from {url} returned {resp.status_code}", "http_error")
        return resp.content

    async def _upload(
        self,
        protocol: str | None,
        url: str | None,
        bucket: str | None,
        key: str | None,
        data: bytes,
    ) -> str:
        if protocol == "s3":
            bucket, key = self._s3_location(bucket, key or url)
            async with self._s3_client() as s3:
                await s3.put_object(Bucket=bucket, Key=key, Body=data)
            return f"s3://{bucket}/{key}"

        if protocol == "tcp":
            await self._tcp_exchange(url, payload=data)
            return url or ""

        if not url:
            self._fail("Upload needs a URL", "invalid_config")
        try:
            resp = await self.http.put(url, content=data, timeout=self.settings.http_timeout)
        except httpx.HTTPError as e:
            raise ActionError(f"Upload to {url} failed: {e}", "network_error") from e
        if resp.status_code >= 400:
            self._fail(f"Upload to {url} returned {resp.status_code}", "http_error")
        return url

    async def _delete_remote(
        self, protocol: str | None, url: str | None, bucket: str | None, key: str | None
    ) -> str:
        if protocol == "s3" or bucket:
            bucket, key = self._s3_location(bucket, key or url)
            async with self._s3_client() as s3:
                await s3.delete_object(Bucket=bucket, Key=key)
            return f"s3://{bucket}/{key}"

        if not url:
            self._fail("Remote delete needs a URL", "invalid_config")
        try:
            resp = await self.http.delete(url, timeout=self.settings.http_timeout)
        except httpx.HTTPError as e:
            raise ActionError(f"Delete of {url} failed: {e}", "network_error") from e
        if resp.status_code >= 400:
            self._fail(f"Delete of {url} returned {resp.status_code}", "http_error")
        return url

    async def _tcp_exchange(
        self, url: str | None, request: bytes = b"", payload: bytes | None = None
    ) -> bytes:
        """Send ``request`` (and ``payload``) to ``tcp://host:port`` and read until EOF."""
        parsed = urlparse(url or "")
        if parsed.scheme != "tcp" or not parsed.hostname or not parsed.port:
            self._fail(f"Expected a tcp://host:port URL, got {url!r}", "invalid_config")

        async def exchange() -> bytes:
            reader, writer = await asyncio.open_connection(parsed.hostname, parsed.port)
            try:
                if request:
                    writer.write(request + b"\n")
                if payload is not None:
                    writer.write(payload)
                await writer.drain()
                if writer.can_write_eof():
                    writer.write_eof()
                return await reader.read()
            finally:
                writer.close()
                await writer.wait_closed()

        try:
            return await asyncio.wait_for(exchange(), self.settings.http_timeout)
        except asyncio.TimeoutError as e:
            raise ActionError(f"TCP transfer with {url} timed out", "timeout") from e
        except OSError as e:
            raise ActionError(f"TCP transfer with {url} failed: {e}", "network_error") from e

    # ------------------------------------------------------------------
    # S3
    # ------------------------------------------------------------------

    def _s3_location(self, bucket: str | None, key: str | None) -> tuple[str, str]:
        if key and key.startswith("s3://"):
            parsed = urlparse(key)
            return parsed.netloc, parsed.path.lstrip("/")
        bucket = bucket or self.settings.s3_bucket
        if not bucket or not key:
            self._fail("S3 transfers need a bucket and a key", "invalid_config")
        return bucket, key.lstrip("/")

    @asynccontextmanager
    async def _s3_client(self) -> AsyncIterator[Any]:
        if not self.settings.s3_endpoint_url and not self.settings.s3_access_key:
            self._fail("S3 storage is not configured", "not_configured")
        session = get_session()
        async with session.create_client(
            "s3",
            endpoint_url=self.settings.s3_endpoint_url,
            aws_access_key_id=self.settings.s3_access_key,
            aws_secret_access_key=self.settings.s3_secret_key,
            region_name=self.settings.s3_region,
        ) as client:
            yield client
