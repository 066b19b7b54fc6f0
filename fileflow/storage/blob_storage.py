"""Blob storage for uploaded files: local directory or Supabase Storage."""

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, BinaryIO, Callable, Dict, Optional

import httpx
from pydantic import BaseModel
from supabase import Client

from fileflow.db.supabase_client import get_supabase
from fileflow.exceptions import StorageError

DEFAULT_CHUNK_SIZE = 64 * 1024


class BlobLocation(BaseModel):
    bucket: str
    key: str
    size: int = 0


class BlobStorage(ABC):
    """Where uploaded bytes live."""

    @abstractmethod
    async def upload(
        self, key: str, stream: BinaryIO, metadata: Optional[Dict[str, str]] = None
    ) -> BlobLocation:
        ...

    @abstractmethod
    def read_stream(self, key: str) -> AsyncIterator[bytes]:
        """Async iterator of byte chunks. Read errors surface while iterating."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


async def _in_executor(fn: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


class LocalBlobStorage(BlobStorage):
    """Stores blobs as files under a base directory."""

    def __init__(
        self,
        base_dir: str,
        bucket: str = "local",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._base_dir = os.path.abspath(base_dir)
        os.makedirs(self._base_dir, exist_ok=True)
        self._bucket = bucket
        self._chunk_size = chunk_size

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self._base_dir, key))
        if os.path.commonpath([path, self._base_dir]) != self._base_dir:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    async def upload(
        self, key: str, stream: BinaryIO, metadata: Optional[Dict[str, str]] = None
    ) -> BlobLocation:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        def copy() -> int:
            with open(path, "wb") as dst:
                shutil.copyfileobj(stream, dst, self._chunk_size)
            return os.path.getsize(path)

        size = await _in_executor(copy)
        return BlobLocation(bucket=self._bucket, key=key, size=size)

    async def read_stream(self, key: str) -> AsyncIterator[bytes]:
        path = self._path(key)
        if not os.path.exists(path):
            raise StorageError(f"Blob not found: {key}")
        with open(path, "rb") as fh:
            while True:
                chunk = await _in_executor(fh.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)
        parent = os.path.dirname(path)
        if parent != self._base_dir and os.path.isdir(parent) and not os.listdir(parent):
            os.rmdir(parent)


class SupabaseBlobStorage(BlobStorage):
    """Supabase Storage bucket.

    Reads go through a short-lived signed URL streamed with httpx, so a large
    object is never downloaded into memory in one piece.
    """

    def __init__(
        self,
        bucket: str,
        client: Optional[Client] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        signed_url_ttl: int = 600,
        timeout: float = 60.0,
    ):
        self._bucket = bucket
        self._client = client
        self._chunk_size = chunk_size
        self._signed_url_ttl = signed_url_ttl
        self._timeout = timeout

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def upload(
        self, key: str, stream: BinaryIO, metadata: Optional[Dict[str, str]] = None
    ) -> BlobLocation:
        file_options = {
            "content-type": (metadata or {}).get("content_type", "application/octet-stream"),
            "upsert": "false",
        }
        try:
            await _in_executor(
                lambda: self.client.storage.from_(self._bucket).upload(
                    path=key, file=stream, file_options=file_options
                )
            )
        except Exception as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e
        size = int((metadata or {}).get("size", 0) or 0)
        return BlobLocation(bucket=self._bucket, key=key, size=size)

    async def read_stream(self, key: str) -> AsyncIterator[bytes]:
        signed = await _in_executor(
            lambda: self.client.storage.from_(self._bucket).create_signed_url(
                key, self._signed_url_ttl
            )
        )
        url = (signed or {}).get("signedURL") or (signed or {}).get("signedUrl")
        if not url:
            raise StorageError(f"Could not create signed URL for {key}")

        async with httpx.AsyncClient(timeout=self._timeout) as http:
            async with http.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes(self._chunk_size):
                    yield chunk

    async def delete(self, key: str) -> None:
        await _in_executor(lambda: self.client.storage.from_(self._bucket).remove([key]))
