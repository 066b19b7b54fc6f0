"""File operations outside the processing core: upload, listing, data, deletion."""

import asyncio
import logging
import os
import uuid
from typing import BinaryIO, Iterable, Optional

from fileflow.db.record_store import RecordStore
from fileflow.exceptions import NotFoundError, ValidationError
from fileflow.jobs.models import FilePage, FileRecord, FileStatus, LinePage, Pagination, utcnow
from fileflow.storage.blob_storage import BlobStorage

logger = logging.getLogger(__name__)


class FileService:
    def __init__(
        self,
        store: RecordStore,
        blob_storage: BlobStorage,
        allowed_extensions: Optional[Iterable[str]] = None,
        max_file_size: Optional[int] = None,
    ):
        self._store = store
        self._blob_storage = blob_storage
        self._allowed_extensions = (
            [ext.lower() for ext in allowed_extensions] if allowed_extensions is not None else None
        )
        self._max_file_size = max_file_size

    def validate_upload(self, original_name: str, file_size: Optional[int] = None) -> None:
        """Raise ``ValidationError`` for a disallowed extension or an oversized file."""
        ext = os.path.splitext(original_name)[1].lower()
        if self._allowed_extensions is not None and ext not in self._allowed_extensions:
            raise ValidationError(
                f"File type '{ext or 'none'}' not allowed. Allowed: {self._allowed_extensions}",
                details={"extension": ext},
            )
        if file_size is not None and self._max_file_size is not None and file_size > self._max_file_size:
            raise ValidationError(
                f"File too large (max {self._max_file_size} bytes)",
                error_code="FILE_TOO_LARGE",
                details={"size": file_size},
            )

    async def upload_file(
        self,
        stream: BinaryIO,
        original_name: str,
        file_size: int,
        mime_type: str,
    ) -> FileRecord:
        """Store the bytes under ``uploads/<file_id>/<name>`` and record the file."""
        self.validate_upload(original_name, file_size)
        file_id = str(uuid.uuid4())
        key = f"uploads/{file_id}/{original_name}"
        uploaded_at = utcnow()

        location = await self._blob_storage.upload(
            key,
            stream,
            metadata={
                "original_name": original_name,
                "uploaded_at": uploaded_at.isoformat(),
                "content_type": mime_type,
                "size": str(file_size),
            },
        )
        file = FileRecord(
            file_id=file_id,
            original_name=original_name,
            storage_bucket=location.bucket,
            storage_key=location.key,
            file_size=file_size,
            mime_type=mime_type,
            uploaded_at=uploaded_at,
        )
        await self._store.create_file(file)
        logger.info("File created: %s", file_id, extra={"file_id": file_id, "size": file_size})
        return file

    async def get_file(self, file_id: str) -> FileRecord:
        file = await self._store.get_file(file_id)
        if file is None:
            raise NotFoundError("File", file_id)
        return file

    async def list_files(
        self, status: Optional[FileStatus] = None, page: int = 1, limit: int = 20
    ) -> FilePage:
        page = max(1, page)
        files, total = await asyncio.gather(
            self._store.list_files(status=status, skip=(page - 1) * limit, limit=limit),
            self._store.count_files(status),
        )
        return FilePage(files=files, pagination=Pagination.build(page, limit, total))

    async def get_file_data(self, file_id: str, page: int = 1, limit: int = 100) -> LinePage:
        await self.get_file(file_id)
        page = max(1, page)
        lines, total = await asyncio.gather(
            self._store.list_lines(file_id, skip=(page - 1) * limit, limit=limit),
            self._store.count_lines(file_id),
        )
        return LinePage(data=lines, pagination=Pagination.build(page, limit, total))

    async def delete_file(self, file_id: str) -> None:
        file = await self.get_file(file_id)
        await self._blob_storage.delete(file.storage_key)
        await self._store.delete_lines(file_id)
        await self._store.delete_file(file_id)
        logger.info("File deleted: %s", file_id, extra={"file_id": file_id})
