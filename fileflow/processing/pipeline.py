"""Processing pipeline: run one job's file through the parser and batcher."""

import asyncio
import logging
from contextlib import aclosing
from typing import List, Optional

from fileflow.db.record_store import RecordStore
from fileflow.exceptions import FileAlreadyProcessingError, NotFoundError
from fileflow.jobs.guard import DegradedModeGuard
from fileflow.jobs.models import FileStatus, JobRecord, LineRecord, utcnow
from fileflow.processing.batcher import BatchResult, StreamBatcher
from fileflow.processing.parsers import ParsedRecord, get_parser_for_file
from fileflow.storage.blob_storage import BlobStorage

logger = logging.getLogger(__name__)


class ProcessingPipeline:
    """Streams a stored file into parsed line records.

    Invoked by the scheduler once per execution attempt. Any exception it
    raises counts as a failed attempt; the file is marked ``failed`` first.
    """

    def __init__(
        self,
        store: RecordStore,
        blob_storage: BlobStorage,
        batcher: StreamBatcher,
        guard: Optional[DegradedModeGuard] = None,
    ):
        self._store = store
        self._blob_storage = blob_storage
        self._batcher = batcher
        self._guard = guard

    async def execute(self, job: JobRecord) -> BatchResult:
        file = await self._store.get_file(job.file_id)
        if file is None:
            raise NotFoundError("File", job.file_id)
        if file.status == FileStatus.PROCESSING:
            raise FileAlreadyProcessingError(job.file_id)

        file.status = FileStatus.PROCESSING
        await self._store.save_file(file)

        file_id = file.file_id

        async def save_batch(batch: List[ParsedRecord]) -> None:
            lines = [
                LineRecord(
                    file_id=file_id,
                    line_number=record.line_number,
                    content=record.content,
                    data=record.data,
                    timestamp=record.timestamp,
                )
                for record in batch
            ]
            try:
                inserted = await self._store.insert_lines(file_id, lines)
            except Exception as e:
                # Still a failed batch for the counts; the guard only takes note.
                if self._guard is not None:
                    self._guard.check(e)
                raise
            if inserted < len(lines):
                logger.warning(
                    "Some documents were duplicates in batch for file %s", file_id,
                    extra={"file_id": file_id, "duplicates": len(lines) - inserted},
                )

        try:
            parser = get_parser_for_file(file.original_name)
            async with aclosing(self._blob_storage.read_stream(file.storage_key)) as stream:
                result = await self._batcher.process(stream, parser, save_batch)
        except (Exception, asyncio.CancelledError) as e:
            await self._mark_failed(file_id, e)
            raise

        # A status update, not a full save: the file may have been deleted meanwhile.
        await self._store.update_file_status(file_id, FileStatus.PROCESSED, processed_at=utcnow())
        logger.info(
            "File processing completed: %s", file_id,
            extra={"file_id": file_id, "processed": result.processed, "failed": result.failed},
        )
        return result

    async def _mark_failed(self, file_id: str, error: BaseException) -> None:
        logger.error(
            "File processing failed: %s (%s)", file_id, str(error) or type(error).__name__,
            extra={"file_id": file_id},
        )
        try:
            await self._store.update_file_status(file_id, FileStatus.FAILED)
        except Exception as e:
            logger.error("Failed to update file status for %s: %s", file_id, e)
