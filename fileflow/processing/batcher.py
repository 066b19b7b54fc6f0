"""Batched line processing over an async byte stream.

Bytes are decoded incrementally and split on CR, LF or CRLF. Parsed records
are collected into batches that are handed to a sink when the batch is full
or when the idle timeout since the last flush has elapsed. Reading pauses
while the sink runs, so at most one batch of records is held at a time.
"""

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fileflow.exceptions import StreamReadError
from fileflow.processing.parsers import LineParser, ParsedRecord, ParseFailure

logger = logging.getLogger(__name__)

MAX_ERRORS = 100

_NEWLINE = re.compile(r"\r\n|\r|\n")

BatchSink = Callable[[List[ParsedRecord]], Awaitable[Any]]


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, entry: Dict[str, Any]) -> None:
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(entry)


class LineSplitter:
    """Turns byte chunks into complete text lines.

    A CR at the end of one chunk followed by LF at the start of the next is
    one line ending, not two.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._skip_lf = False

    def feed(self, chunk: bytes) -> List[str]:
        return self._split(self._decoder.decode(chunk))

    def close(self) -> List[str]:
        lines = self._split(self._decoder.decode(b"", final=True))
        if self._buffer:
            lines.append(self._buffer)
            self._buffer = ""
        return lines

    def _split(self, text: str) -> List[str]:
        if not text:
            return []
        if self._skip_lf:
            self._skip_lf = False
            if text[0] == "\n":
                text = text[1:]
                if not text:
                    return []
        self._skip_lf = text.endswith("\r")
        parts = _NEWLINE.split(self._buffer + text)
        self._buffer = parts.pop()
        return parts


async def _read_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class StreamBatcher:
    """Reads a byte stream line by line and flushes parsed records in batches."""

    def __init__(self, batch_size: int = 1000, batch_timeout_seconds: float = 5.0):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.batch_timeout_seconds = batch_timeout_seconds

    async def process(
        self,
        stream: AsyncIterator[bytes],
        parse_line: LineParser,
        flush: BatchSink,
    ) -> BatchResult:
        """Consume ``stream`` to the end and return the line counts.

        Parse and sink failures are counted and recorded (at most 100 error
        entries). A failure while reading the stream aborts with
        ``StreamReadError``; batches already flushed are kept.
        """
        run = _BatchRun(self, parse_line, flush)
        return await run.consume(stream)


class _BatchRun:
    """State of one ``StreamBatcher.process`` call."""

    def __init__(self, batcher: StreamBatcher, parse_line: LineParser, flush: BatchSink):
        self._batch_size = batcher.batch_size
        self._timeout = batcher.batch_timeout_seconds
        self._parse_line = parse_line
        self._sink = flush
        self._loop = asyncio.get_running_loop()
        self._batch: List[ParsedRecord] = []
        self._line_number = 0
        self._last_flush = self._loop.time()
        self.result = BatchResult()

    def _idle_deadline_passed(self) -> bool:
        return self._loop.time() - self._last_flush >= self._timeout

    async def consume(self, stream: AsyncIterator[bytes]) -> BatchResult:
        splitter = LineSplitter()
        iterator = stream.__aiter__()
        read_task: Optional[asyncio.Task] = None
        try:
            while True:
                read_task = asyncio.create_task(_read_chunk(iterator))
                await self._wait_for_chunk(read_task)
                try:
                    chunk = read_task.result()
                except Exception as e:
                    logger.error("Stream reading error: %s", e)
                    raise StreamReadError(f"Stream read failed: {e}") from e
                finally:
                    read_task = None
                if chunk is None:
                    break
                for line in splitter.feed(chunk):
                    await self._consume_line(line)

            for line in splitter.close():
                await self._consume_line(line)
            await self._flush()
        finally:
            if read_task is not None and not read_task.done():
                read_task.cancel()
                await asyncio.wait({read_task})

        logger.info(
            "Stream processing completed. Processed: %d, Failed: %d",
            self.result.processed,
            self.result.failed,
        )
        return self.result

    async def _wait_for_chunk(self, read_task: asyncio.Task) -> None:
        # Flush on idle while the stream is stalled.
        while True:
            timeout = None
            if self._batch:
                timeout = max(0.0, self._last_flush + self._timeout - self._loop.time())
            done, _ = await asyncio.wait({read_task}, timeout=timeout)
            if done:
                return
            await self._flush()

    async def _consume_line(self, line: str) -> None:
        self._line_number += 1
        if not line.strip():
            return

        try:
            parsed = self._parse_line(line, self._line_number)
        except Exception as e:
            parsed = ParseFailure.for_line(line, self._line_number, str(e))

        if isinstance(parsed, ParseFailure):
            self.result.failed += 1
            logger.debug("Failed to parse line %d: %s", parsed.line_number, parsed.reason)
            self.result.add_error({
                "line": parsed.line_number,
                "content": parsed.content,
                "error": parsed.reason,
            })
            return

        self._batch.append(parsed)
        if len(self._batch) >= self._batch_size or self._idle_deadline_passed():
            await self._flush()

    async def _flush(self) -> None:
        if not self._batch:
            return

        batch, self._batch = self._batch, []
        size = len(batch)
        try:
            await self._sink(batch)
            self.result.processed += size
            logger.debug("Processed batch of %d records. Total: %d", size, self.result.processed)
        except Exception as e:
            self.result.failed += size
            logger.error("Batch processing failed: %s", e, exc_info=True)
            self.result.add_error({
                "type": "batch_error",
                "message": str(e),
                "batch_size": size,
            })
        finally:
            del batch
            self._last_flush = self._loop.time()
