"""Download reconstruction: map a (possibly ranged) read onto the stored chunks.

Only the open-ended single range ``bytes=<start>-`` is honoured. A ranged
response covers at most one chunk's worth of bytes starting at ``start``;
clients keep issuing ranges to walk through the file (this is how media
players seek).
"""
import asyncio
import logging
import mimetypes
import re
from dataclasses import dataclass, replace
from typing import AsyncIterator, Optional

from telecloud.errors import BackendFailure, CorruptRecord, NotFound, RangeNotSatisfiable
from telecloud.schemas.file import FileRecord
from telecloud.services.blob_backend import BlobBackend, with_rate_limit_retry
from telecloud.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

_OPEN_RANGE = re.compile(r"^bytes=(\d+)-$")


def parse_range_start(header: Optional[str]) -> Optional[int]:
    """Return ``start`` for ``bytes=<start>-``; any other syntax counts as no range."""
    if not header:
        return None
    match = _OPEN_RANGE.match(header.strip())
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class RangePlan:
    start: int
    end: int  # inclusive
    start_part: int
    end_part: int  # exclusive
    first_offset: int
    last_offset: int

    @property
    def content_length(self) -> int:
        return self.end - self.start + 1


def plan_range(start: int, chunk_size: int, file_size: int) -> RangePlan:
    """Work out which chunks (and which bytes of them) serve a read from ``start``.

    >>> plan_range(5_000_000, 10_000_000, 25_000_000)
    RangePlan(start=5000000, end=14999999, start_part=0, end_part=2, first_offset=5000000, last_offset=4999999)
    """
    if start >= file_size:
        raise RangeNotSatisfiable(f"Range start {start} is beyond the end of the file", file_size)
    end = min(start + chunk_size - 1, file_size - 1)
    return RangePlan(
        start=start,
        end=end,
        start_part=start // chunk_size,
        end_part=end // chunk_size + 1,
        first_offset=start % chunk_size,
        last_offset=end % chunk_size,
    )


@dataclass(frozen=True)
class PartFetch:
    """One backend object to stream, with optional inclusive byte bounds."""
    index: int
    ref: str
    start: Optional[int] = None
    end: Optional[int] = None


@dataclass
class DownloadResponse:
    status_code: int
    headers: dict[str, str]
    media_type: str
    body: AsyncIterator[bytes]


def content_type_for(file_name: str) -> str:
    guess, _ = mimetypes.guess_type(file_name)
    return guess or "application/octet-stream"


class DownloadReconstructor:
    """Streams a stored file back, whole (200) or from a byte offset (206)."""

    def __init__(
        self, store: MetadataStore, backend: BlobBackend,
        *,
        resolve_concurrency: int = 8,
        timeout: float = 30,
    ):
        self._store = store
        self._backend = backend
        self._resolve_concurrency = max(1, resolve_concurrency)
        self._timeout = timeout

    async def download(self, file_id: str, range_header: Optional[str] = None) -> DownloadResponse:
        """Resolve everything needed up front, then hand back a lazy body.

        Errors raised here happen before any header is sent. Errors raised
        while iterating ``body`` can only abort the connection.
        """
        record = await self._store.get(file_id)
        if record is None:
            raise NotFound("File not found")
        if not record.done:
            raise NotFound("File upload is not complete")
        # The final index may arrive before earlier ones, completing a record
        # that is still missing chunks.
        if len(record.chunk_refs) != record.total_chunks:
            raise CorruptRecord(
                f"File {file_id} is marked complete with {len(record.chunk_refs)} "
                f"of {record.total_chunks} chunk(s)"
            )

        headers = {
            "Accept-Ranges": "bytes",
            "Content-Disposition": f'attachment; filename="{record.file_name}"',
        }
        start = parse_range_start(range_header)
        if start is None:
            status_code = 200
            parts = [PartFetch(index, ref) for index, ref in enumerate(record.chunk_refs)]
            headers["Content-Length"] = str(record.file_size)
        else:
            status_code = 206
            plan = plan_range(start, record.chunk_size, record.file_size)
            parts = self._select_parts(record, plan)
            headers["Content-Length"] = str(plan.content_length)
            headers["Content-Range"] = f"bytes {plan.start}-{plan.end}/{record.file_size}"

        logger.info("Start downloading %d chunk(s) of %s", len(parts), file_id)
        urls = await self._resolve_all(file_id, parts)
        return DownloadResponse(
            status_code=status_code,
            headers=headers,
            media_type=content_type_for(record.file_name),
            body=self._stream(file_id, parts, urls),
        )

    @staticmethod
    def _select_parts(record: FileRecord, plan: RangePlan) -> list[PartFetch]:
        selected = record.chunk_refs[plan.start_part:plan.end_part]
        if len(selected) != plan.end_part - plan.start_part:
            raise CorruptRecord(
                f"File {record.file_id} has {len(record.chunk_refs)} chunk(s), "
                f"range needs chunk {plan.end_part - 1}"
            )
        parts = [PartFetch(plan.start_part + i, ref) for i, ref in enumerate(selected)]
        parts[0] = replace(parts[0], start=plan.first_offset)
        parts[-1] = replace(parts[-1], end=plan.last_offset)
        return parts

    async def _resolve_all(self, file_id: str, parts: list[PartFetch]) -> list[str]:
        """Resolve references concurrently; results keep the order of ``parts``."""
        semaphore = asyncio.Semaphore(self._resolve_concurrency)

        async def resolve_one(part: PartFetch) -> str:
            async def attempt() -> Optional[str]:
                try:
                    return await asyncio.wait_for(self._backend.resolve(part.ref), self._timeout)
                except asyncio.TimeoutError as e:
                    raise BackendFailure(f"Resolving chunk {part.index} of {file_id} timed out") from e

            async with semaphore:
                url = await with_rate_limit_retry(attempt, label=f"resolve of chunk {part.index}")
            if url is None:
                raise BackendFailure(f"Chunk {part.index} of {file_id} is missing on the backend")
            return url

        tasks = [asyncio.create_task(resolve_one(part)) for part in parts]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _stream(self, file_id: str, parts: list[PartFetch], urls: list[str]) -> AsyncIterator[bytes]:
        """Yield chunk bytes strictly in index order."""
        sent = 0
        try:
            for part, url in zip(parts, urls):
                async for data in self._backend.stream(url, part.start, part.end):
                    sent += len(data)
                    yield data
        except asyncio.CancelledError:
            logger.info("Download of %s cancelled after %d bytes", file_id, sent)
            raise
        except Exception as e:
            logger.error("Error downloading file %s after %d bytes: %s", file_id, sent, e)
            raise
