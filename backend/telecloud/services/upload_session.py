"""Chunked upload ingestion.

A client uploads a file as ``totalChunks`` sequential calls. The first call
creates the FileRecord, every call stores one chunk on the blob backend and
appends its reference, and the call carrying the last index completes the
record and mints its delete token.
"""
import asyncio
import logging
import secrets
from typing import Optional, Union

from telecloud.errors import BackendFailure, Conflict, InvalidRequest
from telecloud.schemas.file import ChunkResult, FileRecord
from telecloud.services.blob_backend import BlobBackend, with_rate_limit_retry
from telecloud.services.file_names import format_file_name
from telecloud.services.keyed_lock import KeyedLock
from telecloud.services.metadata_store import MetadataStore, validate_file_id

logger = logging.getLogger(__name__)

MIN_CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_SIZE = 50 * 1024 * 1024

IntLike = Union[int, str, None]


def generate_delete_token() -> str:
    return secrets.token_hex(24)


def _parse_int(name: str, value: IntLike) -> int:
    if isinstance(value, bool):
        raise InvalidRequest(f"{name} must be an integer", {name: value})
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 10)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer", {name: value}) from None


def progress_percent(chunk_index: int, total_chunks: int) -> float:
    if total_chunks == 1:
        return 100.0
    return chunk_index / (total_chunks - 1) * 100


class UploadSessionManager:
    """Owns the FileRecord state machine: created -> accumulating -> complete.

    All work for one file id runs under that id's lock, so the
    read-append-write of ``chunk_refs`` never interleaves with another
    upload (or a deletion) of the same file.
    """

    def __init__(
        self, store: MetadataStore, backend: BlobBackend,
        locks: Optional[KeyedLock] = None,
        *,
        throttle: float = 1.5,
        timeout: float = 30,
    ):
        self._store = store
        self._backend = backend
        self._locks = locks or KeyedLock()
        self._throttle = throttle
        self._timeout = timeout

    async def ingest_chunk(
        self,
        file_id: Optional[str],
        file_name: Optional[str],
        file_size: IntLike,
        chunk_index: IntLike,
        chunk_size: IntLike,
        total_chunks: IntLike,
        chunk: Optional[bytes],
    ) -> ChunkResult:
        """Validate, store one chunk on the backend and record it.

        Raises ``InvalidRequest`` before any side effect, ``Conflict`` when the
        file is already complete, and ``BackendFailure`` when the backend
        rejects the chunk (the record is left untouched, so the same index
        can be retried).
        """
        fields = (file_id, file_name, file_size, chunk_index, chunk_size, total_chunks)
        if not chunk or any(value is None or value == "" for value in fields):
            raise InvalidRequest("Missing required fields")

        file_size = _parse_int("fileSize", file_size)
        chunk_index = _parse_int("chunkIndex", chunk_index)
        chunk_size = _parse_int("chunkSize", chunk_size)
        total_chunks = _parse_int("totalChunks", total_chunks)

        if chunk_size < MIN_CHUNK_SIZE or chunk_size > MAX_CHUNK_SIZE:
            raise InvalidRequest("Chunk size must be between 1MB and 50MB", {"chunk_size": chunk_size})
        if file_size < 1 or total_chunks < 1:
            raise InvalidRequest("fileSize and totalChunks must be positive")
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise InvalidRequest("chunkIndex out of range", {"chunkIndex": chunk_index})
        if len(chunk) > chunk_size:
            raise InvalidRequest("Chunk is larger than the declared chunkSize", {"chunk_size": chunk_size})
        validate_file_id(file_id)

        async with self._locks.hold(file_id):
            record, created = await self._store.create_if_absent(FileRecord(
                file_id=file_id,
                file_name=format_file_name(file_name),
                file_size=file_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
            ))
            if created:
                logger.info("Started upload %s (%s, %d chunks)", file_id, record.file_name, record.total_chunks)

            if record.done:
                logger.warning("Attempted upload with existing fileId: %s that is already completed", file_id)
                raise Conflict("A file with this ID already exists and is fully uploaded", {"fileId": file_id})
            if chunk_index >= record.total_chunks:
                raise InvalidRequest("chunkIndex out of range", {"chunkIndex": chunk_index})
            if len(record.chunk_refs) >= record.total_chunks:
                raise Conflict("All chunks for this file have already been received", {"fileId": file_id})

            logger.info(
                "File ID: %s | Progress: %d/%d | %.2f%%",
                file_id, chunk_index + 1, record.total_chunks,
                progress_percent(chunk_index, record.total_chunks),
            )

            ref = await self._upload(chunk, format_file_name(file_name, chunk_index))

            done = chunk_index == record.total_chunks - 1
            record = record.model_copy(update={
                "chunk_refs": [*record.chunk_refs, ref],
                "done": done,
                "delete_token": generate_delete_token() if done else None,
            })
            await self._store.put(record)

        if done:
            logger.info("Upload %s complete (%d chunks)", file_id, len(record.chunk_refs))
            return ChunkResult(
                message="File uploaded successfully",
                file_id=file_id,
                done=True,
                file_name=record.file_name,
                total_chunks=record.total_chunks,
                delete_token=record.delete_token,
            )
        return ChunkResult(
            message="Chunk uploaded successfully",
            file_id=file_id,
            done=False,
            file_name=record.file_name,
            chunk_index=chunk_index + 1,
            total_chunks=record.total_chunks,
        )

    async def _upload(self, chunk: bytes, chunk_name: str) -> str:
        async def attempt() -> str:
            try:
                return await asyncio.wait_for(self._backend.upload(chunk, chunk_name), self._timeout)
            except asyncio.TimeoutError as e:
                raise BackendFailure(f"Upload of {chunk_name} timed out") from e

        try:
            return await with_rate_limit_retry(attempt, throttle=self._throttle, label=f"upload of {chunk_name}")
        except BackendFailure as e:
            logger.error("Error uploading chunk %s: %s", chunk_name, e)
            raise
