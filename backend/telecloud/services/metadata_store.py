"""Metadata store abstraction. One JSON document per file on local disk, or a database table.

Every write replaces a whole record at once; readers never see a record with
some fields updated and others not.
"""
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from telecloud.database import create_session_factory, get_engine
from telecloud.errors import CorruptRecord, InvalidRequest
from telecloud.models import Base, FileRecordRow
from telecloud.schemas.file import FileRecord

logger = logging.getLogger(__name__)

FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


def is_valid_file_id(file_id: str) -> bool:
    return bool(file_id) and FILE_ID_PATTERN.match(file_id) is not None


def validate_file_id(file_id: str) -> str:
    """File ids become storage keys, so they are limited to a filesystem-safe alphabet."""
    if not is_valid_file_id(file_id):
        raise InvalidRequest("Invalid fileId", {"fileId": file_id})
    return file_id


def _parse_record(data, source: str) -> FileRecord:
    try:
        return FileRecord.model_validate(data)
    except ValidationError as e:
        raise CorruptRecord(f"Stored metadata for {source} is malformed: {e.error_count()} error(s)") from e


class MetadataStore(ABC):
    """Durable key-value persistence of FileRecords keyed by file id."""

    async def open(self) -> None:
        """Prepare the underlying storage (directories, tables)."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def create_if_absent(self, record: FileRecord) -> tuple[FileRecord, bool]:
        """Store ``record`` unless its file id exists.

        Returns the stored record and whether this call created it.
        """

    @abstractmethod
    async def get(self, file_id: str) -> Optional[FileRecord]:
        """Return the record, or None. Ids outside the storage-key alphabet can never exist."""

    @abstractmethod
    async def put(self, record: FileRecord) -> None:
        """Replace the stored record with ``record``."""

    @abstractmethod
    async def delete(self, file_id: str) -> bool:
        """Erase the record. Returns False if there was nothing to erase."""


class LocalMetadataStore(MetadataStore):
    """Stores ``<file_id>.json`` documents under ``base_path``.

    Writes go to a temporary file in the same directory first. Creation links
    it into place (fails if the target exists), updates rename over the
    target, so both are atomic on POSIX filesystems.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    async def open(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info("Metadata directory: %s", self.base_path.resolve())

    def _path(self, file_id: str) -> Path:
        return self.base_path / f"{validate_file_id(file_id)}.json"

    async def _write_temp(self, record: FileRecord) -> Path:
        tmp = self.base_path / f".{record.file_id}.{uuid.uuid4().hex}.tmp"
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(record.to_document()))
        return tmp

    async def create_if_absent(self, record: FileRecord) -> tuple[FileRecord, bool]:
        path = self._path(record.file_id)
        tmp = await self._write_temp(record)
        try:
            await aiofiles.os.link(tmp, path)
        except FileExistsError:
            existing = await self.get(record.file_id)
            if existing is not None:
                return existing, False
            logger.debug("Record %s vanished during create, claiming it", record.file_id)
            # Deleted between the link attempt and the read; claim the id.
            await aiofiles.os.link(tmp, path)
        finally:
            await aiofiles.os.remove(tmp)
        return record, True

    async def get(self, file_id: str) -> Optional[FileRecord]:
        if not is_valid_file_id(file_id):
            return None
        path = self._path(file_id)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptRecord(f"Stored metadata for {file_id} is not valid JSON") from e
        return _parse_record(data, file_id)

    async def put(self, record: FileRecord) -> None:
        path = self._path(record.file_id)
        tmp = await self._write_temp(record)
        try:
            await aiofiles.os.replace(tmp, path)
        except OSError:
            await aiofiles.os.remove(tmp)
            raise

    async def delete(self, file_id: str) -> bool:
        if not is_valid_file_id(file_id):
            return False
        try:
            await aiofiles.os.remove(self._path(file_id))
        except FileNotFoundError:
            return False
        return True


class DatabaseMetadataStore(MetadataStore):
    """Stores records as rows of ``file_records`` through async SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: Optional[AsyncEngine] = None):
        self._sessions = session_factory
        self._engine = engine

    async def open(self) -> None:
        if self._engine is not None:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def create_if_absent(self, record: FileRecord) -> tuple[FileRecord, bool]:
        validate_file_id(record.file_id)
        async with self._sessions() as db:
            existing = await db.get(FileRecordRow, record.file_id)
            if existing is not None:
                return _parse_record(existing, record.file_id), False
            db.add(FileRecordRow(**record.model_dump()))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug("Concurrent create of %s, using the stored row", record.file_id)
                existing = await db.get(FileRecordRow, record.file_id)
                return _parse_record(existing, record.file_id), False
        return record, True

    async def get(self, file_id: str) -> Optional[FileRecord]:
        if not is_valid_file_id(file_id):
            return None
        async with self._sessions() as db:
            row = await db.get(FileRecordRow, file_id)
            if row is None:
                return None
            return _parse_record(row, file_id)

    async def put(self, record: FileRecord) -> None:
        validate_file_id(record.file_id)
        async with self._sessions() as db:
            row = await db.get(FileRecordRow, record.file_id)
            if row is None:
                db.add(FileRecordRow(**record.model_dump()))
            else:
                for key, value in record.model_dump().items():
                    setattr(row, key, value)
            await db.commit()

    async def delete(self, file_id: str) -> bool:
        if not is_valid_file_id(file_id):
            return False
        async with self._sessions() as db:
            result = await db.execute(delete(FileRecordRow).where(FileRecordRow.file_id == file_id))
            await db.commit()
            return result.rowcount > 0


def build_metadata_store(store_type: str, *, metadata_path: str = "", engine: Optional[AsyncEngine] = None) -> MetadataStore:
    """Pick the store implementation named by ``METADATA_STORE_TYPE``."""
    if store_type == "local":
        return LocalMetadataStore(metadata_path)
    if store_type == "database":
        if engine is None:
            engine = get_engine()
        return DatabaseMetadataStore(create_session_factory(engine), engine=engine)
    raise ValueError(f"Unknown metadata store type: {store_type}")
