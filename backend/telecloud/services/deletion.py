"""Delete-token checks and record removal."""
import logging
import secrets
from typing import Optional

from telecloud.errors import Forbidden, InvalidRequest, NotFound
from telecloud.schemas.file import DeleteResponse
from telecloud.services.keyed_lock import KeyedLock
from telecloud.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class DeletionAuthorizer:
    """Erases a FileRecord for callers holding its delete token.

    Only the metadata is removed; chunk objects stay on the backend.
    """

    def __init__(self, store: MetadataStore, locks: Optional[KeyedLock] = None):
        self._store = store
        self._locks = locks or KeyedLock()

    async def delete_file(self, file_id: str, token: Optional[str]) -> DeleteResponse:
        if not token:
            raise InvalidRequest("Missing delete token")

        async with self._locks.hold(file_id):
            record = await self._store.get(file_id)
            if record is None:
                raise NotFound("File not found")
            if record.delete_token is None:
                raise Forbidden("This file cannot be deleted")
            if not secrets.compare_digest(record.delete_token.encode(), token.encode()):
                raise Forbidden("Invalid delete token")

            await self._store.delete(file_id)

        logger.info("File %s deleted successfully", file_id)
        return DeleteResponse(file_id=file_id)
