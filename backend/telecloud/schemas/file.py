"""FileRecord and the request/response schemas of the files API."""
from typing import Optional

from pydantic import AliasChoices, Field, model_validator

from telecloud.schemas.base import CamelModel


class FileRecord(CamelModel):
    """Durable metadata for one uploaded (or uploading) file.

    ``chunk_refs`` holds the opaque backend reference of every ingested chunk
    in ingestion order. Documents written before the rename store that list
    under ``fileIds``; both spellings load.
    """
    model_config = {**CamelModel.model_config, "extra": "forbid"}

    file_id: str
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: int
    chunk_refs: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("chunkRefs", "fileIds", "chunk_refs"),
    )
    done: bool = False
    delete_token: Optional[str] = None

    @model_validator(mode="after")
    def check_lifecycle(self):
        if self.done != (self.delete_token is not None):
            raise ValueError("deleteToken must be set exactly when done is true")
        if len(self.chunk_refs) > self.total_chunks:
            raise ValueError("chunkRefs holds more entries than totalChunks")
        return self

    def to_document(self) -> dict:
        """Serialize for storage (camelCase keys)."""
        return self.model_dump(by_alias=True)


class ChunkResult(CamelModel):
    """Response of POST /u. ``chunk_index`` is the next index to send."""
    message: str
    file_id: str
    done: bool
    file_name: str
    chunk_index: Optional[int] = None
    total_chunks: int
    delete_token: Optional[str] = None


class DeleteRequest(CamelModel):
    token: Optional[str] = None


class DeleteResponse(CamelModel):
    message: str = "File deleted successfully"
    file_id: str
