"""Files API routes: chunked upload, (ranged) download, token-gated delete."""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile
from fastapi.responses import StreamingResponse

from telecloud.schemas.file import ChunkResult, DeleteRequest, DeleteResponse
from telecloud.services.deletion import DeletionAuthorizer
from telecloud.services.download import DownloadReconstructor
from telecloud.services.upload_session import UploadSessionManager

router = APIRouter(tags=["files"])


def get_upload_manager(request: Request) -> UploadSessionManager:
    return request.app.state.uploads


def get_download_reconstructor(request: Request) -> DownloadReconstructor:
    return request.app.state.downloads


def get_deletion_authorizer(request: Request) -> DeletionAuthorizer:
    return request.app.state.deletions


@router.post("/u", response_model=ChunkResult, response_model_exclude_none=True)
async def upload_chunk(
    chunk: Optional[UploadFile] = File(None),
    file_id: Optional[str] = Form(None, alias="fileId"),
    file_name: Optional[str] = Form(None, alias="fileName"),
    file_size: Optional[str] = Form(None, alias="fileSize"),
    chunk_index: Optional[str] = Form(None, alias="chunkIndex"),
    chunk_size: Optional[str] = Form(None, alias="chunkSize"),
    total_chunks: Optional[str] = Form(None, alias="totalChunks"),
    uploads: UploadSessionManager = Depends(get_upload_manager),
):
    """Upload one chunk. The response names the next chunk index, or carries the delete token."""
    data = None
    if chunk is not None:
        data = await chunk.read()
        await chunk.close()
    return await uploads.ingest_chunk(
        file_id, file_name, file_size, chunk_index, chunk_size, total_chunks, data,
    )


@router.get("/{file_id}")
async def download_file(
    file_id: str,
    range_header: Optional[str] = Header(None, alias="Range"),
    downloads: DownloadReconstructor = Depends(get_download_reconstructor),
):
    """Stream a completed file. ``Range: bytes=<start>-`` yields a 206 partial response."""
    result = await downloads.download(file_id, range_header)
    return StreamingResponse(
        result.body,
        status_code=result.status_code,
        headers=result.headers,
        media_type=result.media_type,
    )


@router.delete("/{file_id}", response_model=DeleteResponse)
async def delete_file(
    file_id: str,
    body: Optional[DeleteRequest] = None,
    deletions: DeletionAuthorizer = Depends(get_deletion_authorizer),
):
    """Delete a file's metadata with the token returned by its final chunk upload."""
    return await deletions.delete_file(file_id, body.token if body else None)
