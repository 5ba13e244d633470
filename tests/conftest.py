import asyncio
from typing import Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from telecloud.database import create_engine, create_session_factory
from telecloud.errors import BackendFailure, RateLimited
from telecloud.main import create_app
from telecloud.services.blob_backend import BlobBackend
from telecloud.services.deletion import DeletionAuthorizer
from telecloud.services.download import DownloadReconstructor
from telecloud.services.keyed_lock import KeyedLock
from telecloud.services.metadata_store import DatabaseMetadataStore, LocalMetadataStore
from telecloud.services.upload_session import MIN_CHUNK_SIZE, UploadSessionManager

MiB = 1024 * 1024


def make_payload(size: int) -> bytes:
    """Deterministic, non-repeating-per-chunk content so misplaced bytes show up."""
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]


def split_chunks(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


class FakeBlobBackend(BlobBackend):
    """In-memory blob backend recording every call."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.uploaded_names: list[str] = []
        self.upload_attempts = 0
        self.rate_limits: list[float] = []
        self.upload_failures = 0
        self.upload_delay = 0.0
        self.missing: set[str] = set()
        self.broken_streams: set[str] = set()
        self.resolved: list[str] = []
        self.streamed: list[tuple[str, Optional[int], Optional[int]]] = []

    async def upload(self, data: bytes, name: str) -> str:
        self.upload_attempts += 1
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)
        if self.rate_limits:
            raise RateLimited(self.rate_limits.pop(0))
        if self.upload_failures:
            self.upload_failures -= 1
            raise BackendFailure("Bad Request: simulated failure")
        ref = f"ref-{len(self.objects)}"
        self.objects[ref] = bytes(data)
        self.uploaded_names.append(name)
        return ref

    async def resolve(self, ref: str) -> Optional[str]:
        self.resolved.append(ref)
        if ref in self.missing or ref not in self.objects:
            return None
        return f"fake://{ref}"

    async def stream(self, url: str, start: Optional[int] = None, end: Optional[int] = None):
        ref = url.removeprefix("fake://")
        self.streamed.append((ref, start, end))
        data = self.objects[ref]
        low = start or 0
        high = len(data) if end is None else end + 1
        for offset in range(low, high, 64 * 1024):
            if ref in self.broken_streams:
                raise BackendFailure("connection reset")
            yield data[offset:min(offset + 64 * 1024, high)]


@pytest.fixture()
def fake_backend() -> FakeBlobBackend:
    return FakeBlobBackend()


@pytest_asyncio.fixture()
async def local_store(tmp_path):
    store = LocalMetadataStore(tmp_path / "metadata")
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture()
async def db_store(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
    store = DatabaseMetadataStore(create_session_factory(engine), engine=engine)
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["local", "database"])
async def store(request, tmp_path):
    """Each store implementation in turn."""
    if request.param == "local":
        impl = LocalMetadataStore(tmp_path / "metadata")
    else:
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
        impl = DatabaseMetadataStore(create_session_factory(engine), engine=engine)
    await impl.open()
    yield impl
    await impl.close()


@pytest.fixture()
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture()
def uploads(store, fake_backend, locks) -> UploadSessionManager:
    return UploadSessionManager(store, fake_backend, locks, throttle=0, timeout=5)


@pytest.fixture()
def downloads(store, fake_backend) -> DownloadReconstructor:
    return DownloadReconstructor(store, fake_backend, resolve_concurrency=4, timeout=5)


@pytest.fixture()
def deletions(store, locks) -> DeletionAuthorizer:
    return DeletionAuthorizer(store, locks)


async def upload_file(
    uploads: UploadSessionManager, file_id: str, file_name: str, data: bytes,
    chunk_size: int = MIN_CHUNK_SIZE,
):
    """Ingest ``data`` chunk by chunk and return the last ChunkResult."""
    chunks = split_chunks(data, chunk_size)
    result = None
    for index, chunk in enumerate(chunks):
        result = await uploads.ingest_chunk(
            file_id, file_name, len(data), index, chunk_size, len(chunks), chunk,
        )
    return result


@pytest.fixture()
def client(tmp_path, fake_backend):
    app = create_app(
        backend=fake_backend,
        store=LocalMetadataStore(tmp_path / "metadata"),
        upload_throttle=0,
        keepalive_interval=0,
    )
    with TestClient(app) as test_client:
        yield test_client
