"""FastAPI application entry point."""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from telecloud.config import settings
from telecloud.errors import RangeNotSatisfiable, TeleCloudError
from telecloud.routes.files import router as files_router
from telecloud.schemas.common import HealthResponse, MessageResponse
from telecloud.services.blob_backend import BlobBackend, TelegramBlobBackend
from telecloud.services.deletion import DeletionAuthorizer
from telecloud.services.download import DownloadReconstructor
from telecloud.services.heartbeat import heartbeat_loop, uptime_seconds
from telecloud.services.keyed_lock import KeyedLock
from telecloud.services.metadata_store import MetadataStore, build_metadata_store
from telecloud.services.upload_session import UploadSessionManager

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("telecloud.access")

# Generic 5xx messages, by request method.
_FAILURE_MESSAGES = {
    "POST": "Failed to upload chunk",
    "DELETE": "Failed to delete file",
}


def format_duration(seconds: float) -> str:
    if seconds < 0.001:
        return f"{seconds * 1e6:.0f}µs"
    if seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    return f"{seconds:.1f}s"


def build_blob_backend() -> BlobBackend:
    if not settings.TELEGRAM_BOT_TOKEN or not settings.TELEGRAM_CHAT_ID:
        logger.error("Missing required environment variables.")
        logger.warning("Please create a .env file with TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID")
    return TelegramBlobBackend(
        settings.TELEGRAM_BOT_TOKEN,
        settings.TELEGRAM_CHAT_ID,
        base_url=settings.TELEGRAM_API_URL,
        timeout=settings.BACKEND_TIMEOUT,
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error("There was an unhandled error: %s", context.get("message"), exc_info=exc)


def create_app(
    backend: Optional[BlobBackend] = None,
    store: Optional[MetadataStore] = None,
    *,
    upload_throttle: Optional[float] = None,
    keepalive_interval: Optional[float] = None,
) -> FastAPI:
    """Build the application. Tests pass their own backend and store."""
    throttle = settings.UPLOAD_THROTTLE_SECONDS if upload_throttle is None else upload_throttle
    interval = settings.KEEPALIVE_INTERVAL_SECONDS if keepalive_interval is None else keepalive_interval

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the backend and metadata store, wire services, start the heartbeat."""
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

        blob = backend or build_blob_backend()
        meta = store or build_metadata_store(
            settings.METADATA_STORE_TYPE, metadata_path=settings.METADATA_PATH,
        )
        await meta.open()
        await blob.open()

        locks = KeyedLock()
        app.state.uploads = UploadSessionManager(
            meta, blob, locks, throttle=throttle, timeout=settings.BACKEND_TIMEOUT,
        )
        app.state.downloads = DownloadReconstructor(
            meta, blob,
            resolve_concurrency=settings.RESOLVE_CONCURRENCY,
            timeout=settings.BACKEND_TIMEOUT,
        )
        app.state.deletions = DeletionAuthorizer(meta, locks)

        heartbeat_task = asyncio.create_task(heartbeat_loop(interval)) if interval > 0 else None
        logger.info("Server started (metadata store: %s)", type(meta).__name__)

        yield

        if heartbeat_task:
            heartbeat_task.cancel()
            await asyncio.gather(heartbeat_task, return_exceptions=True)
        await blob.close()
        await meta.close()

    app = FastAPI(
        title="Tele Cloud File Server",
        version="1.0.0",
        description="Chunked file storage on top of a bounded-object blob backend.",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Content-Length", "Accept-Ranges", "Content-Disposition"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        client = request.client.host if request.client else "-"
        line = "%s %s | %s | %d | %s"
        args = [
            request.method, format_duration(time.perf_counter() - start),
            client, response.status_code, request.url.path,
        ]
        error = getattr(request.state, "error", None)
        if response.status_code >= 400 and error:
            line += " | %s"
            args.append(error)
        access_logger.info(line, *args)
        return response

    @app.exception_handler(TeleCloudError)
    async def telecloud_error_handler(request: Request, exc: TeleCloudError):
        request.state.error = exc.message
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            message = _FAILURE_MESSAGES.get(request.method, "Internal server error")
            return JSONResponse(status_code=exc.status_code, content={"message": message, "error": exc.message})

        headers = None
        if isinstance(exc, RangeNotSatisfiable):
            headers = {"Content-Range": f"bytes */{exc.file_size}"}
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, **exc.extra},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        request.state.error = "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("There was an uncaught error on %s %s", request.method, request.url.path)
        message = _FAILURE_MESSAGES.get(request.method, "Internal server error")
        return JSONResponse(status_code=500, content={"message": message, "error": str(exc)})

    @app.get("/", response_model=MessageResponse)
    async def root():
        return {"message": "File Server API"}

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(uptime=uptime_seconds(), timestamp=int(time.time() * 1000))

    # Registered last: GET /{file_id} would otherwise shadow the routes above.
    app.include_router(files_router)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("telecloud.main:app", host="0.0.0.0", port=settings.API_PORT)
