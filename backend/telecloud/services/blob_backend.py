"""Blob backend clients.

The backend stores bounded-size objects and hands back an opaque reference per
object. References are resolved to short-lived fetch URLs when the bytes are
needed. ``TelegramBlobBackend`` talks to the Telegram Bot API with aiohttp:
chunks are sent as documents to a chat and the document ``file_id`` is the
reference.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import aiohttp

from telecloud.errors import BackendFailure, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")

STREAM_READ_SIZE = 64 * 1024


class BlobBackend(ABC):
    """Interface the upload and download services call."""

    async def open(self) -> None:
        """Acquire long-lived resources (connection pools)."""

    async def close(self) -> None:
        """Release whatever ``open`` acquired."""

    async def __aenter__(self) -> "BlobBackend":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @abstractmethod
    async def upload(self, data: bytes, name: str) -> str:
        """Store ``data`` as one object and return its opaque reference.

        Raises ``RateLimited`` when the backend throttles the call and
        ``BackendFailure`` for anything else that goes wrong.
        """

    @abstractmethod
    async def resolve(self, ref: str) -> Optional[str]:
        """Return a transient fetch URL for ``ref``, or None if the backend does not know it."""

    @abstractmethod
    def stream(
        self, url: str, start: Optional[int] = None, end: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """Yield the bytes of a resolved object, optionally limited to ``start``..``end`` (inclusive)."""


async def with_rate_limit_retry(
    call: Callable[[], Awaitable[T]], *, throttle: float = 0.0, label: str = "backend call",
) -> T:
    """Run ``call`` until it stops raising ``RateLimited``.

    Sleeps ``throttle`` seconds before every attempt and the backend's
    ``retry_after`` after every rate-limit signal. There is no attempt cap:
    the backend enforces its own throttle window.
    """
    while True:
        if throttle > 0:
            await asyncio.sleep(throttle)
        try:
            return await call()
        except RateLimited as e:
            logger.warning("Rate limited during %s. Waiting %s seconds", label, e.retry_after)
            await asyncio.sleep(e.retry_after)


def _range_header(start: Optional[int], end: Optional[int]) -> Optional[str]:
    if start is None and end is None:
        return None
    return f"bytes={start or 0}-{'' if end is None else end}"


class TelegramBlobBackend(BlobBackend):
    """Blob backend on top of the Telegram Bot API.

    Use as an async context manager (or call ``open``/``close``) to share one
    connection pool across requests. Every call is bounded by ``timeout``
    seconds; streaming reads bound each socket read instead of the whole
    transfer.
    """

    def __init__(
        self, bot_token: str, chat_id: str,
        base_url: str = "https://api.telegram.org",
        timeout: float = 30,
    ):
        if not bot_token or not chat_id:
            raise ValueError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set.")
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._stream_timeout = aiohttp.ClientTimeout(total=None, connect=timeout, sock_read=timeout)

    async def open(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def _api_url(self) -> str:
        return f"{self.base_url}/bot{self.bot_token}"

    async def _client(self) -> aiohttp.ClientSession:
        if not self._session:
            await self.open()
        return self._session

    async def _call(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        """Perform one Bot API call and return the decoded JSON body.

        Raises ``RateLimited`` when the body carries ``parameters.retry_after``.
        """
        session = await self._client()
        try:
            async with session.request(method, url, timeout=self._timeout, **kwargs) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    text = await resp.text()
                    raise BackendFailure(f"HTTP {resp.status}: unexpected response body {text[:200]!r}")
        except asyncio.TimeoutError as e:
            raise BackendFailure("Backend request timed out") from e
        except aiohttp.ClientError as e:
            raise BackendFailure(str(e) or type(e).__name__) from e

        if not isinstance(body, dict):
            raise BackendFailure(f"HTTP {resp.status}: unexpected response body")
        retry_after = (body.get("parameters") or {}).get("retry_after")
        if retry_after is not None:
            raise RateLimited(float(retry_after))
        body["_status"] = resp.status
        return body

    async def upload(self, data: bytes, name: str) -> str:
        form = aiohttp.FormData()
        form.add_field("chat_id", self.chat_id)
        form.add_field("document", data, filename=name, content_type="application/octet-stream")

        body = await self._call("POST", f"{self._api_url}/sendDocument", data=form)
        if not body.get("ok"):
            raise BackendFailure(
                f"HTTP {body['_status']}: {body.get('description') or 'upload rejected'}"
            )
        try:
            return body["result"]["document"]["file_id"]
        except (KeyError, TypeError) as e:
            raise BackendFailure("Upload response did not include a document file_id") from e

    async def resolve(self, ref: str) -> Optional[str]:
        body = await self._call("GET", f"{self._api_url}/getFile", params={"file_id": ref})
        if not body.get("ok"):
            logger.warning("Backend could not resolve %s: %s", ref, body.get("description"))
            return None
        file_path = (body.get("result") or {}).get("file_path")
        if not file_path:
            return None
        return f"{self.base_url}/file/bot{self.bot_token}/{file_path}"

    async def stream(
        self, url: str, start: Optional[int] = None, end: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        headers = {}
        byte_range = _range_header(start, end)
        if byte_range:
            headers["Range"] = byte_range

        session = await self._client()
        try:
            async with session.get(url, headers=headers, timeout=self._stream_timeout) as resp:
                if resp.status >= 400:
                    raise BackendFailure(f"HTTP {resp.status} fetching chunk")
                # A 200 to a ranged request means the server sent the whole object.
                skip = (start or 0) if byte_range and resp.status == 200 else 0
                remaining = None
                if byte_range and resp.status == 200 and end is not None:
                    remaining = end - (start or 0) + 1
                async for data in resp.content.iter_chunked(STREAM_READ_SIZE):
                    if skip:
                        if len(data) <= skip:
                            skip -= len(data)
                            continue
                        data, skip = data[skip:], 0
                    if remaining is not None:
                        data = data[:remaining]
                        remaining -= len(data)
                    if data:
                        yield data
                    if remaining == 0:
                        break
        except asyncio.TimeoutError as e:
            raise BackendFailure("Backend download timed out") from e
        except aiohttp.ClientError as e:
            raise BackendFailure(str(e) or type(e).__name__) from e
