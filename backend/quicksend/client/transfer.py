"""Streams file bytes straight to presigned blob-store URLs.

Nothing here holds more than one chunk of the file in memory. Multipart
parts are read from a single shared file handle; a lock serialises each
seek+read so concurrent parts never interleave.
"""
import asyncio
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, Union

import aiofiles
import aiohttp

from quicksend.client.errors import FileUnreadableError, NetworkError, ServerError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[float], Union[None, Awaitable[None]]]


class ProgressTracker:
    """Accumulates bytes sent and reports the fraction (0.0-1.0) on every tick."""

    def __init__(self, total: Optional[int], callback: Optional[ProgressCallback] = None):
        self.total = total
        self.sent = 0
        self._callback = callback

    @property
    def fraction(self) -> float:
        if not self.total:
            return 0.0
        return min(1.0, self.sent / self.total)

    async def advance(self, num_bytes: int) -> None:
        self.sent += num_bytes
        await self.report(self.fraction)

    async def report(self, fraction: float) -> None:
        if self._callback is None:
            return
        result = self._callback(fraction)
        if inspect.isawaitable(result):
            await result


async def _read_range(
    handle,
    lock: asyncio.Lock,
    start: int,
    length: int,
    chunk_size: int,
    progress: ProgressTracker,
) -> AsyncIterator[bytes]:
    offset = start
    end = start + length
    while offset < end:
        async with lock:
            await handle.seek(offset)
            chunk = await handle.read(min(chunk_size, end - offset))
        if not chunk:
            raise FileUnreadableError(f"File ended at byte {offset}, expected {end}")
        offset += len(chunk)
        await progress.advance(len(chunk))
        yield chunk


async def _read_all(handle, chunk_size: int, progress: ProgressTracker) -> AsyncIterator[bytes]:
    while True:
        chunk = await handle.read(chunk_size)
        if not chunk:
            break
        await progress.advance(len(chunk))
        yield chunk


def _unreadable_cause(exc: BaseException) -> Optional[FileUnreadableError]:
    """aiohttp wraps errors raised by the body generator in a connection error."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, FileUnreadableError):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None


async def _put(session: aiohttp.ClientSession, url: str, data, headers: dict):
    try:
        async with session.put(url, data=data, headers=headers) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise ServerError(
                    f"Storage rejected upload (HTTP {resp.status}): {text[:200]}",
                    status=resp.status,
                )
            return resp.headers
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        unreadable = _unreadable_cause(e)
        if unreadable is not None:
            raise unreadable from None
        raise NetworkError(f"Transfer failed: {e}") from e
    except OSError as e:
        raise FileUnreadableError(f"Could not read file: {e}") from e


async def upload_single(
    session: aiohttp.ClientSession,
    url: str,
    path: str,
    size: Optional[int],
    content_type: str,
    progress: ProgressTracker,
    chunk_size: int = CHUNK_SIZE,
) -> None:
    """PUT the whole file to one presigned URL.

    The Content-Type must match the one the URL was signed with, and an
    explicit Content-Length keeps the request from being chunk-encoded.
    """
    headers = {"Content-Type": content_type}
    if size is not None:
        headers["Content-Length"] = str(size)
    try:
        async with aiofiles.open(path, "rb") as handle:
            await _put(session, url, _read_all(handle, chunk_size, progress), headers)
    except OSError as e:
        raise FileUnreadableError(f"Could not read file: {e}") from e


async def upload_parts(
    session: aiohttp.ClientSession,
    part_urls: Sequence[str],
    path: str,
    size: int,
    part_size: int,
    progress: ProgressTracker,
    *,
    concurrency: int = 1,
    chunk_size: int = CHUNK_SIZE,
) -> list[dict]:
    """Upload every part and return ``[{"partNumber", "etag"}]`` in part order.

    At most `concurrency` parts are in flight. The first failing part
    cancels the rest and its error propagates.
    """
    total = len(part_urls)
    if total == 0:
        return []

    etags: list[Optional[str]] = [None] * total
    semaphore = asyncio.Semaphore(max(1, concurrency))
    lock = asyncio.Lock()

    async def _upload_one(handle, index: int, url: str) -> None:
        start = index * part_size
        length = max(0, min(part_size, size - start))
        async with semaphore:
            headers = await _put(
                session,
                url,
                _read_range(handle, lock, start, length, chunk_size, progress),
                {"Content-Length": str(length)},
            )
        etag = headers.get("ETag")
        if not etag:
            raise ServerError(f"Storage returned no ETag for part {index + 1}")
        etags[index] = etag
        logger.debug(f"Part {index + 1}/{total} uploaded ({length} bytes)")

    try:
        async with aiofiles.open(path, "rb") as handle:
            if concurrency <= 1:
                for i, url in enumerate(part_urls):
                    await _upload_one(handle, i, url)
            else:
                tasks = [
                    asyncio.create_task(_upload_one(handle, i, url))
                    for i, url in enumerate(part_urls)
                ]
                try:
                    await asyncio.gather(*tasks)
                except BaseException:
                    for t in tasks:
                        if not t.done():
                            t.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    raise
    except OSError as e:
        raise FileUnreadableError(f"Could not read file: {e}") from e

    return [{"partNumber": i + 1, "etag": etag} for i, etag in enumerate(etags)]
