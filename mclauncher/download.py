"""
Content fetcher for single files and bulk content-addressed object sets.

All requests go through one lazily created ``aiohttp.ClientSession`` that
pools connections for the lifetime of the fetcher. Bulk object sets are
fetched by a small fixed pool of workers pulling from a shared queue, each
object retried a few times before the whole set is failed.
"""
import asyncio
import hashlib
import json
import logging
import pathlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import aiofiles
import aiofiles.os
import aiohttp

from . import events
from .errors import InstallError, IntegrityError, NetworkError, SchemaError
from .events import EventSink, NullSink
from .models import AssetObject

log = logging.getLogger(__name__)

ASSET_BASE_URL = 'https://resources.download.minecraft.net'

# Kept low, some networking stacks choke on many parallel connections.
ASSET_CONCURRENCY = 4
ASSET_RETRIES = 3
RETRY_DELAY = 0.5
CHUNK_SIZE = 8192
SNIPPET_LENGTH = 200
USER_AGENT = 'mclauncher/1.0'

PathLike = Union[str, pathlib.Path]


# --- Helper Functions ---

async def file_size(path: PathLike) -> Optional[int]:
    """Size of a regular file, or None when there is no such file."""
    try:
        stats = await aiofiles.os.stat(path)
    except OSError:
        return None
    return stats.st_size


async def is_present(path: PathLike, expected_size: Optional[int] = None) -> bool:
    """True when the file exists, with ``expected_size`` bytes if that is known."""
    size = await file_size(path)
    if size is None:
        return False
    return not expected_size or size == expected_size


async def remove_file(path: PathLike) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


def _snippet(body: bytes) -> str:
    return body.decode('utf-8', errors='replace')[:SNIPPET_LENGTH]


def _is_success(status: int) -> bool:
    return 200 <= status < 300


@dataclass
class FetchStats:
    total: int = 0
    downloaded: int = 0
    skipped: int = 0
    bytes: int = 0


class _TransferProgress:
    """Cumulative byte counter of one bulk transfer, the source of progress events."""

    def __init__(self, total_bytes: int, total_files: int):
        self.total_bytes = total_bytes
        self.total_files = total_files
        self.downloaded_bytes = 0
        self.done_files = 0
        self.start = time.monotonic()

    def skip(self, size: int) -> None:
        self.total_bytes -= size
        self.done_files += 1

    def discard(self, size: int) -> None:
        self.downloaded_bytes -= size

    def advance(self, size: int) -> Dict[str, Any]:
        self.downloaded_bytes += size
        elapsed = max(time.monotonic() - self.start, 0.001)
        speed = self.downloaded_bytes / elapsed
        remaining = max(self.total_bytes - self.downloaded_bytes, 0)
        eta = remaining / speed if speed > 0 else 0.0
        return {
            "downloadedBytes": self.downloaded_bytes,
            "totalBytes": self.total_bytes,
            "downloadedFiles": self.done_files,
            "totalFiles": self.total_files,
            "speed": speed,
            "eta": eta,
        }


class ContentFetcher:
    """Downloads files over a shared HTTP session.

    ``session`` may be given to reuse an existing ``aiohttp.ClientSession``
    (or anything with the same ``get`` interface), otherwise one is created
    on first use and closed by :meth:`close`.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        concurrency: int = ASSET_CONCURRENCY,
        retries: int = ASSET_RETRIES,
        retry_delay: float = RETRY_DELAY,
        chunk_size: int = CHUNK_SIZE,
        asset_base_url: str = ASSET_BASE_URL,
        verify_hashes: bool = True,
        sink: Optional[EventSink] = None,
    ):
        self._session = session
        self.concurrency = max(1, concurrency)
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self.chunk_size = chunk_size
        self.asset_base_url = asset_base_url.rstrip('/')
        self.verify_hashes = verify_hashes
        self.sink = sink or NullSink()

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit_per_host=self.concurrency * 2, keepalive_timeout=30)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=60),
                headers={'User-Agent': USER_AGENT},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> 'ContentFetcher':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Documents ---

    async def fetch_bytes(self, url: str) -> bytes:
        session = await self.get_session()
        log.debug(f"GET {url}")
        try:
            async with session.get(url) as response:
                body = await response.read()
                if not _is_success(response.status):
                    snippet = _snippet(body)
                    raise NetworkError(f"HTTP {response.status} for {url}: {snippet}",
                                       url=url, status=response.status, body=snippet)
                return body
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request to {url} failed: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request to {url} timed out", url=url) from e

    async def fetch_text(self, url: str) -> str:
        return (await self.fetch_bytes(url)).decode('utf-8')

    async def fetch_json(self, url: str) -> Any:
        text = await self.fetch_text(url)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise SchemaError(f"{e} - response from {url} (truncated): {text[:SNIPPET_LENGTH]}") from e

    # --- Single files ---

    async def _stream_to(self, url: str, dest: pathlib.Path,
                         on_chunk: Optional[Callable[[int], None]] = None) -> Tuple[int, str]:
        """Streams ``url`` into ``dest``, returns the byte count and sha1 of what was written."""
        session = await self.get_session()
        sha1 = hashlib.sha1()
        written = 0
        try:
            async with session.get(url) as response:
                if not _is_success(response.status):
                    snippet = _snippet(await response.read())
                    raise NetworkError(f"HTTP {response.status} for {url}: {snippet}",
                                       url=url, status=response.status, body=snippet)
                async with aiofiles.open(dest, 'wb') as f:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        await f.write(chunk)
                        sha1.update(chunk)
                        written += len(chunk)
                        if on_chunk is not None:
                            on_chunk(len(chunk))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await remove_file(dest)
            raise NetworkError(f"Error downloading {url}: {e!r}", url=url) from e
        except BaseException:
            # Includes cancellation: a truncated file must never stay behind.
            await remove_file(dest)
            raise
        return written, sha1.hexdigest()

    async def fetch_to(
        self,
        url: str,
        dest: PathLike,
        expected_sha1: Optional[str] = None,
        expected_size: Optional[int] = None,
        on_chunk: Optional[Callable[[int], None]] = None,
    ) -> int:
        """
        Downloads ``url`` to ``dest``, creating parent directories.

        When an expected size or sha1 is given the result is verified, a
        mismatching file is deleted and :class:`IntegrityError` raised.
        Returns the number of bytes written.
        """
        dest = pathlib.Path(dest)
        await aiofiles.os.makedirs(dest.parent, exist_ok=True)
        written, digest = await self._stream_to(url, dest, on_chunk)

        if expected_size is not None:
            actual = await file_size(dest)
            if actual != expected_size:
                await remove_file(dest)
                raise IntegrityError(f"size mismatch for {dest.name} (expected {expected_size}, got {actual})")
        if expected_sha1 and digest.lower() != expected_sha1.lower():
            await remove_file(dest)
            raise IntegrityError(f"SHA1 mismatch for {dest.name}. Expected {expected_sha1}, got {digest}")
        return written

    # --- Content-addressed object sets ---

    def object_url(self, obj: AssetObject) -> str:
        return f"{self.asset_base_url}/{obj.shard}/{obj.hash}"

    async def _fetch_object(self, obj: AssetObject, dest_root: pathlib.Path,
                            progress: _TransferProgress, stats: FetchStats, sink: EventSink) -> None:
        target = dest_root / obj.shard / obj.hash
        if await file_size(target) == obj.size:
            progress.skip(obj.size)
            stats.skipped += 1
            return
        await remove_file(target)

        written = 0

        def on_chunk(size: int) -> None:
            nonlocal written
            written += size
            events.emit(sink, events.ASSET_PROGRESS, progress.advance(size))

        try:
            await self.fetch_to(self.object_url(obj), target,
                                expected_sha1=obj.hash if self.verify_hashes else None,
                                expected_size=obj.size, on_chunk=on_chunk)
        except InstallError:
            progress.discard(written)
            raise
        progress.done_files += 1
        stats.downloaded += 1
        stats.bytes += written

    async def _fetch_object_with_retry(self, obj: AssetObject, dest_root: pathlib.Path,
                                       progress: _TransferProgress, stats: FetchStats, sink: EventSink) -> None:
        for attempt in range(1, self.retries + 1):
            try:
                await self._fetch_object(obj, dest_root, progress, stats, sink)
                return
            except InstallError as e:
                if attempt >= self.retries:
                    raise
                log.warning(f"Retrying asset {obj.hash} (attempt {attempt}/{self.retries}): {e}")
                await asyncio.sleep(self.retry_delay)

    async def fetch_asset_set(self, objects: Iterable[AssetObject], dest_root: PathLike,
                              sink: Optional[EventSink] = None) -> FetchStats:
        """
        Makes sure every object exists under ``dest_root/<hash[:2]>/<hash>``.

        Objects already present with the right size are skipped. The call
        returns once every object is present, or raises the error of the
        first object that failed all of its attempts, in which case the
        remaining transfers are cancelled.
        """
        sink = sink or self.sink
        dest_root = pathlib.Path(dest_root)
        unique: Dict[str, AssetObject] = {}
        for obj in objects:
            unique.setdefault(obj.hash, obj)
        pending = list(unique.values())

        stats = FetchStats(total=len(pending))
        if not pending:
            return stats

        progress = _TransferProgress(sum(obj.size for obj in pending), len(pending))
        queue: asyncio.Queue = asyncio.Queue()
        for obj in pending:
            queue.put_nowait(obj)

        async def worker() -> None:
            while True:
                try:
                    obj = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._fetch_object_with_retry(obj, dest_root, progress, stats, sink)

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(pending)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        log.info(f"Objects: {stats.downloaded} downloaded, {stats.skipped} already present ({stats.bytes} bytes).")
        events.emit(sink, events.ASSET_DONE, {"downloadedFiles": stats.downloaded,
                                              "skippedFiles": stats.skipped,
                                              "totalFiles": stats.total,
                                              "bytes": stats.bytes})
        return stats
