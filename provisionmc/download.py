"""Definition of the shared fetch primitives and of the wave-based download task.

Every remote artifact (runtime archives, version descriptors, libraries, assets) goes
through `fetch_with_retry` or `fetch_file_with_retry`, which classify failures:
connection errors, timeouts and HTTP 429 are transient and retried with a doubling
backoff; any other HTTP status is permanent; a size or hash mismatch after a completed
stream is corruption, retried once and then fatal.
"""

from pathlib import Path
import urllib.parse
import hashlib
import asyncio

import aiofiles
import httpx

from .http import HttpResponse, HttpError, http_request, new_client, parse_retry_after
from .result import ErrorKind, FetchError

from typing import Optional, List, Tuple, AsyncIterator


# Upper bound of a server provided retry-after hint, in seconds.
MAX_RETRY_AFTER = 60.0


class DownloadEntry:
    """A download entry for the download task.
    """

    __slots__ = "url", "size", "sha1", "dst", "name", "executable"

    def __init__(self,
        url: str,
        dst: Path, *,
        size: Optional[int] = None,
        sha1: Optional[str] = None,
        name: Optional[str] = None,
        executable: bool = False
    ) -> None:
        self.url = url
        self.dst = dst
        self.size = size
        self.sha1 = sha1
        self.name = url if name is None else name
        self.executable = executable

    def __repr__(self) -> str:
        return f"<DownloadEntry {self.name}>"

    def __hash__(self) -> int:
        # Size and sha1 are part of the hash, they should not be modified once the
        # entry is added to a dictionary.
        return hash((self.url, self.dst, self.size, self.sha1))

    def __eq__(self, other):
        return isinstance(other, DownloadEntry) and \
            (self.url, self.dst, self.size, self.sha1) == \
            (other.url, other.dst, other.size, other.sha1)


class _RetryableError(Exception):
    """Internal error for transient failures, the delay is the server hint if any.
    """

    def __init__(self, status: int, delay: Optional[float], reason: Optional[Exception] = None) -> None:
        super().__init__(status, delay, reason)
        self.status = status
        self.delay = delay
        self.reason = reason


def _classify_status(url: str, status: int, headers) -> Exception:
    """Return the error to raise for a non-successful HTTP status.
    """
    if status == 429:
        delay = parse_retry_after(headers.get("Retry-After"))
        return _RetryableError(status, None if delay is None else min(delay, MAX_RETRY_AFTER))
    elif status in (404, 410):
        return FetchError(ErrorKind.NOT_FOUND, url, status)
    else:
        return FetchError(ErrorKind.HTTP_STATUS, url, status)


def _classify_transport(url: str, error: Exception) -> Exception:
    """Return the error to raise for an error happening before any response.
    """
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return _RetryableError(0, None, error)
    return FetchError(ErrorKind.HTTP_STATUS, url, 0, f"failed to fetch {url}: {error}")


def _backoff_delay(backoff: float, attempt: int) -> float:
    return backoff * (2 ** (attempt - 1))


async def fetch_with_retry(url: str, *,
    max_attempts: int = 3,
    backoff: float = 1.0,
    client: Optional[httpx.AsyncClient] = None,
    accept: Optional[str] = None,
    timeout: Optional[float] = None
) -> HttpResponse:
    """Fetch the given URL in memory, retrying on transient failures.

    :param max_attempts: Maximum number of attempts for transient failures.
    :param backoff: Delay before the first retry, doubled on each following retry.
    :raises FetchError: If the fetch definitely failed, the kind tells why.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await http_request("GET", url, client=client, accept=accept, timeout=timeout)
        except HttpError as error:
            if error.res.status == 0:
                classified = _classify_transport(url, error.reason or error)
            else:
                classified = _classify_status(url, error.res.status, error.res.headers)

        if isinstance(classified, FetchError):
            raise classified

        assert isinstance(classified, _RetryableError)
        if attempt >= max_attempts:
            raise FetchError(ErrorKind.TRANSIENT_NETWORK, url, classified.status,
                f"failed to fetch {url} after {attempt} attempts")

        await asyncio.sleep(classified.delay if classified.delay is not None else _backoff_delay(backoff, attempt))


async def fetch_file_with_retry(url: str, dst: Path, *,
    max_attempts: int = 3,
    backoff: float = 1.0,
    size: Optional[int] = None,
    sha1: Optional[str] = None,
    executable: bool = False,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None
) -> int:
    """Download the given URL to the destination file, retrying on transient failures.
    The file is written directly at its final path and removed on any failure, so that
    no partial file is left under a complete name.

    :param size: Expected size of the file, checked after the stream completed.
    :param sha1: Expected SHA-1 of the file, checked after the stream completed.
    :return: The number of bytes written.
    :raises FetchError: If the download definitely failed, the kind tells why.
    """

    if client is None:
        async with new_client(timeout) as own_client:
            return await fetch_file_with_retry(url, dst,
                max_attempts=max_attempts,
                backoff=backoff,
                size=size,
                sha1=sha1,
                executable=executable,
                client=own_client)

    attempt = 0
    corrupted = 0

    while True:

        attempt += 1
        try:
            return await _fetch_file(client, url, dst, size, sha1, executable)
        except _RetryableError as error:
            _unlink(dst)
            if attempt >= max_attempts:
                raise FetchError(ErrorKind.TRANSIENT_NETWORK, url, error.status,
                    f"failed to fetch {url} after {attempt} attempts")
            await asyncio.sleep(error.delay if error.delay is not None else _backoff_delay(backoff, attempt))
        except FetchError as error:
            _unlink(dst)
            # Corruption is retried exactly once, other kinds are fatal.
            if error.kind != ErrorKind.CORRUPTION or corrupted:
                raise
            corrupted += 1
            attempt -= 1
        except BaseException:
            _unlink(dst)
            raise


async def _fetch_file(client: httpx.AsyncClient, url: str, dst: Path,
    size: Optional[int],
    sha1: Optional[str],
    executable: bool
) -> int:

    sha1_hash = None if sha1 is None else hashlib.sha1()
    written = 0

    try:
        async with client.stream("GET", url) as res:

            if not res.is_success:
                raise _classify_status(url, res.status_code, res.headers)

            # The announced length only applies to the raw stream, it can't be used
            # to check the decoded content.
            content_length: Optional[int] = None
            if res.headers.get("Content-Encoding", "identity") == "identity":
                raw_length = res.headers.get("Content-Length")
                if raw_length is not None and raw_length.isdigit():
                    content_length = int(raw_length)

            dst.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(dst, "wb") as dst_fp:
                async for chunk in res.aiter_bytes():
                    written += len(chunk)
                    if sha1_hash is not None:
                        sha1_hash.update(chunk)
                    await dst_fp.write(chunk)

    except httpx.RequestError as error:
        raise _classify_transport(url, error)

    if content_length is not None and written != content_length:
        raise FetchError(ErrorKind.CORRUPTION, url, 200,
            f"download incomplete for {url}: {written}/{content_length} bytes")
    if size is not None and written != size:
        raise FetchError(ErrorKind.CORRUPTION, url, 200,
            f"invalid size for {url}: expected {size}, got {written}")
    if sha1_hash is not None and sha1_hash.hexdigest() != sha1:
        raise FetchError(ErrorKind.CORRUPTION, url, 200,
            f"invalid sha1 for {url}: expected {sha1}, got {sha1_hash.hexdigest()}")

    # If the entry should be executable, only those that can read would be able to
    # execute it.
    if executable:
        prev_mode = dst.stat().st_mode
        dst.chmod(prev_mode | ((prev_mode & 0o444) >> 2))

    return written


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass  # Not a problem if the file isn't present.


class DownloadResult:
    """Base class for download result yielded by `DownloadList.download` function.
    """
    __slots__ = "entry",
    def __init__(self, entry: DownloadEntry) -> None:
        self.entry = entry


class DownloadResultSuccess(DownloadResult):
    """Subclass of result when a file's download has been successful.
    """
    __slots__ = "size",
    def __init__(self, entry: DownloadEntry, size: int) -> None:
        super().__init__(entry)
        self.size = size


class DownloadResultError(DownloadResult):
    """Subclass of result when a file's download has failed, the error kind is given
    as code and the original error is kept.
    """

    __slots__ = "error",

    def __init__(self, entry: DownloadEntry, error: FetchError) -> None:
        super().__init__(entry)
        self.error = error

    @property
    def code(self) -> str:
        return self.error.kind


class DownloadList:
    """A download list, composed of entries that are downloaded in waves of concurrent
    fetches, a wave starts only once the previous one fully settled.
    """

    __slots__ = "entries", "count", "size", "skipped"

    def __init__(self):
        self.entries: List[DownloadEntry] = []
        self.count = 0
        self.size = 0
        self.skipped = 0

    def clear(self) -> None:
        """Clear the download entry, removing all entries and computed count/size.
        """
        self.entries.clear()
        self.count = 0
        self.size = 0
        self.skipped = 0

    def add(self, entry: DownloadEntry, *, verify: bool = False) -> bool:
        """Add a download entry to this list.

        :param entry: The entry to add.
        :param verify: Set to true in order to check if the file exists and has the same
        size has the given entry, in such case the entry is not added and counted as
        skipped.
        :return: True if the entry has been added.
        """

        url_parsed = urllib.parse.urlparse(entry.url)
        if url_parsed.scheme not in ("http", "https"):
            raise ValueError(f"unsupported scheme '{url_parsed.scheme}://' from url {entry.url}")

        if verify and entry.dst.is_file() and (entry.size is None or entry.size == entry.dst.stat().st_size):
            self.skipped += 1
            return False

        self.entries.append(entry)
        self.count += 1
        if entry.size is not None:
            self.size += entry.size
        return True

    async def download(self, client: httpx.AsyncClient, *,
        wave_size: int = 50,
        max_attempts: int = 3,
        backoff: float = 1.0
    ) -> AsyncIterator[Tuple[int, DownloadResult]]:
        """Execute the download.

        :param client: The HTTP client shared by all fetches.
        :param wave_size: Maximum number of concurrent fetches in a wave.
        :return: This function returns an asynchronous iterator that yields a tuple that
        contain the total number of results and the new result that came in. A failed
        entry is yielded as an error result and is not retried in this download.
        """

        if wave_size < 1:
            raise ValueError("wave size must be positive")

        async def download_entry(entry: DownloadEntry) -> DownloadResult:
            try:
                size = await fetch_file_with_retry(entry.url, entry.dst,
                    max_attempts=max_attempts,
                    backoff=backoff,
                    size=entry.size,
                    sha1=entry.sha1,
                    executable=entry.executable,
                    client=client)
                return DownloadResultSuccess(entry, size)
            except FetchError as error:
                return DownloadResultError(entry, error)

        result_count = 0

        for wave_start in range(0, len(self.entries), wave_size):

            wave = self.entries[wave_start:wave_start + wave_size]
            tasks = [asyncio.ensure_future(download_entry(entry)) for entry in wave]

            try:
                for future in asyncio.as_completed(tasks):
                    result = await future
                    result_count += 1
                    yield result_count, result
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
