"""
Streaming file downloads with resume support.

A partially downloaded file is resumed with a ``Range`` request: ``206`` appends
to it, ``200`` means the server ignored the range and the file is rewritten,
``416`` means it is already complete. Bodies are streamed to disk in fixed-size
chunks so memory use does not grow with file size.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import aiohttp
import structlog

from hybridcrawl.config.config import DEFAULT_USER_AGENT
from hybridcrawl.crawler.retry import RetryConfig, with_retry
from hybridcrawl.errors import CrawlError, DownloadError, FetchTimeoutError, NetworkError, ValidationError
from hybridcrawl.observability import increment
from hybridcrawl.protocols import DownloadOptions, DownloadResult
from hybridcrawl.utils import safe_filename_from_url, validate_url

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 32 * 1024
BODY_SNIPPET_LENGTH = 500

DOWNLOAD_RETRY = RetryConfig(max_attempts=3, initial_backoff=1.0, max_backoff=10.0, multiplier=2.0)


class Downloader:
    """Downloads single files over a shared ``aiohttp`` session."""

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        *,
        retry_config: Optional[RetryConfig] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        max_connections: int = 100,
        max_connections_per_host: int = 10,
    ) -> None:
        self.timeout = timeout
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.retry_config = retry_config or DOWNLOAD_RETRY
        self.max_connections = max_connections
        self.max_connections_per_host = max_connections_per_host
        self._session = http_session
        self._owns_session = http_session is None
        self._session_lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self._ensure_session()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is not None and not self._session.closed:
            return self._session
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=self.max_connections,
                    limit_per_host=self.max_connections_per_host,
                    keepalive_timeout=90,
                )
                self._session = aiohttp.ClientSession(connector=connector)
                self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> Downloader:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def download(
        self,
        url: str,
        options: Optional[DownloadOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DownloadResult:
        """
        Download ``url`` into ``options.output_dir``.

        Failures are reported on the returned result rather than raised.
        """
        options = options or DownloadOptions()
        result = DownloadResult(url=url)
        start = time.monotonic()

        if not validate_url(url):
            result.error = ValidationError(f"invalid URL: {url!r}", details={"url": url})
            return result

        async def attempt() -> None:
            await self._download_once(url, options, result)

        try:
            await with_retry(attempt, self.retry_config, cancel_event=cancel_event)
        except CrawlError as e:
            logger.debug("Download failed", url=url, error=str(e))
            result.error = e

        result.duration = time.monotonic() - start
        return result

    async def _download_once(self, url: str, options: DownloadOptions, result: DownloadResult) -> None:
        output_dir = Path(options.output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CrawlError(f"failed to create output directory {output_dir}") from e

        filename = safe_filename_from_url(options.filename or url)
        file_path = output_dir / filename
        result.file_path = str(file_path)

        start_byte = 0
        if options.resume and file_path.is_file():
            start_byte = file_path.stat().st_size

        headers: Dict[str, str] = {"User-Agent": self.user_agent, **options.headers}
        if start_byte > 0:
            headers["Range"] = f"bytes={start_byte}-"

        session = await self._ensure_session()
        try:
            async with session.get(
                url,
                headers=headers,
                cookies=options.cookies or None,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 416:
                    logger.debug("Range not satisfiable, file already complete", url=url, size=start_byte)
                    result.size = start_byte
                    return
                if response.status not in (200, 206):
                    snippet = await response.content.read(BODY_SNIPPET_LENGTH)
                    raise DownloadError(response.status, snippet.decode("utf-8", errors="replace"), url=url)

                append = response.status == 206
                written = await self._stream_to_file(response, file_path, append)
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"download timed out after {self.timeout}s", details={"url": url}) from e
        except aiohttp.ClientError as e:
            raise NetworkError("download request failed", details={"url": url}) from e

        increment("bytes_downloaded", written)
        result.size = written + start_byte if append else written
        logger.debug("Download completed", url=url, file=str(file_path), bytes=result.size, resumed=append)

    @staticmethod
    async def _stream_to_file(response: aiohttp.ClientResponse, file_path: Path, append: bool) -> int:
        written = 0
        try:
            async with aiofiles.open(file_path, "ab" if append else "wb") as f:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    await f.write(chunk)
                    written += len(chunk)
        except OSError as e:
            raise CrawlError(f"failed to write {file_path}", details={"bytes_written": written}) from e
        return written
