"""
Upstream client facade.

Hides the unstable, bot-detecting upstream behind two calls:

  fetch_metadata(url)      -> VideoMetadata      (yt-dlp, run in a worker thread)
  open_stream(rendition)   -> StreamHandle       (httpx streaming GET)

Every call carries browser-like headers: a user agent drawn from a fixed pool,
static navigation headers and, when configured, the YT_COOKIE session cookie.
A random delay precedes each metadata call to desynchronise request timing.
"""

import asyncio
import random
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple
import logging

import httpx
import yt_dlp

from . import config
from .errors import (
    UpstreamError,
    UpstreamTransportError,
    classify_status_code,
    classify_upstream_message,
)
from .models import Rendition, VideoMetadata

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


class StreamHandle:
    """
    A live, ordered byte sequence for one rendition.

    Iterating yields chunks in arrival order; exhaustion is end-of-stream and a
    raised UpstreamError is the error signal. A handle is consumed once and owns
    its own HTTP client, closed by aclose().

    With ``range_size`` set the body is fetched as consecutive
    ``Range: bytes=start-end`` windows of that size, the way yt-dlp downloads
    YouTube adaptive formats. The first window is the response passed in.
    """

    def __init__(
        self,
        itag: str,
        client: httpx.AsyncClient,
        response: httpx.Response,
        chunk_size: int = config.STREAM_CHUNK_SIZE,
        range_size: Optional[int] = None,
        request_headers: Optional[Mapping[str, str]] = None,
    ):
        self.itag = itag
        self._client = client
        self._response = response
        self._chunk_size = chunk_size
        self._range_size = range_size
        self._request_headers = dict(request_headers or {})
        self._consumed = False
        self.closed = False

    @property
    def content_length(self) -> Optional[int]:
        """Total size of the media in bytes, None when the CDN does not say."""
        total = _content_range_total(self._response)
        if total is not None:
            return total
        if self._response.status_code != 200:
            return None
        value = self._response.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError(f"stream for itag {self.itag} already consumed")
        self._consumed = True
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        offset = 0
        try:
            while True:
                window_start = offset
                async for chunk in self._response.aiter_bytes(self._chunk_size):
                    if chunk:
                        offset += len(chunk)
                        yield chunk

                next_start = self._next_window(window_start, offset)
                if next_start is None:
                    return
                await self._response.aclose()
                self._response = await self._open_window(next_start)
        except httpx.TimeoutException as e:
            raise UpstreamTransportError(f"stream {self.itag} timed out: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamTransportError(f"stream {self.itag} transport error: {e}") from e

    def _next_window(self, window_start: int, offset: int) -> Optional[int]:
        """Start of the next range to request, None once the media is complete."""
        if not self._range_size or self._response.status_code != 206:
            return None
        received = offset - window_start
        total = _content_range_total(self._response)
        if total is not None:
            if offset >= total:
                return None
            if received == 0:
                raise UpstreamTransportError(
                    f"stream {self.itag} stalled at byte {offset} of {total}"
                )
            return offset
        # unknown total: a short window is the last one
        return offset if received >= self._range_size else None

    async def _open_window(self, start: int) -> httpx.Response:
        end = start + self._range_size - 1
        headers = dict(self._request_headers)
        headers["Range"] = f"bytes={start}-{end}"
        request = self._client.build_request("GET", self._response.request.url, headers=headers)
        response = await self._client.send(request, stream=True)
        if response.status_code != 206:
            await response.aclose()
            raise classify_status_code(response.status_code, f"itag {self.itag} range {start}-{end}")
        logger.debug(f"[upstream] itag={self.itag} range {start}-{end}")
        return response

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class UpstreamClient:
    """Facade over the upstream video service."""

    def __init__(
        self,
        user_agents: Sequence[str] = config.USER_AGENTS,
        navigation_headers: Mapping[str, str] = config.NAVIGATION_HEADERS,
        cookie: Optional[str] = config.YT_COOKIE,
        pre_call_delay: Tuple[float, float] = (config.PRE_FETCH_DELAY_MIN, config.PRE_FETCH_DELAY_MAX),
        timeout_seconds: float = config.UPSTREAM_TIMEOUT_SECONDS,
        chunk_size: int = config.STREAM_CHUNK_SIZE,
        rng: Optional[random.Random] = None,
        sleep: SleepFunc = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not user_agents:
            raise ValueError("user_agents pool must not be empty")
        self.user_agents = tuple(user_agents)
        self.navigation_headers = dict(navigation_headers)
        self.cookie = cookie
        self.pre_call_delay = pre_call_delay
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._transport = transport

    # =========================================================================
    # HEADERS
    # =========================================================================

    def browser_headers(self) -> Dict[str, str]:
        """Fresh header set for one upstream call."""
        headers = {"User-Agent": self._rng.choice(self.user_agents)}
        headers.update(self.navigation_headers)
        if self.cookie:
            headers["Cookie"] = self.cookie
        return headers

    def _ytdlp_opts(self, headers: Dict[str, str]) -> Dict[str, Any]:
        return {
            "http_headers": headers,
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "socket_timeout": self.timeout_seconds,
            "retries": 0,
        }

    # =========================================================================
    # METADATA
    # =========================================================================

    def _extract_info(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        """Blocking yt-dlp extraction, run in a worker thread."""
        with yt_dlp.YoutubeDL(self._ytdlp_opts(headers)) as ydl:
            info = ydl.extract_info(url, download=False)
            return ydl.sanitize_info(info)

    async def fetch_metadata(self, url: str) -> VideoMetadata:
        low, high = self.pre_call_delay
        delay = self._rng.uniform(low, high)
        await self._sleep(delay)

        headers = self.browser_headers()
        loop = asyncio.get_running_loop()
        try:
            info = await loop.run_in_executor(None, self._extract_info, url, headers)
        except yt_dlp.utils.DownloadError as e:
            raise classify_upstream_message(str(e)) from e
        except UpstreamError:
            raise
        except Exception as e:
            raise classify_upstream_message(f"{type(e).__name__}: {e}") from e

        if not info:
            raise UpstreamError("yt-dlp returned no info")

        metadata = VideoMetadata.from_ytdlp(info)
        logger.info(
            f"✅ Metadata fetched: {metadata.title!r} ({len(metadata.renditions)} renditions)"
        )
        return metadata

    # =========================================================================
    # STREAMS
    # =========================================================================

    async def open_stream(self, rendition: Rendition) -> StreamHandle:
        """Open a byte stream for one rendition. Safe to call concurrently."""
        headers = self.browser_headers()
        headers.update(rendition.http_headers)
        # media bytes must arrive as-is
        headers["Accept-Encoding"] = "identity"
        first_request_headers = dict(headers)
        if rendition.http_chunk_size:
            first_request_headers["Range"] = f"bytes=0-{rendition.http_chunk_size - 1}"

        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
            transport=self._transport,
        )
        try:
            request = client.build_request("GET", rendition.url, headers=first_request_headers)
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            await client.aclose()
            raise UpstreamTransportError(f"opening stream {rendition.itag} timed out: {e}") from e
        except httpx.TransportError as e:
            await client.aclose()
            raise UpstreamTransportError(f"opening stream {rendition.itag} failed: {e}") from e

        if response.status_code not in (200, 206):
            await response.aclose()
            await client.aclose()
            raise classify_status_code(response.status_code, f"itag {rendition.itag}")

        logger.info(f"🔗 Stream opened: itag={rendition.itag} kind={rendition.kind.value}")
        return StreamHandle(
            rendition.itag,
            client,
            response,
            chunk_size=self.chunk_size,
            range_size=rendition.http_chunk_size,
            request_headers=headers,
        )


def _content_range_total(response: httpx.Response) -> Optional[int]:
    """Total length from ``Content-Range: bytes a-b/total``, None if absent or ``*``."""
    value = response.headers.get("content-range", "")
    _, _, total = value.rpartition("/")
    return int(total) if total.isdigit() else None
