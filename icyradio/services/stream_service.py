"""
Stream service - manages the HTTP connection to an Icecast/SHOUTcast stream.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from icyradio.config.settings import Settings
from icyradio.models import StreamInfo
from icyradio.services.icy_metadata import IcyMetadataReader
from icyradio.services.stream_buffer import BufferClosed, StreamBuffer

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


class StreamError(Exception):
    """The audio stream failed while playing."""


class StreamConnectionError(StreamError):
    """The audio stream could not be opened."""


def compute_prefetch_bytes(bitrate_kbps: int, seconds: int) -> int:
    """Bytes needed to buffer `seconds` of audio at the given bitrate."""
    return bitrate_kbps // 8 * 1024 * seconds


class StreamService:
    """Opens the audio stream and pumps it into a StreamBuffer."""

    def __init__(
        self,
        settings: Settings,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._settings = settings
        self._session = session
        self._owns_session = session is None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._info: Optional[StreamInfo] = None

    @property
    def info(self) -> Optional[StreamInfo]:
        return self._info

    @property
    def is_connected(self) -> bool:
        return self._response is not None and not self._response.closed

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _request_headers(self) -> dict:
        headers = {"User-Agent": self._settings.user_agent}
        if self._settings.wants_icy_metadata:
            headers["Icy-MetaData"] = "1"
        return headers

    async def connect(self, url: Optional[str] = None) -> StreamInfo:
        """
        Open the stream and read its headers.

        Args:
            url: Stream URL (defaults to settings.stream_url)

        Returns:
            Stream info parsed from the response headers

        Raises:
            StreamConnectionError: On HTTP errors or a non-200 status
        """
        url = url or self._settings.stream_url
        await self.close_response()

        logger.info(f"Connecting to {url}")
        session = await self._get_http_session()
        try:
            # Streams never finish, so no total timeout
            response = await session.get(
                url,
                headers=self._request_headers(),
                timeout=aiohttp.ClientTimeout(
                    total=None,
                    sock_connect=self._settings.connect_timeout,
                    sock_read=self._settings.read_timeout,
                ),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamConnectionError(f"Failed to connect to {url}: {e}") from e

        if response.status != 200:
            response.close()
            raise StreamConnectionError(f"Failed to connect to {url}: HTTP {response.status}")

        self._response = response
        self._info = StreamInfo.from_headers(str(response.url), response.headers)
        logger.info(
            f"Connected: {self._info.name or 'unnamed stream'} "
            f"({self._info.content_type}, {self._info.bitrate} kbit/s, metaint={self._info.metaint})"
        )
        return self._info

    def prefetch_bytes(self, info: StreamInfo) -> int:
        """Prefetch budget for the stream's advertised bitrate."""
        bitrate = info.bitrate
        if not bitrate:
            logger.warning(
                f"Stream did not advertise a bitrate, assuming {self._settings.default_bitrate} kbit/s"
            )
            bitrate = self._settings.default_bitrate
        return compute_prefetch_bytes(bitrate, self._settings.prefetch_seconds)

    async def pump(self, buffer: StreamBuffer, reader: IcyMetadataReader) -> None:
        """
        Copy the stream into the buffer until the server closes it.

        Always marks the buffer EOF on exit so the decoder drains and stops.

        Raises:
            StreamError: If reading from the network fails
        """
        if self._response is None:
            raise StreamError("Stream is not connected")

        loop = asyncio.get_running_loop()
        content = self._response.content
        try:
            while True:
                try:
                    chunk = await content.read(CHUNK_SIZE)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    raise StreamError(f"Stream read failed: {e!r}") from e

                if not chunk:
                    logger.info("Server closed the stream")
                    return

                audio = reader.feed(chunk)
                if audio:
                    # put() blocks while the buffer is full
                    await loop.run_in_executor(None, buffer.put, audio)
        except BufferClosed:
            logger.debug("Buffer closed, stopping stream pump")
        finally:
            buffer.mark_eof()

    async def probe(self, url: Optional[str] = None) -> StreamInfo:
        """Connect, read the stream headers and disconnect."""
        try:
            return await self.connect(url)
        finally:
            await self.close_response()

    async def close_response(self) -> None:
        """Release the current stream response."""
        if self._response is not None:
            self._response.close()
            self._response = None
            logger.debug("Disconnected from audio stream")

    async def close(self) -> None:
        """Release the response and any session this service created."""
        await self.close_response()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
