"""
Playback service - orchestrates streaming, buffering, decoding and metadata.
Restarts the whole pipeline whenever the stream fails or ends.
"""

import asyncio
import logging
from typing import Callable, Optional

import aiohttp

from icyradio.config.settings import Settings
from icyradio.models import IcyMetadata, MetadataMode, PlaybackState, PlaybackStatus, StreamInfo
from icyradio.services.audio_output import AudioOutput, UnsupportedFormatError, file_format_for
from icyradio.services.display import TerminalDisplay
from icyradio.services.icy_metadata import IcyMetadataReader
from icyradio.services.now_playing_service import NowPlayingService, NowPlayingTask
from icyradio.services.stream_buffer import StreamBuffer
from icyradio.services.stream_service import StreamService

logger = logging.getLogger(__name__)


class PlaybackService:
    """
    Plays one stream through the full pipeline and keeps it playing.

    Each attempt opens a fresh connection, buffer and audio output; run_forever
    restarts the pipeline after every failure or end of stream until stop().
    """

    def __init__(
        self,
        settings: Settings,
        display: Optional[TerminalDisplay] = None,
        output_factory: Callable[..., AudioOutput] = AudioOutput,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._settings = settings
        self._display = display or TerminalDisplay()
        self._output_factory = output_factory
        self._session = session

        self._state = PlaybackState.STOPPED
        self._stream_info: Optional[StreamInfo] = None
        self._metadata: Optional[IcyMetadata] = None
        self._buffer: Optional[StreamBuffer] = None
        self._now_playing: Optional[NowPlayingTask] = None
        self._attempts = 0
        self._reconnects = 0
        self._stopping = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def now_playing_task(self) -> Optional[NowPlayingTask]:
        return self._now_playing

    def get_status(self) -> PlaybackStatus:
        """Get current playback status."""
        return PlaybackStatus(
            state=self._state,
            stream=self._stream_info,
            metadata=self._metadata,
            attempts=self._attempts,
            reconnects=self._reconnects,
            buffered_bytes=self._buffer.buffered if self._buffer else 0,
        )

    def _on_metadata(self, metadata: IcyMetadata) -> None:
        """Called by the ICY reader for every new in-band metadata block."""
        self._metadata = metadata
        logger.info(f"Now playing: {metadata.stream_title or metadata.fields}")

        mode = self._settings.metadata_mode
        if mode == MetadataMode.PRINT:
            self._display.print_metadata(metadata)
        elif mode == MetadataMode.API and self._now_playing:
            if not self._now_playing.notify():
                logger.debug("Now-playing refresh already pending")

    async def play_once(self) -> None:
        """
        Run the pipeline once: connect, buffer, decode and play until the
        stream ends.

        Raises:
            StreamError: If the connection fails or drops
            UnsupportedFormatError: If the codec cannot be decoded
        """
        loop = asyncio.get_running_loop()
        stream = StreamService(self._settings, session=self._session)
        output = self._output_factory(
            sample_rate=self._settings.sample_rate,
            channels=self._settings.channels,
        )
        ended = asyncio.Event()
        pump_task: Optional[asyncio.Task] = None
        buffer: Optional[StreamBuffer] = None

        def on_end():
            # Runs on the audio thread
            try:
                loop.call_soon_threadsafe(ended.set)
            except RuntimeError:
                pass

        try:
            self._state = PlaybackState.CONNECTING
            info = await stream.connect()
            self._stream_info = info
            file_format = file_format_for(info.content_type)

            prefetch = stream.prefetch_bytes(info)
            buffer = StreamBuffer(self._settings.buffer_size, prefetch)
            self._buffer = buffer
            if self._stopping:
                logger.info("Stopped while connecting")
                return

            reader = IcyMetadataReader(info.metaint, self._on_metadata)
            if self._settings.wants_icy_metadata and not reader.enabled:
                logger.warning("Stream does not provide ICY metadata")

            self._state = PlaybackState.BUFFERING
            logger.info(f"Buffering {buffer.prefetch_bytes} bytes")
            pump_task = asyncio.create_task(stream.pump(buffer, reader))

            try:
                frames = await loop.run_in_executor(
                    None, output.open_decoder, buffer, file_format
                )
            except Exception:
                # A dead pump starves the decoder; report the root cause
                await asyncio.wait({pump_task}, timeout=1.0)
                if pump_task.done() and not pump_task.cancelled() and pump_task.exception():
                    raise pump_task.exception()
                raise

            output.start(frames, on_end)
            self._state = PlaybackState.PLAYING
            logger.info("Playing")

            end_waiter = asyncio.create_task(ended.wait())
            try:
                done, _ = await asyncio.wait(
                    {pump_task, end_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if pump_task in done:
                    # Raises if the pump failed; on a clean EOF play out the buffer
                    pump_task.result()
                    await end_waiter
            finally:
                end_waiter.cancel()

            logger.info("Stream playback finished")

        finally:
            if buffer is not None:
                buffer.close()
            output.stop()
            if pump_task is not None and not pump_task.done():
                pump_task.cancel()
                try:
                    await pump_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Pump stopped with: {e!r}")
            await stream.close()
            self._buffer = None

    async def _start_now_playing(self) -> Optional[asyncio.Task]:
        if self._settings.metadata_mode != MetadataMode.API:
            return None
        service = NowPlayingService(
            self._settings.api_url,
            album_art_base_url=self._settings.album_art_base_url,
            session=self._session,
            timeout=self._settings.api_timeout,
            user_agent=self._settings.user_agent,
        )
        self._now_playing = NowPlayingTask(
            service,
            self._display,
            refresh_interval=self._settings.refresh_interval,
            album_art=self._settings.album_art,
        )
        # Show the current track straight away
        self._now_playing.notify()
        return asyncio.create_task(self._now_playing.run())

    async def _stop_now_playing(self, task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await self._now_playing.service.close()
        self._now_playing = None

    async def run_forever(self) -> None:
        """
        Play, and restart the pipeline from scratch whenever it stops.

        Returns after settings.max_attempts runs (if set) or stop().

        Raises:
            UnsupportedFormatError: Retrying cannot fix the codec
        """
        async with self._lock:
            self._stopping = False
            now_playing_task = await self._start_now_playing()
            try:
                while not self._stopping:
                    self._attempts += 1
                    try:
                        await self.play_once()
                        logger.warning("Stream ended")
                    except UnsupportedFormatError:
                        raise
                    except Exception as e:
                        logger.error(f"Playback error: {e}")

                    if self._stopping:
                        break
                    max_attempts = self._settings.max_attempts
                    if max_attempts is not None and self._attempts >= max_attempts:
                        logger.error(f"Giving up after {self._attempts} attempts")
                        break

                    self._reconnects += 1
                    self._state = PlaybackState.RECONNECTING
                    logger.info(f"Reconnecting in {self._settings.reconnect_delay}s")
                    await asyncio.sleep(self._settings.reconnect_delay)
            finally:
                self._state = PlaybackState.STOPPED
                await self._stop_now_playing(now_playing_task)

    def stop(self) -> None:
        """Ask run_forever to exit after the current attempt."""
        logger.info("Stopping playback")
        self._stopping = True
        if self._buffer is not None:
            self._buffer.close()
