"""Tests for the playback orchestration and reconnect loop."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from icyradio.config.settings import Settings
from icyradio.models import IcyMetadata, MetadataMode, PlaybackState
from icyradio.services.audio_output import UnsupportedFormatError
from icyradio.services.playback_service import PlaybackService
from icyradio.services.stream_service import StreamConnectionError, StreamError, StreamService
from tests.helpers import icy_stream, make_dropping_app

METAINT = 2048


class FakeOutput:
    """Stands in for AudioOutput: drains the buffer on a thread instead of a device."""

    instances = []

    def __init__(self, sample_rate=44100, channels=2):
        self.sample_rate = sample_rate
        self.channels = channels
        self.played = bytearray()
        self.stopped = False
        self._thread = None
        FakeOutput.instances.append(self)

    def open_decoder(self, source, file_format):
        self.file_format = file_format
        self.source = source
        # A real decoder reads the header first, which waits for prefetch
        first = source.read(16)
        self.played.extend(first)
        return iter(())

    def start(self, frames, on_end):
        def drain():
            while True:
                chunk = self.source.read(4096)
                if not chunk:
                    break
                self.played.extend(chunk)
            on_end()

        self._thread = threading.Thread(target=drain, daemon=True)
        self._thread.start()

    def stop(self):
        self.stopped = True


def make_radio_app(audio: bytes, titles=None, content_type="audio/mpeg", bitrate="8"):
    hits = {"count": 0}

    async def handle_stream(request: web.Request) -> web.StreamResponse:
        hits["count"] += 1
        headers = {"Content-Type": content_type, "icy-br": bitrate}
        wants_icy = request.headers.get("Icy-MetaData") == "1"
        if wants_icy:
            headers["icy-metaint"] = str(METAINT)
        response = web.StreamResponse(headers=headers)
        await response.prepare(request)
        await response.write(icy_stream(audio, METAINT, titles) if wants_icy else audio)
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/stream", handle_stream)
    return app, hits


class FailingDecoderOutput(FakeOutput):
    """Decoder that gives up once the source runs dry."""

    def open_decoder(self, source, file_format):
        while source.read(4096):
            pass
        raise RuntimeError("no decodable audio")


def make_endless_app(chunk: bytes):
    async def handle_stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "audio/mpeg", "icy-br": "8"})
        await response.prepare(request)
        try:
            while True:
                await response.write(chunk)
                await asyncio.sleep(0.01)
        except ConnectionError:
            pass
        return response

    app = web.Application()
    app.router.add_get("/stream", handle_stream)
    return app


@pytest.fixture(autouse=True)
def reset_fake_output():
    FakeOutput.instances = []
    yield


class TestMetadataRouting:
    """Tests for the in-band metadata callback."""

    def test_print_mode_prints(self):
        display = MagicMock()
        player = PlaybackService(Settings(metadata_mode=MetadataMode.PRINT), display=display)
        meta = IcyMetadata(stream_title="A - B")

        player._on_metadata(meta)

        display.print_metadata.assert_called_once_with(meta)
        assert player.get_status().metadata == meta

    def test_none_mode_is_silent(self):
        display = MagicMock()
        player = PlaybackService(Settings(), display=display)

        player._on_metadata(IcyMetadata(stream_title="A - B"))

        display.print_metadata.assert_not_called()

    @pytest.mark.asyncio
    async def test_api_mode_signals_background_task(self):
        display = MagicMock()
        player = PlaybackService(Settings(metadata_mode=MetadataMode.API), display=display)
        player._now_playing = MagicMock()
        player._now_playing.notify.return_value = True

        player._on_metadata(IcyMetadata(stream_title="A - B"))

        player._now_playing.notify.assert_called_once_with()
        display.print_metadata.assert_not_called()


class TestPlayOnce:
    """Tests for a single pipeline run against a local server."""

    @pytest.mark.asyncio
    async def test_plays_whole_stream(self, audio_bytes):
        app, _ = make_radio_app(audio_bytes, titles={0: "ZUN - Song"})
        display = MagicMock()
        async with TestServer(app) as server:
            settings = Settings(
                stream_url=str(server.make_url("/stream")),
                metadata_mode=MetadataMode.PRINT,
                prefetch_seconds=1,
            )
            player = PlaybackService(settings, display=display, output_factory=FakeOutput)
            await asyncio.wait_for(player.play_once(), timeout=10)

        output = FakeOutput.instances[0]
        assert bytes(output.played) == audio_bytes
        assert output.stopped
        assert output.file_format.name == "MP3"
        display.print_metadata.assert_called_once()
        assert display.print_metadata.call_args[0][0].stream_title == "ZUN - Song"
        assert player.get_status().stream.bitrate == 8

    @pytest.mark.asyncio
    async def test_unsupported_format(self, audio_bytes):
        app, _ = make_radio_app(audio_bytes, content_type="audio/aacp")
        async with TestServer(app) as server:
            settings = Settings(stream_url=str(server.make_url("/stream")))
            player = PlaybackService(settings, display=MagicMock(), output_factory=FakeOutput)
            with pytest.raises(UnsupportedFormatError):
                await player.play_once()

        assert FakeOutput.instances[0].stopped

    @pytest.mark.asyncio
    async def test_connection_error(self):
        settings = Settings(stream_url="http://127.0.0.1:9/stream", connect_timeout=1)
        player = PlaybackService(settings, display=MagicMock(), output_factory=FakeOutput)

        with pytest.raises(StreamConnectionError):
            await player.play_once()

    @pytest.mark.asyncio
    async def test_pump_error_wins_over_decoder_error(self, audio_bytes):
        async with TestServer(make_dropping_app(audio_bytes)) as server:
            settings = Settings(stream_url=str(server.make_url("/stream")), prefetch_seconds=5)
            player = PlaybackService(settings, display=MagicMock(), output_factory=FailingDecoderOutput)
            with pytest.raises(StreamError, match="Stream read failed"):
                await asyncio.wait_for(player.play_once(), timeout=10)

        assert FakeOutput.instances[0].stopped


class TestRunForever:
    """Tests for the reconnect loop."""

    @pytest.mark.asyncio
    async def test_reconnects_after_errors(self):
        settings = Settings(max_attempts=3, reconnect_delay=0)
        player = PlaybackService(settings, display=MagicMock())

        with patch.object(
            player,
            "play_once",
            new=AsyncMock(side_effect=[StreamConnectionError("down"), RuntimeError("boom"), None]),
        ) as play_once:
            await player.run_forever()

        assert play_once.await_count == 3
        status = player.get_status()
        assert status.attempts == 3
        assert status.reconnects == 2
        assert player.state == PlaybackState.STOPPED

    @pytest.mark.asyncio
    async def test_unsupported_format_is_fatal(self):
        player = PlaybackService(Settings(reconnect_delay=0), display=MagicMock())

        with patch.object(
            player, "play_once", new=AsyncMock(side_effect=UnsupportedFormatError("audio/aacp"))
        ) as play_once:
            with pytest.raises(UnsupportedFormatError):
                await player.run_forever()

        assert play_once.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_ends_loop(self):
        player = PlaybackService(Settings(reconnect_delay=0), display=MagicMock())

        async def play_then_stop():
            player.stop()

        with patch.object(player, "play_once", new=AsyncMock(side_effect=play_then_stop)) as play_once:
            await player.run_forever()

        assert play_once.await_count == 1

    @pytest.mark.asyncio
    async def test_restarts_after_server_eof(self, audio_bytes):
        app, hits = make_radio_app(audio_bytes)
        async with TestServer(app) as server:
            settings = Settings(
                stream_url=str(server.make_url("/stream")),
                prefetch_seconds=0,
                reconnect_delay=0,
                max_attempts=2,
            )
            player = PlaybackService(settings, display=MagicMock(), output_factory=FakeOutput)
            await asyncio.wait_for(player.run_forever(), timeout=10)

        assert hits["count"] == 2
        assert len(FakeOutput.instances) == 2
        assert all(bytes(o.played) == audio_bytes for o in FakeOutput.instances)

    @pytest.mark.asyncio
    async def test_api_mode_starts_and_stops_now_playing(self):
        settings = Settings(metadata_mode=MetadataMode.API, max_attempts=1, reconnect_delay=0)
        player = PlaybackService(settings, display=MagicMock())
        seen = {}

        async def capture():
            seen["task"] = player.now_playing_task

        with patch.object(player, "play_once", new=AsyncMock(side_effect=capture)), \
                patch(
                    "icyradio.services.now_playing_service.NowPlayingService.fetch",
                    new=AsyncMock(return_value=None),
                ):
            await player.run_forever()

        assert seen["task"] is not None
        assert player.now_playing_task is None

    @pytest.mark.asyncio
    async def test_stop_during_connect_ends_loop(self):
        async with TestServer(make_endless_app(b"\xff" * 1024)) as server:
            settings = Settings(stream_url=str(server.make_url("/stream")), reconnect_delay=0)
            player = PlaybackService(settings, display=MagicMock(), output_factory=FakeOutput)
            connect = StreamService.connect

            async def connect_then_stop(stream, url=None):
                info = await connect(stream, url)
                player.stop()
                return info

            with patch.object(StreamService, "connect", new=connect_then_stop):
                await asyncio.wait_for(player.run_forever(), timeout=5)

        status = player.get_status()
        assert status.attempts == 1
        assert status.reconnects == 0
        assert player.state == PlaybackState.STOPPED
        assert FakeOutput.instances[0].stopped
        assert not FakeOutput.instances[0].played

    def test_built_outside_event_loop(self):
        player = PlaybackService(Settings(max_attempts=1, reconnect_delay=0), display=MagicMock())

        with patch.object(player, "play_once", new=AsyncMock(return_value=None)):
            asyncio.run(player.run_forever())

        assert player.get_status().attempts == 1
