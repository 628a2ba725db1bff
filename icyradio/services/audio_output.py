"""
Audio output - decodes the buffered stream with miniaudio and plays it.
"""

import logging
from typing import Callable, Generator, Optional

import miniaudio

logger = logging.getLogger(__name__)

# Content-Type -> decoder format
CONTENT_TYPE_FORMATS = {
    "audio/mpeg": miniaudio.FileFormat.MP3,
    "audio/mp3": miniaudio.FileFormat.MP3,
    "audio/mpeg3": miniaudio.FileFormat.MP3,
    "audio/flac": miniaudio.FileFormat.FLAC,
    "audio/x-flac": miniaudio.FileFormat.FLAC,
    "audio/ogg": miniaudio.FileFormat.VORBIS,
    "application/ogg": miniaudio.FileFormat.VORBIS,
    "audio/vorbis": miniaudio.FileFormat.VORBIS,
    "audio/wav": miniaudio.FileFormat.WAV,
    "audio/x-wav": miniaudio.FileFormat.WAV,
    "audio/wave": miniaudio.FileFormat.WAV,
}


class UnsupportedFormatError(Exception):
    """The stream's codec cannot be decoded."""


def file_format_for(content_type: Optional[str]) -> miniaudio.FileFormat:
    """Map a Content-Type header to a miniaudio decoder format."""
    if not content_type:
        # Most ICY servers without a content type are MP3
        return miniaudio.FileFormat.MP3

    content_type = content_type.split(";")[0].strip().lower()
    file_format = CONTENT_TYPE_FORMATS.get(content_type)
    if file_format is None:
        raise UnsupportedFormatError(f"Unsupported stream format: {content_type}")
    return file_format


def frames_until_end(
    frames: Generator, on_end: Callable[[], None]
) -> Generator:
    """
    Relay decoded frames to the playback device and call on_end once the
    decoder is exhausted.

    Must be primed with next() before being handed to the device.
    """
    required = yield b""
    try:
        while True:
            required = yield frames.send(required)
    except StopIteration:
        pass
    finally:
        on_end()


class AudioOutput:
    """Plays a StreamBuffer through the default (or given) output device."""

    def __init__(
        self,
        sample_rate: int = 44100,
        channels: int = 2,
        device_id=None,
    ):
        self._sample_rate = sample_rate
        self._channels = channels
        self._device_id = device_id
        self._device: Optional[miniaudio.PlaybackDevice] = None

    @property
    def is_playing(self) -> bool:
        return self._device is not None

    def open_decoder(
        self,
        source: miniaudio.StreamableSource,
        file_format: miniaudio.FileFormat,
    ) -> Generator:
        """
        Create the decoding frame generator.

        Blocks until the decoder has read the stream header, so call it from
        an executor thread.
        """
        logger.debug(f"Opening {file_format.name} decoder")
        return miniaudio.stream_any(
            source,
            source_format=file_format,
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=self._channels,
            sample_rate=self._sample_rate,
        )

    def start(self, frames: Generator, on_end: Callable[[], None]) -> None:
        """Start playing decoded frames; on_end is called from the audio thread."""
        if self._device is not None:
            raise RuntimeError("Audio output already started")

        relay = frames_until_end(frames, on_end)
        next(relay)

        device = miniaudio.PlaybackDevice(
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=self._channels,
            sample_rate=self._sample_rate,
            device_id=self._device_id,
        )
        device.start(relay)
        self._device = device
        logger.info(f"Audio output started ({self._sample_rate} Hz, {self._channels} ch)")

    def stop(self) -> None:
        """Stop and release the playback device."""
        if self._device is None:
            return
        device, self._device = self._device, None
        try:
            device.stop()
        finally:
            device.close()
        logger.debug("Audio output stopped")
