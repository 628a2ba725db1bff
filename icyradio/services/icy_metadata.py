"""
ICY metadata reader for Shoutcast/Icecast compatible streams.

ICY metadata is an in-band signaling protocol that allows streaming servers
to send metadata (like "now playing" information) to clients alongside audio data.

Protocol:
1. Client requests metadata with header: Icy-MetaData: 1
2. Server responds with header: icy-metaint: N (bytes between metadata)
3. Every N bytes, server inserts a metadata frame:
   - 1 byte: length prefix (actual_length = byte_value * 16)
   - N bytes: metadata string padded with NUL bytes
   - If metadata is unchanged: single 0x00 byte

Metadata format: StreamTitle='Artist - Song';StreamUrl='http://...';
"""

import logging
import re
from typing import Callable, Optional

from icyradio.models import IcyMetadata

logger = logging.getLogger(__name__)

# A value ends at "';" followed by the next key, or at the end of the block.
# Titles like "Don't Stop" carry unescaped quotes.
_FIELD_RE = re.compile(r"(\w+)='(.*?)'(?:;(?=\s*\w+=')|;?\s*$)", re.DOTALL)


def parse_metadata(raw: bytes) -> IcyMetadata:
    """
    Parse a raw metadata block into its key/value fields.

    Args:
        raw: Metadata bytes without the length prefix (NUL padding allowed)

    Returns:
        Parsed metadata; fields is empty if nothing could be parsed
    """
    data = raw.rstrip(b"\x00")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    text = text.strip()

    fields = {}
    for key, value in _FIELD_RE.findall(text):
        fields[key] = value.replace("\\'", "'")

    if text and not fields:
        logger.debug(f"Unparseable ICY metadata: {text!r}")

    return IcyMetadata(
        stream_title=fields.get("StreamTitle") or None,
        stream_url=fields.get("StreamUrl") or None,
        fields=fields,
    )


class IcyMetadataReader:
    """
    Strips ICY metadata frames out of an audio stream.

    Usage:
        reader = IcyMetadataReader(metaint=16000, on_metadata=print)

        async for chunk in response.content.iter_any():
            audio = reader.feed(chunk)
    """

    def __init__(
        self,
        metaint: Optional[int],
        on_metadata: Optional[Callable[[IcyMetadata], None]] = None,
    ):
        """
        Initialize the ICY metadata reader.

        Args:
            metaint: Audio bytes between metadata frames, from the icy-metaint
                     header. None or 0 disables deframing.
            on_metadata: Called with each new, non-empty metadata block
        """
        self.metaint = metaint or 0
        self._on_metadata = on_metadata
        self._bytes_until_meta = self.metaint
        # Bytes of the metadata frame still to read; None while reading audio
        self._meta_remaining: Optional[int] = None
        self._meta_buffer = bytearray()
        self._last_raw: Optional[bytes] = None
        self.current: Optional[IcyMetadata] = None

    @property
    def enabled(self) -> bool:
        return self.metaint > 0

    def feed(self, data: bytes) -> bytes:
        """
        Process a chunk of the HTTP body.

        Args:
            data: Raw bytes as received, frames may be split anywhere

        Returns:
            Audio bytes with metadata frames removed
        """
        if not self.enabled:
            return data

        audio = bytearray()
        offset = 0
        length = len(data)

        while offset < length:
            if self._meta_remaining is None:
                if self._bytes_until_meta > 0:
                    take = min(self._bytes_until_meta, length - offset)
                    audio.extend(data[offset:offset + take])
                    offset += take
                    self._bytes_until_meta -= take
                    continue

                # Length byte
                self._meta_remaining = data[offset] * 16
                offset += 1
                if self._meta_remaining == 0:
                    self._end_frame()
                continue

            take = min(self._meta_remaining, length - offset)
            self._meta_buffer.extend(data[offset:offset + take])
            offset += take
            self._meta_remaining -= take
            if self._meta_remaining == 0:
                self._end_frame()

        return bytes(audio)

    def _end_frame(self) -> None:
        raw = bytes(self._meta_buffer)
        self._meta_buffer.clear()
        self._meta_remaining = None
        self._bytes_until_meta = self.metaint

        # Empty frame: metadata unchanged
        if not raw.strip(b"\x00"):
            return
        if raw == self._last_raw:
            return
        self._last_raw = raw

        metadata = parse_metadata(raw)
        self.current = metadata
        logger.debug(f"ICY metadata: {metadata.fields}")
        if self._on_metadata:
            self._on_metadata(metadata)
