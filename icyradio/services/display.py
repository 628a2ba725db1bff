"""
Terminal rendering for stream metadata, track info and album art.
"""

import base64
import io
import logging
import os
import sys
from typing import Mapping, Optional, TextIO

from PIL import Image, UnidentifiedImageError

from icyradio.models import IcyMetadata, NowPlaying, StreamInfo

logger = logging.getLogger(__name__)

PROGRESS_WIDTH = 30
KITTY_CHUNK_SIZE = 4096

# Rough pixel size of one terminal cell, used to size album art
CELL_PIXELS = 10


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as m:ss, or h:mm:ss for an hour or more."""
    if seconds is None:
        return "--:--"
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def progress_bar(elapsed: Optional[float], duration: Optional[float], width: int = PROGRESS_WIDTH) -> str:
    """Render a [####------] bar; empty when the duration is unknown."""
    if not duration or duration <= 0 or elapsed is None:
        return "[" + "-" * width + "]"
    ratio = min(max(elapsed / duration, 0.0), 1.0)
    filled = int(round(ratio * width))
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def image_protocol(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Detect which inline image protocol the terminal speaks, if any."""
    if environ is None:
        environ = os.environ

    term = environ.get("TERM", "")
    if "kitty" in term or environ.get("KITTY_WINDOW_ID"):
        return "kitty"
    if environ.get("TERM_PROGRAM") in ("iTerm.app", "WezTerm"):
        return "iterm"
    return None


def to_png(image_data: bytes, max_pixels: int) -> bytes:
    """Decode any image Pillow understands and re-encode it as a PNG thumbnail."""
    with Image.open(io.BytesIO(image_data)) as image:
        image = image.convert("RGBA")
        image.thumbnail((max_pixels, max_pixels))
        out = io.BytesIO()
        image.save(out, format="PNG")
        return out.getvalue()


def encode_iterm_image(png: bytes, width_cells: int) -> str:
    """iTerm2 inline image escape sequence (also understood by WezTerm)."""
    payload = base64.b64encode(png).decode("ascii")
    return (
        f"\x1b]1337;File=inline=1;size={len(png)};width={width_cells};"
        f"preserveAspectRatio=1:{payload}\x07"
    )


def encode_kitty_image(png: bytes, width_cells: int) -> str:
    """Kitty graphics protocol escape sequence, sent in chunks."""
    payload = base64.b64encode(png).decode("ascii")
    chunks = [payload[i:i + KITTY_CHUNK_SIZE] for i in range(0, len(payload), KITTY_CHUNK_SIZE)]
    parts = []
    for index, chunk in enumerate(chunks):
        more = 1 if index < len(chunks) - 1 else 0
        if index == 0:
            parts.append(f"\x1b_Gf=100,a=T,c={width_cells},m={more};{chunk}\x1b\\")
        else:
            parts.append(f"\x1b_Gm={more};{chunk}\x1b\\")
    return "".join(parts)


class TerminalDisplay:
    """Writes now-playing information to a terminal."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        environ: Optional[Mapping[str, str]] = None,
        art_width: int = 20,
    ):
        self._stream = stream or sys.stdout
        self._protocol = image_protocol(environ)
        self._art_width = art_width
        self._progress_pending = False

    @property
    def supports_images(self) -> bool:
        return self._protocol is not None

    def _write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()

    def _end_progress_line(self) -> None:
        if self._progress_pending:
            self._write("\n")
            self._progress_pending = False

    def print_metadata(self, metadata: IcyMetadata) -> None:
        """Print an in-band metadata update."""
        self._end_progress_line()
        if metadata.stream_title:
            text = metadata.stream_title
        else:
            text = "; ".join(f"{k}={v}" for k, v in metadata.fields.items()) or "(no title)"
        self._write(f"♪ {text}\n")

    def print_stream_info(self, info: StreamInfo) -> None:
        """Print the headers a stream advertises."""
        rows = [
            ("URL", info.url),
            ("Name", info.name),
            ("Genre", info.genre),
            ("Description", info.description),
            ("Homepage", info.homepage),
            ("Content-Type", info.content_type),
            ("Bitrate", f"{info.bitrate} kbit/s" if info.bitrate else None),
            ("Sample rate", f"{info.sample_rate} Hz" if info.sample_rate else None),
            ("Metadata interval", f"{info.metaint} bytes" if info.metaint else None),
            ("Audio info", info.audio_info),
        ]
        self._end_progress_line()
        for label, value in rows:
            if value:
                self._write(f"{label + ':':<19}{value}\n")

    def render_image(self, image_data: bytes) -> bool:
        """Draw an image inline. Returns False if the terminal can't or the image is bad."""
        if not self._protocol:
            return False
        try:
            png = to_png(image_data, self._art_width * CELL_PIXELS)
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Cannot decode album art: {e}")
            return False

        if self._protocol == "kitty":
            self._write(encode_kitty_image(png, self._art_width) + "\n")
        else:
            self._write(encode_iterm_image(png, self._art_width) + "\n")
        return True

    def render_now_playing(
        self,
        now_playing: NowPlaying,
        elapsed: Optional[float] = None,
        album_art: Optional[bytes] = None,
    ) -> None:
        """Render the full track block followed by the progress line."""
        self._end_progress_line()
        self._write("\n")

        if album_art:
            self.render_image(album_art)

        song = now_playing.song_info
        rating = now_playing.song_data.rating
        if rating and now_playing.song_data.times_rated:
            rating = f"{rating} ({now_playing.song_data.times_rated} votes)"

        rows = [
            ("Title", song.title),
            ("Artist", song.artist),
            ("Album", song.album),
            ("Circle", song.circle),
            ("Year", song.year),
            ("Rating", rating),
        ]
        for label, value in rows:
            if value:
                self._write(f"{label + ':':<8}{value}\n")

        if elapsed is None:
            elapsed = now_playing.song_times.played
        self.update_progress(elapsed, now_playing.song_times.duration)

    def update_progress(self, elapsed: Optional[float], duration: Optional[float]) -> None:
        """Redraw the progress line in place."""
        if duration:
            elapsed = min(elapsed or 0, duration)
        line = f"{progress_bar(elapsed, duration)} {format_duration(elapsed)} / {format_duration(duration)}"
        self._write(f"\r{line}")
        self._progress_pending = True

    def finish(self) -> None:
        """Terminate a pending progress line."""
        self._end_progress_line()
