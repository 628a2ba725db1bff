"""Tests for terminal rendering."""

import base64
import io

from PIL import Image

from icyradio.models import IcyMetadata, NowPlaying, StreamInfo
from icyradio.services.display import (
    KITTY_CHUNK_SIZE,
    TerminalDisplay,
    encode_iterm_image,
    encode_kitty_image,
    format_duration,
    image_protocol,
    progress_bar,
    to_png,
)


def noise_png(size=200) -> bytes:
    out = io.BytesIO()
    Image.effect_noise((size, size), 64).convert("RGB").save(out, format="PNG")
    return out.getvalue()


def now_playing(**song) -> NowPlaying:
    payload = {
        "SONGINFO": {"TITLE": "Bad Apple!!", "ARTIST": "ZUN", "ALBUM": "Lotus Land Story", "YEAR": "1998"},
        "SONGTIMES": {"DURATION": 200, "PLAYED": 50},
        "SONGDATA": {"RATING": "4.8/5", "TIMESRATED": 99},
    }
    payload["SONGINFO"].update(song)
    return NowPlaying.model_validate(payload)


class TestFormatting:
    """Tests for duration and progress helpers."""

    def test_format_duration(self):
        assert format_duration(0) == "0:00"
        assert format_duration(65) == "1:05"
        assert format_duration(3725) == "1:02:05"
        assert format_duration(None) == "--:--"
        assert format_duration(-5) == "0:00"

    def test_progress_bar(self):
        assert progress_bar(50, 100, width=10) == "[#####-----]"
        assert progress_bar(0, 100, width=4) == "[----]"
        assert progress_bar(150, 100, width=4) == "[####]"

    def test_progress_bar_unknown_duration(self):
        assert progress_bar(10, None, width=5) == "[-----]"
        assert progress_bar(None, 100, width=5) == "[-----]"


class TestImageProtocol:
    """Tests for inline image support detection."""

    def test_kitty(self):
        assert image_protocol({"TERM": "xterm-kitty"}) == "kitty"
        assert image_protocol({"TERM": "xterm-256color", "KITTY_WINDOW_ID": "1"}) == "kitty"

    def test_iterm(self):
        assert image_protocol({"TERM_PROGRAM": "iTerm.app"}) == "iterm"
        assert image_protocol({"TERM_PROGRAM": "WezTerm"}) == "iterm"

    def test_unsupported(self):
        assert image_protocol({"TERM": "xterm-256color", "TERM_PROGRAM": "Apple_Terminal"}) is None

    def test_to_png_resizes(self):
        png = to_png(noise_png(300), 100)

        with Image.open(io.BytesIO(png)) as image:
            assert image.format == "PNG"
            assert max(image.size) <= 100

    def test_encode_iterm_image(self):
        png = b"\x89PNG fake"
        seq = encode_iterm_image(png, 20)

        assert seq.startswith("\x1b]1337;File=inline=1;")
        assert f"size={len(png)}" in seq
        assert "width=20" in seq
        assert seq.endswith(base64.b64encode(png).decode() + "\x07")

    def test_encode_kitty_image_chunks(self):
        png = noise_png(100)
        seq = encode_kitty_image(png, 20)
        parts = [p for p in seq.split("\x1b\\") if p]
        payload_len = len(base64.b64encode(png))

        assert len(parts) == -(-payload_len // KITTY_CHUNK_SIZE)
        assert parts[0].startswith("\x1b_Gf=100,a=T,c=20,")
        assert parts[-1].startswith("\x1b_Gm=0;") or len(parts) == 1
        payload = "".join(p.split(";", 1)[1] for p in parts)
        assert base64.b64decode(payload) == png


class TestTerminalDisplay:
    """Tests for TerminalDisplay output."""

    def test_print_metadata(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={})

        display.print_metadata(IcyMetadata(stream_title="ZUN - Bad Apple!!"))
        display.print_metadata(IcyMetadata(fields={"Foo": "bar"}))

        assert out.getvalue() == "♪ ZUN - Bad Apple!!\n♪ Foo=bar\n"

    def test_render_now_playing(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={})

        display.render_now_playing(now_playing(), elapsed=100)
        text = out.getvalue()

        assert "Title:  Bad Apple!!" in text
        assert "Artist: ZUN" in text
        assert "Album:  Lotus Land Story" in text
        assert "Year:   1998" in text
        assert "Rating: 4.8/5 (99 votes)" in text
        assert "Circle" not in text
        assert text.endswith("\r" + progress_bar(100, 200) + " 1:40 / 3:20")

    def test_render_uses_played_when_no_elapsed(self):
        out = io.StringIO()
        TerminalDisplay(stream=out, environ={}).render_now_playing(now_playing())

        assert out.getvalue().endswith("0:50 / 3:20")

    def test_progress_line_terminated_before_next_output(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={})

        display.update_progress(10, 200)
        display.print_metadata(IcyMetadata(stream_title="Next"))

        assert out.getvalue().endswith("0:10 / 3:20\n♪ Next\n")

    def test_progress_clamped_to_duration(self):
        out = io.StringIO()
        TerminalDisplay(stream=out, environ={}).update_progress(500, 200)

        assert out.getvalue().endswith("3:20 / 3:20")

    def test_render_album_art_iterm(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={"TERM_PROGRAM": "iTerm.app"})

        display.render_now_playing(now_playing(), album_art=noise_png())

        assert display.supports_images
        assert "\x1b]1337;File=inline=1;" in out.getvalue()

    def test_render_image_unsupported_terminal(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={})

        assert display.render_image(noise_png()) is False
        assert out.getvalue() == ""

    def test_render_image_bad_data(self):
        out = io.StringIO()
        display = TerminalDisplay(stream=out, environ={"TERM": "xterm-kitty"})

        assert display.render_image(b"definitely not an image") is False

    def test_print_stream_info(self):
        out = io.StringIO()
        info = StreamInfo(url="http://radio/stream", name="Test FM", bitrate=128, content_type="audio/mpeg")

        TerminalDisplay(stream=out, environ={}).print_stream_info(info)
        text = out.getvalue()

        assert "Name:              Test FM" in text
        assert "Bitrate:           128 kbit/s" in text
        assert "Genre" not in text
