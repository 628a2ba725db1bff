"""Helpers for building ICY streams and test servers."""

from typing import Dict, Optional

from aiohttp import web


def icy_block(text: Optional[str]) -> bytes:
    """Length-prefixed, NUL-padded metadata block (b"\\x00" for no metadata)."""
    if not text:
        return b"\x00"
    data = text.encode("utf-8")
    length = (len(data) + 15) // 16
    return bytes([length]) + data.ljust(length * 16, b"\x00")


def icy_stream(audio: bytes, metaint: int, titles: Optional[Dict[int, str]] = None) -> bytes:
    """
    Interleave metadata blocks into audio every metaint bytes.

    titles maps block index -> StreamTitle sent after that block of audio.
    """
    titles = titles or {}
    out = bytearray()
    for index, offset in enumerate(range(0, len(audio), metaint)):
        block = audio[offset:offset + metaint]
        out.extend(block)
        if len(block) == metaint:
            title = titles.get(index)
            out.extend(icy_block(f"StreamTitle='{title}';" if title else None))
    return bytes(out)


def make_dropping_app(audio: bytes, sent: int = 4096, content_type: str = "audio/mpeg"):
    """Server that promises a long body, sends `sent` bytes, then drops the connection."""
    async def handle_stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={
            "Content-Type": content_type,
            "Content-Length": str(len(audio) * 100),
            "icy-br": "8",
        })
        await response.prepare(request)
        await response.write(audio[:sent])
        request.transport.close()
        return response

    app = web.Application()
    app.router.add_get("/stream", handle_stream)
    return app
