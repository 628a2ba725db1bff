"""
icyradio - command-line internet radio client.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from icyradio import __version__
from icyradio.config.settings import Settings
from icyradio.models import MetadataMode
from icyradio.services.audio_output import UnsupportedFormatError
from icyradio.services.display import TerminalDisplay
from icyradio.services.now_playing_service import NowPlayingService, NowPlayingTask
from icyradio.services.playback_service import PlaybackService
from icyradio.services.stream_service import StreamError, StreamService

logger = logging.getLogger("icyradio")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="icyradio",
        description="Play Icecast/SHOUTcast internet radio streams",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Settings can also be given as ICYRADIO_* environment variables;\n"
            "command-line options take precedence."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Enable DEBUG logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only log warnings and errors")

    subparsers = parser.add_subparsers(dest="command")

    # Play command
    play_parser = subparsers.add_parser("play", help="Play a stream, reconnecting on failure")
    play_parser.add_argument("url", nargs="?", help="Stream URL")
    play_parser.add_argument(
        "--metadata", "-m",
        choices=[mode.value for mode in MetadataMode],
        help="none: audio only; print: show in-stream titles; api: show track info from the station API",
    )
    play_parser.add_argument("--album-art", action="store_true", default=None,
                             help="Show album art inline (needs --metadata api and a kitty/iTerm2 terminal)")
    play_parser.add_argument("--api-url", help="Now-playing API URL")
    play_parser.add_argument("--prefetch-seconds", type=int, help="Seconds of audio to buffer before playback")
    play_parser.add_argument("--buffer-size", type=int, help="Buffer capacity in bytes")
    play_parser.add_argument("--reconnect-delay", type=float, help="Seconds to wait before reconnecting")
    play_parser.add_argument("--max-attempts", type=int, help="Give up after this many connection attempts")

    # Probe command
    probe_parser = subparsers.add_parser("probe", help="Show what a stream advertises and exit")
    probe_parser.add_argument("url", nargs="?", help="Stream URL")

    # Now-playing command
    np_parser = subparsers.add_parser("now-playing", help="Show the station API's current track once")
    np_parser.add_argument("--api-url", help="Now-playing API URL")
    np_parser.add_argument("--album-art", action="store_true", default=None, help="Show album art inline")

    return parser


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    if not verbose:
        # aiohttp and PIL are chatty at DEBUG
        logging.getLogger("aiohttp").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line overrides applied."""
    settings = Settings.from_env()
    overrides = {
        "stream_url": getattr(args, "url", None),
        "api_url": getattr(args, "api_url", None),
        "metadata_mode": getattr(args, "metadata", None),
        "album_art": getattr(args, "album_art", None),
        "prefetch_seconds": getattr(args, "prefetch_seconds", None),
        "buffer_size": getattr(args, "buffer_size", None),
        "reconnect_delay": getattr(args, "reconnect_delay", None),
        "max_attempts": getattr(args, "max_attempts", None),
    }
    if args.command == "play" and args.album_art and args.metadata is None:
        # --album-art on its own implies the API display
        overrides["metadata_mode"] = MetadataMode.API.value
    if args.command == "now-playing":
        # album_art is validated against the play-mode metadata setting
        overrides["metadata_mode"] = MetadataMode.API.value
    return settings.merged(**overrides)


async def run_play(settings: Settings) -> int:
    player = PlaybackService(settings, display=TerminalDisplay())
    try:
        await player.run_forever()
    except UnsupportedFormatError as e:
        logger.error(str(e))
        return 1
    return 0


async def run_probe(settings: Settings) -> int:
    stream = StreamService(settings)
    try:
        info = await stream.probe()
    except StreamError as e:
        logger.error(str(e))
        return 1
    finally:
        await stream.close()
    TerminalDisplay().print_stream_info(info)
    return 0


async def run_now_playing(settings: Settings) -> int:
    service = NowPlayingService(
        settings.api_url,
        album_art_base_url=settings.album_art_base_url,
        timeout=settings.api_timeout,
        user_agent=settings.user_agent,
    )
    display = TerminalDisplay()
    task = NowPlayingTask(service, display, album_art=settings.album_art)
    try:
        now_playing = await task.refresh()
    finally:
        await service.close()
        display.finish()
    if now_playing is None:
        logger.error("No now-playing information available")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args((argv if argv is not None else sys.argv[1:]) + ["play"])

    configure_logging(args.verbose, args.quiet)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    commands = {
        "play": run_play,
        "probe": run_probe,
        "now-playing": run_now_playing,
    }
    try:
        return asyncio.run(commands[args.command](settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
