"""
Now-playing service - fetches track details from the station's JSON API.
"""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urljoin

import aiohttp
from pydantic import ValidationError

from icyradio.models import NowPlaying
from icyradio.services.display import TerminalDisplay

logger = logging.getLogger(__name__)

# Smaller downloads are error pages, not images
MIN_ALBUM_ART_BYTES = 100


class NowPlayingService:
    """Client for the station's now-playing API."""

    def __init__(
        self,
        api_url: str,
        album_art_base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        user_agent: str = "icyradio/1.0",
    ):
        self._api_url = api_url
        self._album_art_base_url = album_art_base_url
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._headers = {"User-Agent": user_agent}

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the HTTP session if we created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self) -> Optional[NowPlaying]:
        """
        Fetch the current track.

        Returns:
            Parsed now-playing info, or None if the API is unavailable
        """
        session = await self._get_session()
        try:
            async with session.get(
                self._api_url,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status != 200:
                    logger.warning(f"Now-playing API returned HTTP {response.status}")
                    return None
                # Some station APIs serve JSON as text/html
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning("Timeout fetching now-playing info")
            return None
        except aiohttp.ClientError as e:
            logger.warning(f"Failed to fetch now-playing info: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Now-playing API returned invalid JSON: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning("Now-playing API returned unexpected payload")
            return None

        try:
            return NowPlaying.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Unexpected now-playing payload: {e}")
            return None

    def album_art_url(self, now_playing: NowPlaying) -> Optional[str]:
        """Resolve the album art URL for a track."""
        art = now_playing.misc.album_art
        if not art:
            return None
        if art.startswith(("http://", "https://")):
            return art
        if not self._album_art_base_url:
            return None
        return urljoin(self._album_art_base_url, art)

    async def fetch_album_art(self, url: str) -> Optional[bytes]:
        """Download an album art image."""
        session = await self._get_session()
        try:
            async with session.get(
                url,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status != 200:
                    logger.warning(
                        "Failed to download album art from %s: HTTP %d",
                        url,
                        response.status,
                    )
                    return None

                content_type = response.headers.get("Content-Type", "")
                if not content_type.startswith("image/"):
                    logger.warning("Invalid content type for album art: %s", content_type)
                    return None

                content = await response.read()
                if len(content) < MIN_ALBUM_ART_BYTES:
                    logger.warning("Downloaded album art too small, skipping")
                    return None
                return content

        except asyncio.TimeoutError:
            logger.warning("Timeout downloading album art from %s", url)
            return None
        except aiohttp.ClientError as e:
            logger.warning("Failed to download album art from %s: %s", url, e)
            return None


class NowPlayingTask:
    """
    Background consumer of metadata-change signals.

    The player calls notify() whenever in-band metadata changes; run() then
    refetches the API and renders the track. Between signals it redraws the
    progress bar every refresh_interval seconds.
    """

    def __init__(
        self,
        service: NowPlayingService,
        display: TerminalDisplay,
        refresh_interval: float = 1.0,
        album_art: bool = False,
    ):
        self._service = service
        self._display = display
        self._refresh_interval = refresh_interval
        self._album_art = album_art
        # At most one pending signal; further ones coalesce into it
        self._signals: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._current: Optional[NowPlaying] = None
        self._fetched_at = 0.0
        self._last_art_url: Optional[str] = None
        self._album_art_data: Optional[bytes] = None

    @property
    def service(self) -> NowPlayingService:
        return self._service

    @property
    def current(self) -> Optional[NowPlaying]:
        return self._current

    def notify(self) -> bool:
        """Signal a metadata change. Returns False if a signal was already pending."""
        try:
            self._signals.put_nowait(None)
            return True
        except asyncio.QueueFull:
            return False

    def elapsed(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds into the current track, extrapolated from the last fetch."""
        if self._current is None or self._current.song_times.played is None:
            return None
        if now is None:
            now = time.monotonic()
        return self._current.song_times.played + (now - self._fetched_at)

    def track_finished(self, now: Optional[float] = None) -> bool:
        if self._current is None:
            return False
        duration = self._current.song_times.duration
        elapsed = self.elapsed(now)
        if not duration or elapsed is None:
            return False
        return elapsed >= duration

    async def refresh(self, force_render: bool = True) -> Optional[NowPlaying]:
        """
        Fetch the current track and render it.

        Args:
            force_render: Redraw the full block even if the track is unchanged
        """
        now_playing = await self._service.fetch()
        if now_playing is None:
            return None

        same_track = (
            self._current is not None
            and self._current.song_info == now_playing.song_info
        )
        self._current = now_playing
        self._fetched_at = time.monotonic()

        if same_track and not force_render:
            self._display.update_progress(self.elapsed(), now_playing.song_times.duration)
            return now_playing

        art = None
        if self._album_art and self._display.supports_images:
            art = await self._load_album_art(now_playing)

        self._display.render_now_playing(now_playing, self.elapsed(), album_art=art)
        return now_playing

    async def _load_album_art(self, now_playing: NowPlaying) -> Optional[bytes]:
        url = self._service.album_art_url(now_playing)
        if url is None:
            return None
        if url != self._last_art_url:
            self._last_art_url = url
            self._album_art_data = await self._service.fetch_album_art(url)
        return self._album_art_data

    async def run(self) -> None:
        """Render loop; runs until cancelled."""
        logger.debug("Now-playing task started")
        try:
            while True:
                try:
                    await asyncio.wait_for(self._signals.get(), timeout=self._refresh_interval)
                    signalled = True
                except asyncio.TimeoutError:
                    signalled = False

                if signalled:
                    await self.refresh()
                elif self.track_finished():
                    # Track over but no signal yet: poll until the API moves on
                    await self.refresh(force_render=False)
                elif self._current is not None:
                    self._display.update_progress(
                        self.elapsed(), self._current.song_times.duration
                    )
        finally:
            self._display.finish()
            logger.debug("Now-playing task stopped")
