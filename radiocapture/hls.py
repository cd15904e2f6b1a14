"""
HLS playlist parsing and segment pulling.

A live HLS playlist is a sliding window of short media segments. The
puller re-fetches the playlist on a fixed interval, downloads every
segment it has not seen yet and appends it to the owning session's
buffer until the session deadline passes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Optional, Protocol
from urllib.parse import urljoin

import aiohttp
import m3u8
from m3u8.parser import ParseError

from .errors import ProtocolError, SegmentError, SourceConnectionError
from .results import StepResult

logger = logging.getLogger(__name__)

HLS_SIGNATURE = b"#EXTM3U"

# Variant playlists are followed at most this many levels deep
MAX_VARIANT_DEPTH = 2


@dataclass(frozen=True)
class SegmentRef:
    """
    A media segment listed in a playlist.

    Attributes:
        key: Reference exactly as written in the playlist, used for dedup
        url: Absolute URL resolved against the playlist URL
    """
    key: str
    url: str


class SessionLike(Protocol):
    buffer: bytearray

    @property
    def expired(self) -> bool:
        ...

    async def sleep(self, seconds: float) -> None:
        ...

    async def until_deadline(self, aw: Awaitable) -> StepResult:
        ...


def is_hls_manifest(chunk: bytes, sniff_bytes: int = 512) -> bool:
    """Whether the leading bytes of a response carry the HLS signature."""
    return HLS_SIGNATURE in chunk[:sniff_bytes]


def parse_playlist(text: str, playlist_url: str) -> m3u8.M3U8:
    """
    Parse a playlist document.

    Raises:
        ProtocolError: If the document is not an HLS playlist
    """
    if "#EXTM3U" not in text.lstrip("\ufeff")[:512]:
        raise ProtocolError(f"Not an HLS playlist: {playlist_url}")
    try:
        return m3u8.loads(text, uri=playlist_url)
    except (ParseError, ValueError) as e:
        raise ProtocolError(f"Malformed playlist {playlist_url}: {e}") from e


def segment_refs(playlist: m3u8.M3U8, playlist_url: str) -> list[SegmentRef]:
    """Ordered segment references of a media playlist."""
    return [
        SegmentRef(key=segment.uri, url=urljoin(playlist_url, segment.uri))
        for segment in playlist.segments
        if segment.uri
    ]


def select_variant(playlist: m3u8.M3U8, playlist_url: str) -> Optional[str]:
    """
    Pick the media playlist to follow from a master playlist.

    Returns the absolute URL of the highest-bandwidth variant, or None
    when the playlist is not a master playlist.
    """
    if not playlist.is_variant or not playlist.playlists:
        return None

    def bandwidth(variant) -> int:
        info = variant.stream_info
        return (info.bandwidth or 0) if info else 0

    best = max(playlist.playlists, key=bandwidth)
    return urljoin(playlist_url, best.uri)


class HlsSegmentPuller:
    """
    Polls one playlist and accumulates its segments exactly once each.

    Attributes:
        playlist_url: Media playlist being polled (updated when a master
            playlist points to a variant)
        seen: Segment references already appended to the buffer
        last_polled_at: Monotonic time of the latest playlist fetch
        polls: Number of playlist fetches attempted
        segment_failures: Number of failed segment fetches
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        playlist_url: str,
        poll_interval: float = 4.0,
        playlist_timeout: float = 10.0,
        segment_timeout: float = 5.0,
        headers: Optional[dict] = None,
    ):
        self.http = http
        self.playlist_url = playlist_url
        self.poll_interval = poll_interval
        self.playlist_timeout = playlist_timeout
        self.segment_timeout = segment_timeout
        self.headers = headers or {}
        self.seen: set[str] = set()
        self.last_polled_at: Optional[float] = None
        self.polls = 0
        self.segment_failures = 0

    async def _get(self, url: str, timeout: float) -> bytes:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with self.http.get(url, timeout=client_timeout, headers=self.headers) as response:
            response.raise_for_status()
            return await response.read()

    async def fetch_playlist(self) -> StepResult:
        """
        Fetch and parse the playlist, following a master playlist to its variant.

        Returns:
            StepResult holding a list of SegmentRef on success
        """
        for _ in range(MAX_VARIANT_DEPTH + 1):
            self.polls += 1
            self.last_polled_at = time.monotonic()
            try:
                body = await self._get(self.playlist_url, self.playlist_timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                return StepResult.failure(
                    SourceConnectionError(f"Playlist fetch failed for {self.playlist_url}: {e!r}")
                )

            try:
                playlist = parse_playlist(body.decode("utf-8", errors="replace"), self.playlist_url)
            except ProtocolError as e:
                return StepResult.failure(e)

            variant = select_variant(playlist, self.playlist_url)
            if variant is None:
                return StepResult.success(segment_refs(playlist, self.playlist_url))

            logger.info(f"Master playlist {self.playlist_url} -> variant {variant}")
            self.playlist_url = variant

        return StepResult.failure(ProtocolError(f"Too many nested playlists at {self.playlist_url}"))

    async def fetch_segment(self, ref: SegmentRef) -> StepResult:
        try:
            data = await self._get(ref.url, self.segment_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return StepResult.failure(SegmentError(f"Segment {ref.key} failed: {e!r}"))
        return StepResult.success(data)

    async def _bounded(self, aw: Awaitable, session: SessionLike) -> Optional[StepResult]:
        """
        Run a fetch step within the session deadline.

        Returns:
            The step's own StepResult, or None when the deadline or stop()
            cut it off
        """
        outcome = await session.until_deadline(aw)
        if not outcome.ok:
            return StepResult.failure(outcome.error)
        return outcome.value

    async def pull_new_segments(self, refs: list[SegmentRef], session: SessionLike) -> int:
        """
        Append every unseen segment to the session buffer.

        Failed segments stay out of the dedup set so the next poll retries them.

        Returns:
            Number of bytes appended
        """
        appended = 0
        for ref in refs:
            if session.expired:
                break
            if ref.key in self.seen:
                continue

            result = await self._bounded(self.fetch_segment(ref), session)
            if result is None:
                break
            if not result.ok:
                self.segment_failures += 1
                logger.warning(str(result.error))
                continue

            session.buffer.extend(result.value)
            self.seen.add(ref.key)
            appended += len(result.value)
        return appended

    async def run(self, session: SessionLike) -> int:
        """
        Poll until the session deadline passes.

        Returns:
            Total number of bytes appended to the session buffer
        """
        total = 0
        while not session.expired:
            result = await self._bounded(self.fetch_playlist(), session)
            if result is None:
                break
            if result.ok:
                total += await self.pull_new_segments(result.value, session)
            else:
                logger.warning(f"Skipping playlist poll: {result.error}")

            if session.expired:
                break
            await session.sleep(self.poll_interval)

        logger.debug(
            f"HLS pull finished for {self.playlist_url}: {len(self.seen)} segments, "
            f"{self.polls} polls, {self.segment_failures} segment failures"
        )
        return total
