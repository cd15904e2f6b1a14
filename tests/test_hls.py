import asyncio
import time

import aiohttp
import pytest

from radiocapture.errors import ProtocolError, SegmentError, SourceConnectionError
from radiocapture.hls import (
    HlsSegmentPuller,
    SegmentRef,
    is_hls_manifest,
    parse_playlist,
    segment_refs,
    select_variant,
)
from radiocapture.results import StepResult

from conftest import SEGMENTS, playlist_text


class DeadlineSession:
    """Minimal session: a buffer and a wall-clock deadline."""

    def __init__(self, seconds: float):
        self.buffer = bytearray()
        self.deadline = time.monotonic() + seconds

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(min(seconds, max(0.0, self.deadline - time.monotonic())))

    async def until_deadline(self, aw) -> StepResult:
        try:
            return StepResult.success(
                await asyncio.wait_for(aw, timeout=max(0.0, self.deadline - time.monotonic()))
            )
        except asyncio.TimeoutError:
            return StepResult.success()


@pytest.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


def test_manifest_signature_detection():
    assert is_hls_manifest(b"#EXTM3U\n#EXT-X-VERSION:3\n")
    assert is_hls_manifest(b"\xef\xbb\xbf#EXTM3U\n")
    assert not is_hls_manifest(b"\xff\xfb\x90\x00" * 64)
    assert not is_hls_manifest(b" " * 600 + b"#EXTM3U")


def test_segment_refs_resolve_relative_uris():
    base = "http://radio.example/live/index.m3u8"
    text = playlist_text(["seg1.ts", "../other/seg2.ts", "http://cdn.example/seg3.ts"])

    refs = segment_refs(parse_playlist(text, base), base)

    assert refs == [
        SegmentRef("seg1.ts", "http://radio.example/live/seg1.ts"),
        SegmentRef("../other/seg2.ts", "http://radio.example/other/seg2.ts"),
        SegmentRef("http://cdn.example/seg3.ts", "http://cdn.example/seg3.ts"),
    ]


def test_parse_rejects_non_playlist():
    with pytest.raises(ProtocolError):
        parse_playlist("<html>Not Found</html>", "http://radio.example/index.m3u8")


def test_select_variant_prefers_highest_bandwidth():
    base = "http://radio.example/live/master.m3u8"
    text = (
        "#EXTM3U\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=128000\n"
        "hi/index.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=64000\n"
        "lo/index.m3u8\n"
    )

    assert select_variant(parse_playlist(text, base), base) == "http://radio.example/live/hi/index.m3u8"
    assert select_variant(parse_playlist(playlist_text(["a.ts"]), base), base) is None


@pytest.mark.asyncio
async def test_fetch_playlist_lists_segments(http, station_server, station):
    puller = HlsSegmentPuller(http, str(station_server.make_url("/index.m3u8")))

    result = await puller.fetch_playlist()

    assert result.ok
    assert [ref.key for ref in result.value] == ["seg1.ts", "seg2.ts", "seg3.ts"]
    assert station.playlist_requests == 1
    assert puller.last_polled_at is not None


@pytest.mark.asyncio
async def test_fetch_playlist_follows_master(http, station_server, station):
    puller = HlsSegmentPuller(http, str(station_server.make_url("/master.m3u8")))

    result = await puller.fetch_playlist()

    assert result.ok
    assert puller.playlist_url == str(station_server.make_url("/index.m3u8"))
    assert station.playlist_requests == 1


@pytest.mark.asyncio
async def test_fetch_playlist_failure_is_a_result(http, station_server):
    puller = HlsSegmentPuller(http, str(station_server.make_url("/missing")))

    result = await puller.fetch_playlist()

    assert not result.ok
    assert isinstance(result.error, SourceConnectionError)


@pytest.mark.asyncio
async def test_fetch_playlist_rejects_non_playlist_body(http, station_server):
    # The audio stream is reachable but is not a playlist
    puller = HlsSegmentPuller(http, str(station_server.make_url("/short")))

    result = await puller.fetch_playlist()

    assert isinstance(result.error, ProtocolError)


@pytest.mark.asyncio
async def test_fetch_segment_failure_is_a_result(http, station_server):
    puller = HlsSegmentPuller(http, str(station_server.make_url("/index.m3u8")))
    ref = SegmentRef("nope.ts", str(station_server.make_url("/nope.ts")))

    result = await puller.fetch_segment(ref)

    assert isinstance(result.error, SegmentError)


@pytest.mark.asyncio
async def test_each_segment_is_appended_once(http, station_server, station):
    puller = HlsSegmentPuller(
        http, str(station_server.make_url("/index.m3u8")), poll_interval=0.1
    )
    session = DeadlineSession(0.9)

    await puller.run(session)

    expected = SEGMENTS["seg1.ts"] + SEGMENTS["seg2.ts"] + SEGMENTS["seg3.ts"] + SEGMENTS["seg4.ts"]
    assert bytes(session.buffer) == expected
    assert puller.seen == {"seg1.ts", "seg2.ts", "seg3.ts", "seg4.ts"}
    assert puller.polls >= 3
    assert all(count == 1 for count in station.segment_requests.values())


@pytest.mark.asyncio
async def test_failed_segment_is_retried_on_next_poll(http, station_server, station):
    station.failing_once.add("seg2.ts")
    puller = HlsSegmentPuller(
        http, str(station_server.make_url("/index.m3u8")), poll_interval=0.1
    )
    session = DeadlineSession(0.9)

    await puller.run(session)

    assert station.segment_requests["seg2.ts"] == 2
    assert puller.segment_failures == 1
    assert "seg2.ts" in puller.seen
    # seg2 is appended after seg3 because it only succeeded on the second poll
    assert bytes(session.buffer).count(b"2") == len(SEGMENTS["seg2.ts"])
    assert bytes(session.buffer).index(b"3") < bytes(session.buffer).index(b"2")


@pytest.mark.asyncio
async def test_run_stops_at_deadline(http, station_server):
    puller = HlsSegmentPuller(
        http, str(station_server.make_url("/index.m3u8")), poll_interval=5
    )
    session = DeadlineSession(0.5)

    started = time.monotonic()
    await puller.run(session)

    assert time.monotonic() - started < 2


@pytest.mark.asyncio
async def test_failed_polls_are_skipped(http, station_server, station):
    # First poll is a server error, second returns an HTML page
    station.playlist_faults = {1: "error", 2: "html"}
    puller = HlsSegmentPuller(
        http, str(station_server.make_url("/index.m3u8")), poll_interval=0.1
    )
    session = DeadlineSession(0.9)

    await puller.run(session)

    assert station.playlist_requests >= 3
    assert bytes(session.buffer) == b"".join(SEGMENTS[name] for name in ("seg1.ts", "seg2.ts", "seg3.ts", "seg4.ts"))


@pytest.mark.asyncio
async def test_stalled_poll_is_cut_off_at_deadline(http, station_server, station):
    station.playlist_faults = {2: "hang"}
    puller = HlsSegmentPuller(
        http, str(station_server.make_url("/index.m3u8")), poll_interval=0.1, playlist_timeout=10
    )
    session = DeadlineSession(0.8)

    started = time.monotonic()
    await puller.run(session)

    assert time.monotonic() - started < 1.3
    assert puller.seen == {"seg1.ts", "seg2.ts", "seg3.ts"}
