import asyncio
import time

import aiohttp
import pytest

from radiocapture.capture import CaptureMode, CaptureSession
from radiocapture.errors import SourceConnectionError

from conftest import AUDIO_CHUNK, SEGMENTS, TUESDAY_13H, make_job


@pytest.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


def _session(http, url, duration=1):
    return CaptureSession(
        make_job(url=url, duration=duration),
        http,
        started_at=TUESDAY_13H,
        connect_timeout=2,
        playlist_timeout=2,
        segment_timeout=2,
        poll_interval=0.2,
    )


@pytest.mark.asyncio
async def test_direct_stream_is_buffered_until_deadline(http, station_server):
    session = _session(http, str(station_server.make_url("/stream")))

    started = time.monotonic()
    result = await session.run()
    took = time.monotonic() - started

    assert result.mode is CaptureMode.DIRECT
    assert result.error is None
    assert result.data.startswith(AUDIO_CHUNK[:64])
    assert result.size_bytes >= len(AUDIO_CHUNK)
    assert result.duration == 1
    assert result.started_at == TUESDAY_13H
    assert 0.9 < took < 1.9


@pytest.mark.asyncio
async def test_playlist_url_switches_to_segment_pulling(http, station_server, station):
    session = _session(http, str(station_server.make_url("/index.m3u8")))

    result = await session.run()

    assert result.mode is CaptureMode.HLS
    assert b"#EXTM3U" not in result.data
    assert result.data == b"".join(SEGMENTS[name] for name in ("seg1.ts", "seg2.ts", "seg3.ts", "seg4.ts"))
    assert result.segments == 4
    # connection probe plus at least three polls
    assert station.playlist_requests >= 4


@pytest.mark.asyncio
async def test_stream_ending_early_keeps_what_was_captured(http, station_server):
    session = _session(http, str(station_server.make_url("/short")), duration=5)

    started = time.monotonic()
    result = await session.run()

    assert time.monotonic() - started < 2
    assert result.mode is CaptureMode.DIRECT
    assert result.data == AUDIO_CHUNK
    assert result.duration < 5
    assert result.error is None


@pytest.mark.asyncio
async def test_http_error_status_gives_empty_result(http, station_server):
    session = _session(http, str(station_server.make_url("/missing")))

    result = await session.run()

    assert result.data == b""
    assert result.mode is CaptureMode.UNDETERMINED
    assert isinstance(result.error, SourceConnectionError)


@pytest.mark.asyncio
async def test_unreachable_source_gives_empty_result(http):
    session = _session(http, "http://127.0.0.1:1/stream")

    result = await session.run()

    assert result.data == b""
    assert isinstance(result.error, SourceConnectionError)


@pytest.mark.asyncio
async def test_silent_source_finalizes_at_deadline(http, station_server):
    session = _session(http, str(station_server.make_url("/silent")))

    started = time.monotonic()
    result = await session.run()

    assert time.monotonic() - started < 1.4
    assert result.data == b""
    assert result.error is None


@pytest.mark.asyncio
async def test_stop_ends_session_early(http, station_server):
    session = _session(http, str(station_server.make_url("/stream")), duration=30)

    task = asyncio.create_task(session.run())
    await asyncio.sleep(0.3)
    session.stop()
    result = await asyncio.wait_for(task, timeout=2)

    assert result.mode is CaptureMode.DIRECT
    assert result.data
    assert result.duration < 30


@pytest.mark.asyncio
async def test_finalize_is_idempotent(http, station_server):
    session = _session(http, str(station_server.make_url("/short")))

    result = await session.run()

    assert session.finalize() is result


def _hls_session(http, url, duration):
    return CaptureSession(
        make_job(url=url, duration=duration),
        http,
        started_at=TUESDAY_13H,
        connect_timeout=2,
        playlist_timeout=10,
        segment_timeout=10,
        poll_interval=0.2,
    )


@pytest.mark.asyncio
async def test_stalled_playlist_does_not_delay_deadline(http, station_server, station):
    # Request 1 is the connection probe, request 3 is the second poll
    station.playlist_faults = {3: "hang"}
    session = _hls_session(http, str(station_server.make_url("/index.m3u8")), duration=1)

    started = time.monotonic()
    result = await session.run()

    assert time.monotonic() - started < 1.5
    assert result.mode is CaptureMode.HLS
    assert result.duration == 1
    assert result.segments == 3


@pytest.mark.asyncio
async def test_stop_interrupts_stalled_playlist(http, station_server, station):
    station.playlist_faults = {3: "hang"}
    session = _hls_session(http, str(station_server.make_url("/index.m3u8")), duration=60)

    task = asyncio.create_task(session.run())
    await asyncio.sleep(0.6)
    assert station.playlist_requests == 3

    stopped = time.monotonic()
    session.stop()
    result = await asyncio.wait_for(task, timeout=2)

    assert time.monotonic() - stopped < 0.5
    assert result.segments == 3
    assert result.duration < 60
