from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable

import pytest
from aiohttp import web

from radiocapture.config import Config
from radiocapture.errors import StorageError
from radiocapture.jobs import Job, JobRegistry
from radiocapture.storage import RecordingStore, StoredRecording

# Tuesday
TUESDAY_13H = datetime(2024, 5, 7, 13, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = TUESDAY_13H):
        self.tz = start.tzinfo
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class FakeStore(RecordingStore):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[bytes, str, dict]] = []

    async def store(self, data: bytes, filename: str, metadata: dict) -> str:
        self.calls.append((data, filename, metadata))
        if self.fail:
            raise StorageError("bucket unavailable")
        return f"memory://{filename}"

    async def list_older_than(self, cutoff: datetime) -> list[StoredRecording]:
        return []

    async def remove_all(self, recordings: Iterable[StoredRecording]) -> int:
        return 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def env(tmp_path):
    return {
        "TZ": "UTC",
        "DATA_DIR": str(tmp_path / "data"),
        "RECORDINGS_DIR": str(tmp_path / "recordings"),
        "CONNECT_TIMEOUT": "2",
        "PLAYLIST_TIMEOUT": "2",
        "SEGMENT_TIMEOUT": "2",
        "HLS_POLL_INTERVAL": "0.2",
        "SYSTEM_JOBS": "0",
    }


@pytest.fixture
def config(env):
    return Config(env=env)


@pytest.fixture
def registry(tmp_path):
    return JobRegistry(tmp_path / "jobs.json")


@pytest.fixture
def store():
    return FakeStore()


def make_job(**overrides) -> Job:
    values = {
        "id": "job-1",
        "name": "Morning News",
        "station_id": "2",
        "url": "http://127.0.0.1:1/stream",
        "time": "13:00",
        "days": (0, 1, 2, 3, 4, 5, 6),
        "duration": 1,
    }
    values.update(overrides)
    return Job(**values)


# ========== Fake station server ==========

AUDIO_CHUNK = b"\xff\xfbAUDIO" * 100

SEGMENTS = {
    "seg1.ts": b"1" * 1000,
    "seg2.ts": b"2" * 1500,
    "seg3.ts": b"3" * 700,
    "seg4.ts": b"4" * 1200,
}


def playlist_text(names: list[str], sequence: int = 0) -> str:
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        "#EXT-X-TARGETDURATION:4",
        f"#EXT-X-MEDIA-SEQUENCE:{sequence}",
        "",
    ]
    for name in names:
        lines.append("#EXTINF:4.0,")
        lines.append(name)
    return "\n".join(lines) + "\n"


class Station:
    """State of the fake station shared with the request handlers."""

    def __init__(self):
        self.playlist_requests = 0
        self.segment_requests: dict[str, int] = {}
        self.failing_once: set[str] = set()
        # Playlist request number -> "error", "html" or "hang"
        self.playlist_faults: dict[int, str] = {}
        self.hang_seconds = 2.0

    def playlist_for(self, request_number: int) -> str:
        # The first two requests (connection probe and first poll) list three
        # segments, later polls add a fourth while still listing the first three
        if request_number <= 2:
            return playlist_text(["seg1.ts", "seg2.ts", "seg3.ts"])
        return playlist_text(["seg1.ts", "seg2.ts", "seg3.ts", "seg4.ts"])


STATION_KEY = web.AppKey("station", Station)


async def _stream(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
    await response.prepare(request)
    try:
        for _ in range(40):
            await response.write(AUDIO_CHUNK)
            await asyncio.sleep(0.05)
    except (ConnectionResetError, ConnectionError):
        pass
    return response


async def _short_stream(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
    await response.prepare(request)
    await response.write(AUDIO_CHUNK)
    await response.write_eof()
    return response


async def _silent(request: web.Request) -> web.StreamResponse:
    response = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
    await response.prepare(request)
    await asyncio.sleep(1.5)
    return response


async def _missing(request: web.Request) -> web.Response:
    return web.Response(status=404)


async def _playlist(request: web.Request) -> web.Response:
    station = request.app[STATION_KEY]
    station.playlist_requests += 1
    fault = station.playlist_faults.get(station.playlist_requests)
    if fault == "error":
        return web.Response(status=503)
    if fault == "html":
        return web.Response(text="<html>Maintenance</html>", content_type="text/html")
    if fault == "hang":
        await asyncio.sleep(station.hang_seconds)
    return web.Response(
        text=station.playlist_for(station.playlist_requests),
        content_type="application/vnd.apple.mpegurl",
    )


async def _master(request: web.Request) -> web.Response:
    text = (
        "#EXTM3U\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=64000\n"
        "low/index.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=128000\n"
        "index.m3u8\n"
    )
    return web.Response(text=text, content_type="application/vnd.apple.mpegurl")


async def _segment(request: web.Request) -> web.Response:
    station = request.app[STATION_KEY]
    name = request.match_info["name"]
    station.segment_requests[name] = station.segment_requests.get(name, 0) + 1
    if name in station.failing_once:
        station.failing_once.discard(name)
        return web.Response(status=500)
    if name not in SEGMENTS:
        return web.Response(status=404)
    return web.Response(body=SEGMENTS[name], content_type="video/mp2t")


def make_station_app(station: Station) -> web.Application:
    app = web.Application()
    app[STATION_KEY] = station
    app.router.add_get("/stream", _stream)
    app.router.add_get("/short", _short_stream)
    app.router.add_get("/silent", _silent)
    app.router.add_get("/index.m3u8", _playlist)
    app.router.add_get("/master.m3u8", _master)
    app.router.add_get("/missing", _missing)
    app.router.add_get("/{name}", _segment)
    return app


@pytest.fixture
def station():
    return Station()


@pytest.fixture
async def station_server(aiohttp_server, station):
    return await aiohttp_server(make_station_app(station))
