from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from radiocapture.bot import RadioBot, parse_days_arg, parse_duration
from radiocapture.jobs import SYSTEM_JOBS, JobRegistry
from radiocapture.scheduler import RecordingScheduler, TriggerEngine
from radiocapture.status import StatusLog

from conftest import TUESDAY_13H


def _update(chat_id=42):
    return SimpleNamespace(
        effective_chat=SimpleNamespace(id=chat_id),
        message=SimpleNamespace(reply_text=AsyncMock()),
    )


def _context(*args):
    return SimpleNamespace(args=list(args))


def _reply(update) -> str:
    return update.message.reply_text.await_args.args[0]


@pytest.fixture
def recorder():
    recorder = MagicMock()
    recorder.get_status.return_value = {}
    recorder.record_now.return_value = object()
    return recorder


@pytest.fixture
def bot(config, registry, recorder, clock):
    engine = TriggerEngine(registry, clock, on_start=lambda job: True)
    scheduler = RecordingScheduler(config, engine)
    status_log = StatusLog()
    status_log.add("Recording saved: a.mp3", timestamp=TUESDAY_13H)
    return RadioBot(config, registry, recorder, scheduler, status_log)


@pytest.mark.parametrize("text, seconds", [
    ("30", 30),
    ("45s", 45),
    ("5m", 300),
    ("2h", 7200),
    ("1h30m", 5400),
    (" 10M ", 600),
])
def test_parse_duration(text, seconds):
    assert parse_duration(text) == seconds


@pytest.mark.parametrize("text", ["0", "abc", "5x", "h", ""])
def test_parse_duration_rejects(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_days_arg():
    assert parse_days_arg("daily") == [0, 1, 2, 3, 4, 5, 6]
    assert parse_days_arg("weekdays") == [1, 2, 3, 4, 5]
    assert parse_days_arg("weekends") == [0, 6]
    assert parse_days_arg("mon,Wed,friday") == [1, 3, 5]
    assert parse_days_arg("6,0,6") == [0, 6]
    with pytest.raises(ValueError):
        parse_days_arg("mon,someday")


@pytest.mark.asyncio
async def test_add_creates_job(bot, registry):
    update = _update()

    await bot.cmd_add(update, _context("13:00", "mon,wed", "30m", "https://radio.example/live.mp3", "Morning", "News"))

    (job,) = registry.list()
    assert job.name == "Morning News"
    assert job.days == (1, 3)
    assert job.duration == 1800
    assert job.url == "https://radio.example/live.mp3"
    assert job.id in _reply(update)


@pytest.mark.asyncio
async def test_add_accepts_station_argument(bot, registry):
    update = _update()

    await bot.cmd_add(update, _context("20:00", "daily", "1h", "https://radio.example/live.m3u8", "station=jrtv", "Evening", "Show"))

    (job,) = registry.list()
    assert job.station_id == "jrtv"
    assert job.name == "Evening Show"


@pytest.mark.asyncio
async def test_add_rejects_empty_station(bot, registry):
    update = _update()

    await bot.cmd_add(update, _context("20:00", "daily", "1h", "https://radio.example/a", "station=", "Show"))

    assert registry.list() == ()
    assert "needs a station" in _reply(update)


@pytest.mark.asyncio
async def test_add_reports_invalid_job(bot, registry):
    update = _update()

    await bot.cmd_add(update, _context("25:00", "daily", "30m", "https://radio.example/live.mp3", "News"))

    assert registry.list() == ()
    assert "Invalid job" in _reply(update)


@pytest.mark.asyncio
async def test_add_shows_usage(bot):
    update = _update()

    await bot.cmd_add(update, _context("13:00"))

    assert _reply(update).startswith("Usage: /add")


@pytest.mark.asyncio
async def test_remove_and_toggle(bot, registry):
    job = registry.add({"name": "News", "station_id": "2", "url": "https://radio.example/a", "time": "13:00"})

    update = _update()
    await bot.cmd_toggle(update, _context(job.id))
    assert "disabled" in _reply(update)
    assert registry.get(job.id).enabled is False

    update = _update()
    await bot.cmd_remove(update, _context(job.id))
    assert "removed" in _reply(update)
    assert registry.list() == ()

    update = _update()
    await bot.cmd_remove(update, _context(job.id))
    assert "not found" in _reply(update)


@pytest.mark.asyncio
async def test_remove_refuses_system_job(config, recorder, clock, tmp_path):
    registry = JobRegistry(tmp_path / "jobs.json", system_jobs=SYSTEM_JOBS)
    scheduler = RecordingScheduler(config, TriggerEngine(registry, clock, on_start=lambda job: True))
    bot = RadioBot(config, registry, recorder, scheduler, StatusLog())
    update = _update()

    await bot.cmd_remove(update, _context(SYSTEM_JOBS[0].id))

    assert "system job" in _reply(update)
    assert registry.get(SYSTEM_JOBS[0].id)


@pytest.mark.asyncio
async def test_jobs_lists_registry(bot, registry):
    registry.add({"name": "News", "station_id": "2", "url": "https://radio.example/a", "time": "13:00", "days": [1]})
    update = _update()

    await bot.cmd_jobs(update, _context())

    assert "News, mon 13:00 (30m)" in _reply(update)


@pytest.mark.asyncio
async def test_jobs_escapes_markdown_in_names(bot, registry):
    registry.add({"name": "Late_Night *Mix*", "station_id": "2", "url": "https://radio.example/a", "time": "23:00", "days": [1]})
    update = _update()

    await bot.cmd_jobs(update, _context())

    assert r"Late\_Night \*Mix\*, mon 23:00" in _reply(update)


@pytest.mark.asyncio
async def test_record_starts_manual_capture(bot, registry, recorder):
    job = registry.add({"name": "News", "station_id": "2", "url": "https://radio.example/a", "time": "13:00"})
    update = _update()

    await bot.cmd_record(update, _context(job.id))

    recorder.record_now.assert_called_once_with(job)
    assert "Recording News" in _reply(update)

    recorder.record_now.return_value = None
    update = _update()
    await bot.cmd_record(update, _context(job.id))
    assert "already recording" in _reply(update)


@pytest.mark.asyncio
async def test_status_and_logs(bot, recorder):
    recorder.get_status.return_value = {
        "job-1": {"name": "News", "mode": "hls", "elapsed": 60, "duration": 600, "bytes": 2048},
    }
    update = _update()

    await bot.cmd_status(update, _context())
    text = _reply(update)
    assert "1 active" in text
    assert "News (hls)" in text

    update = _update()
    await bot.cmd_logs(update, _context())
    assert _reply(update) == "13:00:00 I Recording saved: a.mp3"


@pytest.mark.asyncio
async def test_notify_setting(bot, config):
    update = _update()

    await bot.cmd_notify(update, _context("off"))

    assert config.dynamic.notifications_enabled is False
    assert "disabled" in _reply(update)

    update = _update()
    await bot.cmd_cleanup(update, _context())
    assert _reply(update).startswith("Cleanup is currently: off")


@pytest.mark.asyncio
async def test_unauthorized_chat_is_rejected(config, registry, recorder, clock):
    config.telegram_chat_id = "1"
    scheduler = RecordingScheduler(config, TriggerEngine(registry, clock, on_start=lambda job: True))
    bot = RadioBot(config, registry, recorder, scheduler, StatusLog())
    update = _update(chat_id=2)

    await bot.cmd_add(update, _context("13:00", "daily", "30m", "https://radio.example/a", "News"))

    assert _reply(update) == "⛔ Unauthorized"
    assert registry.list() == ()
