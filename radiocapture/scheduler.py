"""
Trigger engine and recording scheduler for Radio Capture.

The TriggerEngine decides, once per tick, which jobs must start and which
running captures have reached their window length. Matching is done at
minute granularity against a per-minute time key, so evaluating the same
minute twice never starts a job twice regardless of the tick interval.

The RecordingScheduler drives the engine from an APScheduler interval job
and runs the daily retention sweep on a cron trigger.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .clock import Clock
from .config import Config
from .jobs import DAY_NAMES, Job, JobRegistry

logger = logging.getLogger(__name__)

TICK_JOB_ID = "trigger_tick"
RETENTION_JOB_ID = "retention_sweep"

StartHandler = Callable[[Job], Any]
StopHandler = Callable[[str], Any]


def weekday_index(moment: datetime) -> int:
    """Weekday of a datetime with 0 = Sunday."""
    return (moment.weekday() + 1) % 7


def job_trigger(job: Job, timezone) -> CronTrigger:
    """
    Build the APScheduler cron trigger equivalent to a job's schedule.

    Args:
        job: Job with either a cron expression or time/days
        timezone: Timezone the schedule is expressed in

    Returns:
        CronTrigger firing at the job's trigger points
    """
    if job.cron:
        return CronTrigger.from_crontab(job.cron, timezone=timezone)
    return CronTrigger(
        day_of_week=",".join(DAY_NAMES[d] for d in job.days),
        hour=job.hour,
        minute=job.minute,
        timezone=timezone,
    )


@dataclass
class ActiveTrigger:
    """Bookkeeping for a job the engine has started and not yet stopped."""
    job_id: str
    started_at: datetime
    duration: int
    token: Any = None


class TriggerEngine:
    """
    Matches wall-clock time against the job registry.

    ``on_start(job)`` is called for every enabled job whose trigger point
    equals the current minute. A falsy return value refuses the start;
    if it returns an asyncio future (the capture task), the job is released
    as soon as that future finishes. ``on_stop(job_id)`` is called once a
    started job has been running for its full duration.

    Attributes:
        registry: Source of jobs, read as one snapshot per tick
        clock: Provides the current local time
    """

    def __init__(
        self,
        registry: JobRegistry,
        clock: Clock,
        on_start: StartHandler,
        on_stop: Optional[StopHandler] = None,
    ):
        self.registry = registry
        self.clock = clock
        self._on_start = on_start
        self._on_stop = on_stop
        self._last_time_key: Optional[str] = None
        self._active: dict[str, ActiveTrigger] = {}
        self._cron_cache: dict[str, CronTrigger] = {}

    @staticmethod
    def time_key(moment: datetime) -> str:
        return moment.strftime("%Y-%m-%d %H:%M")

    @property
    def last_time_key(self) -> Optional[str]:
        return self._last_time_key

    def active_jobs(self) -> dict[str, ActiveTrigger]:
        """Snapshot of jobs currently considered running."""
        return dict(self._active)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def release(self, job_id: str, token: Any = None) -> None:
        """
        Forget a running job before its duration has elapsed.

        Args:
            job_id: Job to release
            token: When given, only release if it matches the stored token
        """
        active = self._active.get(job_id)
        if active is None:
            return
        if token is not None and active.token is not token:
            return
        del self._active[job_id]
        logger.debug(f"Released job {job_id}")

    def matches(self, job: Job, now: datetime) -> bool:
        """Whether an enabled job is due in the minute containing ``now``."""
        if not job.enabled:
            return False
        if job.cron:
            trigger = self._cron_cache.get(job.cron)
            if trigger is None:
                trigger = CronTrigger.from_crontab(job.cron, timezone=now.tzinfo or self.clock.tz)
                self._cron_cache[job.cron] = trigger
            minute_start = now.replace(second=0, microsecond=0)
            return trigger.get_next_fire_time(None, minute_start) == minute_start
        return (
            job.hour == now.hour
            and job.minute == now.minute
            and weekday_index(now) in job.days
        )

    def tick(self, now: Optional[datetime] = None) -> list[Job]:
        """
        Evaluate one tick.

        Stops are checked on every tick. Starts are evaluated only when the
        minute has changed since the previous evaluation.

        Args:
            now: Evaluation time, defaults to the clock's current time

        Returns:
            Jobs started during this tick
        """
        now = now or self.clock.now()
        self._expire(now)

        key = self.time_key(now)
        if key == self._last_time_key:
            return []
        self._last_time_key = key

        started = []
        for job in self.registry.list():
            try:
                if not self.matches(job, now):
                    continue
            except Exception as e:
                logger.error(f"Failed to evaluate job {job.id}: {e}")
                continue

            if job.id in self._active:
                logger.warning(f"Job {job.id} is still running, not starting it again")
                continue

            if self._start(job, now):
                started.append(job)

        return started

    def _start(self, job: Job, now: datetime) -> bool:
        try:
            result = self._on_start(job)
        except Exception as e:
            logger.error(f"Start handler failed for job {job.id}: {e}")
            return False

        if not result:
            return False

        self._active[job.id] = ActiveTrigger(
            job_id=job.id,
            started_at=now,
            duration=job.duration,
            token=result,
        )
        if isinstance(result, asyncio.Future):
            result.add_done_callback(
                lambda _fut, job_id=job.id, token=result: self.release(job_id, token)
            )
        logger.info(f"Triggered job {job.id} ({job.name})")
        return True

    def _expire(self, now: datetime) -> None:
        for job_id, active in list(self._active.items()):
            elapsed = (now - active.started_at).total_seconds()
            if elapsed < active.duration:
                continue
            del self._active[job_id]
            if self._on_stop is None:
                continue
            try:
                self._on_stop(job_id)
            except Exception as e:
                logger.error(f"Stop handler failed for job {job_id}: {e}")


class RecordingScheduler:
    """
    Runs the trigger engine and the retention sweep on APScheduler.

    Attributes:
        scheduler: The APScheduler instance, None until started
        config: Configuration object
        engine: Trigger engine evaluated on every tick
    """

    def __init__(
        self,
        config: Config,
        engine: TriggerEngine,
        retention: Optional[Callable[[], Awaitable[int]]] = None,
    ):
        self.config = config
        self.engine = engine
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._retention = retention

    async def _tick_job(self) -> None:
        try:
            self.engine.tick()
        except Exception as e:
            logger.exception(f"Trigger tick failed: {e}")

    async def _retention_job(self) -> None:
        if self._retention is None:
            return
        try:
            removed = await self._retention()
            logger.info(f"Retention sweep removed {removed} recording(s)")
        except Exception as e:
            logger.error(f"Retention sweep failed: {e}")

    async def start(self) -> None:
        """
        Start the scheduler.

        The tick job runs immediately and then every ``tick_interval``
        seconds. The retention sweep runs once now and daily at
        ``retention_hour``.
        """
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        tz = self.engine.clock.tz
        self.scheduler = AsyncIOScheduler(timezone=tz)

        self.scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=self.config.tick_interval, timezone=tz),
            id=TICK_JOB_ID,
            next_run_time=datetime.now(tz),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(1, int(self.config.tick_interval)),
        )

        if self._retention is not None:
            self.scheduler.add_job(
                self._retention_job,
                trigger=CronTrigger(hour=self.config.retention_hour, minute=0, timezone=tz),
                id=RETENTION_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.add_job(self._retention_job, id=f"{RETENTION_JOB_ID}_startup")

        self.scheduler.start()
        logger.info(
            f"Scheduler started (timezone: {self.config.timezone}, "
            f"tick every {self.config.tick_interval:g}s)"
        )

    async def stop(self) -> None:
        """Stop the scheduler without waiting on running jobs."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

        self.scheduler = None

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_next_runs(self, limit: int = 5, now: Optional[datetime] = None) -> list[dict]:
        """
        Get the next trigger times of enabled jobs.

        Args:
            limit: Maximum number of upcoming runs to return
            now: Reference time, defaults to the engine clock

        Returns:
            List of dictionaries with id, name, next_run and duration
        """
        now = now or self.engine.clock.now()
        runs = []
        for job in self.engine.registry.list():
            if not job.enabled:
                continue
            try:
                next_run = job_trigger(job, now.tzinfo).get_next_fire_time(None, now)
            except ValueError as e:
                logger.warning(f"Cannot compute next run for {job.id}: {e}")
                continue
            if next_run:
                runs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": next_run,
                    "duration": job.duration,
                })

        runs.sort(key=lambda x: x["next_run"])
        return runs[:limit]

    def get_status(self) -> dict:
        """
        Get the current status of the scheduler.

        Returns:
            Dictionary with scheduler status information
        """
        jobs = self.engine.registry.list()
        return {
            "running": self.running,
            "job_count": len(jobs),
            "enabled_count": sum(1 for job in jobs if job.enabled),
            "active": sorted(self.engine.active_jobs()),
            "timezone": self.config.timezone,
            "next_runs": self.get_next_runs(3),
        }

    def format_next_runs(self) -> str:
        """
        Get a formatted string of upcoming recordings.

        Returns:
            Human-readable string of next scheduled recordings
        """
        next_runs = self.get_next_runs()

        if not next_runs:
            return "No scheduled recordings"

        lines = ["📅 Upcoming Recordings:\n"]

        for run in next_runs:
            time_str = run["next_run"].strftime("%a %b %d, %H:%M")
            lines.append(f"• {time_str} {run['name']} ({run['duration'] / 60:.0f}m)")

        return "\n".join(lines)
