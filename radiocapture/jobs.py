"""
Capture job definitions and the persistent job registry.

A job says what to capture (station and URL), when (HH:MM on a set of
weekdays, or a cron expression) and for how long. The registry keeps the
ordered job list in jobs.json and hands out immutable snapshots so the
trigger engine never observes a half-applied edit.
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, asdict, field, replace, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger

from .errors import JobLockedError, JobNotFoundError, JobValidationError

logger = logging.getLogger(__name__)

# Weekday indices, 0 = Sunday
ALL_DAYS: tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)

DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


@dataclass(frozen=True)
class Job:
    """
    A scheduled capture.

    Attributes:
        id: Stable identifier
        name: Display name, also used as the recording filename prefix
        station_id: Identity of the station being captured
        url: Stream endpoint or HLS playlist endpoint
        time: Daily trigger point in HH:MM (24h, local time)
        days: Weekday indices (0=Sunday..6=Saturday) the job is eligible on
        duration: Capture window length in seconds
        enabled: Disabled jobs are kept but never triggered
        locked: System-managed jobs cannot be removed by users
        cron: Optional cron expression used instead of time/days
        created_at: ISO timestamp of creation
    """
    id: str
    name: str
    station_id: str
    url: str
    time: str = ""
    days: tuple[int, ...] = ALL_DAYS
    duration: int = 1800
    enabled: bool = True
    locked: bool = False
    cron: Optional[str] = None
    created_at: str = field(default="", compare=False)

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])

    def describe_days(self) -> str:
        """Short human form of the weekday set."""
        if set(self.days) == set(ALL_DAYS):
            return "daily"
        return ",".join(DAY_NAMES[d] for d in sorted(self.days))

    def to_dict(self) -> dict:
        """Convert job to dictionary."""
        data = asdict(self)
        data["days"] = list(self.days)
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> "Job":
        """Create job from a stored dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "days" in values:
            values["days"] = tuple(values["days"])
        return cls(**values)


def parse_time(value: str) -> str:
    """
    Validate a 24h clock time and normalize it to HH:MM.

    Raises:
        JobValidationError: If the value is not H:MM or HH:MM within range
    """
    try:
        hour_str, minute_str = str(value).strip().split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (ValueError, AttributeError) as e:
        raise JobValidationError(f"Malformed time {value!r}, expected HH:MM") from e
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise JobValidationError(f"Time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def parse_days(value: Iterable) -> tuple[int, ...]:
    """Validate weekday indices, returning them sorted without duplicates."""
    try:
        days = sorted({int(d) for d in value})
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Malformed days: {value!r}") from e
    if not days:
        raise JobValidationError("A job needs at least one day")
    if any(d < 0 or d > 6 for d in days):
        raise JobValidationError(f"Days must be 0 (Sunday) to 6 (Saturday): {value!r}")
    return tuple(days)


def build_job(spec: Mapping, default_duration: int = 1800) -> Job:
    """
    Validate a job specification and build a Job from it.

    Args:
        spec: Mapping with name, station_id, url and time (or cron); days,
            duration, id, enabled and locked are optional
        default_duration: Duration used when the spec has none

    Returns:
        The validated Job

    Raises:
        JobValidationError: If required fields are missing or malformed
    """
    station_id = str(spec.get("station_id") or "").strip()
    if not station_id:
        raise JobValidationError("A job needs a station")

    url = str(spec.get("url") or "").strip()
    if not url.startswith(("http://", "https://")):
        raise JobValidationError(f"A job needs an http(s) url, got {url!r}")

    cron = spec.get("cron") or None
    if cron:
        try:
            CronTrigger.from_crontab(cron)
        except ValueError as e:
            raise JobValidationError(f"Malformed cron expression {cron!r}: {e}") from e
        time = parse_time(spec["time"]) if spec.get("time") else ""
    else:
        if not spec.get("time"):
            raise JobValidationError("A job needs a time")
        time = parse_time(spec["time"])

    days = parse_days(spec["days"]) if spec.get("days") is not None else ALL_DAYS

    raw_duration = spec.get("duration")
    try:
        duration = int(default_duration if raw_duration is None else raw_duration)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Malformed duration: {spec.get('duration')!r}") from e
    if duration <= 0:
        raise JobValidationError(f"Duration must be positive, got {duration}")

    return Job(
        id=str(spec.get("id") or f"job-{uuid.uuid4().hex[:12]}"),
        name=str(spec.get("name") or station_id).strip(),
        station_id=station_id,
        url=url,
        time=time,
        days=days,
        duration=duration,
        enabled=bool(spec.get("enabled", True)),
        locked=bool(spec.get("locked", False)),
        cron=cron,
        created_at=spec.get("created_at") or datetime.now(timezone.utc).isoformat(),
    )


# Production schedule managed by the server. These are re-seeded on every
# load and cannot be removed through the bot.
SYSTEM_JOBS: tuple[Job, ...] = (
    Job(
        id="sys-hala-1257",
        name="Hala FM Daily Short",
        station_id="2",
        url="https://hala-alrayamedia.radioca.st/;",
        time="12:57",
        duration=600,
        locked=True,
    ),
    Job(
        id="sys-hala-1900",
        name="Hala FM Evening Short",
        station_id="2",
        url="https://hala-alrayamedia.radioca.st/;",
        time="19:00",
        duration=600,
        locked=True,
    ),
    Job(
        id="sys-jrtv-1359",
        name="JRTV Afternoon Service",
        station_id="8",
        url="https://jrtv-live.ercdn.net/jrradio/jordanradiovideo.m3u8",
        time="13:59",
        duration=1860,
        locked=True,
    ),
    Job(
        id="sys-jrtv-2000",
        name="JRTV Evening Service",
        station_id="8",
        url="https://jrtv-live.ercdn.net/jrradio/jordanradiovideo.m3u8",
        time="20:00",
        duration=600,
        locked=True,
    ),
)


class JobRegistry:
    """
    Ordered, persisted collection of capture jobs.

    Every mutation runs under a lock, re-serializes the whole job set to
    disk and then swaps in a new immutable tuple. Readers always get a
    complete snapshot.

    Attributes:
        path: Location of jobs.json
        default_duration: Duration for jobs added without one
    """

    def __init__(
        self,
        path: Path,
        default_duration: int = 1800,
        system_jobs: Iterable[Job] = (),
    ):
        self.path = Path(path)
        self.default_duration = default_duration
        self._lock = threading.Lock()
        self._on_change: Optional[Callable[[], None]] = None
        self._jobs: tuple[Job, ...] = self._load()

        system_jobs = tuple(system_jobs)
        if system_jobs:
            with self._lock:
                merged = self._merge_system_jobs(self._jobs, system_jobs)
                if merged != self._jobs:
                    self._write(merged)
                    self._jobs = merged

    def _load(self) -> tuple[Job, ...]:
        """Read jobs.json, returning an empty set when it is absent or unreadable."""
        if not self.path.exists():
            return ()
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            jobs = tuple(Job.from_dict(item) for item in data.get("jobs", []))
            logger.info(f"Loaded {len(jobs)} jobs from {self.path}")
            return jobs
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            backup = self.path.with_suffix(".json.bad")
            logger.error(f"Invalid jobs file, moved to {backup}: {e}")
            os.replace(self.path, backup)
            return ()

    @staticmethod
    def _merge_system_jobs(
        jobs: tuple[Job, ...], system_jobs: tuple[Job, ...]
    ) -> tuple[Job, ...]:
        """Refresh system job definitions, keeping a persisted enabled flag."""
        by_id = {job.id: job for job in jobs}
        system_ids = {job.id for job in system_jobs}
        merged = []
        for sys_job in system_jobs:
            stored = by_id.get(sys_job.id)
            enabled = stored.enabled if stored else sys_job.enabled
            merged.append(replace(sys_job, enabled=enabled, locked=True))
        merged.extend(job for job in jobs if job.id not in system_ids)
        return tuple(merged)

    def _write(self, jobs: tuple[Job, ...]) -> None:
        """Serialize the complete job set atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump({"jobs": [job.to_dict() for job in jobs]}, f, indent=2)
        os.replace(tmp_path, self.path)

    def _commit(self, jobs: tuple[Job, ...]) -> None:
        # Caller holds the lock
        self._write(jobs)
        self._jobs = jobs

    def _notify_change(self) -> None:
        if self._on_change:
            try:
                self._on_change()
            except Exception as e:
                logger.error(f"Job change callback failed: {e}")

    def set_on_change(self, callback: Callable[[], None]) -> None:
        """
        Register a callback to be called after the job set changes.

        Args:
            callback: Function to call after add, remove or toggle
        """
        self._on_change = callback

    def list(self) -> tuple[Job, ...]:
        """Return a consistent snapshot of all jobs in registry order."""
        return self._jobs

    def get(self, job_id: str) -> Job:
        for job in self._jobs:
            if job.id == job_id:
                return job
        raise JobNotFoundError(job_id)

    def add(self, spec: Mapping) -> Job:
        """
        Validate and append a new job.

        Args:
            spec: Job specification, see build_job()

        Returns:
            The stored Job

        Raises:
            JobValidationError: If the spec is invalid or the id is taken
        """
        job = build_job(spec, self.default_duration)
        with self._lock:
            if any(existing.id == job.id for existing in self._jobs):
                raise JobValidationError(f"Duplicate job id: {job.id}")
            self._commit(self._jobs + (job,))
        logger.info(f"Added job: {job.id} ({job.name} at {job.time or job.cron})")
        self._notify_change()
        return job

    def remove(self, job_id: str, system: bool = False) -> Job:
        """
        Remove a job by ID.

        Args:
            job_id: ID of the job to remove
            system: True when the caller is the system itself, which may
                remove locked jobs

        Returns:
            The removed Job

        Raises:
            JobNotFoundError: If no job has this id
            JobLockedError: If the job is locked and the caller is not the system
        """
        with self._lock:
            job = self.get(job_id)
            if job.locked and not system:
                raise JobLockedError(f"Job {job_id} is system-managed and cannot be removed")
            self._commit(tuple(j for j in self._jobs if j.id != job_id))
        logger.info(f"Removed job: {job_id}")
        self._notify_change()
        return job

    def toggle(self, job_id: str) -> Job:
        """
        Flip a job's enabled flag.

        Returns:
            The updated Job
        """
        with self._lock:
            job = self.get(job_id)
            updated = replace(job, enabled=not job.enabled)
            self._commit(tuple(updated if j.id == job_id else j for j in self._jobs))
        logger.info(f"Job {job_id} {'enabled' if updated.enabled else 'disabled'}")
        self._notify_change()
        return updated
