"""
Radio stream recording module.

The Recorder starts one CaptureSession per triggered job, keeps at most
one live session per job id and, when a session finishes, hands the
captured bytes to the persistence store exactly once.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import aiohttp
from telegram.helpers import escape_markdown

from .capture import CaptureResult, CaptureSession
from .clock import Clock
from .config import Config
from .errors import EmptyCaptureError, StorageError
from .jobs import Job
from .storage import RecordingStore
from .utils import format_bytes, format_duration

logger = logging.getLogger(__name__)

# Type alias for notification callbacks
NotifyCallback = Callable[[str], Awaitable[None]]

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def make_filename(name: str, started_at: datetime) -> str:
    """
    Generate the recording filename for a job occurrence.

    Args:
        name: Job display name
        started_at: Session start time

    Returns:
        Filename in format: Name_YYYY-MM-DDTHH-MM-SS-mmmZ.mp3 (UTC)
    """
    safe_name = _UNSAFE_CHARS.sub("", re.sub(r"\s+", "_", name.strip())) or "recording"
    stamp = started_at.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    stamp = re.sub(r"[:.]", "-", stamp.replace("+00:00", "Z"))
    return f"{safe_name}_{stamp}.mp3"


class Recorder:
    """
    Runs capture sessions and delivers their results.

    Attributes:
        config: Configuration object with capture timeouts
        store: Persistence sink receiving finished recordings
        clock: Source of session start times
    """

    def __init__(self, config: Config, store: RecordingStore, clock: Clock):
        """Initialize the recorder."""
        self.config = config
        self.store = store
        self.clock = clock
        self._sessions: dict[str, CaptureSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._http: Optional[aiohttp.ClientSession] = None
        self._on_start: Optional[NotifyCallback] = None
        self._on_complete: Optional[NotifyCallback] = None
        self._on_error: Optional[NotifyCallback] = None

    def set_callbacks(
        self,
        on_start: Optional[NotifyCallback] = None,
        on_complete: Optional[NotifyCallback] = None,
        on_error: Optional[NotifyCallback] = None,
    ) -> None:
        """
        Set notification callbacks for recording events.

        Args:
            on_start: Called when recording starts
            on_complete: Called when a recording is stored
            on_error: Called when a recording fails
        """
        self._on_start = on_start
        self._on_complete = on_complete
        self._on_error = on_error

    async def _notify(self, callback: Optional[NotifyCallback], message: str) -> None:
        """
        Send a notification if callback is set and notifications are enabled.

        Args:
            callback: The callback function to call
            message: Message to send
        """
        if callback and self.config.dynamic.notifications_enabled:
            try:
                await callback(message)
            except Exception as e:
                logger.error(f"Notification callback failed: {e}")

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    # ========== Sessions ==========

    @property
    def is_recording(self) -> bool:
        return bool(self._sessions)

    def is_live(self, job_id: str) -> bool:
        return job_id in self._sessions

    def start(self, job: Job) -> Optional[asyncio.Task]:
        """
        Start a capture session for a job.

        Must be called from the event loop. Returns immediately; the
        capture runs as its own task.

        Args:
            job: Job to capture

        Returns:
            The capture task, or None if the job already has a live session
        """
        if job.id in self._sessions:
            logger.warning(f"Recording already in progress for job {job.id}, not starting another")
            return None

        session = CaptureSession(
            job,
            self._client(),
            started_at=self.clock.now(),
            connect_timeout=self.config.connect_timeout,
            playlist_timeout=self.config.playlist_timeout,
            segment_timeout=self.config.segment_timeout,
            poll_interval=self.config.hls_poll_interval,
        )
        self._sessions[job.id] = session

        task = asyncio.create_task(self._run(session), name=f"capture-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id, s=session: self._forget(job_id, s))
        return task

    def record_now(self, job: Job) -> Optional[asyncio.Task]:
        """Capture a job immediately, outside its schedule."""
        logger.info(f"Manual recording requested for job {job.id}")
        return self.start(job)

    def _forget(self, job_id: str, session: CaptureSession) -> None:
        if self._sessions.get(job_id) is session:
            del self._sessions[job_id]
            self._tasks.pop(job_id, None)

    def stop(self, job_id: str) -> bool:
        """
        End a live session now. The normal completion handoff still runs.

        Returns:
            True if a session was stopped, False otherwise
        """
        session = self._sessions.get(job_id)
        if session is None:
            return False
        session.stop()
        logger.info(f"Recording stop requested for job {job_id}")
        return True

    async def _run(self, session: CaptureSession) -> Optional[str]:
        job = session.job
        logger.info(f"Recording started: {job.name} [{job.id}] ({format_duration(job.duration)})")
        await self._notify(
            self._on_start,
            f"🎙️ Recording started\n\n{escape_markdown(job.name)}\nDuration: {format_duration(job.duration)}",
        )

        try:
            result = await session.run()
        except asyncio.CancelledError:
            logger.warning(f"Recording cancelled: {job.name} [{job.id}]")
            await self.complete(session.finalize())
            raise
        except Exception as e:
            logger.exception(f"Recording error for {job.id}: {e}")
            session.error = e
            result = session.finalize()

        return await self.complete(result)

    async def complete(self, result: CaptureResult) -> Optional[str]:
        """
        Deliver a finished capture to the store.

        Empty captures are reported and never delivered. Storage failures
        are reported and not retried.

        Args:
            result: Finalized capture result

        Returns:
            The store's public reference, or None if nothing was stored
        """
        job = result.job
        filename = make_filename(job.name, result.started_at)

        if not result.data:
            reason = f" ({result.error})" if result.error else ""
            error = EmptyCaptureError(
                f"No audio captured for {job.name} after {result.duration}s{reason}"
            )
            logger.error(str(error))
            await self._notify(self._on_error, f"❌ Recording failed\n\n{escape_markdown(str(error))}")
            return None

        metadata = {
            "jobId": job.id,
            "stationId": job.station_id,
            "stationName": job.name,
            "durationSeconds": result.duration,
            "sizeBytes": result.size_bytes,
            "timestamp": result.started_at.isoformat(),
            "mode": result.mode.value,
        }

        try:
            reference = await self.store.store(result.data, filename, metadata)
        except StorageError as e:
            logger.error(f"Storing {filename} failed: {e}")
            await self._notify(self._on_error, f"❌ Upload failed\n\nFile: `{filename}`\nError: {escape_markdown(str(e)[:200])}")
            return None
        except Exception as e:
            logger.exception(f"Unexpected storage error for {filename}: {e}")
            await self._notify(self._on_error, f"❌ Upload error\n\nFile: `{filename}`\nError: {escape_markdown(str(e))}")
            return None

        logger.info(
            f"Recording saved: {filename} ({format_bytes(result.size_bytes)}, "
            f"{format_duration(result.duration)}, {result.mode.value}) -> {reference}"
        )
        await self._notify(
            self._on_complete,
            f"✅ Recording completed\n\nFile: `{filename}`\n"
            f"Size: {format_bytes(result.size_bytes)}\nDuration: {format_duration(result.duration)}",
        )
        return reference

    def get_status(self) -> dict:
        """
        Get the current status of the recorder.

        Returns:
            Dictionary keyed by job id with per-session details
        """
        return {
            job_id: {
                "name": session.job.name,
                "mode": session.mode.value,
                "elapsed": session.elapsed_seconds(),
                "duration": session.job.duration,
                "bytes": len(session.buffer),
            }
            for job_id, session in self._sessions.items()
        }

    async def stop_all(self, timeout: float = 30.0) -> None:
        """
        Stop every live session and wait for their handoffs.

        Sessions still running after ``timeout`` seconds are cancelled.
        """
        tasks = list(self._tasks.values())
        for session in list(self._sessions.values()):
            session.stop()
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} recording(s) that did not finish in time")
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.stop_all()
        if self._http and not self._http.closed:
            await self._http.close()
        self._http = None
