"""
Capture sessions for Radio Capture.

A CaptureSession acquires audio bytes for one job occurrence. It opens
the job URL, looks at the first chunk to tell a continuous audio stream
from an HLS playlist and then either buffers the stream directly or hands
over to the HLS segment puller. Both paths run until the same deadline
and produce the same kind of result.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Optional

import aiohttp

from .errors import SourceConnectionError
from .hls import HlsSegmentPuller, is_hls_manifest
from .jobs import Job
from .results import StepResult

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"User-Agent": "Mozilla/5.0 (radiocapture)"}
CHUNK_SIZE = 16 * 1024


class CaptureMode(str, enum.Enum):
    UNDETERMINED = "undetermined"
    DIRECT = "direct-stream"
    HLS = "hls"


@dataclass
class CaptureResult:
    """
    Outcome of a finished capture session.

    Attributes:
        job: Job the session captured for
        data: Captured audio bytes (possibly empty)
        started_at: Wall-clock start of the session
        duration: Captured window length in whole seconds
        mode: Capture path that produced the bytes
        error: Last terminal error, if the session ended on one
        segments: Number of HLS segments appended (0 for direct streams)
    """
    job: Job
    data: bytes
    started_at: datetime
    duration: int
    mode: CaptureMode
    error: Optional[Exception] = None
    segments: int = 0

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class CaptureSession:
    """
    One in-flight acquisition for a single job occurrence.

    The session owns its buffer, start time and deadline. Only its own
    run() loop writes to the buffer.

    Attributes:
        job: Job being captured
        url: Source URL
        started_at: Wall-clock start, used for filenames and metadata
        deadline: Monotonic time at which the session must finalize
        buffer: Accumulated audio bytes
        mode: Current protocol mode
        error: Last terminal error
        puller: HLS puller, set once the session switches to HLS
    """

    def __init__(
        self,
        job: Job,
        http: aiohttp.ClientSession,
        started_at: datetime,
        connect_timeout: float = 15.0,
        playlist_timeout: float = 10.0,
        segment_timeout: float = 5.0,
        poll_interval: float = 4.0,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.job = job
        self.url = job.url
        self.http = http
        self.started_at = started_at
        self.connect_timeout = connect_timeout
        self.playlist_timeout = playlist_timeout
        self.segment_timeout = segment_timeout
        self.poll_interval = poll_interval
        self.chunk_size = chunk_size

        self._started = time.monotonic()
        self.deadline: float = self._started + job.duration
        self.buffer = bytearray()
        self.mode = CaptureMode.UNDETERMINED
        self.error: Optional[Exception] = None
        self.puller: Optional[HlsSegmentPuller] = None
        self._stopped = asyncio.Event()
        self._result: Optional[CaptureResult] = None

    # ========== Deadline ==========

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def elapsed_seconds(self) -> int:
        return round(time.monotonic() - self._started)

    def stop(self) -> None:
        """End the session early by moving the deadline to now."""
        self.deadline = min(self.deadline, time.monotonic())
        self._stopped.set()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until the deadline or stop(), whichever is first."""
        timeout = min(seconds, self.remaining())
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def until_deadline(self, aw: Awaitable) -> StepResult:
        """
        Run an awaitable until it finishes, the deadline passes or stop() is called.

        Returns:
            The awaitable's outcome, or a success with no value when it was cut off
        """
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self._stopped.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stopper},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task not in done or task.cancelled():
            return StepResult.success()
        if task.exception() is not None:
            return StepResult.failure(task.exception())
        return StepResult.success(task.result())

    # ========== Capture Steps ==========

    async def open(self) -> StepResult:
        """
        Open the source URL.

        Returns:
            StepResult holding the response, or a SourceConnectionError on
            timeout, connection failure or a non-success status
        """
        timeout = min(self.connect_timeout, self.remaining())
        if timeout <= 0:
            return StepResult.failure(SourceConnectionError(f"Deadline passed before connecting to {self.url}"))

        # No total timeout, the session deadline bounds the read
        stream_timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
        try:
            response = await asyncio.wait_for(
                self.http.get(self.url, timeout=stream_timeout, headers=DEFAULT_HEADERS),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return StepResult.failure(SourceConnectionError(f"Timed out connecting to {self.url}"))
        except aiohttp.ClientError as e:
            return StepResult.failure(SourceConnectionError(f"Cannot reach {self.url}: {e!r}"))

        if response.status >= 400:
            response.release()
            return StepResult.failure(
                SourceConnectionError(f"{self.url} answered HTTP {response.status}")
            )
        return StepResult.success(response)

    async def _pump(self, response: aiohttp.ClientResponse) -> None:
        """Append stream chunks to the buffer; bail out on an HLS manifest."""
        async for chunk in response.content.iter_chunked(self.chunk_size):
            if not chunk:
                continue
            if self.mode is CaptureMode.UNDETERMINED:
                if is_hls_manifest(chunk):
                    self.mode = CaptureMode.HLS
                    return
                self.mode = CaptureMode.DIRECT
                logger.info(f"[{self.job.id}] Direct audio stream detected")
            self.buffer.extend(chunk)

    async def capture_direct(self, response: aiohttp.ClientResponse) -> None:
        """
        Buffer a continuous stream until the deadline or until it ends.

        If the first chunk turns out to be an HLS manifest the method
        returns without buffering it and leaves mode set to HLS.
        """
        try:
            result = await self.until_deadline(self._pump(response))
        finally:
            response.release()

        if not result.ok:
            self.error = SourceConnectionError(f"Stream from {self.url} failed: {result.error!r}")
            logger.warning(f"[{self.job.id}] {self.error}")
        elif self.mode is not CaptureMode.HLS and not self.expired:
            logger.warning(
                f"[{self.job.id}] Stream ended after {self.elapsed_seconds()}s, "
                f"before the {self.job.duration}s window"
            )

    async def capture_hls(self, playlist_url: str) -> None:
        """Pull HLS segments into the buffer until the deadline."""
        logger.info(f"[{self.job.id}] HLS playlist detected, polling {playlist_url}")
        self.puller = HlsSegmentPuller(
            self.http,
            playlist_url,
            poll_interval=self.poll_interval,
            playlist_timeout=self.playlist_timeout,
            segment_timeout=self.segment_timeout,
            headers=DEFAULT_HEADERS,
        )
        await self.puller.run(self)

    async def run(self) -> CaptureResult:
        """
        Capture until the deadline and return the finalized result.

        Never raises for network problems; they end up in ``result.error``.
        """
        opened = await self.open()
        if not opened.ok:
            self.error = opened.error
            logger.error(f"[{self.job.id}] {self.error}")
            return self.finalize()

        response = opened.value
        playlist_url = str(response.url)
        await self.capture_direct(response)

        if self.mode is CaptureMode.HLS:
            await self.capture_hls(playlist_url)

        return self.finalize()

    def finalize(self) -> CaptureResult:
        """
        Freeze the buffer into a CaptureResult.

        Calling it again returns the same result.
        """
        if self._result is None:
            self._result = CaptureResult(
                job=self.job,
                data=bytes(self.buffer),
                started_at=self.started_at,
                duration=self.elapsed_seconds(),
                mode=self.mode,
                error=self.error,
                segments=len(self.puller.seen) if self.puller else 0,
            )
        return self._result
