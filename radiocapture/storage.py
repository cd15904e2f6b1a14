"""
Recording storage for Radio Capture.

Finished recordings are handed to a RecordingStore. LocalStore keeps
them on disk next to a JSON metadata sidecar; RcloneStore stages them
locally and copies them to an rclone remote (pCloud, Google Drive, S3...),
verifies the upload and optionally removes the local copy.

Both stores also serve the daily retention sweep.
"""

import abc
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".json"

# rclone reports nanoseconds, fromisoformat on 3.10 only takes 3 or 6 digits
_FRACTION = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class StoredRecording:
    """
    Reference to a stored recording.

    Attributes:
        filename: Recording file name (unique key in the store)
        reference: Public reference returned by store()
        timestamp: Capture time, used by the retention sweep
        size_bytes: Size of the recording
    """
    filename: str
    reference: str
    timestamp: datetime
    size_bytes: int = 0


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordingStore(abc.ABC):
    """Persistence sink for finished recordings."""

    @abc.abstractmethod
    async def store(self, data: bytes, filename: str, metadata: dict) -> str:
        """
        Persist a recording. Storing the same filename again overwrites it.

        Returns:
            Public reference of the stored recording

        Raises:
            StorageError: If the recording could not be stored
        """

    @abc.abstractmethod
    async def list_older_than(self, cutoff: datetime) -> list[StoredRecording]:
        """Recordings captured before ``cutoff``."""

    @abc.abstractmethod
    async def remove_all(self, recordings: Iterable[StoredRecording]) -> int:
        """Delete recordings, returning how many were removed."""


class LocalStore(RecordingStore):
    """
    Stores recordings in a directory with one metadata sidecar per file.

    Attributes:
        directory: Where recordings and sidecars are written
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, filename: str) -> Path:
        path = self.directory / filename
        if path.parent != self.directory:
            raise StorageError(f"Refusing to write outside {self.directory}: {filename}")
        return path

    def _write(self, data: bytes, filename: str, metadata: dict) -> Path:
        path = self.path_for(filename)
        tmp_path = path.with_name(path.name + ".part")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

        sidecar = path.with_name(path.name + METADATA_SUFFIX)
        sidecar.write_text(json.dumps({"filename": filename, **metadata}, indent=2))
        return path

    async def store(self, data: bytes, filename: str, metadata: dict) -> str:
        try:
            path = await asyncio.to_thread(self._write, data, filename, metadata)
        except OSError as e:
            raise StorageError(f"Cannot write {filename}: {e}") from e
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return str(path)

    def _scan(self) -> list[StoredRecording]:
        recordings = []
        for sidecar in self.directory.glob(f"*{METADATA_SUFFIX}"):
            audio = sidecar.with_name(sidecar.name[: -len(METADATA_SUFFIX)])
            try:
                metadata = json.loads(sidecar.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Unreadable metadata {sidecar}: {e}")
                continue
            timestamp = _parse_timestamp(metadata.get("timestamp", ""))
            if timestamp is None:
                timestamp = datetime.fromtimestamp(sidecar.stat().st_mtime, timezone.utc)
            recordings.append(StoredRecording(
                filename=audio.name,
                reference=str(audio),
                timestamp=timestamp,
                size_bytes=metadata.get("sizeBytes", 0),
            ))
        recordings.sort(key=lambda r: r.timestamp)
        return recordings

    async def list_recordings(self) -> list[StoredRecording]:
        return await asyncio.to_thread(self._scan)

    async def list_older_than(self, cutoff: datetime) -> list[StoredRecording]:
        return [r for r in await self.list_recordings() if r.timestamp < cutoff]

    def _remove(self, recording: StoredRecording) -> bool:
        path = self.path_for(recording.filename)
        removed = False
        for candidate in (path, path.with_name(path.name + METADATA_SUFFIX)):
            try:
                candidate.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    async def remove_all(self, recordings: Iterable[StoredRecording]) -> int:
        removed = 0
        for recording in recordings:
            try:
                if await asyncio.to_thread(self._remove, recording):
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to delete {recording.filename}: {e}")
        return removed


class RcloneStore(RecordingStore):
    """
    Uploads recordings to an rclone remote.

    Recordings are staged in a LocalStore, copied with ``rclone copy``,
    verified with ``rclone ls`` and, when cleanup is enabled, deleted locally.

    Attributes:
        remote: rclone remote path, e.g. "pcloud:Radio recordings"
        staging: Local store used for staging
    """

    def __init__(
        self,
        remote: str,
        staging: LocalStore,
        cleanup_enabled: Callable[[], bool] = lambda: False,
        rclone: str = "rclone",
    ):
        self.remote = remote.rstrip("/")
        self.staging = staging
        self._cleanup_enabled = cleanup_enabled
        self._rclone = rclone

    async def _run_rclone(self, *args: str) -> tuple[int, str, str]:
        """
        Run an rclone command asynchronously.

        Args:
            *args: Arguments to pass to rclone

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        command = [self._rclone, *args]
        logger.debug(f"Running rclone command: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StorageError(f"Cannot run rclone: {e}") from e

        stdout, stderr = await process.communicate()
        return (
            process.returncode or 0,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    async def verify_remote(self, filename: str) -> bool:
        """
        Verify that a file exists on the remote storage.

        Args:
            filename: Name of the file to verify

        Returns:
            True if file exists on remote, False otherwise
        """
        remote_path = f"{self.remote}/{filename}"
        returncode, stdout, _ = await self._run_rclone("ls", remote_path)

        if returncode == 0 and filename in stdout:
            logger.debug(f"Verified remote file: {remote_path}")
            return True

        logger.warning(f"Remote verification failed for: {remote_path}")
        return False

    async def store(self, data: bytes, filename: str, metadata: dict) -> str:
        local_ref = await self.staging.store(data, filename, metadata)
        local_path = Path(local_ref)
        sidecar = local_path.with_name(local_path.name + METADATA_SUFFIX)
        remote_path = f"{self.remote}/{filename}"

        logger.info(f"Starting upload: {filename}")
        for path in (local_path, sidecar):
            returncode, _, stderr = await self._run_rclone("copy", str(path), self.remote)
            if returncode != 0:
                raise StorageError(f"Upload of {path.name} failed: {stderr.strip() or 'unknown error'}")

        verified = await self.verify_remote(filename)
        if not verified:
            raise StorageError(f"Upload of {filename} could not be verified on {self.remote}")

        if self._cleanup_enabled():
            removed = await self.staging.remove_all([
                StoredRecording(filename=filename, reference=local_ref, timestamp=datetime.now(timezone.utc))
            ])
            if removed:
                logger.info(f"Deleted local file: {local_path}")

        return remote_path

    async def list_older_than(self, cutoff: datetime) -> list[StoredRecording]:
        returncode, stdout, stderr = await self._run_rclone("lsjson", self.remote, "--files-only")
        if returncode != 0:
            raise StorageError(f"Failed to list remote: {stderr.strip()}")

        try:
            files = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise StorageError(f"Failed to parse remote listing: {e}") from e

        recordings = []
        for entry in files:
            name = entry.get("Name", "")
            if not name or name.endswith(METADATA_SUFFIX):
                continue
            timestamp = _parse_timestamp(entry.get("ModTime", ""))
            if timestamp is None or timestamp >= cutoff:
                continue
            recordings.append(StoredRecording(
                filename=name,
                reference=f"{self.remote}/{name}",
                timestamp=timestamp,
                size_bytes=entry.get("Size", 0),
            ))
        return recordings

    async def remove_all(self, recordings: Iterable[StoredRecording]) -> int:
        removed = 0
        for recording in recordings:
            for name in (recording.filename, recording.filename + METADATA_SUFFIX):
                returncode, _, stderr = await self._run_rclone("deletefile", f"{self.remote}/{name}")
                if returncode != 0 and name == recording.filename:
                    logger.error(f"Failed to delete {name} from remote: {stderr.strip()}")
                    break
            else:
                removed += 1
        return removed


async def run_retention_sweep(store: RecordingStore, now: datetime, max_age_days: int) -> int:
    """
    Delete recordings older than ``max_age_days``.

    Args:
        store: Store to sweep
        now: Reference time
        max_age_days: Maximum age in days

    Returns:
        Number of recordings removed
    """
    cutoff = now - timedelta(days=max_age_days)
    old = await store.list_older_than(cutoff)
    if not old:
        return 0
    removed = await store.remove_all(old)
    logger.info(f"Retention: removed {removed} of {len(old)} recording(s) older than {cutoff:%Y-%m-%d}")
    return removed
