"""
Main entry point for Radio Capture.

This module builds and coordinates all components of the application:
- Configuration loading
- Job registry, recorder and storage
- Trigger engine and scheduler
- Telegram bot and health server
- Signal handling for graceful shutdown
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from .bot import RadioBot
from .clock import SystemClock
from .config import Config
from .errors import ConfigError
from .health import HealthServer, create_app
from .jobs import SYSTEM_JOBS, JobRegistry
from .recorder import Recorder
from .scheduler import RecordingScheduler, TriggerEngine
from .status import StatusLog, attach_status_log
from .storage import LocalStore, RcloneStore, RecordingStore, run_retention_sweep
from .utils import setup_logging

logger = logging.getLogger(__name__)


def build_store(config: Config) -> RecordingStore:
    """Create the configured persistence store."""
    local = LocalStore(config.recordings_dir)
    if config.storage_backend == "rclone":
        return RcloneStore(
            config.rclone_remote,
            staging=local,
            cleanup_enabled=lambda: config.dynamic.cleanup_enabled,
        )
    return local


class RadioCaptureApp:
    """
    Main application class that coordinates all components.

    Every component is constructed here and handed its collaborators
    explicitly; there is one instance of each per process.

    Attributes:
        config: Application configuration
        status_log: Bounded log of recent events
        registry: Capture job registry
        store: Persistence store for recordings
        recorder: Recorder running capture sessions
        engine: Trigger engine matching jobs against the clock
        scheduler: Scheduler driving the engine and retention sweep
        bot: Telegram bot instance
        health: Health server
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize the application components."""
        self.config = config or Config()
        self.clock = SystemClock(self.config.timezone)
        self.status_log = StatusLog(self.config.status_log_size)
        self._status_handler = attach_status_log(self.status_log)

        self.registry = JobRegistry(
            self.config.jobs_path,
            default_duration=self.config.default_duration,
            system_jobs=SYSTEM_JOBS if self.config.system_jobs else (),
        )
        self.store = build_store(self.config)
        self.recorder = Recorder(self.config, self.store, self.clock)
        self.engine = TriggerEngine(
            self.registry,
            self.clock,
            on_start=self.recorder.start,
            on_stop=self.recorder.stop,
        )
        self.scheduler = RecordingScheduler(self.config, self.engine, retention=self.run_retention)
        self.bot = RadioBot(self.config, self.registry, self.recorder, self.scheduler, self.status_log)
        self.health = HealthServer(
            create_app(
                self.status_log,
                sessions=self.recorder.get_status,
                running=lambda: self.scheduler.running,
            ),
            host=self.config.health_host,
            port=self.config.health_port,
        )
        self._shutdown_event: Optional[asyncio.Event] = None
        self._is_shutting_down: bool = False

    async def run_retention(self) -> int:
        return await run_retention_sweep(self.store, self.clock.now(), self.config.retention_days)

    def _setup_callbacks(self) -> None:
        """Set up notification callbacks between components."""
        self.recorder.set_callbacks(
            on_start=self.bot.notify,
            on_complete=self.bot.notify,
            on_error=self.bot.notify,
        )

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.create_task(self._handle_signal(s)),
            )

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")

    async def _handle_signal(self, sig: signal.Signals) -> None:
        """
        Handle shutdown signals gracefully.

        Args:
            sig: The signal received
        """
        if self._is_shutting_down:
            logger.warning("Shutdown already in progress, forcing exit...")
            sys.exit(1)

        self._is_shutting_down = True
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")

        if self._shutdown_event:
            self._shutdown_event.set()

    async def start(self) -> None:
        """
        Start all application components and wait for a shutdown signal.
        """
        logger.info("=" * 50)
        logger.info("Radio Capture starting...")
        logger.info("=" * 50)

        logger.info(f"Timezone: {self.config.timezone}")
        logger.info(f"Storage: {self.config.storage_backend}")
        logger.info(f"Jobs: {len(self.registry.list())}")

        self._setup_callbacks()
        self._shutdown_event = asyncio.Event()
        self._setup_signal_handlers()

        try:
            await self.health.start()
            await self.bot.start()
            await self.scheduler.start()

            logger.info("All components started successfully")
            logger.info("=" * 50)

            next_runs = self.scheduler.get_next_runs(3)
            if next_runs:
                logger.info("Upcoming recordings:")
                for run in next_runs:
                    logger.info(f"  - {run['next_run'].strftime('%a %b %d %H:%M')} {run['name']}")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Stop all application components gracefully.

        Live recordings are ended early and still handed off.
        """
        logger.info("Shutting down...")

        await self.scheduler.stop()

        if self.recorder.is_recording:
            logger.warning("Recording in progress, finishing it early...")
            await self.bot.notify("⚠️ Shutdown requested, saving recordings in progress...")
        await self.recorder.close()

        await self.bot.stop()
        await self.health.stop()

        logging.getLogger("radiocapture").removeHandler(self._status_handler)
        logger.info("Shutdown complete")


async def main() -> None:
    """
    Main entry point for the application.

    This function sets up logging and runs the application.
    """
    try:
        config = Config()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    setup_logging(level=getattr(logging, config.log_level, logging.INFO))

    app = RadioCaptureApp(config)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Application error: {e}")
        sys.exit(1)


def run() -> None:
    """
    Synchronous entry point for the application.

    This function runs the async main() in an event loop.
    """
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
