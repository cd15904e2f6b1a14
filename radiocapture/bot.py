"""
Telegram bot module for Radio Capture.

This module provides a Telegram bot interface for managing capture jobs
and monitoring the recorder. It supports info commands, job commands and
configuration commands, and sends notifications for recording events.
"""

import logging
from typing import Optional

from telegram import Update, BotCommand
from telegram.ext import Application, CommandHandler, ContextTypes
from telegram.helpers import escape_markdown

from .config import Config
from .errors import JobLockedError, JobNotFoundError, JobValidationError
from .jobs import DAY_NAMES, JobRegistry
from .recorder import Recorder
from .scheduler import RecordingScheduler
from .status import StatusLog
from .utils import format_bytes, format_duration

logger = logging.getLogger(__name__)

ON_VALUES = ("on", "true", "1", "yes")
OFF_VALUES = ("off", "false", "0", "no")


def parse_duration(duration_str: str) -> int:
    """
    Parse a duration string into seconds.

    Supports formats like: 30, 30s, 5m, 2h, 1h30m

    Args:
        duration_str: Duration string to parse

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the format is invalid
    """
    duration_str = duration_str.lower().strip()

    # Pure number = seconds
    if duration_str.isdigit():
        total_seconds = int(duration_str)
        if total_seconds == 0:
            raise ValueError(f"Invalid duration format: {duration_str}")
        return total_seconds

    total_seconds = 0
    current_num = ""

    for char in duration_str:
        if char.isdigit():
            current_num += char
        elif char == "h" and current_num:
            total_seconds += int(current_num) * 3600
            current_num = ""
        elif char == "m" and current_num:
            total_seconds += int(current_num) * 60
            current_num = ""
        elif char == "s" and current_num:
            total_seconds += int(current_num)
            current_num = ""
        else:
            raise ValueError(f"Invalid duration format: {duration_str}")

    # Handle trailing number (assumed seconds)
    if current_num:
        total_seconds += int(current_num)

    if total_seconds == 0:
        raise ValueError(f"Invalid duration format: {duration_str}")

    return total_seconds


def parse_days_arg(days_str: str) -> list[int]:
    """
    Parse a days argument into weekday indices (0 = Sunday).

    Accepts "daily", "weekdays", "weekends", day names ("mon,wed,fri")
    or indices ("0,6").

    Raises:
        ValueError: If a day is not recognized
    """
    value = days_str.lower().strip()
    if value in ("daily", "all", "*"):
        return list(range(7))
    if value == "weekdays":
        return [1, 2, 3, 4, 5]
    if value == "weekends":
        return [0, 6]

    days = []
    for part in value.split(","):
        part = part.strip()
        if part.isdigit() and 0 <= int(part) <= 6:
            days.append(int(part))
        elif part[:3] in DAY_NAMES:
            days.append(DAY_NAMES.index(part[:3]))
        else:
            raise ValueError(f"Unknown day: {part}")
    return sorted(set(days))


class RadioBot:
    """
    Telegram bot for controlling Radio Capture.

    Attributes:
        config: Configuration object
        registry: Job registry edited by job commands
        recorder: Recorder used for status and manual recordings
        scheduler: Scheduler used for upcoming runs
        status_log: Status log shown by /logs
        app: Telegram Application instance
    """

    def __init__(
        self,
        config: Config,
        registry: JobRegistry,
        recorder: Recorder,
        scheduler: RecordingScheduler,
        status_log: StatusLog,
    ):
        """Initialize the bot with its collaborators."""
        self.config = config
        self.registry = registry
        self.recorder = recorder
        self.scheduler = scheduler
        self.status_log = status_log
        self.app: Optional[Application] = None
        self._authorized_chat_id: str = config.telegram_chat_id

    def _is_authorized(self, update: Update) -> bool:
        """
        Check if the message is from an authorized chat.

        Args:
            update: Telegram update object

        Returns:
            True if authorized, False otherwise
        """
        if not self._authorized_chat_id:
            return True  # No restriction if chat ID not configured

        chat_id = str(update.effective_chat.id)
        return chat_id == self._authorized_chat_id

    async def _check_auth(self, update: Update) -> bool:
        """Check authorization and send error if not authorized."""
        if not self._is_authorized(update):
            await update.message.reply_text("⛔ Unauthorized")
            return False
        return True

    # ========== Info Commands ==========

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start command - show welcome message."""
        if not await self._check_auth(update):
            return

        await update.message.reply_text(
            "🎙️ *Radio Capture Bot*\n\nUse /help to see available commands.",
            parse_mode="Markdown",
        )

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /help command - show available commands."""
        if not await self._check_auth(update):
            return

        help_text = """📻 *Radio Capture Commands*

*Info Commands:*
/status - Show recorder status
/next - Show upcoming recordings
/logs - Show recent events

*Job Commands:*
/jobs - List all jobs
/add <HH:MM> <days> <duration> <url> <name...> - Add job
  (station=<id> before the name sets the station, otherwise the name is used)
/remove <id> - Remove job
/toggle <id> - Enable/disable job
/record <id> - Record a job now

*Config Commands:*
/cleanup on|off - Toggle local cleanup after upload
/notify on|off - Toggle notifications
/config - Show current configuration

*Examples:*
`/add 13:00 daily 30m https://example.com/stream.mp3 Morning News`
`/add 20:00 mon,wed 1h https://example.com/live.m3u8 station=jrtv Evening Show`"""

        await update.message.reply_text(help_text, parse_mode="Markdown")

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /status command - show recorder status."""
        if not await self._check_auth(update):
            return

        sessions = self.recorder.get_status()
        sched_status = self.scheduler.get_status()

        status_parts = [
            "📊 *Recorder Status*\n",
            f"Scheduler: {'✅ Running' if sched_status['running'] else '❌ Stopped'}",
            f"Jobs: {sched_status['enabled_count']} enabled / {sched_status['job_count']} total",
            f"Recording: {'🔴 ' + str(len(sessions)) + ' active' if sessions else '⚪ Idle'}",
        ]

        for job_id, info in sessions.items():
            status_parts.append(
                f"  • {escape_markdown(info['name'])} ({info['mode']}): "
                f"{format_duration(info['elapsed'])} / {format_duration(info['duration'])}, "
                f"{format_bytes(info['bytes'])}"
            )

        if sched_status["next_runs"]:
            next_run = sched_status["next_runs"][0]
            next_time = next_run["next_run"].strftime("%a %H:%M")
            status_parts.append("\n⏰ *Next Recording*")
            status_parts.append(f"{next_time} {escape_markdown(next_run['name'])}")

        await update.message.reply_text("\n".join(status_parts), parse_mode="Markdown")

    async def cmd_next(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /next command - show upcoming recordings."""
        if not await self._check_auth(update):
            return

        await update.message.reply_text(self.scheduler.format_next_runs())

    async def cmd_logs(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /logs command - show the last status events."""
        if not await self._check_auth(update):
            return

        events = self.status_log.entries(limit=10)
        if not events:
            await update.message.reply_text("No events yet.")
            return

        lines = [
            f"{event.timestamp.astimezone(self.scheduler.engine.clock.tz):%H:%M:%S} "
            f"{event.level[0]} {event.message}"
            for event in events
        ]
        await update.message.reply_text("\n".join(lines))

    # ========== Job Commands ==========

    async def cmd_jobs(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """List all configured jobs."""
        if not await self._check_auth(update):
            return

        jobs = self.registry.list()
        if not jobs:
            await update.message.reply_text("No jobs configured.")
            return

        lines = ["📋 *Capture Jobs*\n"]
        for job in jobs:
            status = "✅" if job.enabled else "❌"
            lock = " 🔒" if job.locked else ""
            when = job.cron or f"{job.describe_days()} {job.time}"
            lines.append(
                f"{status} `{job.id}`{lock}: {escape_markdown(job.name)}, {escape_markdown(when)} ({format_duration(job.duration)})"
            )

        await update.message.reply_text("\n".join(lines), parse_mode="Markdown")

    async def cmd_add(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Add a job: /add <HH:MM> <days> <duration> <url> [station=<id>] <name...>"""
        if not await self._check_auth(update):
            return

        args = context.args or []
        if len(args) < 5:
            await update.message.reply_text(
                "Usage: /add <HH:MM> <days> <duration> <url> [station=<id>] <name...>\n"
                "Example: /add 13:00 daily 30m https://example.com/stream.mp3 Morning News"
            )
            return

        time_str, days_str, duration_str, url = args[:4]
        station_id = None
        name_parts = []
        for arg in args[4:]:
            if arg.startswith("station="):
                station_id = arg[len("station="):]
            else:
                name_parts.append(arg)
        name = " ".join(name_parts)
        if station_id is None:
            station_id = name

        try:
            days = parse_days_arg(days_str)
            duration = parse_duration(duration_str)
        except ValueError as e:
            await update.message.reply_text(f"❌ {e}")
            return

        try:
            job = self.registry.add({
                "name": name,
                "station_id": station_id,
                "url": url,
                "time": time_str,
                "days": days,
                "duration": duration,
            })
        except JobValidationError as e:
            await update.message.reply_text(f"❌ Invalid job: {e}")
            return

        await update.message.reply_text(
            f"✅ Job added: `{job.id}`\n"
            f"📅 {job.describe_days()} at {job.time} ({format_duration(job.duration)})",
            parse_mode="Markdown",
        )

    async def cmd_remove(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Remove a job by ID."""
        if not await self._check_auth(update):
            return

        args = context.args or []
        if not args:
            await update.message.reply_text("Usage: /remove <id>")
            return

        try:
            self.registry.remove(args[0])
        except JobNotFoundError:
            await update.message.reply_text(f"❌ Job `{args[0]}` not found", parse_mode="Markdown")
        except JobLockedError:
            await update.message.reply_text(f"🔒 Job `{args[0]}` is a system job", parse_mode="Markdown")
        else:
            await update.message.reply_text(f"✅ Job `{args[0]}` removed", parse_mode="Markdown")

    async def cmd_toggle(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Enable or disable a job."""
        if not await self._check_auth(update):
            return

        args = context.args or []
        if not args:
            await update.message.reply_text("Usage: /toggle <id>")
            return

        try:
            job = self.registry.toggle(args[0])
        except JobNotFoundError:
            await update.message.reply_text(f"❌ Job `{args[0]}` not found", parse_mode="Markdown")
            return

        state = "✅ enabled" if job.enabled else "❌ disabled"
        await update.message.reply_text(f"Job `{job.id}` {state}", parse_mode="Markdown")

    async def cmd_record(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Record a job right now."""
        if not await self._check_auth(update):
            return

        args = context.args or []
        if not args:
            await update.message.reply_text("Usage: /record <id>")
            return

        try:
            job = self.registry.get(args[0])
        except JobNotFoundError:
            await update.message.reply_text(f"❌ Job `{args[0]}` not found", parse_mode="Markdown")
            return

        if self.recorder.record_now(job) is None:
            await update.message.reply_text("⚠️ This job is already recording")
            return

        await update.message.reply_text(
            f"🎙️ Recording {job.name} for {format_duration(job.duration)}..."
        )

    # ========== Config Commands ==========

    async def _toggle_setting(self, update: Update, args: list[str], name: str, current: bool, setter) -> None:
        if not args:
            status = "on" if current else "off"
            await update.message.reply_text(f"{name} is currently: {status}\nUse on|off")
            return

        value = args[0].lower()
        if value in ON_VALUES:
            setter(True)
            await update.message.reply_text(f"✅ {name} enabled")
        elif value in OFF_VALUES:
            setter(False)
            await update.message.reply_text(f"❌ {name} disabled")
        else:
            await update.message.reply_text("Use on|off")

    async def cmd_cleanup(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /cleanup command - toggle local cleanup after upload."""
        if not await self._check_auth(update):
            return

        await self._toggle_setting(
            update,
            context.args or [],
            "Cleanup",
            self.config.dynamic.cleanup_enabled,
            self.config.set_cleanup_enabled,
        )

    async def cmd_notify(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /notify command - toggle notifications."""
        if not await self._check_auth(update):
            return

        await self._toggle_setting(
            update,
            context.args or [],
            "Notifications",
            self.config.dynamic.notifications_enabled,
            self.config.set_notifications_enabled,
        )

    async def cmd_config(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /config command - show current configuration."""
        if not await self._check_auth(update):
            return

        await update.message.reply_text(self.config.get_config_summary())

    # ========== Notification Methods ==========

    async def notify(self, message: str) -> None:
        """
        Send a notification message to the configured chat.

        Args:
            message: Message to send
        """
        if not self.app or not self._authorized_chat_id:
            logger.debug("Cannot send notification: bot not configured")
            return

        if not self.config.dynamic.notifications_enabled:
            return

        try:
            await self.app.bot.send_message(
                chat_id=self._authorized_chat_id,
                text=message,
                parse_mode="Markdown",
            )
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    # ========== Bot Lifecycle ==========

    async def start(self) -> None:
        """
        Start the Telegram bot.

        This initializes the bot, registers command handlers,
        and starts polling for updates.
        """
        if not self.config.telegram_bot_token:
            logger.warning("Telegram bot token not configured, bot disabled")
            return

        self.app = Application.builder().token(self.config.telegram_bot_token).build()

        handlers = [
            CommandHandler("start", self.cmd_start),
            CommandHandler("help", self.cmd_help),
            CommandHandler("status", self.cmd_status),
            CommandHandler("next", self.cmd_next),
            CommandHandler("logs", self.cmd_logs),
            CommandHandler("jobs", self.cmd_jobs),
            CommandHandler("add", self.cmd_add),
            CommandHandler("remove", self.cmd_remove),
            CommandHandler("toggle", self.cmd_toggle),
            CommandHandler("record", self.cmd_record),
            CommandHandler("cleanup", self.cmd_cleanup),
            CommandHandler("notify", self.cmd_notify),
            CommandHandler("config", self.cmd_config),
        ]

        for handler in handlers:
            self.app.add_handler(handler)

        commands = [
            BotCommand("status", "Show recorder status"),
            BotCommand("jobs", "List capture jobs"),
            BotCommand("next", "Show upcoming recordings"),
            BotCommand("logs", "Show recent events"),
            BotCommand("config", "Show configuration"),
            BotCommand("help", "Show all commands"),
        ]

        await self.app.initialize()
        await self.app.bot.set_my_commands(commands)
        await self.app.start()
        await self.app.updater.start_polling(drop_pending_updates=True)

        logger.info("Telegram bot started")

        await self.notify("🟢 Radio Capture started")

    async def stop(self) -> None:
        """
        Stop the Telegram bot gracefully.

        This sends a shutdown notification and stops the bot.
        """
        if self.app:
            await self.notify("🔴 Radio Capture stopping...")

            await self.app.updater.stop()
            await self.app.stop()
            await self.app.shutdown()

            logger.info("Telegram bot stopped")

        self.app = None
