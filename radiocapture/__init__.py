"""
Radio Capture - scheduled recording of internet radio streams.

This package provides automated capture of radio broadcasts with:
- Minute-accurate job triggering driven by APScheduler
- Direct audio streams and HLS playlists, detected automatically
- Local or rclone-backed storage with a daily retention sweep
- Telegram bot for control and notifications
- Health endpoint exposing recent status events
"""

__version__ = "1.0.0"
