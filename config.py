"""
Configuration for the download queue service.
"""

import os
import re
from typing import Any, Dict, List


def _int_env(name: str, default: int) -> int:
    """Read integer env var, falling back to default on bad values."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = _int_env("PORT", 3000)
API_PREFIX: str = "/api"

DATABASE_PATH: str = os.getenv("DATABASE_PATH", os.path.join("data", "tubequeue.db"))
MEDIA_STORAGE_PATH: str = os.getenv("MEDIA_STORAGE_PATH", "./storage")

MAX_CONCURRENT_DOWNLOADS: int = _int_env("MAX_CONCURRENT_DOWNLOADS", 1)
QUEUE_POLL_INTERVAL_SECONDS: int = _int_env("QUEUE_POLL_INTERVAL_SECONDS", 10)
FETCH_WATCHDOG_SECONDS: int = _int_env("FETCH_WATCHDOG_SECONDS", 0)  # 0 disables the watchdog
STOP_ACK_TIMEOUT_SECONDS: int = _int_env("STOP_ACK_TIMEOUT_SECONDS", 15)
DOWNLOAD_TIMEOUT_SECONDS: int = _int_env("DOWNLOAD_TIMEOUT_SECONDS", 600)

RECOVERY_POLICY: str = os.getenv("RECOVERY_POLICY", "requeue").strip().lower()
MAX_RECOVERY_ATTEMPTS: int = _int_env("MAX_RECOVERY_ATTEMPTS", 3)

RECENT_FAILED_WINDOW_SECONDS: int = 60 * 60
RECENT_FAILED_LIMIT: int = 20
RECENT_COMPLETED_WINDOW_SECONDS: int = 10 * 60
RECENT_COMPLETED_LIMIT: int = 10

COMPLETED_RETENTION_DAYS: int = _int_env("COMPLETED_RETENTION_DAYS", 7)
FAILED_RETENTION_DAYS: int = _int_env("FAILED_RETENTION_DAYS", 30)
CLEANUP_INTERVAL_SECONDS: int = _int_env("CLEANUP_INTERVAL_SECONDS", 24 * 60 * 60)

SUBSCRIBER_BUFFER_SIZE: int = 100
GLOBAL_CHANNEL: str = "queue"

DEFAULT_VIDEO_HEIGHT: int = 720
DEFAULT_AUDIO_QUALITY: str = "0"
AUDIO_FORMATS: tuple[str, ...] = ("mp3", "m4a", "opus", "wav")

YTDLP_COOKIES_FILE: str = os.getenv("YTDLP_COOKIES_FILE", "").strip()
YTDLP_COOKIES_FROM_BROWSER: str = os.getenv("YTDLP_COOKIES_FROM_BROWSER", "").strip()

YTDL_BASE_OPTS: Dict[str, Any] = {
    "quiet": True,
    "no_warnings": True,
    "noprogress": True,
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/121.0.0.0 Safari/537.36"
    ),
}

DIRECT_FILE_RE: re.Pattern[str] = re.compile(
    r"(?:https?://)?[^\s]+\.(?:mp4|mkv|webm|mov|mp3|m4a|wav|aac|ogg)"
    r"(?:\?[^#\s]*)?(?:#[^\s]*)?$",
    re.IGNORECASE,
)

PLAYLIST_URL_RE: re.Pattern[str] = re.compile(r"(?:playlist\?list=|[?&]list=)", re.IGNORECASE)

VIDEO_EXTENSIONS: tuple[str, ...] = (".mp4", ".mkv", ".webm", ".mov")
AUDIO_EXTENSIONS: tuple[str, ...] = (".mp3", ".m4a", ".wav", ".aac", ".ogg", ".opus")

SUPPORTED_DOMAINS: List[str] = [
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
]
