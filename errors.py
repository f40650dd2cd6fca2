"""
Error taxonomy, diagnostics formatting and logging setup.
"""

import logging
from typing import Iterable, List, Optional


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    return logging.getLogger(__name__)


class QueueError(Exception):
    """Base exception for all download queue errors."""


class InvalidInput(QueueError):
    """Malformed or unsupported submission; nothing was persisted."""


class NotFound(QueueError):
    """Operation referenced a job id that does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Download job not found: {job_id}")
        self.job_id = job_id


class InvalidState(QueueError):
    """Operation conflicts with the current status of one or more jobs."""

    def __init__(self, message: str, conflicting_ids: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.conflicting_ids: List[str] = list(conflicting_ids or [])


class ExecutionFailure(QueueError):
    """The fetch itself failed; recorded on the job, never raised to callers."""


class SystemFailure(QueueError):
    """Store or broadcaster unavailable. Durable state is left unchanged."""


class DownloadCancelled(QueueError):
    """Raised by a fetch that observed its stop flag at a checkpoint."""


class ErrorManager:
    """Convert internal exceptions to compact diagnostics and HTTP statuses."""

    def describe(self, error: BaseException) -> str:
        msg = str(error).lower()

        if "drm protected" in msg:
            return "Video is DRM protected and cannot be downloaded."

        if "unsupported url" in msg:
            return "URL is not supported by the downloader."

        if "private video" in msg or "video unavailable" in msg or "video not available" in msg:
            return "Video is unavailable (removed, private or region/age restricted)."

        if "sign in to confirm" in msg:
            return "Source requires sign-in; configure YTDLP_COOKIES_FILE."

        if "timeout" in msg or "timed out" in msg:
            return "Download timed out."

        if "no space left" in msg or "disk" in msg:
            return "Not enough disk space."

        if "ffmpeg" in msg and "not found" in msg:
            return "ffmpeg is required for conversion but was not found."

        details = str(error).strip() or type(error).__name__
        return details[:500]

    def http_status(self, error: QueueError) -> int:
        if isinstance(error, InvalidInput):
            return 400
        if isinstance(error, NotFound):
            return 404
        if isinstance(error, InvalidState):
            return 409
        return 500


error_manager = ErrorManager()
