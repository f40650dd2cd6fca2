"""
Data models for the download queue.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class JobStatus(Enum):
    """Lifecycle states for a download job."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.PAUSED, JobStatus.CANCELED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.PENDING, JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True when the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


class FileFormat(Enum):
    """Supported output modes."""

    VIDEO = "video"
    AUDIO = "audio"


class Platform(Enum):
    """Supported media source platforms."""

    YOUTUBE = "YouTube"
    DIRECT = "Direct Link"
    UNKNOWN = "Unknown"


class JobType(Enum):
    """Closed set of job kinds. Values match the persisted wire format."""

    MP3 = "mp3"
    VIDEO = "video720p"
    PLAYLIST_MP3 = "playlist_mp3"
    PLAYLIST_VIDEO = "playlist_video"

    @property
    def is_playlist(self) -> bool:
        return self in (JobType.PLAYLIST_MP3, JobType.PLAYLIST_VIDEO)

    @property
    def file_format(self) -> FileFormat:
        if self in (JobType.VIDEO, JobType.PLAYLIST_VIDEO):
            return FileFormat.VIDEO
        return FileFormat.AUDIO

    @property
    def item_type(self) -> "JobType":
        """Single-item kind used for each entry of a playlist job."""
        if self is JobType.PLAYLIST_VIDEO:
            return JobType.VIDEO
        if self is JobType.PLAYLIST_MP3:
            return JobType.MP3
        return self

    @classmethod
    def classify(cls, requested: Any, is_playlist_url: bool) -> "JobType":
        """
        Map a submitted type string plus URL shape onto a job kind.

        Missing type defaults to mp3. Unknown strings are rejected by the caller.
        """
        if requested is None or requested == "":
            requested = "mp3"
        if isinstance(requested, JobType):
            requested = requested.value
        if not isinstance(requested, str):
            raise ValueError(f"Unsupported download type: {requested!r}")

        normalized = requested.strip().lower()
        if normalized not in KNOWN_TYPE_NAMES:
            raise ValueError(f"Unsupported download type: {requested!r}")

        wants_video = "video" in normalized
        if "playlist" in normalized or is_playlist_url:
            return cls.PLAYLIST_VIDEO if wants_video else cls.PLAYLIST_MP3
        return cls.VIDEO if wants_video else cls.MP3


KNOWN_TYPE_NAMES: FrozenSet[str] = frozenset(
    {
        "mp3",
        "audio",
        "video",
        "video720p",
        "playlist",
        "playlist_mp3",
        "playlist_audio",
        "playlist_video",
    }
)


def iso_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Job:
    """Durable record for one submission."""

    id: str
    url: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    file_path: Optional[str] = None
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "type": self.type.value,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "options": dict(self.options),
            "title": self.title,
            "filePath": self.file_path,
            "attempts": self.attempts,
            "createdAt": iso_timestamp(self.created_at),
            "updatedAt": iso_timestamp(self.updated_at),
        }


@dataclass
class PlaylistItem:
    """Ordered child descriptor of a playlist job."""

    job_id: str
    position: int
    url: str
    title: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    file_path: Optional[str] = None
    error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "url": self.url,
            "title": self.title,
            "status": self.status.value,
            "progress": self.progress,
            "filePath": self.file_path,
            "error": self.error,
            "updatedAt": iso_timestamp(self.updated_at),
        }


@dataclass
class PlaylistEntry:
    url: str
    title: str
    duration: Optional[float] = None
    uploader: Optional[str] = None


@dataclass
class PlaylistInfo:
    """Result of enumerating a playlist URL."""

    id: str
    title: str
    entries: List[PlaylistEntry] = field(default_factory=list)
    uploader: Optional[str] = None


@dataclass
class FetchRequest:
    """Input for one executor invocation."""

    url: str
    job_type: JobType
    output_dir: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DownloadResult:
    """File produced by a successful fetch."""

    file_path: str
    title: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    uploader: Optional[str] = None
    thumbnail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filePath": self.file_path,
            "title": self.title,
            "fileSize": self.file_size,
            "duration": self.duration,
            "uploader": self.uploader,
            "thumbnail": self.thumbnail,
        }
