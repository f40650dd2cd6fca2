"""
Playlist expansion: one playlist URL becomes one parent job plus ordered items.
"""

import logging
from typing import List, Sequence

from errors import InvalidInput
from models import JobStatus, PlaylistInfo, PlaylistItem

logger = logging.getLogger(__name__)


def build_playlist_items(job_id: str, info: PlaylistInfo) -> List[PlaylistItem]:
    """Item descriptors in playlist order, positions starting at 0."""
    return [
        PlaylistItem(
            job_id=job_id,
            position=index,
            url=entry.url,
            title=entry.title or f"Playlist item #{index + 1}",
        )
        for index, entry in enumerate(info.entries)
    ]


def aggregate_progress(items: Sequence[PlaylistItem]) -> int:
    """Parent progress as finished items over total items."""
    if not items:
        return 0
    finished = sum(1 for item in items if item.status.is_terminal)
    return int(finished * 100 / len(items))


def summarize_items(items: Sequence[PlaylistItem]) -> dict:
    completed = sum(1 for item in items if item.status == JobStatus.COMPLETED)
    failed = sum(1 for item in items if item.status == JobStatus.FAILED)
    return {
        "totalItems": len(items),
        "completedItems": completed,
        "failedItems": failed,
        "files": [item.file_path for item in items if item.file_path],
    }


class PlaylistExpander:
    """Resolves playlist URLs through the fetch executor's enumeration call."""

    def __init__(self, executor):
        self.executor = executor

    async def expand(self, url: str) -> PlaylistInfo:
        try:
            info = await self.executor.list_playlist(url)
        except Exception as error:
            logger.warning("Playlist enumeration failed for %s: %s", url, error)
            raise InvalidInput(f"Playlist could not be resolved: {error}") from error

        if not info.entries:
            raise InvalidInput("Playlist is empty or its items could not be listed")

        logger.info("Playlist %r resolved to %d item(s)", info.title, len(info.entries))
        return info
