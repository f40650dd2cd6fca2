"""
Utilities for URL parsing, validation and file operations.
"""

import json
import os
import re
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import aiofiles
import aiohttp

from config import DIRECT_FILE_RE, PLAYLIST_URL_RE, SUPPORTED_DOMAINS
from errors import DownloadCancelled
from models import Platform

TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid", "si"}


def strip_tracking_params(url: str) -> str:
    """Remove common tracking query params from URL."""
    try:
        parsed = urlparse(url)
        query_params = parse_qs(parsed.query)
        clean_params = {
            key: value
            for key, value in query_params.items()
            if key.lower() not in TRACKING_PARAMS
        }
        clean_query = urlencode(clean_params, doseq=True)
        return urlunparse(
            (parsed.scheme, parsed.netloc, parsed.path, parsed.params, clean_query, parsed.fragment)
        )
    except ValueError:
        return url


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_supported_url(url: str) -> bool:
    """Check whether URL belongs to a supported platform or is a direct media file."""
    if not url:
        return False
    return detect_platform(url) != Platform.UNKNOWN


def detect_platform(url: str) -> Platform:
    """Detect source platform by URL."""
    if not url:
        return Platform.UNKNOWN

    host = _hostname(url)
    if host in SUPPORTED_DOMAINS or any(host.endswith("." + domain) for domain in SUPPORTED_DOMAINS):
        return Platform.YOUTUBE
    if DIRECT_FILE_RE.search(url):
        return Platform.DIRECT
    return Platform.UNKNOWN


def is_playlist_url(url: str) -> bool:
    """Playlist pages and watch URLs carrying a list parameter."""
    return bool(url) and bool(PLAYLIST_URL_RE.search(url))


def validate_url_input(url: str) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url:
        return False, "URL must not be empty"
    if len(url) > 2000:
        return False, "URL is too long"

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Only HTTP/HTTPS URLs are supported"
        if not parsed.netloc:
            return False, "Malformed URL"
    except ValueError:
        return False, "Malformed URL"

    return True, ""


def parse_legacy_options(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Decode options that older records stored in the error column.

    Returns None when the text is plain diagnostic text, and an empty dict
    when it looks structured but does not parse.
    """
    if not raw or not raw.lstrip().startswith("{"):
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def sanitize_filename(filename: str) -> str:
    """Return filesystem-safe filename."""
    safe_name = re.sub(r'[<>:"/\\|?*]', "_", filename)
    safe_name = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", safe_name)
    safe_name = safe_name.strip().strip(".")
    return (safe_name or "media")[:255]


def ensure_dir(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def remove_partial_files(*paths: Optional[str]) -> None:
    """Delete partially written outputs left behind by an aborted fetch."""
    for path in paths:
        if not path:
            continue
        for candidate in (path, path + ".part", path + ".ytdl"):
            try:
                if os.path.isfile(candidate):
                    os.remove(candidate)
            except OSError:
                pass


async def download_file_async(
    url: str,
    filepath: str,
    session: aiohttp.ClientSession,
    timeout: int = 300,
    on_progress: Optional[Callable[[float], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> None:
    """Download direct file URL to local path, checking for stop between chunks."""
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
        response.raise_for_status()
        total = response.content_length or 0
        received = 0
        async with aiofiles.open(filepath, "wb") as file:
            async for chunk in response.content.iter_chunked(8192):
                if should_stop is not None and should_stop():
                    raise DownloadCancelled(f"Download stopped: {url}")
                await file.write(chunk)
                received += len(chunk)
                if on_progress is not None and total:
                    on_progress(received * 100.0 / total)
