"""
Fetch executor: performs the actual transfer for one job with yt-dlp.

The executor never touches the job store. It reports percentages through the
``report`` callable (safe to call from any thread) and observes ``cancel_event``
at every progress checkpoint.
"""

import asyncio
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from config import (
    AUDIO_EXTENSIONS,
    AUDIO_FORMATS,
    DEFAULT_AUDIO_QUALITY,
    DEFAULT_VIDEO_HEIGHT,
    DOWNLOAD_TIMEOUT_SECONDS,
    VIDEO_EXTENSIONS,
    YTDL_BASE_OPTS,
    YTDLP_COOKIES_FILE,
    YTDLP_COOKIES_FROM_BROWSER,
)
from errors import DownloadCancelled, ExecutionFailure
from models import (
    DownloadResult,
    FetchRequest,
    FileFormat,
    PlaylistEntry,
    PlaylistInfo,
    Platform,
)
from utils import (
    detect_platform,
    download_file_async,
    ensure_dir,
    remove_partial_files,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[float], None]


class YtDlpExecutor:
    """yt-dlp backed implementation of the fetch contract."""

    def __init__(self, timeout: int = DOWNLOAD_TIMEOUT_SECONDS):
        self.timeout = timeout

    async def download(
        self,
        request: FetchRequest,
        report: ProgressReporter,
        cancel_event: threading.Event,
    ) -> DownloadResult:
        ensure_dir(request.output_dir)
        if cancel_event.is_set():
            raise DownloadCancelled(f"Download stopped before start: {request.url}")

        if detect_platform(request.url) == Platform.DIRECT:
            return await self._download_direct(request, report, cancel_event)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._download_with_ytdlp,
            request,
            report,
            cancel_event,
        )

    async def list_playlist(self, url: str) -> PlaylistInfo:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._extract_playlist, url)

    async def _download_direct(
        self,
        request: FetchRequest,
        report: ProgressReporter,
        cancel_event: threading.Event,
    ) -> DownloadResult:
        parsed = urlparse(request.url)
        filename = sanitize_filename(os.path.basename(parsed.path) or f"download_{int(time.time())}")
        if "." not in filename:
            filename += ".mp3" if request.job_type.file_format == FileFormat.AUDIO else ".mp4"

        filepath = os.path.join(request.output_dir, filename)
        try:
            async with aiohttp.ClientSession() as session:
                await download_file_async(
                    url=request.url,
                    filepath=filepath,
                    session=session,
                    timeout=self.timeout,
                    on_progress=report,
                    should_stop=cancel_event.is_set,
                )
        except BaseException:
            remove_partial_files(filepath)
            raise

        report(100)
        return DownloadResult(
            file_path=filepath,
            title=Path(filename).stem,
            file_size=os.path.getsize(filepath),
        )

    def _build_ytdlp_options(
        self,
        request: FetchRequest,
        progress_hook: Callable[[Dict[str, Any]], None],
    ) -> Dict[str, Any]:
        output_template = os.path.join(request.output_dir, "%(title).80s_%(id)s.%(ext)s")
        ydl_opts: Dict[str, Any] = {
            **YTDL_BASE_OPTS,
            "outtmpl": output_template,
            "noplaylist": True,
            "socket_timeout": self.timeout,
            "retries": 3,
            "fragment_retries": 3,
            "progress_hooks": [progress_hook],
        }

        options = request.options or {}
        if request.job_type.file_format == FileFormat.AUDIO:
            audio_format = str(options.get("audioFormat") or "mp3").lower()
            if audio_format not in AUDIO_FORMATS:
                audio_format = "mp3"
            ydl_opts.update(
                {
                    "format": "bestaudio/best",
                    "postprocessors": [
                        {
                            "key": "FFmpegExtractAudio",
                            "preferredcodec": audio_format,
                            "preferredquality": str(options.get("quality") or DEFAULT_AUDIO_QUALITY),
                        }
                    ],
                }
            )
        else:
            height = _parse_height(options.get("quality"))
            ydl_opts.update(
                {
                    "format": f"bestvideo[height<={height}]+bestaudio/best[height<={height}]/best",
                    "merge_output_format": "mp4",
                }
            )

        cookie_file = (YTDLP_COOKIES_FILE or "").strip()
        if cookie_file:
            if os.path.exists(cookie_file):
                ydl_opts["cookiefile"] = cookie_file
            else:
                logger.warning("YTDLP_COOKIES_FILE is set but file does not exist: %s", cookie_file)

        cookies_from_browser = self._parse_cookies_from_browser(YTDLP_COOKIES_FROM_BROWSER)
        if cookies_from_browser:
            ydl_opts["cookiesfrombrowser"] = cookies_from_browser

        return ydl_opts

    @staticmethod
    def _parse_cookies_from_browser(raw_value: str) -> Optional[Tuple[str, ...]]:
        """
        Parse env string into yt-dlp `cookiesfrombrowser` tuple.

        Examples:
        - chrome
        - firefox:default-release
        - edge::Profile 1
        """
        if not raw_value:
            return None

        parts = [part.strip() for part in raw_value.split(":")]
        if not parts or not parts[0]:
            return None

        values: List[str] = [parts[0]]
        for part in parts[1:4]:
            if part:
                values.append(part)
        return tuple(values)

    def _download_with_ytdlp(
        self,
        request: FetchRequest,
        report: ProgressReporter,
        cancel_event: threading.Event,
    ) -> DownloadResult:
        """Blocking yt-dlp execution function used in thread pool."""
        from yt_dlp import YoutubeDL
        from yt_dlp.utils import DownloadCancelled as YtDlpCancelled
        from yt_dlp.utils import DownloadError

        touched: List[str] = []

        def progress_hook(status: Dict[str, Any]) -> None:
            if cancel_event.is_set():
                raise YtDlpCancelled("stop requested")
            filename = status.get("tmpfilename") or status.get("filename")
            if filename and filename not in touched:
                touched.append(filename)
            if status.get("status") == "downloading":
                total = status.get("total_bytes") or status.get("total_bytes_estimate")
                downloaded = status.get("downloaded_bytes") or 0
                if total:
                    report(min(99.0, downloaded * 100.0 / total))
            elif status.get("status") == "finished":
                report(99)

        options = self._build_ytdlp_options(request, progress_hook)
        try:
            with YoutubeDL(options) as ydl:
                info = ydl.extract_info(request.url, download=True) or {}
                allowed_ext = AUDIO_EXTENSIONS if request.job_type.file_format == FileFormat.AUDIO else VIDEO_EXTENSIONS
                filepath = self._resolve_output_path(ydl, info, allowed_ext)
        except YtDlpCancelled as error:
            remove_partial_files(*touched)
            raise DownloadCancelled(f"Download stopped: {request.url}") from error
        except DownloadError as error:
            if cancel_event.is_set():
                remove_partial_files(*touched)
                raise DownloadCancelled(f"Download stopped: {request.url}") from error
            raise ExecutionFailure(str(error)) from error

        if cancel_event.is_set():
            remove_partial_files(*touched)
            raise DownloadCancelled(f"Download stopped: {request.url}")

        if not filepath:
            raise ExecutionFailure("Downloaded file not found after transfer")

        report(100)
        return DownloadResult(
            file_path=filepath,
            title=info.get("title"),
            file_size=os.path.getsize(filepath),
            duration=info.get("duration"),
            uploader=info.get("uploader"),
            thumbnail=info.get("thumbnail"),
        )

    def _extract_playlist(self, url: str) -> PlaylistInfo:
        from yt_dlp import YoutubeDL

        options = {**YTDL_BASE_OPTS, "extract_flat": "in_playlist", "skip_download": True}
        with YoutubeDL(options) as ydl:
            info = ydl.extract_info(url, download=False) or {}

        entries: List[PlaylistEntry] = []
        for entry in info.get("entries") or []:
            if not entry:
                continue
            entry_url = entry.get("url") or entry.get("webpage_url")
            if not entry_url and entry.get("id"):
                entry_url = f"https://www.youtube.com/watch?v={entry['id']}"
            if not entry_url:
                continue
            entries.append(
                PlaylistEntry(
                    url=entry_url,
                    title=entry.get("title") or f"Playlist item #{len(entries) + 1}",
                    duration=entry.get("duration"),
                    uploader=entry.get("uploader"),
                )
            )

        return PlaylistInfo(
            id=info.get("id") or "unknown",
            title=info.get("title") or "Untitled playlist",
            uploader=info.get("uploader"),
            entries=entries,
        )

    @staticmethod
    def _resolve_output_path(ydl: Any, info: Dict[str, Any], allowed_ext: Tuple[str, ...]) -> Optional[str]:
        """
        Return the file yt-dlp produced for this extraction.

        Post-processors rewrite ``filepath`` in ``requested_downloads``, so that
        is checked first; the rendered output template is the last resort.
        """
        candidates: List[str] = [
            entry.get("filepath")
            for entry in reversed(info.get("requested_downloads") or [])
            if entry.get("filepath")
        ]
        if info.get("filepath"):
            candidates.append(info["filepath"])
        if info.get("id"):
            stem, _ = os.path.splitext(ydl.prepare_filename(info))
            candidates.extend(stem + ext for ext in allowed_ext)

        for candidate in candidates:
            if os.path.isfile(candidate) and os.path.splitext(candidate)[1].lower() in allowed_ext:
                return candidate
        return None


def _parse_height(value: Any) -> int:
    try:
        height = int(str(value).rstrip("pP"))
    except (TypeError, ValueError):
        return DEFAULT_VIDEO_HEIGHT
    return height if height > 0 else DEFAULT_VIDEO_HEIGHT
