import logging
import os
from dataclasses import dataclass

from yt_dlp import YoutubeDL

from karaoke.errors import DownloadFailed, SourceUnavailable

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
_HTTP_HEADERS = {
    "User-Agent": _USER_AGENT,
    "Referer": "https://www.youtube.com/",
    "Origin": "https://www.youtube.com",
}
AUDIO_CODEC = "mp3"


@dataclass(frozen=True)
class VideoInfo:
    title: str | None
    duration: int


def format_duration(seconds):
    seconds = int(seconds or 0)
    return f"{seconds // 60} minutes {seconds % 60} seconds"


def _base_opts():
    return {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "logger": logging.getLogger("yt_dlp"),
        "http_headers": dict(_HTTP_HEADERS),
    }


class YtDlpFetcher:
    """Metadata probe and audio download through yt-dlp's Python API."""

    def __init__(self, *, retries=3, ydl_factory=YoutubeDL):
        self.retries = retries
        self._ydl_factory = ydl_factory

    def build_probe_opts(self):
        opts = _base_opts()
        opts["skip_download"] = True
        return opts

    def build_download_opts(self, destination, progress_hook=None):
        base, _ext = os.path.splitext(destination)
        opts = _base_opts()
        opts.update(
            {
                # FFmpegExtractAudio rewrites the extension to AUDIO_CODEC.
                "outtmpl": f"{base}.%(ext)s",
                "format": "bestaudio/best",
                "retries": self.retries,
                "fragment_retries": self.retries,
                "nocheckcertificate": True,
                "overwrites": True,
                "postprocessors": [
                    {
                        "key": "FFmpegExtractAudio",
                        "preferredcodec": AUDIO_CODEC,
                        "preferredquality": "0",
                    }
                ],
            }
        )
        if progress_hook is not None:
            opts["progress_hooks"] = [progress_hook]
        return opts

    def probe(self, url):
        try:
            with self._ydl_factory(self.build_probe_opts()) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception as exc:
            logging.warning("yt-dlp metadata probe failed for %s: %s", url, exc)
            raise SourceUnavailable(str(exc)) from exc
        if not info:
            raise SourceUnavailable(f"No metadata returned for {url}")
        duration = info.get("duration")
        try:
            duration = int(round(float(duration)))
        except (TypeError, ValueError):
            raise SourceUnavailable(f"Video duration unavailable for {url}") from None
        return VideoInfo(title=info.get("title"), duration=duration)

    def fetch_audio(self, url, destination, progress=None):
        def progress_hook(data):
            if progress is None or data.get("status") != "downloading":
                return
            # Some extractors never report totals; progress stays best-effort.
            total = data.get("total_bytes") or data.get("total_bytes_estimate")
            downloaded = data.get("downloaded_bytes")
            if not total or downloaded is None:
                return
            percent = round(min(100.0, (downloaded / total) * 100), 1)
            progress(percent)

        opts = self.build_download_opts(destination, progress_hook)
        try:
            with self._ydl_factory(opts) as ydl:
                result = ydl.download([url])
        except Exception as exc:
            logging.warning("yt-dlp download failed for %s: %s", url, exc)
            raise DownloadFailed(f"Failed to download YouTube video: {exc}") from exc
        if result:
            raise DownloadFailed(f"Failed to download YouTube video: yt-dlp exited with code {result}")
        if not os.path.isfile(destination):
            raise DownloadFailed(f"Failed to download YouTube video: output missing at {destination}")
        logging.info("Downloaded audio for %s -> %s", url, destination)
        return destination
