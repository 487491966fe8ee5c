import re

from karaoke.errors import InvalidSourceURL

_ID = r"([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"
_HOST = r"(?:https?://)?(?:(?:www|m)\.)?"

# Ordered; the first pattern that matches wins.
VIDEO_URL_PATTERNS = (
    # youtube.com/watch?v=, /v/, /e/, /embed/, /shorts/, /live/ and any ?...&v= query
    re.compile(
        _HOST + r"youtube\.com/(?:(?:v|e(?:mbed)?|shorts|live)/|\S*?[?&]v=)" + _ID,
        re.IGNORECASE,
    ),
    re.compile(_HOST + r"youtu\.be/" + _ID, re.IGNORECASE),
    re.compile(
        r"(?:https?://)?music\.youtube\.com/(?:watch\?v=|embed/|v/)" + _ID,
        re.IGNORECASE,
    ),
    re.compile(r"(?:https?://)?music\.youtube\.com/\S*?[?&]v=" + _ID, re.IGNORECASE),
)


def extract_video_id(url):
    """Return the 11-character YouTube video ID for any supported link shape."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidSourceURL("Invalid YouTube video URL: empty")
    value = url.strip()
    for pattern in VIDEO_URL_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    raise InvalidSourceURL(f"Invalid YouTube video URL: {value}")


def build_watch_url(video_id):
    return f"https://www.youtube.com/watch?v={video_id}"
