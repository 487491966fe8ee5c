class KaraokeError(Exception):
    """Base error carrying a user-facing message plus raw diagnostics."""

    category = "KaraokeError"
    message = "Error occurred during processing"
    status_code = 500

    def __init__(self, details=None, *, message=None):
        self.details = "" if details is None else str(details)
        if message is not None:
            self.message = message
        super().__init__(self.details or self.message)

    def to_payload(self):
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# ------------------------------------------------------------------
# Conversion pipeline
# ------------------------------------------------------------------

class ConversionError(KaraokeError):
    category = "ProcessingFailed"


class ProcessingFailed(ConversionError):
    pass


class InvalidSourceURL(ConversionError):
    category = "InvalidSourceURL"
    message = "Please provide a valid YouTube video URL"
    status_code = 400


class DurationExceeded(ConversionError):
    category = "DurationExceeded"
    message = "Video duration exceeds limit, please choose a video under 10 minutes"
    status_code = 400


class SourceUnavailable(ConversionError):
    category = "SourceUnavailable"
    message = "Unable to read video information, please verify the video is available"
    status_code = 502


class DownloadFailed(ConversionError):
    category = "DownloadFailed"
    message = "Failed to download YouTube video, please verify URL is correct or video is available"
    status_code = 502


class ToolNotInstalled(ConversionError):
    category = "ToolNotInstalled"
    message = "Demucs not installed, please install Demucs first"
    status_code = 503


class SeparationFailed(ConversionError):
    category = "SeparationFailed"
    message = "Voice separation engine failed, please try again later"


class SeparationTimeout(ConversionError):
    category = "SeparationTimeout"
    message = "Voice separation processing took too long, please try again later or choose a shorter video"
    status_code = 504


class SeparationOutputMissing(ConversionError):
    category = "SeparationOutputMissing"
    message = "Voice separation processing failed, please verify audio file format"


# ------------------------------------------------------------------
# Store
# ------------------------------------------------------------------

class StoreError(KaraokeError):
    category = "StoreError"


class NotFound(StoreError):
    category = "NotFound"
    message = "Not found"
    status_code = 404


class InvalidName(StoreError):
    category = "InvalidName"
    message = "Playlist name cannot be empty"
    status_code = 400


class InvalidPosition(StoreError):
    category = "InvalidPosition"
    message = "Invalid playlist position"
    status_code = 400


class DuplicateMembership(StoreError):
    category = "DuplicateMembership"
    message = "Song is already in this playlist"
    status_code = 409


class UniqueConstraintViolation(StoreError):
    # Internal: reconciled by the orchestrator, never rendered to clients.
    category = "UniqueConstraintViolation"
    message = "Conversion already exists"
    status_code = 409
