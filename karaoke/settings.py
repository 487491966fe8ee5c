import os
from dataclasses import dataclass, field

DEFAULT_PORT = 3006
DEFAULT_MAX_DURATION_SECONDS = 600
DEFAULT_SEPARATION_TIMEOUT_SECONDS = 1200
DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:5175",
    "http://localhost:5176",
    "http://localhost:5177",
)


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _env_int(name, default):
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_bool(name, default):
    value = os.environ.get(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    value = os.environ.get(name)
    if not value:
        return tuple(default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    allowed_origins: tuple = field(default=DEFAULT_ALLOWED_ORIGINS)
    max_duration_seconds: int = DEFAULT_MAX_DURATION_SECONDS
    separation_timeout_seconds: float = DEFAULT_SEPARATION_TIMEOUT_SECONDS
    demucs_bin: str = "demucs"
    demucs_model: str = "htdemucs"
    status_queue_size: int = 100
    tag_outputs: bool = True


def load_settings():
    return Settings(
        host=_env_or_default("KARAOKE_HOST", "127.0.0.1"),
        port=_env_int("KARAOKE_PORT", DEFAULT_PORT),
        allowed_origins=_env_list("KARAOKE_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS),
        max_duration_seconds=_env_int("KARAOKE_MAX_DURATION_SECONDS", DEFAULT_MAX_DURATION_SECONDS),
        separation_timeout_seconds=_env_int(
            "KARAOKE_SEPARATION_TIMEOUT_SECONDS", DEFAULT_SEPARATION_TIMEOUT_SECONDS
        ),
        demucs_bin=_env_or_default("KARAOKE_DEMUCS_BIN", "demucs"),
        demucs_model=_env_or_default("KARAOKE_DEMUCS_MODEL", "htdemucs"),
        status_queue_size=_env_int("KARAOKE_STATUS_QUEUE_SIZE", 100),
        tag_outputs=_env_bool("KARAOKE_TAG_OUTPUTS", True),
    )


def validate_settings(settings):
    errors = []
    if not isinstance(settings.port, int) or not (0 < settings.port < 65536):
        errors.append("port must be between 1 and 65535")
    if settings.max_duration_seconds <= 0:
        errors.append("max_duration_seconds must be > 0")
    if settings.separation_timeout_seconds <= 0:
        errors.append("separation_timeout_seconds must be > 0")
    if not settings.demucs_bin:
        errors.append("demucs_bin is required")
    if not settings.demucs_model:
        errors.append("demucs_model is required")
    if settings.status_queue_size < 1:
        errors.append("status_queue_size must be >= 1")
    for origin in settings.allowed_origins:
        if not origin.startswith(("http://", "https://")):
            errors.append(f"allowed origin must be an http(s) URL: {origin}")
    return errors
