import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_path(name, default):
    value = os.environ.get(name)
    if value:
        return os.path.abspath(value)
    return os.path.abspath(default)


@dataclass(frozen=True)
class KaraokePaths:
    data_dir: str
    db_path: str
    temp_dir: str
    scratch_dir: str
    output_dir: str
    log_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    try:
        return os.path.commonpath([real, base]) == base
    except ValueError:
        return False


def resolve_output_file(output_dir, url_path):
    """Map a served media URL (``/output/<name>``) back to a file inside output_dir."""
    if not url_path:
        return None
    name = os.path.basename(url_path.rstrip("/"))
    if not name or name in (".", ".."):
        return None
    candidate = os.path.abspath(os.path.join(output_dir, name))
    if not _is_within_base(candidate, output_dir):
        return None
    return candidate


def build_karaoke_paths(base_dir=None):
    if base_dir:
        # Explicit base (tests, CLI --data-dir) ignores the per-directory env overrides.
        data_dir = os.path.abspath(base_dir)
        temp_dir = os.path.join(data_dir, "temp")
        output_dir = os.path.join(data_dir, "output")
        log_dir = os.path.join(data_dir, "logs")
    else:
        # Base directories for all file access. Override via env for container mounts.
        data_dir = _env_path("KARAOKE_DATA_DIR", PROJECT_ROOT / "server")
        temp_dir = _env_path("KARAOKE_TEMP_DIR", os.path.join(data_dir, "temp"))
        output_dir = _env_path("KARAOKE_OUTPUT_DIR", os.path.join(data_dir, "output"))
        log_dir = _env_path("KARAOKE_LOG_DIR", os.path.join(data_dir, "logs"))
    return KaraokePaths(
        data_dir=data_dir,
        db_path=os.path.join(data_dir, "db", "karaoke.db"),
        temp_dir=temp_dir,
        scratch_dir=os.path.join(temp_dir, "separated"),
        output_dir=output_dir,
        log_dir=log_dir,
    )


def ensure_karaoke_dirs(paths):
    ensure_dir(paths.data_dir)
    ensure_dir(os.path.dirname(paths.db_path))
    ensure_dir(paths.temp_dir)
    ensure_dir(paths.output_dir)
    ensure_dir(paths.log_dir)
