"""Conversion pipeline: URL in, karaoke + vocals tracks out.

Stages run strictly in sequence for one request::

    RECEIVED -> EXTRACTING_ID -> CHECKING_DUPLICATE -> (DUPLICATE_HIT -> DONE)
             | PROBING -> DOWNLOADING -> SEPARATING -> PERSISTING -> CLEANUP -> DONE

with FAILED reachable from every non-terminal stage. At most one
fetch+separate effort ever runs per video ID: the duplicate check happens
before any work, is repeated once the shared work lock is held, and a
lost insert race is reconciled by re-reading the winning record.
"""

import asyncio
import enum
import json
import logging
import os
import time
from dataclasses import dataclass
from uuid import uuid4

import anyio

from karaoke.errors import (
    ConversionError,
    DurationExceeded,
    ProcessingFailed,
    SeparationOutputMissing,
    UniqueConstraintViolation,
)
from karaoke.fetcher import YtDlpFetcher, format_duration
from karaoke.paths import resolve_output_file
from karaoke.separator import KARAOKE_SUFFIX, VOCALS_SUFFIX, DemucsSeparator
from karaoke.status import status_event
from karaoke.tagger import tag_stems
from karaoke.video_id import extract_video_id

OUTPUT_URL_PREFIX = "/output"
DEFAULT_MAX_DURATION_SECONDS = 600


class JobStage(str, enum.Enum):
    RECEIVED = "received"
    EXTRACTING_ID = "extracting_id"
    CHECKING_DUPLICATE = "checking_duplicate"
    DUPLICATE_HIT = "duplicate_hit"
    PROBING = "probing"
    DOWNLOADING = "downloading"
    SEPARATING = "separating"
    PERSISTING = "persisting"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


_TERMINAL_STAGES = {JobStage.DONE, JobStage.FAILED}

# One status event per transition into these stages.
STAGE_MESSAGES = {
    JobStage.EXTRACTING_ID: "Extracting video ID",
    JobStage.CHECKING_DUPLICATE: "Checking for existing conversion",
    JobStage.DUPLICATE_HIT: "Found existing converted video",
    JobStage.PROBING: "Starting to check video information",
    JobStage.DOWNLOADING: "Starting to download YouTube video",
    JobStage.SEPARATING: "Separating audio",
    JobStage.PERSISTING: "Saving conversion record",
    JobStage.CLEANUP: "Cleaning up temporary files",
    JobStage.DONE: "Conversion completed",
}
FAILED_MESSAGE = "Conversion failed"


@dataclass(frozen=True)
class ConversionResult:
    karaoke_url: str
    vocals_url: str
    is_existing: bool = False
    conversion_id: int | None = None

    def to_response(self):
        payload = {"karaokeUrl": self.karaoke_url, "vocalsUrl": self.vocals_url}
        if self.is_existing:
            payload["isExisting"] = True
        return payload


@dataclass
class ConversionJob:
    url: str
    job_id: str
    timestamp: int | None = None
    temp_file: str | None = None
    karaoke_file: str | None = None
    vocals_file: str | None = None
    video_id: str | None = None
    title: str | None = None
    duration: int | None = None
    stage: JobStage = JobStage.RECEIVED

    @property
    def karaoke_url(self):
        return f"{OUTPUT_URL_PREFIX}/{os.path.basename(self.karaoke_file)}"

    @property
    def vocals_url(self):
        return f"{OUTPUT_URL_PREFIX}/{os.path.basename(self.vocals_file)}"


def _job_log(level, *, job, event, **fields):
    payload = {
        "event": event,
        "job_id": job.job_id,
        "video_id": job.video_id,
        "stage": job.stage.value,
        **fields,
    }
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def _remove_quietly(path, *, job=None, label="file"):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        if job is not None:
            _job_log("warning", job=job, event="cleanup_failed", label=label, path=path, error=str(exc))
        else:
            logging.warning("Failed to remove %s %s: %s", label, path, exc)


class KaraokeOrchestrator:
    def __init__(
        self,
        *,
        store,
        fetcher,
        separator,
        channel,
        temp_dir,
        output_dir,
        max_duration_seconds=DEFAULT_MAX_DURATION_SECONDS,
        clock=time.time,
        tag_outputs=True,
    ):
        self.store = store
        self.fetcher = fetcher
        self.separator = separator
        self.channel = channel
        self.temp_dir = temp_dir
        self.output_dir = output_dir
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self.tag_outputs = tag_outputs
        # Separation shares one scratch directory, so fetch+separate is single-flight.
        self._work_lock = asyncio.Lock()

    @property
    def busy(self):
        return self._work_lock.locked()

    def _assign_files(self, job):
        # Called with the work lock held; the output dir is append-only, so a
        # taken timestamp is visible here and never reused.
        timestamp = int(self._clock() * 1000)
        while os.path.exists(os.path.join(self.output_dir, f"{timestamp}{KARAOKE_SUFFIX}.mp3")):
            timestamp += 1
        job.timestamp = timestamp
        job.temp_file = os.path.join(self.temp_dir, f"{timestamp}.mp3")
        job.karaoke_file = os.path.join(self.output_dir, f"{timestamp}{KARAOKE_SUFFIX}.mp3")
        job.vocals_file = os.path.join(self.output_dir, f"{timestamp}{VOCALS_SUFFIX}.mp3")

    def _emit(self, message, *, progress=None, duration=None):
        self.channel.publish(status_event(message, progress=progress, duration=duration))

    def _advance(self, job, stage, **fields):
        if job.stage in _TERMINAL_STAGES:
            raise RuntimeError(f"Job {job.job_id} already finished ({job.stage.value})")
        previous = job.stage
        job.stage = stage
        _job_log("info", job=job, event="stage", previous=previous.value, **fields)
        self._emit(STAGE_MESSAGES[stage], progress=fields.get("progress"), duration=fields.get("duration"))

    async def process(self, url):
        self.channel.bind_loop(asyncio.get_running_loop())
        job = ConversionJob(url=url, job_id=uuid4().hex)
        _job_log("info", job=job, event="job_received", url=url)
        try:
            return await self._run(job)
        except ConversionError as exc:
            self._fail(job, exc)
            raise
        except asyncio.CancelledError:
            self._fail(job, None, reason="cancelled")
            raise
        except Exception as exc:
            logging.exception("Conversion job %s failed unexpectedly", job.job_id)
            wrapped = ProcessingFailed(str(exc))
            self._fail(job, wrapped)
            raise wrapped from exc

    async def _run(self, job):
        self._advance(job, JobStage.EXTRACTING_ID)
        job.video_id = extract_video_id(job.url)

        self._advance(job, JobStage.CHECKING_DUPLICATE)
        existing = await anyio.to_thread.run_sync(self.store.find_by_video_id, job.video_id)
        if existing:
            return self._duplicate_hit(job, existing)

        async with self._work_lock:
            # A request that queued behind an identical one finds its record here.
            existing = await anyio.to_thread.run_sync(self.store.find_by_video_id, job.video_id)
            if existing:
                return self._duplicate_hit(job, existing)

            self._assign_files(job)
            self._advance(job, JobStage.PROBING)
            info = await anyio.to_thread.run_sync(self.fetcher.probe, job.url)
            job.title = info.title
            job.duration = info.duration
            if info.duration > self.max_duration_seconds:
                raise DurationExceeded(
                    f"Video duration exceeds limit: {info.duration}s > {self.max_duration_seconds}s"
                )
            self._emit("Video duration", duration=format_duration(info.duration))

            self._advance(job, JobStage.DOWNLOADING)
            await anyio.to_thread.run_sync(self._fetch_audio, job)
            self._emit("YouTube video download completed")

            self._advance(job, JobStage.SEPARATING)
            await self.separator.separate(job.temp_file, job.karaoke_file, emit=self.channel.publish)
            if self.tag_outputs:
                await anyio.to_thread.run_sync(
                    lambda: tag_stems(job.karaoke_file, job.vocals_file, title=job.title, video_id=job.video_id)
                )

            # Persisted before the lock is released so a queued duplicate sees it.
            self._advance(job, JobStage.PERSISTING)
            result = await self._persist(job)

        self._advance(job, JobStage.CLEANUP)
        _remove_quietly(job.temp_file, job=job, label="temp download")

        self._advance(job, JobStage.DONE, progress=100)
        _job_log("info", job=job, event="job_completed", is_existing=result.is_existing)
        return result

    def _fetch_audio(self, job):
        def progress(percent):
            self.channel.publish_threadsafe(
                status_event("Downloading YouTube video", progress=percent)
            )

        return self.fetcher.fetch_audio(job.url, job.temp_file, progress=progress)

    async def _persist(self, job):
        missing = [path for path in (job.karaoke_file, job.vocals_file) if not os.path.isfile(path)]
        if missing:
            raise SeparationOutputMissing(f"Output files missing before save: {', '.join(missing)}")
        try:
            record = await anyio.to_thread.run_sync(
                lambda: self.store.insert_conversion(
                    video_id=job.video_id,
                    title=job.title,
                    duration=job.duration,
                    karaoke_path=job.karaoke_url,
                    vocals_path=job.vocals_url,
                )
            )
        except UniqueConstraintViolation as exc:
            existing = await anyio.to_thread.run_sync(self.store.find_by_video_id, job.video_id)
            if existing is None:
                raise ProcessingFailed(str(exc)) from exc
            _job_log("warning", job=job, event="duplicate_conflict_reconciled", conversion_id=existing.id)
            _remove_quietly(job.karaoke_file, job=job, label="orphaned output")
            _remove_quietly(job.vocals_file, job=job, label="orphaned output")
            return ConversionResult(
                karaoke_url=existing.karaoke_path,
                vocals_url=existing.vocals_path,
                is_existing=True,
                conversion_id=existing.id,
            )
        return ConversionResult(
            karaoke_url=record.karaoke_path,
            vocals_url=record.vocals_path,
            is_existing=False,
            conversion_id=record.id,
        )

    def _duplicate_hit(self, job, existing):
        self._advance(job, JobStage.DUPLICATE_HIT, conversion_id=existing.id)
        self._advance(job, JobStage.DONE, progress=100)
        _job_log("info", job=job, event="job_completed", is_existing=True)
        return ConversionResult(
            karaoke_url=existing.karaoke_path,
            vocals_url=existing.vocals_path,
            is_existing=True,
            conversion_id=existing.id,
        )

    def _fail(self, job, error, reason=None):
        failed_stage = job.stage
        if job.stage not in _TERMINAL_STAGES:
            job.stage = JobStage.FAILED
        _job_log(
            "error",
            job=job,
            event="job_failed",
            failed_stage=failed_stage.value,
            category=error.category if error else reason,
            details=error.details if error else None,
        )
        self.channel.publish(
            status_event(FAILED_MESSAGE, error=error.message if error else reason)
        )
        # Partial outputs only exist if nothing was persisted for them.
        if failed_stage in (JobStage.DOWNLOADING, JobStage.SEPARATING, JobStage.PERSISTING):
            _remove_quietly(job.temp_file, job=job, label="temp download")
            _remove_quietly(job.karaoke_file, job=job, label="partial output")
            _remove_quietly(job.vocals_file, job=job, label="partial output")

    def delete_media(self, record):
        """Best-effort removal of a deleted conversion's files; returns what was removed."""
        removed = []
        for url_path in (record.karaoke_path, record.vocals_path):
            path = resolve_output_file(self.output_dir, url_path)
            if not path:
                continue
            try:
                os.remove(path)
                removed.append(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logging.error("Failed to delete audio file %s: %s", path, exc)
        return removed


def build_orchestrator(settings, paths, store, channel):
    separator = DemucsSeparator(
        paths.scratch_dir,
        command=(settings.demucs_bin,),
        model=settings.demucs_model,
        timeout=settings.separation_timeout_seconds,
    )
    return KaraokeOrchestrator(
        store=store,
        fetcher=YtDlpFetcher(),
        separator=separator,
        channel=channel,
        temp_dir=paths.temp_dir,
        output_dir=paths.output_dir,
        max_duration_seconds=settings.max_duration_seconds,
        tag_outputs=settings.tag_outputs,
    )
