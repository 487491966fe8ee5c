"""Demucs two-stem separation driven as an asyncio subprocess.

Progress comes from a heuristic: Demucs prints a handful of recognisable
lines on stderr, and a ``MilestoneMatcher`` turns those into coarse
percentages. Detection is best-effort; exit status and the stems on disk
decide success.
"""

import asyncio
import codecs
import contextlib
import logging
import os
import re
import shutil
from dataclasses import dataclass

from karaoke.errors import (
    SeparationFailed,
    SeparationOutputMissing,
    SeparationTimeout,
    ToolNotInstalled,
)
from karaoke.status import status_event

DEFAULT_TIMEOUT_SECONDS = 1200
INSTRUMENTAL_STEM = "no_vocals"
VOCALS_STEM = "vocals"
KARAOKE_SUFFIX = "_karaoke"
VOCALS_SUFFIX = "_vocals"
_READ_CHUNK = 4096
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class Milestone:
    substring: str
    message: str
    progress: int
    exclude: str | None = None

    def matches(self, line):
        if self.exclude and self.exclude in line:
            return False
        return self.substring in line


@dataclass(frozen=True)
class SeparationResult:
    instrumental_path: str
    vocals_path: str


class MilestoneMatcher:
    milestones = ()

    def match(self, line):
        for milestone in self.milestones:
            if milestone.matches(line):
                return milestone
        return None


class DemucsMilestones(MilestoneMatcher):
    milestones = (
        # The startup banner "Separated tracks will be stored in ..." is not a milestone.
        Milestone("Separated track", "Voice separation completed", 50, exclude="will be stored"),
        Milestone("Applying effects", "Processing audio effects", 75),
    )


def vocals_path_for(instrumental_path):
    base, ext = os.path.splitext(instrumental_path)
    if base.endswith(KARAOKE_SUFFIX):
        base = base[: -len(KARAOKE_SUFFIX)]
    return f"{base}{VOCALS_SUFFIX}{ext or '.mp3'}"


class DemucsSeparator:
    def __init__(
        self,
        scratch_dir,
        *,
        command=("demucs",),
        model="htdemucs",
        timeout=DEFAULT_TIMEOUT_SECONDS,
        matcher=None,
    ):
        self.scratch_dir = scratch_dir
        self.command = tuple(command)
        self.model = model
        self.timeout = timeout
        self.matcher = matcher or DemucsMilestones()

    def tool_available(self):
        return shutil.which(self.command[0]) is not None

    def build_command(self, input_path):
        return [
            *self.command,
            input_path,
            "-n",
            self.model,
            "--two-stems=vocals",
            "--mp3",
            "--out",
            self.scratch_dir,
        ]

    def stem_paths(self, input_path):
        track_name = os.path.splitext(os.path.basename(input_path))[0]
        track_dir = os.path.join(self.scratch_dir, self.model, track_name)
        return (
            os.path.join(track_dir, f"{INSTRUMENTAL_STEM}.mp3"),
            os.path.join(track_dir, f"{VOCALS_STEM}.mp3"),
        )

    async def separate(self, input_path, instrumental_path, emit=None):
        emit = emit or (lambda event: None)
        if not self.tool_available():
            raise ToolNotInstalled(f"Separation tool not found on PATH: {self.command[0]}")

        shutil.rmtree(self.scratch_dir, ignore_errors=True)
        os.makedirs(self.scratch_dir, exist_ok=True)

        emit(status_event("Starting audio separation processing..."))
        cmd = self.build_command(input_path)
        logging.info("Running separation: %s", " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        diagnostics = []
        drains = asyncio.gather(
            self._drain(proc.stderr, diagnostics, emit, watch=True),
            self._drain(proc.stdout, diagnostics, emit, watch=False),
        )
        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logging.error("Separation timed out after %ss; killing pid %s", self.timeout, proc.pid)
            await self._kill(proc)
            await drains
            raise SeparationTimeout(
                f"Audio separation processing timeout after {self.timeout} seconds\n{''.join(diagnostics)}"
            ) from None
        except BaseException:
            await self._kill(proc)
            drains.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drains
            raise
        await drains

        output = "".join(diagnostics)
        if returncode != 0:
            logging.error("Separation failed (code=%s): %s", returncode, output)
            raise SeparationFailed(
                f"Demucs processing failed, error code: {returncode}\nError information: {output}"
            )

        accompaniment, vocals = self.stem_paths(input_path)
        missing = [path for path in (accompaniment, vocals) if not os.path.isfile(path)]
        if missing:
            logging.error("Separated audio files not found: %s", missing)
            raise SeparationOutputMissing(f"Separated audio files not found: {', '.join(missing)}")

        vocals_output = vocals_path_for(instrumental_path)
        os.makedirs(os.path.dirname(os.path.abspath(instrumental_path)), exist_ok=True)
        shutil.copyfile(accompaniment, instrumental_path)
        shutil.copyfile(vocals, vocals_output)
        emit(status_event("Audio separation completed", progress=100))

        try:
            shutil.rmtree(self.scratch_dir)
        except OSError as exc:
            logging.warning("Failed to clean up separation scratch dir %s: %s", self.scratch_dir, exc)

        return SeparationResult(instrumental_path=instrumental_path, vocals_path=vocals_output)

    async def _drain(self, stream, buffer, emit, *, watch):
        # Demucs redraws its progress bar with bare \r, so lines end on \r or \n
        # and may be arbitrarily long; read in chunks rather than readline().
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        seen = set()
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                buffer.append(text)
                pending += text
                *lines, pending = _LINE_BREAK.split(pending)
                for line in lines:
                    self._on_line(line, seen, emit, watch)
            if not chunk:
                break
        if pending:
            self._on_line(pending, seen, emit, watch)

    def _on_line(self, line, seen, emit, watch):
        if not line.strip():
            return
        logging.debug("Demucs output: %s", line)
        if not watch:
            return
        milestone = self.matcher.match(line)
        if milestone is not None and milestone.substring not in seen:
            seen.add(milestone.substring)
            emit(status_event(milestone.message, progress=milestone.progress))

    async def _kill(self, proc):
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
