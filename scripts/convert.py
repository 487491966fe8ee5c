#!/usr/bin/env python3
"""
Convert a single YouTube URL into karaoke + vocals tracks without the HTTP server.
- Same pipeline as POST /process: duplicate check, duration ceiling, yt-dlp, Demucs.
- Uses the configured database and output directory, so results show up in the API.
- Progress events are printed to the console as they happen.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import asyncio
import json
import logging

from karaoke.errors import KaraokeError
from karaoke.orchestrator import build_orchestrator
from karaoke.paths import build_karaoke_paths, ensure_dir, ensure_karaoke_dirs
from karaoke.settings import load_settings, validate_settings
from karaoke.status import StatusChannel
from karaoke.store import KaraokeStore


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    logging.basicConfig(
        filename=os.path.join(log_dir, "karaoke.log"),
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    console.setLevel(logging.INFO)
    logging.getLogger("").addHandler(console)


async def _print_events(subscription):
    while True:
        event = await subscription.get()
        parts = [event.get("message", "")]
        if event.get("progress") is not None:
            parts.append(f"{event['progress']}%")
        if event.get("duration"):
            parts.append(event["duration"])
        if event.get("error"):
            parts.append(event["error"])
        print(" - ".join(parts), flush=True)


async def run_conversion(url, *, settings, paths):
    channel = StatusChannel(queue_size=settings.status_queue_size)
    store = KaraokeStore(paths.db_path)
    orchestrator = build_orchestrator(settings, paths, store, channel)
    with channel.subscribe() as subscription:
        printer = asyncio.create_task(_print_events(subscription))
        try:
            return await orchestrator.process(url)
        finally:
            printer.cancel()
            try:
                await printer
            except asyncio.CancelledError:
                pass
            store.close()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", required=True, help="YouTube (or YouTube Music) video URL.")
    parser.add_argument("--data-dir", default=None, help="Base directory for db/output/temp/logs.")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON.")
    args = parser.parse_args()

    settings = load_settings()
    errors = validate_settings(settings)
    if errors:
        print(f"Invalid settings: {errors}", file=sys.stderr)
        sys.exit(2)

    paths = build_karaoke_paths(args.data_dir)
    ensure_karaoke_dirs(paths)
    _setup_logging(paths.log_dir)

    try:
        result = asyncio.run(run_conversion(args.url, settings=settings, paths=paths))
    except KeyboardInterrupt:
        logging.warning("Interrupted")
        logging.shutdown()
        sys.exit(130)
    except KaraokeError as exc:
        logging.error("%s: %s", exc.message, exc.details)
        logging.shutdown()
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_response(), indent=2))
    else:
        print(f"Karaoke: {result.karaoke_url}")
        print(f"Vocals:  {result.vocals_url}")
        if result.is_existing:
            print("(already converted)")
    logging.shutdown()


if __name__ == "__main__":
    main()
