#!/usr/bin/env python3
import asyncio
import json
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import anyio
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from karaoke.errors import KaraokeError, UniqueConstraintViolation
from karaoke.orchestrator import OUTPUT_URL_PREFIX, build_orchestrator
from karaoke.paths import build_karaoke_paths, ensure_dir, ensure_karaoke_dirs
from karaoke.settings import load_settings, validate_settings
from karaoke.status import StatusChannel
from karaoke.store import KaraokeStore

APP_NAME = "YouTube Karaoke API"
KEEPALIVE_SECONDS = 15


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "karaoke.log")
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    root.setLevel(logging.INFO)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console.setLevel(logging.INFO)
        root.addHandler(console)


class ProcessRequest(BaseModel):
    url: str | None = None


class PlaylistRequest(BaseModel):
    name: str | None = None


class AddSongRequest(BaseModel):
    songId: int


class ReorderRequest(BaseModel):
    fromPosition: int
    toPosition: int


def _error(status_code, message, details=None):
    payload = {"error": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


async def status_stream(request, channel, keepalive=KEEPALIVE_SECONDS):
    # Subscribing inside the generator ties the listener to the body's lifetime:
    # disconnect cancels the generator and the with-block unsubscribes.
    with channel.subscribe() as subscription:
        yield ": connected\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await subscription.get(timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(event)}\n\n"


def create_app(settings=None, paths=None):
    settings = settings or load_settings()
    paths = paths or build_karaoke_paths()
    errors = validate_settings(settings)
    if errors:
        raise ValueError(f"Invalid settings: {errors}")
    ensure_karaoke_dirs(paths)

    @asynccontextmanager
    async def lifespan(app):
        _setup_logging(paths.log_dir)
        app.state.store = KaraokeStore(paths.db_path)
        logging.info("Database initialization successful (%s)", paths.db_path)
        app.state.channel.bind_loop(asyncio.get_running_loop())
        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator(settings, paths, app.state.store, app.state.channel)
        app.state.started_at = datetime.now(timezone.utc).isoformat()
        try:
            yield
        finally:
            logging.info("Shutting down; %s status streams open", app.state.channel.subscriber_count)
            app.state.store.close()

    app = FastAPI(title=APP_NAME, lifespan=lifespan)
    app.state.settings = settings
    app.state.paths = paths
    app.state.channel = StatusChannel(queue_size=settings.status_queue_size)
    app.state.orchestrator = None
    app.state.store = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.exception_handler(KaraokeError)
    async def karaoke_error_handler(request: Request, exc: KaraokeError):
        if isinstance(exc, UniqueConstraintViolation):
            logging.error("Unreconciled duplicate conversion: %s", exc.details)
            return _error(500, "Error occurred during processing", exc.details)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request", json.dumps(exc.errors(), default=str))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logging.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error", str(exc))

    def _store():
        return app.state.store

    @app.get("/status")
    async def api_status_stream(request: Request):
        return StreamingResponse(
            status_stream(request, app.state.channel),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/process")
    async def api_process(payload: ProcessRequest):
        url = (payload.url or "").strip()
        if not url:
            return _error(400, "YouTube URL is required")
        result = await app.state.orchestrator.process(url)
        return result.to_response()

    @app.get("/conversions")
    async def api_conversions(search: str | None = Query(None, max_length=200)):
        search_value = search.strip() if search else None
        records = await anyio.to_thread.run_sync(_store().list_conversions, search_value)
        return [record.to_dict() for record in records]

    @app.delete("/conversions/{conversion_id}")
    async def api_delete_conversion(conversion_id: int):
        record = await anyio.to_thread.run_sync(_store().delete_conversion, conversion_id)
        # Record first, then files: a failed unlink only leaves litter behind.
        removed = await anyio.to_thread.run_sync(app.state.orchestrator.delete_media, record)
        logging.info("Deleted conversion %s (%s); removed %s file(s)", record.id, record.video_id, len(removed))
        return {"success": True}

    @app.get("/playlists")
    async def api_playlists():
        playlists = await anyio.to_thread.run_sync(_store().list_playlists)
        return [playlist.to_dict() for playlist in playlists]

    @app.post("/playlists")
    async def api_create_playlist(payload: PlaylistRequest):
        playlist = await anyio.to_thread.run_sync(_store().create_playlist, payload.name)
        return playlist.to_dict()

    @app.put("/playlists/{playlist_id}")
    async def api_rename_playlist(playlist_id: int, payload: PlaylistRequest):
        playlist = await anyio.to_thread.run_sync(_store().rename_playlist, playlist_id, payload.name)
        return playlist.to_dict()

    @app.delete("/playlists/{playlist_id}")
    async def api_delete_playlist(playlist_id: int):
        await anyio.to_thread.run_sync(_store().delete_playlist, playlist_id)
        return {"success": True}

    @app.post("/playlists/{playlist_id}/songs")
    async def api_add_song(playlist_id: int, payload: AddSongRequest):
        position = await anyio.to_thread.run_sync(_store().add_song_to_playlist, playlist_id, payload.songId)
        return {"success": True, "position": position}

    # Registered before the {song_id} route so "reorder" is never parsed as an id.
    @app.put("/playlists/{playlist_id}/songs/reorder")
    async def api_reorder_songs(playlist_id: int, payload: ReorderRequest):
        await anyio.to_thread.run_sync(
            _store().reorder_song, playlist_id, payload.fromPosition, payload.toPosition
        )
        return {"success": True}

    @app.delete("/playlists/{playlist_id}/songs/{song_id}")
    async def api_remove_song(playlist_id: int, song_id: int):
        await anyio.to_thread.run_sync(_store().remove_song_from_playlist, playlist_id, song_id)
        return {"success": True}

    app.mount(OUTPUT_URL_PREFIX, StaticFiles(directory=paths.output_dir), name="output")
    return app


def _port_in_use(host, port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def _port_help(port):
    if sys.platform == "darwin":
        finder = f"sudo lsof -i :{port}"
    elif sys.platform == "win32":
        finder = f"netstat -ano | findstr :{port}"
    else:
        finder = f"sudo netstat -tulpn | grep :{port}"
    killer = "taskkill /F /PID <PID>" if sys.platform == "win32" else "kill -9 <PID>"
    return (
        f"Port {port} is already in use.\n"
        f"To find the process using this port, run:\n  {finder}\n"
        f"Then stop it (replace PID with the process ID shown above):\n  {killer}"
    )


def main():
    import uvicorn

    settings = load_settings()
    if _port_in_use(settings.host, settings.port):
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
        logging.error(_port_help(settings.port))
        raise SystemExit(1)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
