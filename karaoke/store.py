import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field

from karaoke.errors import (
    DuplicateMembership,
    InvalidName,
    InvalidPosition,
    NotFound,
    UniqueConstraintViolation,
)


def ensure_schema(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS conversions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            video_id TEXT NOT NULL UNIQUE,
            title TEXT,
            duration INTEGER,
            karaoke_path TEXT NOT NULL,
            vocals_path TEXT NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_video_id ON conversions (video_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_conversions_created_at ON conversions (created_at)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlists (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    # playlist_songs invariants:
    # - (playlist_id, song_id) is unique; a song appears at most once per playlist.
    # - positions within one playlist are exactly 1..N after every committed mutation.
    # position is deliberately not UNIQUE: shifts pass through transient duplicates.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlist_songs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            playlist_id INTEGER NOT NULL,
            song_id INTEGER NOT NULL,
            position INTEGER NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (playlist_id) REFERENCES playlists (id) ON DELETE CASCADE,
            FOREIGN KEY (song_id) REFERENCES conversions (id) ON DELETE CASCADE,
            UNIQUE (playlist_id, song_id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_playlist_songs ON playlist_songs (playlist_id, position)")
    conn.commit()


@dataclass(frozen=True)
class ConversionRecord:
    id: int
    video_id: str
    title: str | None
    duration: int | None
    karaoke_path: str
    vocals_path: str
    created_at: str | None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            video_id=row["video_id"],
            title=row["title"],
            duration=row["duration"],
            karaoke_path=row["karaoke_path"],
            vocals_path=row["vocals_path"],
            created_at=row["created_at"],
        )

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class PlaylistSong:
    conversion: ConversionRecord
    position: int

    def to_dict(self):
        data = self.conversion.to_dict()
        data["position"] = self.position
        return data


@dataclass(frozen=True)
class Playlist:
    id: int
    name: str
    created_at: str | None
    songs: list[PlaylistSong] = field(default_factory=list)

    @property
    def song_count(self):
        return len(self.songs)

    def to_dict(self, include_songs=True):
        data = {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "song_count": self.song_count,
        }
        if include_songs:
            data["songs"] = [song.to_dict() for song in self.songs]
        return data


def _normalize_name(name):
    value = name.strip() if isinstance(name, str) else ""
    if not value:
        raise InvalidName()
    return value


def _escape_like(value):
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KaraokeStore:
    def __init__(self, db_path):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            ensure_schema(conn)
        finally:
            conn.close()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _read(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def close(self):
        # Connections are per-operation; nothing is held between calls.
        logging.debug("Karaoke store closed (%s)", self.db_path)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def find_by_video_id(self, video_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM conversions WHERE video_id = ?", (video_id,)).fetchone()
            return ConversionRecord.from_row(row) if row else None

    def get_conversion(self, conversion_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM conversions WHERE id = ?", (conversion_id,)).fetchone()
            return ConversionRecord.from_row(row) if row else None

    def insert_conversion(self, *, video_id, title, duration, karaoke_path, vocals_path):
        if not karaoke_path or not vocals_path:
            raise ValueError("karaoke_path and vocals_path are required")
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO conversions (video_id, title, duration, karaoke_path, vocals_path)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (video_id, title, duration, karaoke_path, vocals_path),
                )
                row = conn.execute("SELECT * FROM conversions WHERE id = ?", (cur.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise UniqueConstraintViolation(f"Conversion for video {video_id} already exists: {exc}") from exc
        return ConversionRecord.from_row(row)

    def list_conversions(self, search=None):
        query = "SELECT * FROM conversions"
        params = []
        if search:
            # LIKE is case-insensitive for ASCII in SQLite.
            query += " WHERE title LIKE ? ESCAPE '\\'"
            params.append(f"%{_escape_like(search)}%")
        query += " ORDER BY created_at DESC, id DESC"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ConversionRecord.from_row(row) for row in rows]

    def delete_conversion(self, conversion_id):
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM conversions WHERE id = ?", (conversion_id,)).fetchone()
            if not row:
                raise NotFound(f"Conversion {conversion_id} not found", message="Song not found")
            playlist_ids = [
                item["playlist_id"]
                for item in conn.execute(
                    "SELECT DISTINCT playlist_id FROM playlist_songs WHERE song_id = ?",
                    (conversion_id,),
                ).fetchall()
            ]
            conn.execute("DELETE FROM playlist_songs WHERE song_id = ?", (conversion_id,))
            conn.execute("DELETE FROM conversions WHERE id = ?", (conversion_id,))
            for playlist_id in playlist_ids:
                _renumber(conn, playlist_id)
        if playlist_ids:
            logging.info(
                "Conversion %s removed from playlists %s", conversion_id, ", ".join(map(str, playlist_ids))
            )
        return ConversionRecord.from_row(row)

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    def list_playlists(self):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM playlists ORDER BY created_at DESC, id DESC").fetchall()
            return [_load_playlist(conn, row) for row in rows]

    def get_playlist(self, playlist_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM playlists WHERE id = ?", (playlist_id,)).fetchone()
            return _load_playlist(conn, row) if row else None

    def create_playlist(self, name):
        name = _normalize_name(name)
        with self._transaction() as conn:
            cur = conn.execute("INSERT INTO playlists (name) VALUES (?)", (name,))
            playlist_id = cur.lastrowid
            row = conn.execute("SELECT * FROM playlists WHERE id = ?", (playlist_id,)).fetchone()
            return _load_playlist(conn, row)

    def rename_playlist(self, playlist_id, name):
        name = _normalize_name(name)
        with self._transaction() as conn:
            cur = conn.execute("UPDATE playlists SET name = ? WHERE id = ?", (name, playlist_id))
            if cur.rowcount != 1:
                raise NotFound(f"Playlist {playlist_id} not found", message="Playlist not found")
            row = conn.execute("SELECT * FROM playlists WHERE id = ?", (playlist_id,)).fetchone()
            return _load_playlist(conn, row)

    def delete_playlist(self, playlist_id):
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
            if cur.rowcount != 1:
                raise NotFound(f"Playlist {playlist_id} not found", message="Playlist not found")

    def add_song_to_playlist(self, playlist_id, song_id):
        with self._transaction() as conn:
            _require_playlist(conn, playlist_id)
            if not conn.execute("SELECT 1 FROM conversions WHERE id = ?", (song_id,)).fetchone():
                raise NotFound(f"Conversion {song_id} not found", message="Song not found")
            row = conn.execute(
                "SELECT MAX(position) AS max_pos FROM playlist_songs WHERE playlist_id = ?",
                (playlist_id,),
            ).fetchone()
            position = (row["max_pos"] or 0) + 1
            try:
                conn.execute(
                    "INSERT INTO playlist_songs (playlist_id, song_id, position) VALUES (?, ?, ?)",
                    (playlist_id, song_id, position),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateMembership(
                    f"Song {song_id} is already in playlist {playlist_id}: {exc}"
                ) from exc
        return position

    def remove_song_from_playlist(self, playlist_id, song_id):
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM playlist_songs WHERE playlist_id = ? AND song_id = ?",
                (playlist_id, song_id),
            )
            if cur.rowcount != 1:
                raise NotFound(
                    f"Song {song_id} is not in playlist {playlist_id}", message="Song not found in playlist"
                )
            _renumber(conn, playlist_id)

    def reorder_song(self, playlist_id, from_position, to_position):
        from_position = int(from_position)
        to_position = int(to_position)
        with self._transaction() as conn:
            entry = conn.execute(
                "SELECT id FROM playlist_songs WHERE playlist_id = ? AND position = ?",
                (playlist_id, from_position),
            ).fetchone()
            if not entry:
                raise NotFound(
                    f"No song at position {from_position} in playlist {playlist_id}", message="Song not found"
                )
            if from_position == to_position:
                return
            count = conn.execute(
                "SELECT COUNT(*) AS n FROM playlist_songs WHERE playlist_id = ?", (playlist_id,)
            ).fetchone()["n"]
            if not 1 <= to_position <= count:
                raise InvalidPosition(f"toPosition must be between 1 and {count}, got {to_position}")
            if from_position < to_position:
                conn.execute(
                    """
                    UPDATE playlist_songs
                    SET position = position - 1
                    WHERE playlist_id = ? AND position > ? AND position <= ?
                    """,
                    (playlist_id, from_position, to_position),
                )
            else:
                conn.execute(
                    """
                    UPDATE playlist_songs
                    SET position = position + 1
                    WHERE playlist_id = ? AND position >= ? AND position < ?
                    """,
                    (playlist_id, to_position, from_position),
                )
            conn.execute("UPDATE playlist_songs SET position = ? WHERE id = ?", (to_position, entry["id"]))


def _require_playlist(conn, playlist_id):
    if not conn.execute("SELECT 1 FROM playlists WHERE id = ?", (playlist_id,)).fetchone():
        raise NotFound(f"Playlist {playlist_id} not found", message="Playlist not found")


def _renumber(conn, playlist_id):
    rows = conn.execute(
        "SELECT id FROM playlist_songs WHERE playlist_id = ? ORDER BY position, id",
        (playlist_id,),
    ).fetchall()
    for index, row in enumerate(rows, start=1):
        conn.execute("UPDATE playlist_songs SET position = ? WHERE id = ?", (index, row["id"]))


def _load_playlist(conn, row):
    songs = conn.execute(
        """
        SELECT c.*, ps.position
        FROM playlist_songs ps
        JOIN conversions c ON ps.song_id = c.id
        WHERE ps.playlist_id = ?
        ORDER BY ps.position
        """,
        (row["id"],),
    ).fetchall()
    return Playlist(
        id=row["id"],
        name=row["name"],
        created_at=row["created_at"],
        songs=[PlaylistSong(conversion=ConversionRecord.from_row(song), position=song["position"]) for song in songs],
    )
