import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, List, Dict, Iterable, Iterator

from ..exceptions import CatalogError
from ..models import CatalogEntry, SceneMark
from ..scanning.paths import PathResolver

_VIDEO_COLUMNS = """
    id, path, path_key, title, duration, file_size, resolution_width, resolution_height,
    frame_rate, thumbnail_path, folder, rating, added_date, last_played
"""


class CatalogStore:
    """
    Catalog storage used by the reconciliation engine and the host.

    Mutations run inside `transaction()`; nested calls join the outer
    transaction, so a whole reconciliation commit is all-or-nothing.
    """
    def __init__(self,
                 conn: sqlite3.Connection,
                 resolver: Optional[PathResolver] = None,
                 lock: Optional[threading.RLock] = None):
        self.conn = conn
        self.resolver = resolver or PathResolver()
        self._lock = lock or threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["CatalogStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                with self.conn:
                    yield self
            except sqlite3.Error as e:
                raise CatalogError(f"Catalog transaction failed: {e}") from e
            finally:
                self._depth = 0

    # --- Reads ---

    def load_all(self) -> List[CatalogEntry]:
        """Loads every entry with its tags and scenes (batch loaded)."""
        try:
            with self._lock:
                cur = self.conn.cursor()
                cur.execute(f"SELECT {_VIDEO_COLUMNS} FROM videos")
                entries: Dict[str, CatalogEntry] = {}
                for row in cur.fetchall():
                    entry = self._entry_from_row(row)
                    entries[entry.identity] = entry

                tags: Dict[str, set] = {}
                cur.execute("SELECT video_id, tag FROM video_tags")
                for video_id, tag in cur.fetchall():
                    tags.setdefault(video_id, set()).add(tag)
                for video_id, tag_set in tags.items():
                    if video_id in entries:
                        entries[video_id].tags = frozenset(tag_set)

                cur.execute("SELECT video_id, timestamp, thumbnail_path FROM scenes ORDER BY video_id, timestamp, id")
                for video_id, ts, thumb in cur.fetchall():
                    if video_id in entries:
                        entries[video_id].scenes.append(SceneMark(ts, Path(thumb)))
        except sqlite3.Error as e:
            raise CatalogError(f"Cannot load catalog: {e}") from e

        return list(entries.values())

    def get(self, identity: str) -> Optional[CatalogEntry]:
        return self._get_one("id = ?", identity)

    def get_by_key(self, path_key: str) -> Optional[CatalogEntry]:
        return self._get_one("path_key = ?", path_key)

    def exists(self, path_key: str) -> bool:
        with self._lock:
            cur = self.conn.execute("SELECT 1 FROM videos WHERE path_key = ? LIMIT 1", (path_key,))
            return cur.fetchone() is not None

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM videos").fetchone()[0]

    # --- Writes used by reconciliation ---

    def upsert(self, entry: CatalogEntry):
        """
        Inserts or replaces an entry keyed by identity, curated data included.
        A different identity already holding the same path key loses (last write wins).
        """
        path_key = self.resolver.key(entry.canonical_path)
        rating = min(max(int(entry.rating), 0), 5)
        width, height = entry.resolution if entry.resolution else (None, None)

        with self.transaction():
            cur = self.conn.cursor()
            cur.execute("SELECT id FROM videos WHERE path_key = ? AND id != ?", (path_key, entry.identity))
            for (other_id,) in cur.fetchall():
                logging.warning(f"Duplicate canonical path {entry.canonical_path}: replacing entry {other_id} with {entry.identity}")
                self._delete_rows(other_id)

            cur.execute(f"""
                INSERT INTO videos ({_VIDEO_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    path = excluded.path,
                    path_key = excluded.path_key,
                    title = excluded.title,
                    duration = excluded.duration,
                    file_size = excluded.file_size,
                    resolution_width = excluded.resolution_width,
                    resolution_height = excluded.resolution_height,
                    frame_rate = excluded.frame_rate,
                    thumbnail_path = excluded.thumbnail_path,
                    folder = excluded.folder,
                    rating = excluded.rating,
                    added_date = excluded.added_date,
                    last_played = excluded.last_played
            """, (
                entry.identity, str(entry.canonical_path), path_key, entry.display_name,
                entry.duration_seconds, int(entry.size_bytes), width, height, entry.frame_rate,
                str(entry.thumbnail_ref) if entry.thumbnail_ref else None,
                entry.containing_folder, rating, entry.added_at.isoformat(),
                entry.last_played_at.isoformat() if entry.last_played_at else None,
            ))

            self._write_tags(entry.identity, entry.tags)
            cur.execute("DELETE FROM scenes WHERE video_id = ?", (entry.identity,))
            cur.executemany(
                "INSERT INTO scenes (video_id, timestamp, thumbnail_path) VALUES (?, ?, ?)",
                [(entry.identity, s.timestamp, str(s.thumbnail_path)) for s in entry.scenes],
            )
            if entry.containing_folder:
                cur.execute("INSERT OR IGNORE INTO folders (name) VALUES (?)", (entry.containing_folder,))

    def update_metadata(self, entry: CatalogEntry) -> bool:
        """
        Writes the scanned size, probed metadata and thumbnail reference of an
        existing entry. Title, rating, tags, scenes and play history stay as
        they are in the database, so host edits made during a cycle survive.

        Returns False if the entry no longer exists.
        """
        width, height = entry.resolution if entry.resolution else (None, None)
        with self.transaction():
            cur = self.conn.execute("""
                UPDATE videos SET
                    file_size = ?,
                    duration = ?,
                    resolution_width = ?,
                    resolution_height = ?,
                    frame_rate = ?,
                    thumbnail_path = ?
                WHERE id = ?
            """, (
                int(entry.size_bytes), entry.duration_seconds, width, height, entry.frame_rate,
                str(entry.thumbnail_ref) if entry.thumbnail_ref else None,
                entry.identity,
            ))
            return cur.rowcount > 0

    def delete(self, identity: str) -> bool:
        with self.transaction():
            return self._delete_rows(identity)

    def delete_many(self, identities: Iterable[str]) -> int:
        """Deletes several entries in one transaction; returns how many existed."""
        with self.transaction():
            return sum(1 for identity in identities if self._delete_rows(identity))

    # --- Curated data (host operations) ---

    def set_tags(self, identity: str, tags: Iterable[str]):
        with self.transaction():
            self._require(identity)
            self._write_tags(identity, frozenset(t.strip() for t in tags if t.strip()))

    def set_rating(self, identity: str, rating: int):
        with self.transaction():
            self._require(identity)
            self.conn.execute("UPDATE videos SET rating = ? WHERE id = ?", (min(max(int(rating), 0), 5), identity))

    def rename(self, identity: str, display_name: str):
        with self.transaction():
            self._require(identity)
            self.conn.execute("UPDATE videos SET title = ? WHERE id = ?", (display_name, identity))

    def add_scene(self, identity: str, scene: SceneMark):
        with self.transaction():
            self._require(identity)
            self.conn.execute(
                "INSERT INTO scenes (video_id, timestamp, thumbnail_path) VALUES (?, ?, ?)",
                (identity, scene.timestamp, str(scene.thumbnail_path)),
            )

    def mark_played(self, identity: str, when: Optional[datetime] = None):
        when = when or datetime.now(UTC)
        with self.transaction():
            self._require(identity)
            self.conn.execute("UPDATE videos SET last_played = ? WHERE id = ?", (when.isoformat(), identity))

    # --- Watch roots ---

    def list_watch_roots(self) -> List[Path]:
        with self._lock:
            cur = self.conn.execute("SELECT path FROM watch_roots ORDER BY path")
            return [Path(r[0]) for r in cur.fetchall()]

    def add_watch_root(self, path: Path):
        with self.transaction():
            self.conn.execute(
                "INSERT OR IGNORE INTO watch_roots (path, added_at) VALUES (?, ?)",
                (str(path), datetime.now(UTC).isoformat()),
            )

    def remove_watch_root(self, path: Path) -> bool:
        with self.transaction():
            cur = self.conn.execute("DELETE FROM watch_roots WHERE path = ?", (str(path),))
            return cur.rowcount > 0

    # --- Maintenance ---

    def cleanup_unused_folders(self) -> int:
        """Removes folder labels no video uses any more."""
        with self.transaction():
            cur = self.conn.execute(
                "DELETE FROM folders WHERE name NOT IN (SELECT DISTINCT folder FROM videos WHERE folder IS NOT NULL)"
            )
            return cur.rowcount

    def cleanup_unused_tags(self) -> int:
        """Removes tags no video uses any more."""
        with self.transaction():
            cur = self.conn.execute("DELETE FROM tags WHERE name NOT IN (SELECT DISTINCT tag FROM video_tags)")
            return cur.rowcount

    # --- Internal helpers ---

    def _get_one(self, where: str, value: str) -> Optional[CatalogEntry]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE {where}", (value,))
            row = cur.fetchone()
            if row is None:
                return None
            entry = self._entry_from_row(row)
            cur.execute("SELECT tag FROM video_tags WHERE video_id = ?", (entry.identity,))
            entry.tags = frozenset(r[0] for r in cur.fetchall())
            cur.execute(
                "SELECT timestamp, thumbnail_path FROM scenes WHERE video_id = ? ORDER BY timestamp, id",
                (entry.identity,),
            )
            entry.scenes = [SceneMark(ts, Path(p)) for ts, p in cur.fetchall()]
            return entry

    def _require(self, identity: str):
        cur = self.conn.execute("SELECT 1 FROM videos WHERE id = ?", (identity,))
        if cur.fetchone() is None:
            raise CatalogError(f"No catalog entry with id {identity}")

    def _write_tags(self, identity: str, tags: Iterable[str]):
        self.conn.execute("DELETE FROM video_tags WHERE video_id = ?", (identity,))
        rows = [(identity, t) for t in sorted(tags)]
        self.conn.executemany("INSERT OR IGNORE INTO video_tags (video_id, tag) VALUES (?, ?)", rows)
        self.conn.executemany("INSERT OR IGNORE INTO tags (name) VALUES (?)", [(t,) for _, t in rows])

    def _delete_rows(self, identity: str) -> bool:
        # Explicit child deletes: connections without foreign_keys=ON do not cascade
        self.conn.execute("DELETE FROM video_tags WHERE video_id = ?", (identity,))
        self.conn.execute("DELETE FROM scenes WHERE video_id = ?", (identity,))
        cur = self.conn.execute("DELETE FROM videos WHERE id = ?", (identity,))
        return cur.rowcount > 0

    @staticmethod
    def _entry_from_row(row) -> CatalogEntry:
        (identity, path, _key, title, duration, size, width, height,
         frame_rate, thumb, folder, rating, added, last_played) = row
        return CatalogEntry(
            identity=identity,
            canonical_path=Path(path),
            display_name=title,
            size_bytes=int(size),
            added_at=_parse_dt(added) or datetime.now(UTC),
            duration_seconds=duration,
            resolution=(int(width), int(height)) if width is not None and height is not None else None,
            frame_rate=frame_rate,
            thumbnail_ref=Path(thumb) if thumb else None,
            containing_folder=folder,
            rating=int(rating),
            last_played_at=_parse_dt(last_played),
        )


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
