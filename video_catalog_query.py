#!/usr/bin/env python

import argparse
import sqlite3
from pathlib import Path
from typing import Optional


def connect_db(db_path: Path) -> sqlite3.Connection:
    if not db_path.exists():
        raise SystemExit(f"DB not found: {db_path}")
    return sqlite3.connect(db_path)


def _fmt_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "?"
    total = int(round(seconds))
    return f"{total // 3600:d}:{total // 60 % 60:02d}:{total % 60:02d}"


def _fmt_resolution(width, height) -> str:
    return f"{width}x{height}" if width and height else "?"


def list_by_folder(conn: sqlite3.Connection):
    cur = conn.cursor()
    cur.execute("""
        SELECT COALESCE(folder, ''), COUNT(*), COALESCE(SUM(duration), 0), SUM(file_size)
        FROM videos
        GROUP BY folder
        ORDER BY folder
    """)
    rows = cur.fetchall()
    if not rows:
        print("Catalog is empty.")
        return

    print("folder                         | videos | total_duration | total_bytes")
    print("-------------------------------+--------+----------------+------------")
    for folder, count, duration, size in rows:
        print(f"{folder.ljust(30)} | {count:6d} | {_fmt_duration(duration).rjust(14)} | {size or 0}")


def list_by_tag(conn: sqlite3.Connection, tag: str):
    cur = conn.cursor()
    cur.execute("""
        SELECT v.id, v.title, v.rating, v.path
        FROM videos v
        JOIN video_tags t ON t.video_id = v.id
        WHERE t.tag = ?
        ORDER BY v.title
    """, (tag,))
    rows = cur.fetchall()
    if not rows:
        print(f"No videos tagged '{tag}'.")
        return

    print(f"Videos tagged '{tag}':")
    for vid, title, rating, path in rows:
        print(f"  {vid} | {'*' * rating:<5} | {title} | {path}")


def list_min_rating(conn: sqlite3.Connection, min_rating: int):
    cur = conn.cursor()
    cur.execute("""
        SELECT id, title, rating, path FROM videos
        WHERE rating >= ?
        ORDER BY rating DESC, title
    """, (min_rating,))
    rows = cur.fetchall()
    if not rows:
        print(f"No videos rated {min_rating} or higher.")
        return

    print(f"Videos rated {min_rating}+:")
    for vid, title, rating, path in rows:
        print(f"  {vid} | {'*' * rating:<5} | {title} | {path}")


def list_incomplete(conn: sqlite3.Connection):
    """Entries the next rescan will try to complete (metadata or thumbnail missing)."""
    cur = conn.cursor()
    cur.execute("""
        SELECT id, path, duration, resolution_width, resolution_height, frame_rate, thumbnail_path
        FROM videos
        ORDER BY path
    """)
    found = False
    for vid, path, duration, width, height, fps, thumb in cur.fetchall():
        missing = []
        if duration is None:
            missing.append("duration")
        if width is None or height is None:
            missing.append("resolution")
        if fps is None:
            missing.append("frame_rate")
        if not thumb or not Path(thumb).exists():
            missing.append("thumbnail")
        if not missing:
            continue
        if not found:
            print("Incomplete videos:")
            found = True
        print(f"  {vid} | missing: {','.join(missing)} | {path}")

    if not found:
        print("All cataloged videos are complete.")


def _resolve_id_from_path(conn: sqlite3.Connection, path: Path) -> Optional[str]:
    cur = conn.cursor()
    for cand in (str(path), path.as_posix()):
        cur.execute("SELECT id FROM videos WHERE path = ?", (cand,))
        row = cur.fetchone()
        if row:
            return row[0]
    # path_key is folded on case-insensitive platforms
    cur.execute("SELECT id FROM videos WHERE path_key = ? OR path_key = ?",
                (path.as_posix(), path.as_posix().casefold()))
    row = cur.fetchone()
    return row[0] if row else None


def show_video_details(conn: sqlite3.Connection, video_id: str):
    cur = conn.cursor()
    cur.execute("""
        SELECT id, title, path, file_size, duration, resolution_width, resolution_height,
               frame_rate, thumbnail_path, folder, rating, added_date, last_played
        FROM videos WHERE id = ?
    """, (video_id,))
    row = cur.fetchone()
    if not row:
        print(f"No video with id={video_id}")
        return

    (vid, title, path, size, duration, width, height, fps, thumb,
     folder, rating, added, played) = row
    print("Video:")
    print(f"  id:          {vid}")
    print(f"  title:       {title}")
    print(f"  path:        {path}")
    print(f"  size_bytes:  {size}")
    print(f"  duration:    {_fmt_duration(duration)}")
    print(f"  resolution:  {_fmt_resolution(width, height)}")
    print(f"  frame_rate:  {fps if fps is not None else '?'}")
    print(f"  thumbnail:   {thumb or ''}")
    print(f"  folder:      {folder or ''}")
    print(f"  rating:      {rating}")
    print(f"  added:       {added}")
    print(f"  last_played: {played or ''}")

    cur.execute("SELECT tag FROM video_tags WHERE video_id = ? ORDER BY tag", (vid,))
    tags = [r[0] for r in cur.fetchall()]
    print(f"  tags:        {', '.join(tags)}")

    cur.execute("SELECT timestamp, thumbnail_path FROM scenes WHERE video_id = ? ORDER BY timestamp", (vid,))
    scenes = cur.fetchall()
    if scenes:
        print("\n  Scenes:")
        for ts, scene_thumb in scenes:
            print(f"  {_fmt_duration(ts).rjust(9)} | {scene_thumb}")


def parse_args():
    p = argparse.ArgumentParser(description="Query helper for the video gallery catalog DB.")
    p.add_argument("--db", required=True, help="Path to the catalog database")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--by-folder", action="store_true", help="Video counts per folder")
    group.add_argument("--by-tag", help="List videos carrying a tag")
    group.add_argument("--min-rating", type=int, help="List videos rated at least N stars")
    group.add_argument("--incomplete", action="store_true", help="List videos with missing metadata or thumbnail")
    group.add_argument("--path", help="Show details for a video by path")
    return p.parse_args()


def main():
    args = parse_args()
    db_path = Path(args.db).resolve()
    conn = connect_db(db_path)

    try:
        if args.by_folder:
            list_by_folder(conn)
        elif args.by_tag:
            list_by_tag(conn, args.by_tag)
        elif args.min_rating is not None:
            list_min_rating(conn, args.min_rating)
        elif args.incomplete:
            list_incomplete(conn)
        elif args.path:
            video_path = Path(args.path).resolve()
            video_id = _resolve_id_from_path(conn, video_path)
            if video_id is None:
                print(f"No video found for path: {video_path}")
            else:
                show_video_details(conn, video_id)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
