"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the catalog schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Core Video Table
        # path is the resolved location, path_key its case/separator-normalized identity
        conn.execute("""
        CREATE TABLE IF NOT EXISTS videos (
            id                  TEXT PRIMARY KEY,
            path                TEXT NOT NULL,
            path_key            TEXT NOT NULL UNIQUE,
            title               TEXT NOT NULL,
            duration            REAL,
            file_size           INTEGER NOT NULL,
            resolution_width    INTEGER,
            resolution_height   INTEGER,
            frame_rate          REAL,
            thumbnail_path      TEXT,
            folder              TEXT,
            rating              INTEGER NOT NULL DEFAULT 0 CHECK (rating BETWEEN 0 AND 5),
            added_date          TEXT NOT NULL,
            last_played         TEXT
        );
        """)

        # 3. Curated Data (owned by a video)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS video_tags (
            video_id    TEXT NOT NULL,
            tag         TEXT NOT NULL,
            PRIMARY KEY (video_id, tag),
            FOREIGN KEY (video_id) REFERENCES videos(id) ON DELETE CASCADE
        );
        """)

        conn.execute("""
        CREATE TABLE IF NOT EXISTS scenes (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            video_id        TEXT NOT NULL,
            timestamp       REAL NOT NULL,
            thumbnail_path  TEXT NOT NULL,
            FOREIGN KEY (video_id) REFERENCES videos(id) ON DELETE CASCADE
        );
        """)

        # 4. Grouping Vocabularies
        conn.execute("CREATE TABLE IF NOT EXISTS folders (name TEXT PRIMARY KEY);")
        conn.execute("CREATE TABLE IF NOT EXISTS tags (name TEXT PRIMARY KEY);")

        # 5. Watch Roots
        conn.execute("""
        CREATE TABLE IF NOT EXISTS watch_roots (
            path        TEXT PRIMARY KEY,
            added_at    TEXT NOT NULL
        );
        """)

        # 6. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_video_folder ON videos(folder);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_video_rating ON videos(rating);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_video_tags_tag ON video_tags(tag);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_scenes_video ON scenes(video_id);")

    logging.debug("Database schema initialized.")
