"""
Configuration constants and options for the video gallery watcher.
"""
import os
import sys
from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet

from .exceptions import ConfigError

# --- File Type Definitions ---
VIDEO_EXTS = frozenset({
    '.mp4', '.avi', '.mkv', '.mov', '.wmv', '.flv', '.webm', '.m4v', '.mpg', '.mpeg'
})

# --- Debounce ---
# Minimum quiet time before a pending change signal may fire
QUIET_SECONDS = 5.0
# Upper bound on how long a continuous event stream can postpone a rescan
MAX_DELAY_SECONDS = 60.0

# --- Enrichment ---
ENRICH_WORKERS = 4
PROBE_TIMEOUT_SECONDS = 20.0
FFMPEG_BIN = "ffmpeg"
FFPROBE_BIN = "ffprobe"

# --- Thumbnails ---
THUMBNAIL_WIDTH = 320
THUMBNAIL_SEEK_SECONDS = 5.0
THUMBNAIL_QUALITY = 85
THUMBNAIL_DIRNAME = "thumbnails"
SCENES_DIRNAME = "scenes"

# --- Host loop ---
TICK_INTERVAL_SECONDS = 0.5

# Case-insensitive filesystems by default
CASE_INSENSITIVE_PLATFORM = sys.platform in ("win32", "darwin")


def is_video_path(path, extensions: FrozenSet[str] = VIDEO_EXTS) -> bool:
    """Extension test used by both the scanner and the debouncer."""
    return os.path.splitext(os.fsdecode(path))[1].lower() in extensions


@dataclass
class WatchConfig:
    """
    Every option the watch engine recognizes, with its default.

    quiet_seconds:          quiet window between a change and the rescan it triggers
    max_delay_seconds:      cap on how long a steady stream of events can defer a rescan
    enrich_workers:         size of the enrichment worker pool
    probe_timeout_seconds:  bound on each ffprobe/ffmpeg subprocess
    video_extensions:       lower-case extension allow-list (with leading dot)
    thumbnail_width:        width in pixels of generated thumbnails
    thumbnail_seek_seconds: position of the thumbnail frame
    ffmpeg_bin/ffprobe_bin: executables used for thumbnails and probing
    case_fold:              fold case when building canonical path keys
    show_progress:          draw a tqdm bar while enriching
    """
    quiet_seconds: float = QUIET_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    enrich_workers: int = ENRICH_WORKERS
    probe_timeout_seconds: float = PROBE_TIMEOUT_SECONDS
    video_extensions: FrozenSet[str] = field(default_factory=lambda: VIDEO_EXTS)
    thumbnail_width: int = THUMBNAIL_WIDTH
    thumbnail_seek_seconds: float = THUMBNAIL_SEEK_SECONDS
    ffmpeg_bin: str = FFMPEG_BIN
    ffprobe_bin: str = FFPROBE_BIN
    case_fold: bool = CASE_INSENSITIVE_PLATFORM
    show_progress: bool = False

    def __post_init__(self):
        self.video_extensions = frozenset(
            e.lower() if e.startswith('.') else f".{e.lower()}" for e in self.video_extensions
        )
        if self.quiet_seconds < 0:
            raise ConfigError(f"quiet_seconds must be >= 0, got {self.quiet_seconds}")
        if self.max_delay_seconds < self.quiet_seconds:
            raise ConfigError("max_delay_seconds must not be shorter than quiet_seconds")
        if self.enrich_workers < 1:
            raise ConfigError(f"enrich_workers must be >= 1, got {self.enrich_workers}")
        if self.probe_timeout_seconds <= 0:
            raise ConfigError("probe_timeout_seconds must be positive")
        if self.thumbnail_width < 16:
            raise ConfigError(f"thumbnail_width too small: {self.thumbnail_width}")
        if not self.video_extensions:
            raise ConfigError("video_extensions must not be empty")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
        return cls(**data)
