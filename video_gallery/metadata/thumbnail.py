import hashlib
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from PIL import Image

from .. import config
from ..exceptions import ThumbnailError
from ..models import CatalogEntry


class Thumbnailer:
    """
    Generates preview images with ffmpeg and finishes them with Pillow.

    The output filename is a hash of the canonical path key, so two videos with
    the same name in different folders never share a thumbnail, and parallel
    writes for different entries never touch the same file.
    """
    def __init__(self,
                 cache_dir: Path,
                 ffmpeg_bin: str = config.FFMPEG_BIN,
                 width: int = config.THUMBNAIL_WIDTH,
                 seek_seconds: float = config.THUMBNAIL_SEEK_SECONDS,
                 timeout: float = config.PROBE_TIMEOUT_SECONDS):
        self.cache_dir = Path(cache_dir)
        self.ffmpeg_bin = ffmpeg_bin
        self.width = width
        self.seek_seconds = seek_seconds
        self.timeout = timeout

    @property
    def thumbnail_dir(self) -> Path:
        return self.cache_dir / config.THUMBNAIL_DIRNAME

    def scene_dir(self, identity: str) -> Path:
        return self.cache_dir / config.SCENES_DIRNAME / identity

    def thumbnail_path_for(self, canonical_key: str) -> Path:
        digest = hashlib.sha256(canonical_key.encode('utf-8')).hexdigest()
        return self.thumbnail_dir / f"{digest}.jpg"

    def generate(self, source: Path, canonical_key: str, force: bool = False) -> Path:
        """
        Writes the thumbnail for `source` and returns its path.
        An existing thumbnail is reused unless `force` is set (content changed).

        Raises:
            ThumbnailError: ffmpeg failed, timed out, or produced an unreadable frame.
        """
        dest = self.thumbnail_path_for(canonical_key)
        if dest.exists() and not force:
            return dest

        self.thumbnail_dir.mkdir(parents=True, exist_ok=True)
        # A failed regeneration must not leave the old content's image behind
        dest.unlink(missing_ok=True)
        frame = dest.with_suffix('.frame.png')
        try:
            # Short clips: seeking past the end yields no frame, so retry at the start
            if not self._extract_frame(source, frame, self.seek_seconds):
                if self.seek_seconds <= 0 or not self._extract_frame(source, frame, 0.0):
                    raise ThumbnailError(f"ffmpeg produced no frame for {source}")
            self._finish(frame, dest)
        finally:
            frame.unlink(missing_ok=True)
        return dest

    def remove_owned(self, entry: CatalogEntry, keep: Optional[set] = None):
        """Deletes the entry's thumbnail and its scene thumbnail directory."""
        keep = keep or set()
        if entry.thumbnail_ref and entry.thumbnail_ref not in keep:
            try:
                entry.thumbnail_ref.unlink(missing_ok=True)
            except OSError as e:
                logging.warning(f"Could not delete thumbnail {entry.thumbnail_ref}: {e}")

        scene_dir = self.scene_dir(entry.identity)
        if scene_dir.exists():
            shutil.rmtree(scene_dir, ignore_errors=True)

    def _extract_frame(self, source: Path, out: Path, position: float) -> bool:
        cmd = [
            self.ffmpeg_bin,
            "-ss", f"{position:.1f}",
            "-i", str(source),
            "-vframes", "1",
            "-y",
            str(out),
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise ThumbnailError(f"ffmpeg timed out after {self.timeout}s on {source}") from e
        except OSError as e:
            raise ThumbnailError(f"ffmpeg could not be started: {e}") from e
        return proc.returncode == 0 and out.exists() and out.stat().st_size > 0

    def _finish(self, frame: Path, dest: Path):
        """Scales the raw frame to the configured width and stores it as JPEG."""
        try:
            with Image.open(frame) as im:
                im = im.convert("RGB")
                if im.width > self.width:
                    height = max(1, round(im.height * self.width / im.width))
                    im = im.resize((self.width, height), Image.Resampling.LANCZOS)
                im.save(dest, "JPEG", quality=config.THUMBNAIL_QUALITY)
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise ThumbnailError(f"Unreadable frame {frame}: {e}") from e
