import os
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterator, Optional, Set, FrozenSet

from .. import config
from ..models import CandidateEntry


class DirectoryScanner:
    """
    Walks a directory tree and yields every video file it finds.
    Pure filesystem traversal: no catalog access, no external tools.
    """
    def __init__(self, extensions: FrozenSet[str] = config.VIDEO_EXTS):
        self.extensions = extensions

    def scan(self, root: Path) -> Iterator[CandidateEntry]:
        """
        Generator that yields a CandidateEntry for every video under root.
        Each call re-walks from scratch.
        """
        root = Path(root)
        if not root.is_dir():
            logging.warning(f"Scan root is not a directory, skipping: {root}")
            return

        for path, stat_result in self._iter_files(root):
            if not config.is_video_path(path, self.extensions):
                continue
            yield CandidateEntry(
                path=path,
                size_bytes=stat_result.st_size,
                folder=self.folder_label(path),
                created_at=self._file_datetime(stat_result),
            )

    @staticmethod
    def folder_label(path: Path) -> Optional[str]:
        """Name of the immediate parent directory."""
        name = path.parent.name
        return name or None

    def _iter_files(self, root: Path) -> Iterator[tuple]:
        """Depth-first walker using os.scandir, following symlinks with loop protection."""
        visited: Set[tuple] = set()
        stack = [root]
        while stack:
            current = stack.pop()

            try:
                st = current.stat()
            except OSError as e:
                logging.warning(f"Cannot stat directory {current}: {e}")
                continue
            dir_id = (st.st_dev, st.st_ino)
            if dir_id in visited:
                logging.debug(f"Already visited (symlink loop?): {current}")
                continue
            visited.add(dir_id)

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                logging.warning(f"Permission denied: {current}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                try:
                    if e.is_dir(follow_symlinks=True):
                        dirs.append(Path(e.path))
                    elif e.is_file(follow_symlinks=True):
                        files.append((Path(e.path), e.stat(follow_symlinks=True)))
                except OSError as err:
                    logging.warning(f"Skipping unreadable entry {e.path}: {err}")

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)

            for f in files:
                yield f

    def _file_datetime(self, stat_result: os.stat_result) -> datetime:
        """Creation time where the platform records it, else modification time."""
        ts = getattr(stat_result, "st_birthtime", None)
        if not ts:
            ts = stat_result.st_mtime
        try:
            return datetime.fromtimestamp(ts, UTC)
        except (OverflowError, OSError, ValueError):
            return datetime.now(UTC)
