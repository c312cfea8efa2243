from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..exceptions import WatchError
from ..models import WatchRoot
from .debounce import FsEvent

# inotify/FSEvents also report open/close; those never change the catalog
_IGNORED_EVENT_TYPES = {"opened", "closed", "closed_no_write"}


class _RootEventHandler(FileSystemEventHandler):
    """
    Converts watchdog events into FsEvents and hands them to the sink.
    Runs on the observer thread: it must not touch any engine state directly.
    """

    def __init__(self, sink: Callable[[FsEvent], None]):
        super().__init__()
        self.sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        paths = [os.fsdecode(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))
        self.sink(FsEvent(kind=event.event_type, paths=tuple(paths), is_directory=event.is_directory))


class WatchSetManager:
    """
    Owns the set of watch roots and one recursive OS watch per existing root.

    Roots that do not exist yet are accepted and remembered but not watched;
    `recheck()` installs their watch once the directory appears. Removing a
    root only tears down its watch; catalog data is left alone.
    """

    def __init__(self,
                 sink: Callable[[FsEvent], None],
                 observer_factory: Callable[[], Observer] = Observer):
        self.sink = sink
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._handler = _RootEventHandler(sink)
        self._roots: Dict[Path, WatchRoot] = {}
        self._watches: Dict[Path, object] = {}
        self._lock = threading.Lock()
        self._started = False

    @property
    def roots(self) -> List[WatchRoot]:
        with self._lock:
            return list(self._roots.values())

    @staticmethod
    def normalize(path) -> Path:
        return Path(os.path.abspath(os.path.expanduser(os.fsdecode(path))))

    def add_root(self, path) -> WatchRoot:
        root_path = self.normalize(path)
        with self._lock:
            root = self._roots.get(root_path)
            if root is None:
                root = WatchRoot(root_path=root_path)
                self._roots[root_path] = root
                logging.info(f"[watcher] Added watch root: {root_path}")
            self._install(root)
            return root

    def remove_root(self, path) -> bool:
        root_path = self.normalize(path)
        with self._lock:
            root = self._roots.pop(root_path, None)
            if root is None:
                return False
            self._uninstall(root)
            logging.info(f"[watcher] Removed watch root: {root_path}")
            return True

    def recheck(self) -> List[WatchRoot]:
        """Installs watches for roots that have appeared since they were added."""
        newly_watched = []
        with self._lock:
            if not self._started:
                return newly_watched
            for root in self._roots.values():
                if not root.watched and root.root_path.is_dir():
                    if self._install(root):
                        newly_watched.append(root)
        return newly_watched

    def start(self):
        """Starts the observer and installs a watch for every existing root."""
        with self._lock:
            self._started = True
            self._ensure_observer()
            for root in self._roots.values():
                self._install(root)

    def stop(self):
        with self._lock:
            observer = self._observer
            self._observer = None
            self._started = False
            self._watches.clear()
            for root in self._roots.values():
                root.watched = False
        if observer is not None:
            observer.stop()
            observer.join(timeout=2)

    # --- Internal helpers (callers hold the lock) ---

    def _ensure_observer(self) -> Observer:
        if self._observer is None:
            self._observer = self._observer_factory()
            self._observer.start()
        return self._observer

    def _install(self, root: WatchRoot) -> bool:
        if root.watched:
            return True
        if not self._started:
            return False
        if not root.root_path.is_dir():
            logging.info(f"[watcher] Root does not exist yet, not watching: {root.root_path}")
            return False
        try:
            self._watches[root.root_path] = self._schedule(root.root_path)
        except WatchError as e:
            # Other roots keep working
            logging.error(f"[watcher] {e}")
            root.watched = False
            return False
        root.watched = True
        logging.info(f"[watcher] Watching folder: {root.root_path}")
        return True

    def _schedule(self, path: Path):
        try:
            observer = self._ensure_observer()
            return observer.schedule(self._handler, str(path), recursive=True)
        except Exception as e:
            # e.g. inotify watch limit reached, or the folder vanished meanwhile
            raise WatchError(f"Failed to watch folder {path}: {e}") from e

    def _uninstall(self, root: WatchRoot):
        watch = self._watches.pop(root.root_path, None)
        if watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logging.warning(f"[watcher] Failed to unwatch {root.root_path}: {e}")
        root.watched = False
