import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

from watchdog.observers import Observer

from .config import WatchConfig
from .database.db import DBManager
from .database.ops import CatalogStore
from .exceptions import CatalogError
from .metadata.enrich import MetadataEnricher
from .metadata.probe import MediaProber
from .metadata.thumbnail import Thumbnailer
from .models import CatalogEntry, CycleSummary, WatchRoot
from .reconcile import ReconciliationEngine
from .scanning.filesystem import DirectoryScanner
from .scanning.paths import PathResolver
from .watching.debounce import ChangeDebouncer, FsEvent
from .watching.watchset import WatchSetManager


@dataclass
class CycleFinished:
    summary: CycleSummary


@dataclass
class Notification:
    level: str          # "info" / "warning" / "error"
    message: str


EngineMessage = Union[CycleFinished, Notification]


class WatchEngine:
    """
    Host-facing facade over the watch-and-reconcile pipeline.

    Threading:
      - the host calls every public method from one thread and calls `tick()` periodically;
      - reconciliation cycles run on a single background worker, one at a time;
      - watchdog events and cycle results travel back through `channel` and are
        only applied to the debouncer and the watch-root set inside `tick()`.
    """
    def __init__(self,
                 db_path: Path,
                 cache_dir: Path,
                 watch_config: Optional[WatchConfig] = None,
                 observer_factory: Callable[[], Observer] = Observer,
                 prober: Optional[MediaProber] = None,
                 thumbnailer: Optional[Thumbnailer] = None):
        self.config = watch_config or WatchConfig()
        cfg = self.config

        self.db_manager = DBManager(db_path)
        conn = self.db_manager.connect()
        self.resolver = PathResolver(case_fold=cfg.case_fold)
        self.store = CatalogStore(conn, self.resolver, lock=self.db_manager.write_lock)

        self.thumbnailer = thumbnailer or Thumbnailer(
            cache_dir,
            ffmpeg_bin=cfg.ffmpeg_bin,
            width=cfg.thumbnail_width,
            seek_seconds=cfg.thumbnail_seek_seconds,
            timeout=cfg.probe_timeout_seconds,
        )
        prober = prober or MediaProber(cfg.ffprobe_bin, cfg.probe_timeout_seconds)
        self.enricher = MetadataEnricher(prober, self.thumbnailer, cfg.enrich_workers, cfg.show_progress)
        self.engine = ReconciliationEngine(
            self.store, DirectoryScanner(cfg.video_extensions), self.resolver, self.enricher
        )

        self.debouncer = ChangeDebouncer(cfg.quiet_seconds, cfg.max_delay_seconds, cfg.video_extensions)
        self.channel: "queue.Queue" = queue.Queue()
        self.watch_set = WatchSetManager(self.channel.put, observer_factory)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reconcile")
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running = False
        self._rerun_reason: Optional[str] = None
        self._closed = False

    # --- Lifecycle ---

    def start(self):
        """Restores persisted watch roots, starts watching and runs the startup reconciliation."""
        for path in self.store.list_watch_roots():
            self.watch_set.add_root(path)
        self.watch_set.start()
        logging.info(f"[watcher] Started with {len(self.watch_set.roots)} watch root(s)")
        self.trigger_reconciliation("startup")

    def close(self):
        with self._lock:
            self._closed = True
            self._rerun_reason = None
        self.watch_set.stop()
        self._executor.shutdown(wait=True)
        self.db_manager.close()
        logging.info("[watcher] Stopped")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no cycle is in flight (including a coalesced follow-up)."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout)

    # --- Watch roots ---

    def add_watch_root(self, path) -> WatchRoot:
        root = self.watch_set.add_root(path)
        self.store.add_watch_root(root.root_path)
        self.trigger_reconciliation(f"added {root.root_path}")
        return root

    def remove_watch_root(self, path, delete_entries: bool = False) -> bool:
        """
        Stops watching `path`. Cataloged entries under it are kept unless
        `delete_entries` is set, in which case they are deleted together with
        their thumbnails and scene images (the video files stay on disk).
        """
        root_path = WatchSetManager.normalize(path)
        removed = self.watch_set.remove_root(root_path)
        if removed:
            self.store.remove_watch_root(root_path)

        if delete_entries:
            # A cycle that started before the root was dropped may still commit entries under it
            self.wait_idle()
            root_key = self.resolver.root_key(root_path)
            doomed = [e for e in self.store.load_all()
                      if self.resolver.is_under(self.resolver.key(e.canonical_path), root_key)]
            self._delete_entries(doomed)
        return removed

    # --- Catalog data ---

    def delete_entry(self, identity: str) -> bool:
        """
        Deletes one catalog entry with its thumbnail and scene images. The video
        file is not touched, so a later cycle catalogs it again while its folder
        is still watched. Returns False for an unknown identity.
        """
        entry = self.store.get(identity)
        if entry is None:
            return False
        self._delete_entries([entry])
        return True

    def _delete_entries(self, entries: List[CatalogEntry]) -> int:
        if not entries:
            return 0
        count = self.store.delete_many(e.identity for e in entries)
        for entry in entries:
            self.thumbnailer.remove_owned(entry)
        logging.info(f"[catalog] Deleted {count} video(s)")
        self._drop_emptied_roots(entries)
        return count

    def _drop_emptied_roots(self, deleted: List[CatalogEntry]):
        """Forgets watch roots whose last entries were just deleted."""
        deleted_keys = [self.resolver.key(e.canonical_path) for e in deleted]
        remaining_keys = [self.resolver.key(e.canonical_path) for e in self.store.load_all()]

        for root_path in self.store.list_watch_roots():
            root_key = self.resolver.root_key(root_path)
            if not any(self.resolver.is_under(k, root_key) for k in deleted_keys):
                continue
            if any(self.resolver.is_under(k, root_key) for k in remaining_keys):
                continue
            self.watch_set.remove_root(root_path)
            self.store.remove_watch_root(root_path)
            logging.info(f"[watcher] No videos left under {root_path}; stopped watching")
            self.channel.put(Notification("info", f"Stopped watching {root_path}: no videos left"))

    # --- Reconciliation ---

    def trigger_reconciliation(self, reason: str = "manual") -> bool:
        """
        Requests a cycle. Returns True if one started now; False if it was folded
        into the follow-up of the running cycle (or the engine is closed).
        """
        with self._lock:
            if self._closed:
                return False
            if self._running:
                if self._rerun_reason is None:
                    logging.debug(f"[rescan] Cycle in flight, scheduling follow-up ({reason})")
                self._rerun_reason = reason
                return False
            self._running = True

        self._executor.submit(self._run_cycles, reason)
        return True

    def _run_cycles(self, reason: str):
        while True:
            roots = [r.root_path for r in self.watch_set.roots]
            try:
                summary = self.engine.run_cycle(roots, reason)
                self.channel.put(CycleFinished(summary))
            except Exception as e:
                logging.exception("[rescan] Reconciliation cycle crashed")
                self.channel.put(Notification("error", f"Reconciliation failed: {e}"))

            with self._lock:
                if self._rerun_reason is None or self._closed:
                    self._running = False
                    self._rerun_reason = None
                    self._idle.notify_all()
                    return
                reason, self._rerun_reason = self._rerun_reason, None

    # --- Host tick ---

    def tick(self, now: Optional[float] = None) -> List[EngineMessage]:
        """
        Drains the channel and fires a debounced reconciliation when due.
        Returns the messages for the host to display. Never raises.
        """
        now = time.monotonic() if now is None else now
        messages: List[EngineMessage] = []

        while True:
            try:
                item = self.channel.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, FsEvent):
                self.debouncer.observe(item)
                continue
            if isinstance(item, CycleFinished):
                self.debouncer.mark_reconciled(now)
                messages.extend(self._apply_summary(item.summary))
            messages.append(item)

        for root in self.watch_set.recheck():
            messages.append(Notification("info", f"Now watching {root.root_path}"))
            self.trigger_reconciliation(f"root appeared: {root.root_path}")

        if self.debouncer.should_fire(now):
            self.debouncer.consume(now)
            self.trigger_reconciliation("filesystem change")

        return messages

    def _apply_summary(self, summary: CycleSummary) -> List[Notification]:
        notes = []
        if not summary.committed:
            notes.append(Notification("error", f"Catalog update failed: {summary.error}"))

        for root in summary.vanished_roots:
            if self.watch_set.remove_root(root):
                try:
                    self.store.remove_watch_root(WatchSetManager.normalize(root))
                except CatalogError as e:
                    logging.error(f"[watcher] Could not forget root {root}: {e}")
                notes.append(Notification("warning", f"Watch folder no longer exists: {root}"))
        return notes
