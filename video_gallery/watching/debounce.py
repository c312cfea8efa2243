"""
Change Event Debouncer

A single file copy produces a burst of create/modify events. The debouncer
reduces that burst to one "rescan needed" signal:

- events whose paths are not video files (or that concern directories) are dropped;
- a relevant event marks the PendingChangeSignal as due;
- the host loop asks `should_fire()` on every tick, which holds the signal until
  the filesystem has been quiet for `quiet_seconds` and at least `quiet_seconds`
  have passed since the previous reconciliation;
- a steady stream of events cannot hold the signal back for longer than
  `max_delay_seconds`.

The debouncer never reads the clock on its own threads; every timestamp is
passed in by the caller, so all state changes happen on the host thread.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple, FrozenSet

from .. import config
from ..models import PendingChangeSignal


@dataclass
class FsEvent:
    """Raw filesystem notification, as delivered by the watch layer."""
    kind: str                       # created / modified / deleted / moved
    paths: Tuple[str, ...]
    observed_at: float = field(default_factory=time.monotonic)
    is_directory: bool = False


class ChangeDebouncer:
    def __init__(self,
                 quiet_seconds: float = config.QUIET_SECONDS,
                 max_delay_seconds: float = config.MAX_DELAY_SECONDS,
                 extensions: FrozenSet[str] = config.VIDEO_EXTS):
        self.quiet_seconds = quiet_seconds
        self.max_delay_seconds = max_delay_seconds
        self.extensions = extensions
        self.signal = PendingChangeSignal()

    def is_relevant(self, event: FsEvent) -> bool:
        if event.is_directory:
            return False
        return any(config.is_video_path(p, self.extensions) for p in event.paths if p)

    def observe(self, event: FsEvent) -> bool:
        """Records a raw event. Returns True if it marked a reconciliation as due."""
        if not self.is_relevant(event):
            return False

        logging.debug(f"[watcher] Detected {event.kind}: {', '.join(event.paths)}")
        sig = self.signal
        if not sig.reconciliation_due:
            sig.first_pending_change = event.observed_at
        sig.reconciliation_due = True
        if sig.last_observed_change is None or event.observed_at > sig.last_observed_change:
            sig.last_observed_change = event.observed_at
        return True

    def should_fire(self, now: Optional[float] = None) -> bool:
        sig = self.signal
        if not sig.reconciliation_due:
            return False
        now = time.monotonic() if now is None else now

        if sig.last_reconciliation is not None and now - sig.last_reconciliation < self.quiet_seconds:
            return False
        if sig.first_pending_change is not None and now - sig.first_pending_change >= self.max_delay_seconds:
            return True
        return sig.last_observed_change is None or now - sig.last_observed_change >= self.quiet_seconds

    def consume(self, now: Optional[float] = None):
        """Clears the due flag; called when a reconciliation is triggered."""
        sig = self.signal
        sig.reconciliation_due = False
        sig.first_pending_change = None
        self.mark_reconciled(now)

    def mark_reconciled(self, now: Optional[float] = None):
        """Records a reconciliation, whoever started it; restarts the quiet window."""
        self.signal.last_reconciliation = time.monotonic() if now is None else now
