"""
Reconciliation engine: keeps the catalog consistent with what is on disk.

One cycle walks the states

    IDLE -> SCANNING -> DIFFING -> ENRICHING -> COMMITTING -> IDLE

For every watch root the directory is scanned, catalog entries under the root
whose file no longer resolves are marked for removal, and the remaining
candidates are classified against the catalog by canonical path key:

    not cataloged                      -> new               (full enrichment, fresh identity)
    cataloged, size differs            -> changed           (full enrichment, thumbnail regenerated)
    cataloged, some metadata missing   -> needs completion  (only the missing fields)
    cataloged and complete             -> untouched         (no write)

All catalog mutations of a cycle happen in one transaction, removals first.
Existing entries keep identity, tags, rating, scenes, added/played timestamps;
only size, metadata and the thumbnail reference are overwritten.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .database.ops import CatalogStore
from .exceptions import CatalogError
from .metadata.enrich import MetadataEnricher
from .models import (
    ALL_FIELDS, FIELD_ATTRS, CandidateEntry, CatalogEntry, ChangeKind, CycleSummary,
    EnrichJob, EnrichedEntry, MetadataField,
)
from .scanning.filesystem import DirectoryScanner
from .scanning.paths import PathResolver


class CycleState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    ENRICHING = "enriching"
    COMMITTING = "committing"


@dataclass
class PlannedChange:
    kind: ChangeKind
    key: str
    candidate: CandidateEntry
    fields: FrozenSet[MetadataField]
    existing: Optional[CatalogEntry] = None

    def job(self) -> EnrichJob:
        return EnrichJob(
            candidate=self.candidate,
            canonical_key=self.key,
            fields=self.fields,
            # New entries never reuse a thumbnail left behind at the same path
            regenerate_thumbnail=self.kind in (ChangeKind.NEW, ChangeKind.CHANGED),
        )


@dataclass
class ReconcilePlan:
    removals: Dict[str, CatalogEntry] = field(default_factory=dict)
    changes: Dict[str, PlannedChange] = field(default_factory=dict)
    untouched: int = 0
    errors: List[str] = field(default_factory=list)
    vanished_roots: List[Path] = field(default_factory=list)

    def count(self, kind: ChangeKind) -> int:
        return sum(1 for c in self.changes.values() if c.kind == kind)


def classify(candidate: CandidateEntry,
             existing: Optional[CatalogEntry]) -> Tuple[ChangeKind, FrozenSet[MetadataField]]:
    """Decides what a scanned file needs, given its catalog entry (if any)."""
    if existing is None:
        return ChangeKind.NEW, ALL_FIELDS
    if existing.size_bytes != candidate.size_bytes:
        return ChangeKind.CHANGED, ALL_FIELDS
    missing = existing.missing_fields()
    if missing:
        return ChangeKind.NEEDS_COMPLETION, missing
    return ChangeKind.UNTOUCHED, frozenset()


class ReconciliationEngine:
    def __init__(self,
                 store: CatalogStore,
                 scanner: DirectoryScanner,
                 resolver: PathResolver,
                 enricher: MetadataEnricher):
        self.store = store
        self.scanner = scanner
        self.resolver = resolver
        self.enricher = enricher
        self._state = CycleState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> CycleState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: CycleState):
        with self._state_lock:
            self._state = state
        logging.debug(f"[reconcile] state -> {state.value}")

    # --- Diff ---

    def plan(self, roots: Iterable[Path], catalog: List[CatalogEntry]) -> ReconcilePlan:
        """Scans every root and diffs it against `catalog`. Touches neither the catalog nor external tools."""
        by_key: Dict[str, CatalogEntry] = {}
        for entry in catalog:
            key = self.resolver.key(entry.canonical_path)
            if key in by_key:
                logging.warning(f"Catalog holds two entries for {entry.canonical_path}; using {entry.identity}")
            by_key[key] = entry

        plan = ReconcilePlan()
        untouched_keys: Set[str] = set()

        for root in roots:
            root = Path(root)
            root_key = self.resolver.root_key(root)

            self._set_state(CycleState.SCANNING)
            logging.info(f"[rescan] Scanning folder: {root}")
            candidates = list(self.scanner.scan(root))

            self._set_state(CycleState.DIFFING)

            # 1. Removals (before any candidate is classified)
            for key, entry in list(by_key.items()):
                if self.resolver.is_under(key, root_key) and not self.resolver.exists(entry.canonical_path):
                    logging.info(f"[rescan] Removing deleted video: {entry.canonical_path}")
                    plan.removals[entry.identity] = entry
                    del by_key[key]

            if not root.is_dir() and not any(self.resolver.is_under(k, root_key) for k in by_key):
                plan.vanished_roots.append(root)

            # 2. Classification
            for candidate in candidates:
                resolved = self.resolver.try_resolve(candidate.path)
                if resolved is None:
                    msg = f"Cannot resolve {candidate.path}; will retry next cycle"
                    logging.warning(f"[rescan] {msg}")
                    plan.errors.append(msg)
                    continue

                key = self.resolver.key(resolved)
                if key in plan.changes or key in untouched_keys:
                    # Reached through an overlapping root or a second symlink
                    continue

                candidate = replace(candidate, path=resolved)
                existing = by_key.get(key)
                kind, fields = classify(candidate, existing)
                if kind == ChangeKind.UNTOUCHED:
                    untouched_keys.add(key)
                    continue

                logging.debug(f"[rescan] {kind.value}: {resolved}")
                plan.changes[key] = PlannedChange(kind, key, candidate, fields, existing)

        plan.untouched = len(untouched_keys)
        return plan

    # --- Merge ---

    def merge(self, change: PlannedChange, result: Optional[EnrichedEntry]) -> CatalogEntry:
        """
        Builds the entry to store. For an existing entry only the size, metadata
        fields and thumbnail reference are committed; its curated fields are
        the cycle-start snapshot and are not written back.
        """
        if change.existing is None:
            entry = CatalogEntry.create(change.candidate)
        else:
            entry = replace(change.existing, scenes=list(change.existing.scenes))
            entry.size_bytes = change.candidate.size_bytes

        for f in change.fields:
            value = result.value(f) if result is not None else None
            if value is not None:
                setattr(entry, FIELD_ATTRS[f], value)
            elif change.kind == ChangeKind.CHANGED:
                # Metadata of the old content is stale; leave it empty for a retry
                setattr(entry, FIELD_ATTRS[f], None)
        return entry

    # --- Cycle ---

    def run_cycle(self, roots: Iterable[Path], reason: str = "manual") -> CycleSummary:
        """
        Runs one full reconciliation. Never raises for per-entry problems; a
        catalog failure aborts the commit and is reported in the summary.
        """
        roots = [Path(r) for r in roots]
        summary = CycleSummary(reason=reason, started_at=datetime.now(UTC), roots=len(roots))
        logging.info(f"[rescan] Reconciling {len(roots)} watched folder(s) ({reason})")

        try:
            try:
                catalog = self.store.load_all()
            except CatalogError as e:
                logging.error(f"[rescan] Catalog unavailable: {e}")
                summary.committed = False
                summary.error = str(e)
                return summary

            plan = self.plan(roots, catalog)
            summary.untouched = plan.untouched
            summary.entry_errors.extend(plan.errors)
            summary.vanished_roots = list(plan.vanished_roots)

            # Enrich
            self._set_state(CycleState.ENRICHING)
            results: Dict[str, EnrichedEntry] = {}
            for result in self.enricher.enrich_many(c.job() for c in plan.changes.values()):
                results[result.canonical_key] = result

            # Merge
            writes: List[Tuple[ChangeKind, CatalogEntry]] = []
            for key, change in plan.changes.items():
                result = results.get(key)
                if result is None or result.errors:
                    summary.incomplete += 1
                    detail = "; ".join(f"{f.value}: {msg}" for f, msg in (result.errors.items() if result else []))
                    summary.entry_errors.append(f"{change.candidate.path}: {detail or 'not enriched'}")
                entry = self.merge(change, result)
                if change.existing is not None and entry == change.existing:
                    continue
                writes.append((change.kind, entry))

            # Commit
            self._set_state(CycleState.COMMITTING)
            applied: List[Tuple[ChangeKind, CatalogEntry]] = []
            try:
                with self.store.transaction():
                    for identity in plan.removals:
                        self.store.delete(identity)
                    for kind, entry in writes:
                        if kind == ChangeKind.NEW:
                            self.store.upsert(entry)
                        elif not self.store.update_metadata(entry):
                            logging.info(f"[rescan] {entry.canonical_path} was deleted during the cycle; skipped")
                            continue
                        applied.append((kind, entry))
            except CatalogError as e:
                logging.error(f"[rescan] Commit failed, cycle discarded: {e}")
                summary.committed = False
                summary.error = str(e)
                return summary

            writes = applied
            summary.removed = len(plan.removals)
            for kind, _ in writes:
                if kind == ChangeKind.NEW:
                    summary.added += 1
                elif kind == ChangeKind.CHANGED:
                    summary.updated += 1
                else:
                    summary.completed += 1

            # Owned side-effect files go only after the rows are gone
            in_use = {e.thumbnail_ref for _, e in writes if e.thumbnail_ref}
            for entry in plan.removals.values():
                self.enricher.thumbnailer.remove_owned(entry, keep=in_use)

            logging.info(
                f"[rescan] Done: +{summary.added} -{summary.removed} "
                f"~{summary.updated} completed={summary.completed} untouched={summary.untouched}"
            )
            return summary
        finally:
            summary.finished_at = datetime.now(UTC)
            self._set_state(CycleState.IDLE)
