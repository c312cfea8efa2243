import csv
import logging
from pathlib import Path
from typing import Dict, List

from .database.ops import CatalogStore
from .models import CatalogEntry, ChangeKind, CycleSummary, MetadataField
from .reconcile import classify
from .scanning.filesystem import DirectoryScanner
from .scanning.paths import PathResolver

_STATUS = {
    ChangeKind.NEW: "Untracked",
    ChangeKind.CHANGED: "Size Changed",
    ChangeKind.NEEDS_COMPLETION: "Incomplete",
    ChangeKind.UNTOUCHED: "Cataloged",
}
MISSING_ON_DISK = "Missing On Disk"


class ReportGenerator:
    def __init__(self,
                 store: CatalogStore,
                 scanner: DirectoryScanner = None,
                 resolver: PathResolver = None):
        self.store = store
        self.scanner = scanner or DirectoryScanner()
        self.resolver = resolver or store.resolver

    def generate_root_report(self, root: str, output_csv: str) -> Dict[str, int]:
        """
        Walks a watch root and writes one CSV row per video with its catalog status,
        as the next reconciliation would see it. Catalog entries under the root whose
        file is gone are listed as 'Missing On Disk'. Returns counts per status.
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise FileNotFoundError(f"Root path {root} does not exist.")

        logging.info(f"Generating report for {root} -> {output_csv}")
        root_key = self.resolver.root_key(root_path)

        # Entries under this root, keyed the same way reconciliation keys them
        by_key: Dict[str, CatalogEntry] = {}
        for entry in self.store.load_all():
            key = self.resolver.key(entry.canonical_path)
            if self.resolver.is_under(key, root_key):
                by_key[key] = entry

        headers = ["Path", "Status", "Size", "Catalog Id", "Missing Fields", "Notes"]
        counts: Dict[str, int] = {}
        seen = set()

        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(headers)

            for candidate in self.scanner.scan(root_path):
                resolved = self.resolver.try_resolve(candidate.path)
                if resolved is None:
                    row = [str(candidate.path), "Error", candidate.size_bytes, "", "", "Cannot resolve path"]
                    self._write(writer, row, counts)
                    continue

                key = self.resolver.key(resolved)
                if key in seen:
                    continue
                seen.add(key)

                existing = by_key.get(key)
                kind, fields = classify(candidate, existing)
                notes = ""
                if kind == ChangeKind.CHANGED:
                    notes = f"Cataloged size {existing.size_bytes}"
                row = [
                    str(resolved),
                    _STATUS[kind],
                    candidate.size_bytes,
                    existing.identity if existing else "",
                    _field_list(fields) if kind == ChangeKind.NEEDS_COMPLETION else "",
                    notes,
                ]
                self._write(writer, row, counts)

            for key, entry in sorted(by_key.items()):
                if key in seen or self.resolver.exists(entry.canonical_path):
                    continue
                row = [str(entry.canonical_path), MISSING_ON_DISK, entry.size_bytes, entry.identity, "", "Removed on next rescan"]
                self._write(writer, row, counts)

        logging.info(f"Report complete: {sum(counts.values())} videos")
        return counts

    @staticmethod
    def _write(writer, row: List, counts: Dict[str, int]):
        writer.writerow(row)
        counts[row[1]] = counts.get(row[1], 0) + 1


def _field_list(fields) -> str:
    order = list(MetadataField)
    return ",".join(f.value for f in sorted(fields, key=order.index))


def format_summary(summary: CycleSummary) -> str:
    """One-line text for a cycle, suitable for a status bar or log line."""
    if not summary.committed:
        return f"Rescan ({summary.reason}) failed: {summary.error}"

    parts = []
    if summary.added:
        parts.append(f"{summary.added} added")
    if summary.removed:
        parts.append(f"{summary.removed} removed")
    if summary.updated:
        parts.append(f"{summary.updated} updated")
    if summary.completed:
        parts.append(f"{summary.completed} completed")
    text = ", ".join(parts) if parts else "no changes"
    if summary.incomplete:
        text += f" ({summary.incomplete} incomplete)"
    return f"Rescan ({summary.reason}): {text}"
