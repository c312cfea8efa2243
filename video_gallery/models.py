import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, List, FrozenSet, Dict


class MetadataField(str, Enum):
    DURATION = "duration"
    RESOLUTION = "resolution"
    FRAME_RATE = "frame_rate"
    THUMBNAIL = "thumbnail"


ALL_FIELDS: FrozenSet[MetadataField] = frozenset(MetadataField)
PROBE_FIELDS: FrozenSet[MetadataField] = frozenset(
    {MetadataField.DURATION, MetadataField.RESOLUTION, MetadataField.FRAME_RATE}
)

FIELD_ATTRS = {
    MetadataField.DURATION: "duration_seconds",
    MetadataField.RESOLUTION: "resolution",
    MetadataField.FRAME_RATE: "frame_rate",
    MetadataField.THUMBNAIL: "thumbnail_ref",
}


class ChangeKind(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    NEEDS_COMPLETION = "needs_completion"
    UNTOUCHED = "untouched"


@dataclass
class SceneMark:
    """A user-marked position in a video with its preview image."""
    timestamp: float
    thumbnail_path: Path


@dataclass
class CatalogEntry:
    """
    One tracked video.
    `identity` is the storage join key, `canonical_path` the reconciliation join key.
    """
    identity: str
    canonical_path: Path
    display_name: str
    size_bytes: int
    added_at: datetime

    duration_seconds: Optional[float] = None
    resolution: Optional[Tuple[int, int]] = None
    frame_rate: Optional[float] = None
    thumbnail_ref: Optional[Path] = None
    containing_folder: Optional[str] = None

    # User-curated data: survives rescans untouched
    tags: FrozenSet[str] = frozenset()
    rating: int = 0
    scenes: List[SceneMark] = field(default_factory=list)
    last_played_at: Optional[datetime] = None

    @classmethod
    def create(cls, candidate: "CandidateEntry") -> "CatalogEntry":
        """Mints a fresh identity for a newly discovered file."""
        return cls(
            identity=str(uuid.uuid4()),
            canonical_path=candidate.path,
            display_name=candidate.path.name,
            size_bytes=candidate.size_bytes,
            added_at=candidate.created_at or datetime.now(UTC),
            containing_folder=candidate.folder,
        )

    def missing_fields(self) -> FrozenSet[MetadataField]:
        missing = set()
        if self.duration_seconds is None:
            missing.add(MetadataField.DURATION)
        if self.resolution is None:
            missing.add(MetadataField.RESOLUTION)
        if self.frame_rate is None:
            missing.add(MetadataField.FRAME_RATE)
        if self.thumbnail_ref is None or not self.thumbnail_ref.exists():
            missing.add(MetadataField.THUMBNAIL)
        return frozenset(missing)


@dataclass
class CandidateEntry:
    """
    A video file found on disk during a scan.
    """
    path: Path
    size_bytes: int
    folder: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class EnrichJob:
    candidate: CandidateEntry
    canonical_key: str
    fields: FrozenSet[MetadataField] = ALL_FIELDS
    regenerate_thumbnail: bool = False


@dataclass
class EnrichedEntry:
    """
    Result of enriching one candidate. Fields that were not requested or
    failed stay None; failures are described in `errors`.
    """
    candidate: CandidateEntry
    canonical_key: str
    requested: FrozenSet[MetadataField]
    duration_seconds: Optional[float] = None
    resolution: Optional[Tuple[int, int]] = None
    frame_rate: Optional[float] = None
    thumbnail_ref: Optional[Path] = None
    errors: Dict[MetadataField, str] = field(default_factory=dict)

    def value(self, f: MetadataField):
        return getattr(self, FIELD_ATTRS[f])

    @property
    def complete(self) -> bool:
        return all(self.value(f) is not None for f in self.requested)


@dataclass
class WatchRoot:
    """A directory opted into monitoring."""
    root_path: Path
    watched: bool = False


@dataclass
class PendingChangeSignal:
    """Debounce state, owned by the host loop."""
    last_observed_change: Optional[float] = None
    first_pending_change: Optional[float] = None
    last_reconciliation: Optional[float] = None
    reconciliation_due: bool = False


@dataclass
class CycleSummary:
    """Per-cycle counts handed back to the host for display."""
    reason: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    roots: int = 0
    added: int = 0
    removed: int = 0
    updated: int = 0
    completed: int = 0
    untouched: int = 0
    incomplete: int = 0
    committed: bool = True
    error: Optional[str] = None
    entry_errors: List[str] = field(default_factory=list)
    vanished_roots: List[Path] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return self.added + self.removed + self.updated + self.completed
