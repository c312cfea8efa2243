import pytest
import sqlite3
import threading
from pathlib import Path

from video_gallery.database.schema import init_schema
from video_gallery.database.ops import CatalogStore
from video_gallery.exceptions import ProbeError
from video_gallery.metadata.enrich import MetadataEnricher
from video_gallery.metadata.probe import MediaProber, ProbeResult
from video_gallery.metadata.thumbnail import Thumbnailer
from video_gallery.reconcile import ReconciliationEngine
from video_gallery.scanning.filesystem import DirectoryScanner
from video_gallery.scanning.paths import PathResolver


class FakeProber(MediaProber):
    """Derives metadata from the file size so a content change is visible in the result."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.failing = set()
        self.on_probe = None
        self._lock = threading.Lock()

    def probe(self, path, fields=None):
        with self._lock:
            self.calls.append((Path(path).name, frozenset(fields or ())))
        if self.on_probe is not None:
            self.on_probe(Path(path))
        if Path(path).name in self.failing:
            raise ProbeError(f"simulated failure for {path}")
        size = Path(path).stat().st_size
        return ProbeResult(duration_seconds=size / 10.0, resolution=(1280, 720), frame_rate=25.0)


class FakeThumbnailer(Thumbnailer):
    """Writes a placeholder file instead of calling ffmpeg."""

    def __init__(self, cache_dir):
        super().__init__(cache_dir)
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, source, canonical_key, force=False):
        with self._lock:
            self.calls.append((Path(source).name, force))
        dest = self.thumbnail_path_for(canonical_key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"jpeg:" + Path(source).name.encode())
        return dest


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def resolver():
    return PathResolver(case_fold=False)


@pytest.fixture
def store(conn, resolver):
    """Returns a CatalogStore attached to the in-memory DB."""
    return CatalogStore(conn, resolver)


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def thumbnailer(tmp_path):
    return FakeThumbnailer(tmp_path / "cache")


@pytest.fixture
def engine(store, resolver, prober, thumbnailer):
    enricher = MetadataEnricher(prober, thumbnailer, max_workers=2)
    return ReconciliationEngine(store, DirectoryScanner(), resolver, enricher)


@pytest.fixture
def video_root(tmp_path):
    root = tmp_path / "videos"
    root.mkdir()
    return root


@pytest.fixture
def make_video():
    """Writes a fake video file of the given size."""
    def _make(path: Path, size: int = 100) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"v" * size)
        return path
    return _make
