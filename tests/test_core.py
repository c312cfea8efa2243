import shutil
import sqlite3
import threading
import pytest

from video_gallery.config import WatchConfig
from video_gallery.core import CycleFinished, Notification, WatchEngine
from video_gallery.watching.debounce import FsEvent


class FakeObserver:
    def __init__(self):
        self.scheduled = []

    def start(self):
        pass

    def stop(self):
        pass

    def join(self, timeout=None):
        pass

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append(path)
        return path

    def unschedule(self, watch):
        self.scheduled.remove(watch)


@pytest.fixture
def make_engine(tmp_path, prober, thumbnailer):
    created = []

    def _make():
        engine = WatchEngine(
            tmp_path / "data" / "videos.db",
            tmp_path / "cache",
            WatchConfig(quiet_seconds=5, enrich_workers=2, case_fold=False),
            observer_factory=FakeObserver,
            prober=prober,
            thumbnailer=thumbnailer,
        )
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        engine.close()


def _finished(messages):
    return [m.summary for m in messages if isinstance(m, CycleFinished)]


def _notes(messages):
    return [m for m in messages if isinstance(m, Notification)]


def test_adding_root_runs_reconciliation(make_engine, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")

    engine.add_watch_root(video_root)
    assert engine.wait_idle(10)

    summaries = _finished(engine.tick())
    assert len(summaries) == 1
    assert summaries[0].added == 1
    assert engine.store.count() == 1
    assert engine.store.list_watch_roots() == [video_root]


def test_start_restores_persisted_roots(make_engine, video_root, make_video):
    make_video(video_root / "a.mp4")
    first = make_engine()
    first.add_watch_root(video_root)
    first.wait_idle(10)
    first.close()

    engine = make_engine()
    engine.start()
    assert engine.wait_idle(10)

    roots = engine.watch_set.roots
    assert [r.root_path for r in roots] == [video_root]
    assert roots[0].watched
    summaries = _finished(engine.tick())
    assert summaries[0].reason == "startup"
    assert summaries[0].untouched == 1
    assert summaries[0].mutations == 0


def test_triggers_during_cycle_coalesce_into_one_follow_up(make_engine, video_root, monkeypatch):
    engine = make_engine()
    engine.watch_set.add_root(video_root)
    gate, started = threading.Event(), threading.Event()
    reasons = []
    real_run = engine.engine.run_cycle

    def slow_cycle(roots, reason="manual"):
        reasons.append(reason)
        if len(reasons) == 1:
            started.set()
            gate.wait(10)
        return real_run(roots, reason)

    monkeypatch.setattr(engine.engine, "run_cycle", slow_cycle)

    assert engine.trigger_reconciliation("first") is True
    assert started.wait(10)
    assert engine.trigger_reconciliation("second") is False
    assert engine.trigger_reconciliation("third") is False
    assert engine.running

    gate.set()
    assert engine.wait_idle(10)

    assert reasons == ["first", "third"]
    assert len(_finished(engine.tick())) == 2
    assert engine.running is False


def test_tick_debounces_filesystem_events(make_engine, video_root, monkeypatch):
    engine = make_engine()
    triggered = []
    monkeypatch.setattr(engine, "trigger_reconciliation", lambda reason="manual": triggered.append(reason) or True)

    for i in range(10):
        engine.channel.put(FsEvent("modified", (str(video_root / "a.mp4"),), observed_at=100.0 + i * 0.5))
    engine.channel.put(FsEvent("modified", (str(video_root / "a.txt"),), observed_at=120.0))

    assert engine.tick(now=104.5) == []
    assert triggered == []

    engine.tick(now=109.5)
    assert triggered == ["filesystem change"]

    engine.tick(now=200.0)
    assert triggered == ["filesystem change"]


def test_vanished_root_is_dropped(make_engine, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")
    engine.add_watch_root(video_root)
    engine.wait_idle(10)
    engine.tick()

    shutil.rmtree(video_root)
    engine.trigger_reconciliation("manual")
    assert engine.wait_idle(10)
    messages = engine.tick()

    assert _finished(messages)[0].removed == 1
    assert any(n.level == "warning" and "no longer exists" in n.message for n in _notes(messages))
    assert engine.watch_set.roots == []
    assert engine.store.list_watch_roots() == []


def test_remove_root_keeps_catalog(make_engine, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")
    engine.add_watch_root(video_root)
    engine.wait_idle(10)

    assert engine.remove_watch_root(video_root) is True

    assert engine.store.list_watch_roots() == []
    assert engine.store.count() == 1


def test_crashing_cycle_becomes_notification(make_engine, video_root, monkeypatch):
    engine = make_engine()

    def boom(roots, reason="manual"):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine.engine, "run_cycle", boom)

    engine.trigger_reconciliation()
    assert engine.wait_idle(10)
    notes = _notes(engine.tick())

    assert len(notes) == 1
    assert notes[0].level == "error"
    assert "boom" in notes[0].message
    assert engine.running is False


def test_commit_failure_becomes_notification(make_engine, video_root, make_video, monkeypatch):
    engine = make_engine()
    make_video(video_root / "a.mp4")

    def failing_upsert(entry):
        raise sqlite3.OperationalError("disk full")

    monkeypatch.setattr(engine.store, "upsert", failing_upsert)
    engine.add_watch_root(video_root)
    engine.wait_idle(10)
    messages = engine.tick()

    assert _finished(messages)[0].committed is False
    assert any(n.level == "error" and "disk full" in n.message for n in _notes(messages))
    assert engine.store.count() == 0


def test_closed_engine_ignores_triggers(make_engine):
    engine = make_engine()
    engine.close()

    assert engine.trigger_reconciliation() is False


def test_finished_manual_cycle_delays_debounced_rescan(make_engine, video_root, monkeypatch):
    engine = make_engine()
    engine.trigger_reconciliation("manual")
    assert engine.wait_idle(10)
    engine.channel.put(FsEvent("created", (str(video_root / "a.mp4"),), observed_at=100.0))

    triggered = []
    monkeypatch.setattr(engine, "trigger_reconciliation", lambda reason="manual": triggered.append(reason) or True)

    assert len(_finished(engine.tick(now=106.0))) == 1
    assert triggered == []

    engine.tick(now=111.0)
    assert triggered == ["filesystem change"]


def test_delete_entry_removes_row_and_cache_files(make_engine, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")
    make_video(video_root / "b.mp4")
    engine.add_watch_root(video_root)
    assert engine.wait_idle(10)
    engine.tick()

    a = next(e for e in engine.store.load_all() if e.canonical_path.name == "a.mp4")
    scene_dir = engine.thumbnailer.scene_dir(a.identity)
    scene_dir.mkdir(parents=True)
    (scene_dir / "1.jpg").write_bytes(b"jpeg")

    assert engine.delete_entry(a.identity) is True

    assert engine.store.get(a.identity) is None
    assert not a.thumbnail_ref.exists()
    assert not scene_dir.exists()
    assert (video_root / "a.mp4").exists()
    assert engine.store.count() == 1
    assert engine.store.list_watch_roots() == [video_root]
    assert engine.delete_entry(a.identity) is False


def test_deleting_last_entry_drops_its_root(make_engine, tmp_path, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")
    empty = tmp_path / "empty"
    empty.mkdir()
    engine.add_watch_root(video_root)
    assert engine.wait_idle(10)
    engine.add_watch_root(empty)
    assert engine.wait_idle(10)
    engine.tick()

    (a,) = engine.store.load_all()
    engine.delete_entry(a.identity)

    # A root that never had entries is kept
    assert [r.root_path for r in engine.watch_set.roots] == [empty]
    assert engine.store.list_watch_roots() == [empty]
    notes = _notes(engine.tick())
    assert any("no videos left" in n.message for n in notes)


def test_remove_root_with_entries(make_engine, tmp_path, video_root, make_video):
    engine = make_engine()
    make_video(video_root / "a.mp4")
    make_video(video_root / "sub" / "b.mp4")
    other = tmp_path / "other"
    make_video(other / "c.mp4")
    engine.add_watch_root(video_root)
    assert engine.wait_idle(10)
    engine.add_watch_root(other)
    assert engine.wait_idle(10)

    thumbs = [e.thumbnail_ref for e in engine.store.load_all() if video_root in e.canonical_path.parents]
    assert len(thumbs) == 2

    assert engine.remove_watch_root(video_root, delete_entries=True) is True

    assert [e.canonical_path.name for e in engine.store.load_all()] == ["c.mp4"]
    assert not any(t.exists() for t in thumbs)
    assert engine.store.list_watch_roots() == [other]
    assert (video_root / "a.mp4").exists()
