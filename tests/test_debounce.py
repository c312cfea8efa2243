from video_gallery.watching.debounce import ChangeDebouncer, FsEvent


def _event(path, at, kind="modified", is_directory=False, dest=None):
    paths = (path,) if dest is None else (path, dest)
    return FsEvent(kind=kind, paths=paths, observed_at=at, is_directory=is_directory)


def test_irrelevant_events_are_ignored():
    d = ChangeDebouncer(quiet_seconds=5)

    assert d.observe(_event("/v/notes.txt", 1.0)) is False
    assert d.observe(_event("/v/folder.mp4", 1.0, kind="created", is_directory=True)) is False
    assert d.signal.reconciliation_due is False
    assert d.should_fire(100.0) is False


def test_burst_of_events_fires_once_after_quiet_period():
    d = ChangeDebouncer(quiet_seconds=5)
    fired = []

    # A single copy produces many events
    for i in range(20):
        t = 10.0 + i * 0.25
        assert d.observe(_event("/v/big.mp4", t))
        if d.should_fire(t):
            fired.append(t)

    last = 10.0 + 19 * 0.25
    for now in (last + 1, last + 4.9, last + 5.0, last + 6.0, last + 30.0):
        if d.should_fire(now):
            d.consume(now)
            fired.append(now)

    assert fired == [last + 5.0]
    assert d.signal.reconciliation_due is False


def test_fire_waits_for_quiet_since_last_reconciliation():
    d = ChangeDebouncer(quiet_seconds=5)
    d.consume(100.0)

    d.observe(_event("/v/a.mp4", 90.0))

    assert d.should_fire(103.0) is False
    assert d.should_fire(105.0) is True


def test_continuous_stream_is_capped_by_max_delay():
    d = ChangeDebouncer(quiet_seconds=5, max_delay_seconds=30)

    t = 0.0
    fired_at = None
    while t < 100:
        d.observe(_event("/v/recording.mkv", t))
        if d.should_fire(t):
            fired_at = t
            break
        t += 1.0

    assert fired_at == 30.0


def test_move_with_video_destination_is_relevant():
    d = ChangeDebouncer()

    assert d.observe(_event("/v/.partial", 1.0, kind="moved", dest="/v/final.MP4"))
    assert d.signal.first_pending_change == 1.0
    assert d.signal.last_observed_change == 1.0


def test_consume_resets_pending_state():
    d = ChangeDebouncer(quiet_seconds=1)
    d.observe(_event("/v/a.mp4", 1.0))
    d.observe(_event("/v/b.mp4", 2.0))

    d.consume(5.0)

    assert d.signal.reconciliation_due is False
    assert d.signal.first_pending_change is None
    assert d.signal.last_reconciliation == 5.0
    assert d.signal.last_observed_change == 2.0


def test_custom_extensions():
    d = ChangeDebouncer(extensions=frozenset({".ts"}))

    assert d.observe(_event("/v/a.mp4", 1.0)) is False
    assert d.observe(_event("/v/a.ts", 1.0)) is True


def test_reconciliation_started_elsewhere_restarts_quiet_window():
    d = ChangeDebouncer(quiet_seconds=5)
    d.observe(_event("/v/a.mp4", 100.0))

    # e.g. a manual or startup cycle finishing while the change is pending
    d.mark_reconciled(104.0)

    assert d.signal.reconciliation_due is True
    assert d.should_fire(106.0) is False
    assert d.should_fire(109.0) is True
