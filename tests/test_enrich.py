from pathlib import Path

from video_gallery.metadata.enrich import MetadataEnricher
from video_gallery.models import ALL_FIELDS, CandidateEntry, EnrichJob, MetadataField, PROBE_FIELDS
from video_gallery.exceptions import ThumbnailError


def _job(path: Path, fields=ALL_FIELDS, force=False):
    return EnrichJob(
        candidate=CandidateEntry(path=path, size_bytes=path.stat().st_size),
        canonical_key=path.as_posix(),
        fields=fields,
        regenerate_thumbnail=force,
    )


def test_enrich_fills_all_fields(prober, thumbnailer, video_root, make_video):
    path = make_video(video_root / "a.mp4", 300)

    result = MetadataEnricher(prober, thumbnailer).enrich(_job(path, force=True))

    assert result.complete
    assert result.errors == {}
    assert result.duration_seconds == 30.0
    assert result.resolution == (1280, 720)
    assert result.thumbnail_ref.exists()
    assert thumbnailer.calls == [("a.mp4", True)]


def test_probe_failure_does_not_block_thumbnail(prober, thumbnailer, video_root, make_video):
    path = make_video(video_root / "a.mp4")
    prober.failing.add("a.mp4")

    result = MetadataEnricher(prober, thumbnailer).enrich(_job(path))

    assert not result.complete
    assert set(result.errors) == PROBE_FIELDS
    assert result.duration_seconds is None
    assert result.thumbnail_ref is not None


def test_thumbnail_failure_is_recorded(prober, thumbnailer, video_root, make_video, monkeypatch):
    path = make_video(video_root / "a.mp4")

    def broken(source, key, force=False):
        raise ThumbnailError("ffmpeg produced no frame")

    monkeypatch.setattr(thumbnailer, "generate", broken)

    result = MetadataEnricher(prober, thumbnailer).enrich(_job(path))

    assert result.errors == {MetadataField.THUMBNAIL: "ffmpeg produced no frame"}
    assert result.duration_seconds == 10.0


def test_only_requested_fields_are_enriched(prober, thumbnailer, video_root, make_video):
    path = make_video(video_root / "a.mp4")

    result = MetadataEnricher(prober, thumbnailer).enrich(_job(path, frozenset({MetadataField.THUMBNAIL})))

    assert prober.calls == []
    assert result.complete
    assert result.duration_seconds is None


def test_enrich_many_returns_every_job(prober, thumbnailer, video_root, make_video):
    jobs = [_job(make_video(video_root / f"v{i}.mp4", 10 * (i + 1))) for i in range(6)]

    results = list(MetadataEnricher(prober, thumbnailer, max_workers=3).enrich_many(jobs))

    assert sorted(r.candidate.path.name for r in results) == [f"v{i}.mp4" for i in range(6)]
    assert all(r.complete for r in results)


def test_enrich_many_degrades_unexpected_errors(prober, thumbnailer, video_root, make_video, monkeypatch):
    good = make_video(video_root / "good.mp4")
    bad = make_video(video_root / "bad.mp4")
    enricher = MetadataEnricher(prober, thumbnailer, max_workers=2)
    real_enrich = enricher.enrich

    def flaky(job):
        if job.candidate.path.name == "bad.mp4":
            raise RuntimeError("worker crashed")
        return real_enrich(job)

    monkeypatch.setattr(enricher, "enrich", flaky)

    results = {r.candidate.path.name: r for r in enricher.enrich_many([_job(good), _job(bad)])}

    assert results["good.mp4"].complete
    assert set(results["bad.mp4"].errors) == set(ALL_FIELDS)
    assert results["bad.mp4"].errors[MetadataField.DURATION] == "worker crashed"


def test_enrich_many_with_no_jobs(prober, thumbnailer):
    assert list(MetadataEnricher(prober, thumbnailer).enrich_many([])) == []
