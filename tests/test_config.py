import pytest

from video_gallery import config
from video_gallery.config import WatchConfig
from video_gallery.exceptions import ConfigError


def test_defaults():
    cfg = WatchConfig()
    assert cfg.quiet_seconds == 5.0
    assert cfg.max_delay_seconds == 60.0
    assert cfg.enrich_workers == 4
    assert cfg.thumbnail_width == 320
    assert cfg.video_extensions == config.VIDEO_EXTS


def test_extensions_are_normalized():
    cfg = WatchConfig(video_extensions={"MP4", ".Mkv"})
    assert cfg.video_extensions == frozenset({".mp4", ".mkv"})


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigError, match="quiet_secs"):
        WatchConfig.from_dict({"quiet_secs": 3})


def test_from_dict_accepts_known_keys():
    cfg = WatchConfig.from_dict({"quiet_seconds": 2.0, "enrich_workers": 8})
    assert cfg.quiet_seconds == 2.0
    assert cfg.enrich_workers == 8


@pytest.mark.parametrize("kwargs", [
    {"quiet_seconds": -1},
    {"quiet_seconds": 10, "max_delay_seconds": 5},
    {"enrich_workers": 0},
    {"probe_timeout_seconds": 0},
    {"thumbnail_width": 4},
    {"video_extensions": set()},
])
def test_invalid_values(kwargs):
    with pytest.raises(ConfigError):
        WatchConfig(**kwargs)
