import csv
import pytest

from video_gallery import main as main_module


@pytest.fixture
def cli(tmp_path):
    base = ["--cache-dir", str(tmp_path / "data")]

    def run(*args):
        main_module.main(base + list(args))
    return run


def test_roots_commands(cli, tmp_path, capsys):
    videos = tmp_path / "videos"
    videos.mkdir()

    cli("roots", "add", str(videos))
    cli("roots", "add", str(tmp_path / "later"))
    cli("roots", "list")
    out = capsys.readouterr().out
    assert f"{videos}\n" in out
    assert f"{tmp_path / 'later'}  (missing)" in out

    cli("roots", "remove", str(tmp_path / "later"))
    cli("roots", "remove", str(tmp_path / "later"))
    out = capsys.readouterr().out
    assert "Removed" in out
    assert "Not a watch root" in out

    assert (tmp_path / "data" / "videos.db").exists()


def test_report_command(cli, tmp_path, capsys):
    videos = tmp_path / "videos"
    videos.mkdir()
    (videos / "a.mp4").write_bytes(b"x")
    report = tmp_path / "report.csv"

    cli("report", str(videos), "--csv", str(report))

    with open(report, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["Status"] for r in rows] == ["Untracked"]
    assert "Untracked: 1" in capsys.readouterr().out


def test_invalid_option_exits(cli):
    with pytest.raises(SystemExit) as exc:
        cli("--workers", "0", "roots", "list")
    assert exc.value.code == 2
