from __future__ import annotations

from pathlib import Path

import pytest

from gallery.processing.video import (
    SubprocessRunner,
    VideoDimensions,
    VideoKeyframeExtractor,
    default_candidates,
    scale_filter,
)


@pytest.fixture()
def video_file(tmp_path: Path, mp4_bytes: bytes) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(mp4_bytes)
    return path


def test_availability_follows_toolkit_lookup(video_extractor, missing_toolkit_extractor) -> None:
    assert video_extractor.is_available()
    assert video_extractor.ffmpeg_path == "/usr/bin/ffmpeg"
    assert not missing_toolkit_extractor.is_available()


def test_lookup_walks_candidates_in_order(fake_runner) -> None:
    seen = []

    def which(name: str):
        seen.append(name)
        return name if name == "/usr/local/bin/ffmpeg" else None

    extractor = VideoKeyframeExtractor(fake_runner, which=which, platform_name="posix")

    assert extractor.ffmpeg_path == "/usr/local/bin/ffmpeg"
    assert seen[:3] == ["ffmpeg", "/usr/bin/ffmpeg", "/usr/local/bin/ffmpeg"]


def test_windows_candidates_include_install_paths() -> None:
    ffmpeg, ffprobe = default_candidates("nt")
    assert "C:\\Program Files\\ffmpeg\\bin\\ffmpeg.exe" in ffmpeg
    assert ffprobe[0] == "ffprobe"


def test_probe_reports_duration_and_dimensions(video_extractor, video_file: Path) -> None:
    probe = video_extractor.probe(video_file)

    assert probe.duration_seconds == pytest.approx(10.0)
    assert (probe.width, probe.height) == (1920, 1080)
    assert video_extractor.probe_dimensions(video_file) == VideoDimensions(1920, 1080)


def test_probe_fields_are_independently_nullable(
    video_extractor, fake_runner, video_file: Path
) -> None:
    fake_runner.duration = "N/A"
    fake_runner.dimensions = None

    probe = video_extractor.probe(video_file)

    assert probe.duration_seconds is None
    assert probe.width is None and probe.height is None


def test_probe_without_toolkit_or_file(missing_toolkit_extractor, video_extractor, tmp_path) -> None:
    assert missing_toolkit_extractor.probe_duration(tmp_path / "clip.mp4") is None
    assert video_extractor.probe_duration(tmp_path / "missing.mp4") is None


def test_timestamp_beyond_duration_uses_midpoint(
    video_extractor, fake_runner, video_file: Path, tmp_path: Path
) -> None:
    target = tmp_path / "thumbs" / "clip.jpg"

    assert video_extractor.extract_thumbnail(video_file, target, timestamp=9999, width=200, height=200)

    args = fake_runner.ffmpeg_calls()[-1]
    assert args[args.index("-ss") + 1] == "5.000"
    assert target.exists()


def test_extraction_with_height_covers_and_crops(
    video_extractor, fake_runner, video_file: Path, tmp_path: Path
) -> None:
    video_extractor.extract_thumbnail(video_file, tmp_path / "a.jpg", width=320, height=180)

    args = fake_runner.ffmpeg_calls()[-1]
    assert args[args.index("-ss") + 1] == "1.000"
    assert args[args.index("-vf") + 1] == (
        "scale=320:180:force_original_aspect_ratio=increase,crop=320:180"
    )
    assert args[args.index("-frames:v") + 1] == "1"
    assert args[-2:] == ["-y", str(tmp_path / "a.jpg")]


def test_scale_filter_without_height_keeps_aspect() -> None:
    assert scale_filter(300, None) == "scale=300:-2"


def test_extraction_failure_returns_false(
    video_extractor, fake_runner, video_file: Path, tmp_path: Path, caplog
) -> None:
    fake_runner.ffmpeg_exit_code = 1

    with caplog.at_level("ERROR"):
        assert not video_extractor.extract_thumbnail(video_file, tmp_path / "b.jpg")

    assert "Invalid data found" in caplog.text


def test_extraction_requires_output_file(
    video_extractor, fake_runner, video_file: Path, tmp_path: Path
) -> None:
    fake_runner.write_output = False
    assert not video_extractor.extract_thumbnail(video_file, tmp_path / "c.jpg")


def test_extraction_without_toolkit_or_source(
    missing_toolkit_extractor, video_extractor, fake_runner, video_file: Path, tmp_path: Path
) -> None:
    assert not missing_toolkit_extractor.extract_thumbnail(video_file, tmp_path / "d.jpg")
    assert not video_extractor.extract_thumbnail(tmp_path / "nope.mp4", tmp_path / "e.jpg")
    assert fake_runner.ffmpeg_calls() == []


def test_subprocess_runner_reports_missing_binary(tmp_path: Path) -> None:
    result = SubprocessRunner().run(str(tmp_path / "no-such-binary"), ["-version"])
    assert result.exit_code == 127
    assert not result.ok
