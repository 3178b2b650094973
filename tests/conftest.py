from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gallery.bootstrap import Bootstrapper
from gallery.config import AppConfig
from gallery.processing.video import CommandResult, VideoKeyframeExtractor

# ISO base media header ("ftyp" box with the isom brand) followed by filler.
MP4_HEADER = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00isomiso2" + b"\x00" * 64


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "upload_root": "storage/uploads",
            "video": {"enabled": True},
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


def encode_image(
    image_format: str = "PNG",
    size: Tuple[int, int] = (300, 200),
    color: Tuple[int, ...] = (100, 100, 100),
) -> bytes:
    mode = "RGBA" if len(color) == 4 else "RGB"
    buffer = io.BytesIO()
    with Image.new(mode, size, color) as image:
        if image_format == "JPEG" and mode == "RGBA":
            image = image.convert("RGB")
        image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture()
def image_bytes() -> Callable[..., bytes]:
    return encode_image


class FakeCommandRunner:
    """Records invocations and answers like ffprobe/ffmpeg would."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, List[str]]] = []
        self.duration: Optional[str] = "10.0"
        self.dimensions: Optional[str] = "1920x1080"
        self.ffmpeg_exit_code = 0
        self.write_output = True

    def run(self, command: str, args: Sequence[str]) -> CommandResult:
        arguments = [str(arg) for arg in args]
        self.calls.append((command, arguments))
        if Path(command).name.startswith("ffprobe"):
            value = self.duration if "format=duration" in arguments else self.dimensions
            if value is None:
                return CommandResult(exit_code=1, output="probe failed")
            return CommandResult(exit_code=0, output=f"{value}\n")

        if self.ffmpeg_exit_code:
            return CommandResult(exit_code=self.ffmpeg_exit_code, output="Invalid data found")
        if self.write_output:
            Path(arguments[-1]).write_bytes(encode_image("JPEG", (200, 200), (10, 20, 30)))
        return CommandResult(exit_code=0, output="")

    def ffmpeg_calls(self) -> List[List[str]]:
        return [args for command, args in self.calls if Path(command).name.startswith("ffmpeg")]


@pytest.fixture()
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture()
def video_extractor(fake_runner: FakeCommandRunner) -> VideoKeyframeExtractor:
    return VideoKeyframeExtractor(fake_runner, which=lambda name: f"/usr/bin/{name}")


@pytest.fixture()
def missing_toolkit_extractor(fake_runner: FakeCommandRunner) -> VideoKeyframeExtractor:
    return VideoKeyframeExtractor(fake_runner, which=lambda name: None)


@pytest.fixture()
def mp4_bytes() -> bytes:
    return MP4_HEADER
