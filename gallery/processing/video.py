"""FFmpeg/FFprobe helpers that pull a single keyframe out of a video."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence, Tuple


LOGGER = logging.getLogger(__name__)

FFMPEG_CANDIDATES_POSIX: Tuple[str, ...] = (
    "ffmpeg",
    "/usr/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
)
FFPROBE_CANDIDATES_POSIX: Tuple[str, ...] = (
    "ffprobe",
    "/usr/bin/ffprobe",
    "/usr/local/bin/ffprobe",
    "/opt/homebrew/bin/ffprobe",
)
FFMPEG_CANDIDATES_WINDOWS: Tuple[str, ...] = (
    "ffmpeg",
    "ffmpeg.exe",
    "C:\\ffmpeg\\bin\\ffmpeg.exe",
    "C:\\Program Files\\ffmpeg\\bin\\ffmpeg.exe",
)
FFPROBE_CANDIDATES_WINDOWS: Tuple[str, ...] = (
    "ffprobe",
    "ffprobe.exe",
    "C:\\ffmpeg\\bin\\ffprobe.exe",
    "C:\\Program Files\\ffmpeg\\bin\\ffprobe.exe",
)

DEFAULT_TIMESTAMP = 1.0
DEFAULT_THUMBNAIL_WIDTH = 300


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Executes an external program and captures its combined output."""

    def run(self, command: str, args: Sequence[str]) -> CommandResult:
        ...


class SubprocessRunner:
    """:class:`CommandRunner` backed by :func:`subprocess.run`."""

    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self._timeout = timeout

    def run(self, command: str, args: Sequence[str]) -> CommandResult:
        argv = [command, *[str(arg) for arg in args]]
        LOGGER.debug("Executing command: %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                check=False,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as error:
            LOGGER.warning("Command timed out after %ss: %s", self._timeout, command)
            output = error.output.decode("utf-8", errors="ignore") if error.output else ""
            return CommandResult(exit_code=124, output=output)
        except OSError as error:
            LOGGER.debug("Command could not be started: %s (%s)", command, error)
            return CommandResult(exit_code=127, output=str(error))
        return CommandResult(
            exit_code=completed.returncode,
            output=completed.stdout.decode("utf-8", errors="ignore"),
        )


@dataclass(frozen=True)
class VideoDimensions:
    width: int
    height: int


@dataclass(frozen=True)
class VideoProbe:
    """Best-effort facts about a video; every field may be unknown."""

    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "duration_seconds": self.duration_seconds,
            "width": self.width,
            "height": self.height,
        }


def default_candidates(platform_name: Optional[str] = None) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Return the ``(ffmpeg, ffprobe)`` candidate lists for *platform_name*."""

    if (platform_name or os.name) == "nt":
        return FFMPEG_CANDIDATES_WINDOWS, FFPROBE_CANDIDATES_WINDOWS
    return FFMPEG_CANDIDATES_POSIX, FFPROBE_CANDIDATES_POSIX


def _resolve_command(
    candidates: Sequence[str],
    which: Callable[[str], Optional[str]],
) -> Optional[str]:
    for candidate in candidates:
        resolved = which(candidate)
        if resolved:
            return resolved
    return None


def format_timestamp(seconds: float) -> str:
    return f"{max(0.0, float(seconds)):.3f}"


def scale_filter(width: int, height: Optional[int]) -> str:
    """Build the ``-vf`` filter: cover-and-crop with a height, keep aspect without."""

    if height:
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height}"
        )
    return f"scale={width}:-2"


class VideoKeyframeExtractor:
    """Locates FFmpeg/FFprobe once and uses them to probe and thumbnail videos.

    A missing toolkit is not an error: probes return ``None`` and extraction
    returns ``False`` so callers can fall back to a placeholder thumbnail.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        platform_name: Optional[str] = None,
    ) -> None:
        self._runner: CommandRunner = runner or SubprocessRunner()
        ffmpeg_candidates, ffprobe_candidates = default_candidates(platform_name)
        self._ffmpeg = ffmpeg_path or _resolve_command(ffmpeg_candidates, which)
        self._ffprobe = ffprobe_path or _resolve_command(ffprobe_candidates, which)
        LOGGER.debug("Video toolkit: ffmpeg=%s ffprobe=%s", self._ffmpeg, self._ffprobe)

    @property
    def ffmpeg_path(self) -> Optional[str]:
        return self._ffmpeg

    @property
    def ffprobe_path(self) -> Optional[str]:
        return self._ffprobe

    def is_available(self) -> bool:
        return bool(self._ffmpeg)

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------
    def _probe_output(self, video_path: Path, args: Sequence[str]) -> Optional[str]:
        if not self._ffprobe or not Path(video_path).is_file():
            return None
        result = self._runner.run(self._ffprobe, [*args, str(video_path)])
        if not result.ok:
            LOGGER.debug("ffprobe exited with %s for %s", result.exit_code, video_path)
            return None
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        return lines[0] if lines else None

    def probe_duration(self, video_path: Path) -> Optional[float]:
        line = self._probe_output(
            video_path,
            [
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
            ],
        )
        if line is None:
            return None
        try:
            duration = float(line)
        except ValueError:
            LOGGER.debug("Unparsable ffprobe duration %r for %s", line, video_path)
            return None
        return duration if duration >= 0 else None

    def probe_dimensions(self, video_path: Path) -> Optional[VideoDimensions]:
        line = self._probe_output(
            video_path,
            [
                "-v",
                "error",
                "-select_streams",
                "v:0",
                "-show_entries",
                "stream=width,height",
                "-of",
                "csv=s=x:p=0",
            ],
        )
        if line is None:
            return None
        parts = line.split("x")
        if len(parts) != 2:
            LOGGER.debug("Unparsable ffprobe dimensions %r for %s", line, video_path)
            return None
        try:
            width, height = int(parts[0]), int(parts[1])
        except ValueError:
            LOGGER.debug("Unparsable ffprobe dimensions %r for %s", line, video_path)
            return None
        if width <= 0 or height <= 0:
            return None
        return VideoDimensions(width=width, height=height)

    def probe(self, video_path: Path) -> VideoProbe:
        dimensions = self.probe_dimensions(video_path)
        return VideoProbe(
            duration_seconds=self.probe_duration(video_path),
            width=dimensions.width if dimensions else None,
            height=dimensions.height if dimensions else None,
        )

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract_thumbnail(
        self,
        video_path: Path,
        thumbnail_path: Path,
        timestamp: float = DEFAULT_TIMESTAMP,
        width: int = DEFAULT_THUMBNAIL_WIDTH,
        height: Optional[int] = None,
    ) -> bool:
        """Write one frame of *video_path* to *thumbnail_path*.

        Returns ``True`` only when FFmpeg exited cleanly and the output exists.
        """

        if not self.is_available():
            LOGGER.warning("FFmpeg not available for video thumbnail generation")
            return False
        video_path = Path(video_path)
        thumbnail_path = Path(thumbnail_path)
        if not video_path.is_file():
            LOGGER.warning("Video file not found: %s", video_path)
            return False

        try:
            thumbnail_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            LOGGER.warning("Unable to create thumbnail directory %s: %s", thumbnail_path.parent, error)
            return False

        duration = self.probe_duration(video_path)
        if duration is not None and timestamp >= duration:
            LOGGER.debug(
                "Timestamp %.3fs beyond duration %.3fs; using midpoint", timestamp, duration
            )
            timestamp = duration / 2

        args = [
            "-ss",
            format_timestamp(timestamp),
            "-i",
            str(video_path),
            "-frames:v",
            "1",
            "-vf",
            scale_filter(width, height),
            "-y",
            str(thumbnail_path),
        ]
        result = self._runner.run(self._ffmpeg, args)
        if not result.ok:
            LOGGER.error(
                "FFmpeg thumbnail generation failed (code=%s): %s",
                result.exit_code,
                result.output.strip(),
            )
            return False
        return thumbnail_path.exists()


__all__ = [
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "VideoDimensions",
    "VideoKeyframeExtractor",
    "VideoProbe",
    "default_candidates",
    "format_timestamp",
    "scale_filter",
]
