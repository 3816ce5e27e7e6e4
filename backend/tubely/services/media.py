"""ffprobe/ffmpeg wrappers used by the video upload pipeline."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from tubely.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

LANDSCAPE = "landscape"
PORTRAIT = "portrait"
OTHER = "other"

PROCESSED_SUFFIX = ".processing"


class MediaToolError(Exception):
    """Raised when an external media tool fails."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class ProbeError(MediaToolError):
    """Raised when stream geometry cannot be read from a file."""


class TranscodeError(MediaToolError):
    """Raised when the fast-start remux fails."""


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


class MediaToolkit(Protocol):
    def probe(self, path: Path) -> Dimensions: ...

    def remux_faststart(self, path: Path) -> Path: ...


def classify_aspect(width: int, height: int) -> str:
    """Map frame geometry to the storage partition used in object keys.

    The ratio test uses integer (floor) division on purpose, so any width in
    ``[height, 2 * height)`` counts as 16:9. Square frames pass both tests
    and are treated as ``other``.
    """
    if width <= 0 or height <= 0:
        return OTHER
    is_landscape = width // height == 16 // 9
    is_portrait = height // width == 16 // 9
    if is_landscape and is_portrait:
        return OTHER
    if is_landscape:
        return LANDSCAPE
    if is_portrait:
        return PORTRAIT
    return OTHER


def processed_path_for(path: Path) -> Path:
    return path.with_name(path.name + PROCESSED_SUFFIX)


class FFmpegToolkit:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def _run(self, cmd: list[str], error_cls: type[MediaToolError]) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise error_cls(f"Couldn't start {cmd[0]}: {exc}") from exc
        if result.returncode != 0:
            logger.error(
                "%s exited with status %d; stderr: %s",
                cmd[0],
                result.returncode,
                result.stderr.strip(),
            )
            raise error_cls(
                f"{cmd[0]} exited with status {result.returncode}",
                stderr=result.stderr,
            )
        return result

    def probe(self, path: Path) -> Dimensions:
        cmd = [
            self.settings.ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_streams",
            str(path),
        ]
        result = self._run(cmd, ProbeError)

        try:
            info = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ProbeError("Couldn't parse ffprobe output", stderr=result.stderr) from exc

        streams = info.get("streams") if isinstance(info, dict) else None
        if not streams:
            raise ProbeError("No media streams found", stderr=result.stderr)

        stream = streams[0]
        width = stream.get("width")
        height = stream.get("height")
        if not isinstance(width, int) or not isinstance(height, int):
            raise ProbeError("First stream has no frame dimensions", stderr=result.stderr)
        return Dimensions(width=width, height=height)

    def remux_faststart(self, path: Path) -> Path:
        output_path = processed_path_for(path)
        cmd = [
            self.settings.ffmpeg_path,
            "-y",
            "-i",
            str(path),
            "-c",
            "copy",
            "-movflags",
            "faststart",
            "-f",
            "mp4",
            str(output_path),
        ]
        try:
            self._run(cmd, TranscodeError)
        except TranscodeError:
            output_path.unlink(missing_ok=True)
            raise
        return output_path
