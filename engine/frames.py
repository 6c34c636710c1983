from dataclasses import dataclass, replace
from pathlib import Path

from .errors import InvalidInputError

BOOMERANG = "boomerang"
FORWARD = "forward"


@dataclass(frozen=True)
class Frame:
    path: Path
    duration: float | None = None


def sequence(frames: list[Frame], mode: str = BOOMERANG, fps: float = 2) -> list[Frame]:
    """
    Order frames for playback, annotating each with a 1/fps duration.

    Boomerang plays forward then back over the interior frames, so
    [f1, f2, f3, f4] becomes [f1, f2, f3, f4, f3, f2]. Repeated positions
    point at the same file path; no image data is copied on disk.
    """
    if fps <= 0:
        raise InvalidInputError("Frame rate must be positive", {"fps": fps})

    frames = list(frames)
    if mode == BOOMERANG:
        if len(frames) < 2:
            raise InvalidInputError("Boomerang needs at least 2 frames", {"frameCount": len(frames)})
        ordered = frames + frames[-2:0:-1]
    elif mode == FORWARD:
        if not frames:
            raise InvalidInputError("No frames provided", {"frameCount": 0})
        ordered = frames
    else:
        raise InvalidInputError(f"Unknown playback mode: {mode}", {"mode": mode})

    duration = 1 / fps
    return [replace(frame, duration=duration) for frame in ordered]


def playback_rate(frames: list[Frame]) -> float:
    """Frames per second implied by the sequenced durations."""
    duration = frames[0].duration if frames else None
    if not duration:
        raise InvalidInputError("Frames have no duration; sequence frames first", {"frameCount": len(frames)})
    return 1 / duration


def _quote(path: Path) -> str:
    escaped = str(path).replace("'", "'\\''")
    return f"file '{escaped}'"


def write_concat_manifest(frames: list[Frame], manifest_path: Path) -> Path:
    """
    Write an ffmpeg concat-demuxer list: one file line and one duration line
    per frame.

    The concat demuxer ignores the duration of the final entry, so the last
    file is listed once more without a duration. Encoders resample to the
    playback rate, which keeps that extra entry from becoming a frame.
    """
    lines = []
    for frame in frames:
        if frame.duration is None:
            raise InvalidInputError("Frame has no duration; sequence frames first", {"path": str(frame.path)})
        lines.append(_quote(frame.path))
        lines.append(f"duration {frame.duration}")
    if frames:
        lines.append(_quote(frames[-1].path))
    manifest_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest_path
