"""
Encode stages built on the process runner.

Each stage validates its inputs up front (exists, non-empty, under the size
ceiling), runs one or a few ffmpeg invocations and checks that it produced a
non-empty output. Stages never retry; errors propagate to the caller.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .errors import ErrorKind, InvalidInputError, MediaProcessError
from .frames import Frame, playback_rate, write_concat_manifest
from .process import ProcessRunner

logger = logging.getLogger(__name__)

MAX_INPUT_BYTES = 50 * 1024 * 1024

DEFAULT_TIMEOUTS_MS = {
    "image_scale": 30_000,
    "thumbnail": 15_000,
    "overlay": 45_000,
    "gif_small": 45_000,
    "gif_large": 90_000,
    "mp4_short": 60_000,
    "mp4_long": 120_000,
    "probe": 15_000,
}

PALETTEUSE = "paletteuse=dither=bayer:bayer_scale=5:diff_mode=rectangle"


@dataclass(frozen=True)
class StageLimits:
    max_input_bytes: int = MAX_INPUT_BYTES
    timeouts_ms: dict = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS_MS))

    @classmethod
    def from_settings(cls) -> "StageLimits":
        from django.conf import settings

        return cls(
            max_input_bytes=settings.MEDIA_MAX_INPUT_BYTES,
            timeouts_ms={**DEFAULT_TIMEOUTS_MS, **settings.STAGE_TIMEOUTS_MS},
        )

    def timeout(self, name: str) -> int:
        return self.timeouts_ms[name]


DEFAULT_LIMITS = StageLimits()


def validate_input_file(path: Path, limits: StageLimits = DEFAULT_LIMITS) -> int:
    """Return the size of ``path`` or raise InvalidInputError."""
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError as exc:
        raise InvalidInputError("Input file not found", {"filePath": str(path), "error": str(exc)}) from exc

    if size == 0:
        raise InvalidInputError("Input file is empty", {"filePath": str(path), "size": 0})
    if size > limits.max_input_bytes:
        raise InvalidInputError(
            f"Input file exceeds maximum size ({limits.max_input_bytes // (1024 * 1024)}MB)",
            {"filePath": str(path), "size": size, "maxSize": limits.max_input_bytes},
        )
    return size


def _validate_output(path: Path, what: str, **details) -> int:
    size = path.stat().st_size if path.exists() else 0
    if size == 0:
        raise MediaProcessError(
            f"FFmpeg produced empty {what}",
            ErrorKind.UNKNOWN,
            {"outputPath": str(path), **details},
        )
    return size


def _encode_options(chain: str, output: Path) -> list[str]:
    """
    Wrap a filter chain with the encoder options the output container needs.
    GIF outputs get a fresh palette so re-encoded animations keep their quality.
    """
    suffix = output.suffix.lower()
    if suffix == ".gif":
        graph = f"{chain},split[a][b];[a]palettegen=stats_mode=diff[p];[b][p]{PALETTEUSE}"
        return ["-filter_complex", graph, "-loop", "0"]
    if suffix in (".jpg", ".jpeg"):
        return ["-filter_complex", chain, "-q:v", "2", "-frames:v", "1"]
    if suffix == ".mp4":
        return [
            "-filter_complex", f"{chain},format=yuv420p",
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "22",
            "-movflags", "+faststart",
            "-an",
        ]
    return ["-filter_complex", chain, "-frames:v", "1"]


def _cover_crop(width: int, height: int) -> str:
    return (
        f"scale={width}:{height}:flags=lanczos:force_original_aspect_ratio=increase,"
        f"crop={width}:{height}:(iw-{width})/2:(ih-{height})/2"
    )


def _timeout_for_media(path: Path, limits: StageLimits) -> int:
    suffix = path.suffix.lower()
    if suffix == ".gif":
        return limits.timeout("gif_large")
    if suffix == ".mp4":
        return limits.timeout("mp4_long")
    return limits.timeout("image_scale")


def probe_dimensions(
    runner: ProcessRunner,
    path: Path,
    limits: StageLimits = DEFAULT_LIMITS,
) -> tuple[int, int]:
    """Width and height of the first video stream."""
    result = runner.ffprobe(
        [
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=s=x:p=0",
            str(path),
        ],
        timeout_ms=limits.timeout("probe"),
        description="Dimension probe",
    )
    text = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
    try:
        width, height = (int(part) for part in text.split("x")[:2])
    except ValueError as exc:
        raise MediaProcessError(
            "Could not read media dimensions",
            ErrorKind.UNKNOWN,
            {"path": str(path), "stdout": result.stdout},
        ) from exc
    return width, height


def generate_palette(
    runner: ProcessRunner,
    manifest: Path,
    palette_path: Path,
    width: int,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    args = [
        "-f", "concat",
        "-safe", "0",
        "-i", str(manifest),
        "-vf", f"scale={width}:-1:flags=lanczos,palettegen=stats_mode=diff:max_colors=256",
        "-frames:v", "1",
        "-y",
        str(palette_path),
    ]
    runner.ffmpeg(args, timeout_ms=limits.timeout("gif_small"), description="GIF palette generation")
    _validate_output(palette_path, "palette")
    return palette_path


def encode_paletted(
    runner: ProcessRunner,
    manifest: Path,
    palette_path: Path,
    output: Path,
    width: int,
    frame_count: int,
    fps: float,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    # fps resamples onto a 1/fps time base so every frame keeps its full duration
    args = [
        "-f", "concat",
        "-safe", "0",
        "-i", str(manifest),
        "-i", str(palette_path),
        "-filter_complex", f"fps={fps:g},scale={width}:-1:flags=lanczos[x];[x][1:v]{PALETTEUSE}",
        "-loop", "0",
        "-y",
        str(output),
    ]
    timeout = limits.timeout("gif_small") if frame_count < 5 else limits.timeout("gif_large")
    runner.ffmpeg(args, timeout_ms=timeout, description="GIF creation")
    _validate_output(output, "GIF", frameCount=frame_count)
    return output


def _validate_frames(frames: list[Frame], limits: StageLimits, what: str) -> None:
    if not frames:
        raise InvalidInputError(f"No frames provided for {what}", {"frameCount": 0})
    # Boomerang sequences repeat paths; check each file once.
    for path in dict.fromkeys(frame.path for frame in frames):
        validate_input_file(path, limits)


def create_gif(
    runner: ProcessRunner,
    frames: list[Frame],
    output: Path,
    width: int,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    """Palette-generate then paletted-encode a looping GIF from sequenced frames."""
    _validate_frames(frames, limits, "GIF")
    fps = playback_rate(frames)

    manifest = output.with_name(f"{output.stem}-concat.txt")
    palette = output.with_name(f"{output.stem}-palette.png")
    try:
        write_concat_manifest(frames, manifest)
        generate_palette(runner, manifest, palette, width, limits)
        encode_paletted(runner, manifest, palette, output, width, len(frames), fps, limits)
    finally:
        manifest.unlink(missing_ok=True)
        palette.unlink(missing_ok=True)
    return output


def create_mp4(
    runner: ProcessRunner,
    frames: list[Frame],
    output: Path,
    width: int,
    height: int,
    fps: float,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    """Encode sequenced frames to an H.264 MP4, covering and center-cropping to width x height."""
    _validate_frames(frames, limits, "MP4")

    manifest = output.with_name(f"{output.stem}-concat.txt")
    try:
        write_concat_manifest(frames, manifest)
        args = [
            "-f", "concat",
            "-safe", "0",
            "-i", str(manifest),
            "-vf", f"fps={fps:g},{_cover_crop(width, height)},format=yuv420p",
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "22",
            "-profile:v", "baseline",
            "-r", f"{fps:g}",
            "-g", "15",
            "-keyint_min", "15",
            "-movflags", "+faststart",
            "-an",
            "-y",
            str(output),
        ]
        timeout = limits.timeout("mp4_short") if len(frames) < 10 else limits.timeout("mp4_long")
        runner.ffmpeg(args, timeout_ms=timeout, description="MP4 creation")
        _validate_output(output, "MP4", frameCount=len(frames))
    finally:
        manifest.unlink(missing_ok=True)
    return output


def scale_and_crop(
    runner: ProcessRunner,
    input_path: Path,
    output: Path,
    width: int,
    height: int,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    """Scale to cover width x height, then trim the overflow evenly from each side."""
    validate_input_file(input_path, limits)

    args = ["-i", str(input_path), *_encode_options(f"[0:v]{_cover_crop(width, height)}", output), "-y", str(output)]
    runner.ffmpeg(args, timeout_ms=_timeout_for_media(input_path, limits), description="Scaling and cropping")
    _validate_output(output, "output after scaling", inputPath=str(input_path))
    return output


def image_dimensions(path: Path) -> tuple[int, int]:
    try:
        with Image.open(path) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidInputError("Overlay is not a readable image", {"path": str(path), "error": str(exc)}) from exc


def apply_overlay(
    runner: ProcessRunner,
    input_path: Path,
    overlay_path: Path,
    output: Path,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    """
    Burn ``overlay_path`` into every frame at the origin.

    The overlay must already match the media dimensions; it is never resized.
    """
    validate_input_file(input_path, limits)
    validate_input_file(overlay_path, limits)

    media_size = probe_dimensions(runner, input_path, limits)
    overlay_size = image_dimensions(overlay_path)
    if media_size != overlay_size:
        raise InvalidInputError(
            "Overlay dimensions do not match media dimensions",
            {"mediaSize": list(media_size), "overlaySize": list(overlay_size), "overlayPath": str(overlay_path)},
        )

    args = [
        "-i", str(input_path),
        "-i", str(overlay_path),
        *_encode_options("[0:v][1:v]overlay=0:0", output),
        "-y",
        str(output),
    ]
    runner.ffmpeg(args, timeout_ms=limits.timeout("overlay"), description="Overlay composition")
    _validate_output(output, "output with overlay", inputPath=str(input_path), overlayPath=str(overlay_path))
    return output


def extract_thumbnail(
    runner: ProcessRunner,
    input_path: Path,
    output: Path,
    width: int = 300,
    limits: StageLimits = DEFAULT_LIMITS,
) -> Path:
    """First visible frame as a static JPEG, ``width`` pixels wide."""
    validate_input_file(input_path, limits)

    args = [
        "-i", str(input_path),
        "-vf", f"scale={width}:-1:flags=lanczos",
        "-q:v", "2",
        "-frames:v", "1",
        "-y",
        str(output),
    ]
    runner.ffmpeg(args, timeout_ms=limits.timeout("thumbnail"), description="Thumbnail generation")
    _validate_output(output, "thumbnail", inputPath=str(input_path))
    return output
