import logging
import subprocess
import time
from dataclasses import dataclass

from .errors import ErrorKind, MediaProcessError, classify

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    elapsed_ms: int


class ProcessRunner:
    """
    Runs one external binary per call under a wall-clock deadline.

    Binaries for ffmpeg/ffprobe are injected so stages never depend on
    global paths; tests and alternate backends pass their own runner.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe"):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    @classmethod
    def from_settings(cls) -> "ProcessRunner":
        from django.conf import settings

        return cls(ffmpeg_bin=settings.FFMPEG_BIN, ffprobe_bin=settings.FFPROBE_BIN)

    def ffmpeg(
        self,
        args: list[str],
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        description: str = "FFmpeg operation",
    ) -> ProcessResult:
        return self.run(self.ffmpeg_bin, args, timeout_ms=timeout_ms, description=description)

    def ffprobe(
        self,
        args: list[str],
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        description: str = "FFprobe operation",
    ) -> ProcessResult:
        return self.run(self.ffprobe_bin, args, timeout_ms=timeout_ms, description=description)

    def run(
        self,
        command: str,
        args: list[str],
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        description: str = "FFmpeg operation",
    ) -> ProcessResult:
        cmd = [command, *args]
        logger.debug("Running %s: %s", description, _format_command(cmd))
        started = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            logger.warning("%s failed to start: %s", description, exc)
            raise MediaProcessError(
                f"{description} failed: {exc}",
                ErrorKind.UNKNOWN,
                {"error": str(exc), "command": command},
            ) from exc

        # The context manager closes the pipes and reaps the child on every path.
        with proc:
            try:
                stdout, stderr = proc.communicate(timeout=timeout_ms / 1000 if timeout_ms > 0 else None)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, stderr = proc.communicate()
                logger.warning("%s timed out after %sms (pid=%s)", description, timeout_ms, proc.pid)
                raise MediaProcessError(
                    f"{description} timed out after {timeout_ms}ms",
                    ErrorKind.TIMEOUT,
                    {"timeout_ms": timeout_ms, "stderr": stderr or "", "pid": proc.pid},
                )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if proc.returncode == 0:
            logger.info("%s completed in %sms", description, elapsed_ms)
            return ProcessResult(proc.returncode, stdout or "", stderr or "", elapsed_ms)

        kind = classify(stderr or "")
        logger.warning(
            "%s failed with exit code %s [%s]: %s",
            description,
            proc.returncode,
            kind.value,
            _tail(stderr),
        )
        raise MediaProcessError(
            f"{description} failed with exit code {proc.returncode}",
            kind,
            {"exit_code": proc.returncode, "stdout": stdout or "", "stderr": stderr or ""},
        )


def _format_command(cmd: list[str]) -> str:
    text = " ".join(cmd)
    if len(text) > 4000:
        return f"{text[:4000]}... [truncated]"
    return text


def _tail(text: str | None, lines: int = 20) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])
