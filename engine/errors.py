"""
Error taxonomy for the media engine.

Stage failures carry an ``ErrorKind`` derived from the transcoder's stderr.
Job-level failures are reduced to a stable, client-safe ``JobFailure``.
"""
import time
from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    CODEC = "codec"
    FILESYSTEM = "filesystem"
    MEMORY = "memory"
    UNKNOWN = "unknown"


# Checked in order; first match wins. TIMEOUT is never derived from text.
STDERR_PHRASES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.VALIDATION, ("invalid data", "no such file", "does not exist")),
    (ErrorKind.CODEC, ("unknown encoder", "encoder not found", "codec not currently supported")),
    (ErrorKind.FILESYSTEM, ("permission denied", "no space left", "read only")),
    (ErrorKind.MEMORY, ("cannot allocate memory", "out of memory")),
)


def classify(stderr_text: str) -> ErrorKind:
    """Map raw transcoder diagnostics to an ErrorKind."""
    lowered = (stderr_text or "").lower()
    for kind, phrases in STDERR_PHRASES:
        if any(phrase in lowered for phrase in phrases):
            return kind
    return ErrorKind.UNKNOWN


class EngineError(Exception):
    pass


class MediaProcessError(EngineError):
    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN, details: dict | None = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.args[0]} [{self.kind.value}]"


class InvalidInputError(MediaProcessError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, ErrorKind.VALIDATION, details)


class OutcomeError(EngineError):
    def __init__(self, message: str, code: str = "INVALID_INPUT", *, is_retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.is_retryable = is_retryable


class AiTransformError(EngineError):
    CODES = {"API_ERROR", "INVALID_CONFIG", "REFERENCE_IMAGE_NOT_FOUND", "INVALID_INPUT_IMAGE", "TIMEOUT"}

    def __init__(self, message: str, code: str = "API_ERROR"):
        if code not in self.CODES:
            raise ValueError(f"Unknown AI transform error code: {code}")
        super().__init__(message)
        self.code = code


class StorageError(EngineError):
    pass


class InvalidTransitionError(EngineError):
    pass


# Client-safe messages; raw diagnostics only go to logs.
SANITIZED_ERROR_MESSAGES = {
    "INVALID_INPUT": "The request could not be processed due to invalid input.",
    "PROCESSING_FAILED": "An error occurred while processing your request.",
    "AI_MODEL_ERROR": "The AI service is temporarily unavailable.",
    "STORAGE_ERROR": "Unable to save the result. Please try again.",
    "TIMEOUT": "Processing took too long and was cancelled.",
    "CANCELLED": "The request was cancelled.",
    "UNKNOWN": "An unexpected error occurred.",
}

_MEDIA_FAILURES = {
    ErrorKind.VALIDATION: ("INVALID_INPUT", False),
    ErrorKind.TIMEOUT: ("TIMEOUT", True),
    ErrorKind.CODEC: ("PROCESSING_FAILED", False),
    ErrorKind.FILESYSTEM: ("PROCESSING_FAILED", True),
    ErrorKind.MEMORY: ("PROCESSING_FAILED", True),
    ErrorKind.UNKNOWN: ("PROCESSING_FAILED", True),
}

_AI_FAILURES = {
    "TIMEOUT": ("TIMEOUT", True),
    "API_ERROR": ("AI_MODEL_ERROR", True),
}


@dataclass(frozen=True)
class JobFailure:
    code: str
    message: str
    is_retryable: bool
    step: str | None = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    detail: str = ""

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "step": self.step,
            "isRetryable": self.is_retryable,
            "timestamp": self.timestamp,
        }


def classify_failure(exc: BaseException, step: str | None = None) -> JobFailure:
    """Reduce any exception raised during a job to a JobFailure."""
    if isinstance(exc, OutcomeError):
        code, retryable = exc.code, exc.is_retryable
    elif isinstance(exc, AiTransformError):
        code, retryable = _AI_FAILURES.get(exc.code, ("INVALID_INPUT", False))
    elif isinstance(exc, MediaProcessError):
        code, retryable = _MEDIA_FAILURES[exc.kind]
    elif isinstance(exc, StorageError):
        code, retryable = "STORAGE_ERROR", True
    else:
        code, retryable = "PROCESSING_FAILED", False

    return JobFailure(
        code=code,
        message=SANITIZED_ERROR_MESSAGES.get(code, SANITIZED_ERROR_MESSAGES["UNKNOWN"]),
        is_retryable=retryable,
        step=step,
        detail=str(exc),
    )
