import pytest

from engine.errors import (
    SANITIZED_ERROR_MESSAGES,
    AiTransformError,
    ErrorKind,
    InvalidInputError,
    MediaProcessError,
    OutcomeError,
    StorageError,
    classify,
    classify_failure,
)


@pytest.mark.parametrize(
    "stderr, kind",
    [
        ("input.jpg: Invalid data found when processing input", ErrorKind.VALIDATION),
        ("/tmp/x.png: No such file or directory", ErrorKind.VALIDATION),
        ("Unknown encoder 'libfoo'", ErrorKind.CODEC),
        ("Encoder not found", ErrorKind.CODEC),
        ("Codec not currently supported in container", ErrorKind.CODEC),
        ("out.gif: Permission denied", ErrorKind.FILESYSTEM),
        ("av_interleaved_write_frame(): No space left on device", ErrorKind.FILESYSTEM),
        ("Read only file system", ErrorKind.FILESYSTEM),
        ("Cannot allocate memory", ErrorKind.MEMORY),
        ("OUT OF MEMORY", ErrorKind.MEMORY),
        ("Conversion failed!", ErrorKind.UNKNOWN),
        ("", ErrorKind.UNKNOWN),
    ],
)
def test_classify_maps_phrases(stderr, kind):
    assert classify(stderr) is kind


def test_classify_first_match_wins():
    # validation is checked before filesystem
    assert classify("No such file or directory; Permission denied") is ErrorKind.VALIDATION


def test_classify_never_reports_timeout():
    assert classify("Operation timed out") is ErrorKind.UNKNOWN


def test_invalid_input_error_is_validation_kind():
    exc = InvalidInputError("Input file is empty", {"size": 0})
    assert exc.kind is ErrorKind.VALIDATION
    assert exc.details == {"size": 0}
    assert "[validation]" in str(exc)


def test_ai_transform_error_rejects_unknown_code():
    with pytest.raises(ValueError):
        AiTransformError("nope", "SOMETHING_ELSE")


@pytest.mark.parametrize(
    "exc, code, retryable",
    [
        (OutcomeError("bad outcome"), "INVALID_INPUT", False),
        (OutcomeError("flaky", "PROCESSING_FAILED", is_retryable=True), "PROCESSING_FAILED", True),
        (AiTransformError("slow", "TIMEOUT"), "TIMEOUT", True),
        (AiTransformError("down", "API_ERROR"), "AI_MODEL_ERROR", True),
        (AiTransformError("no key", "INVALID_CONFIG"), "INVALID_INPUT", False),
        (AiTransformError("missing", "REFERENCE_IMAGE_NOT_FOUND"), "INVALID_INPUT", False),
        (InvalidInputError("empty"), "INVALID_INPUT", False),
        (MediaProcessError("slow", ErrorKind.TIMEOUT), "TIMEOUT", True),
        (MediaProcessError("codec", ErrorKind.CODEC), "PROCESSING_FAILED", False),
        (MediaProcessError("disk", ErrorKind.FILESYSTEM), "PROCESSING_FAILED", True),
        (MediaProcessError("oom", ErrorKind.MEMORY), "PROCESSING_FAILED", True),
        (MediaProcessError("huh", ErrorKind.UNKNOWN), "PROCESSING_FAILED", True),
        (StorageError("bucket gone"), "STORAGE_ERROR", True),
        (RuntimeError("boom"), "PROCESSING_FAILED", False),
    ],
)
def test_classify_failure_table(exc, code, retryable):
    failure = classify_failure(exc, step="media.animate")
    assert failure.code == code
    assert failure.is_retryable is retryable
    assert failure.message == SANITIZED_ERROR_MESSAGES[code]
    assert failure.step == "media.animate"


def test_job_failure_as_dict_hides_raw_detail():
    failure = classify_failure(MediaProcessError("ffmpeg exploded /secret/path", ErrorKind.UNKNOWN))
    data = failure.as_dict()
    assert set(data) == {"code", "message", "step", "isRetryable", "timestamp"}
    assert "/secret/path" not in data["message"]
    assert "/secret/path" in failure.detail
    assert data["timestamp"] > 0
