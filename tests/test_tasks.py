import io
import shutil

import pytest
from PIL import Image, ImageSequence

from engine.models import Job
from engine.outcomes import OUTCOME_EXECUTORS, OutcomeRegistry
from engine.snapshot import JobOutput
from engine.state import JobStateStore
from engine.tasks import run_job

pytestmark = pytest.mark.django_db

requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)

COLORS = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0)]


def _job(store, make_image, outcome, frames=1, **fields):
    captured = []
    for i, color in enumerate(COLORS[:frames]):
        ref = store.put(f"s3://bucket/captures/{i}.jpg", make_image(color=color))
        captured.append({"stepId": "s1", "assetId": f"a{i}", "url": ref, "mimeType": "image/jpeg"})
    return Job.objects.create(
        project_id="p1",
        session_id="s1",
        snapshot={"outcome": outcome, "capturedMedia": captured},
        **fields,
    )


def _stub_registry(calls):
    def photo(snapshot, context):
        calls.append(context.job_id)
        return JobOutput(
            asset_id=f"{context.session_id}-output",
            url="https://cdn.test/out.jpg",
            storage_path="projects/p1/sessions/s1/output.jpg",
            format="image",
            width=1080,
            height=1080,
            size_bytes=1,
            thumbnail_url=None,
        )

    return OutcomeRegistry({**OUTCOME_EXECUTORS, "photo": photo})


@requires_ffmpeg
def test_gif_job_end_to_end(store, make_image, runner, scratch_root):
    job = _job(
        store,
        make_image,
        {"type": "gif", "gif": {"captureStepId": "s1", "aspectRatio": "1:1", "mode": "boomerang", "fps": 2}},
        frames=4,
    )

    job = run_job(job.id, store=store, runner=runner)

    assert job.status == Job.Status.COMPLETED, job.error
    assert job.progress == 100
    assert job.output["assetId"] == "s1-output"
    assert job.output["format"] == "gif"
    assert job.output["dimensions"] == {"width": 1080, "height": 1080}
    assert job.output["filePath"] == "projects/p1/sessions/s1/output.gif"
    assert "projects/p1/sessions/s1/thumb.jpg" in store.uploads

    gif_path = scratch_root.parent / "result.gif"
    gif_path.write_bytes(store.uploads["projects/p1/sessions/s1/output.gif"])
    with Image.open(gif_path) as img:
        assert img.n_frames == 6
        assert img.size == (1080, 1080)
        assert [frame.info["duration"] for frame in ImageSequence.Iterator(img)] == [500] * 6
    with Image.open(io.BytesIO(store.uploads["projects/p1/sessions/s1/thumb.jpg"])) as thumb:
        assert thumb.format == "JPEG"
        assert thumb.size == (300, 300)
    assert job.attempt_number == 1
    assert job.started_at is not None and job.completed_at is not None
    assert list(scratch_root.iterdir()) == []


def test_gif_job_without_media_fails_as_invalid_input(store, make_image, runner, scratch_root):
    job = _job(store, make_image, {"type": "gif", "gif": {"aspectRatio": "1:1"}}, frames=0)

    job = run_job(job.id, store=store, runner=runner)

    assert job.status == Job.Status.FAILED
    assert job.error["code"] == "INVALID_INPUT"
    assert job.error["isRetryable"] is False
    assert job.error["step"] == "media.animate"
    assert list(scratch_root.iterdir()) == []


def test_unknown_outcome_fails_before_touching_scratch(store, make_image, scratch_root):
    job = _job(store, make_image, {"type": "hologram"})

    job = run_job(job.id, store=store)

    assert job.status == Job.Status.FAILED
    assert job.error["code"] == "INVALID_INPUT"
    assert not scratch_root.exists()


def test_ai_video_is_not_implemented(store, make_image, scratch_root):
    job = run_job(_job(store, make_image, {"type": "ai.video"}).id, store=store)
    assert job.status == Job.Status.FAILED
    assert job.error["code"] == "INVALID_INPUT"


def test_storage_failure_is_retryable(store, make_image, scratch_root):
    store.fail_uploads = True
    job = _job(store, make_image, {"type": "photo"})

    job = run_job(job.id, store=store)

    assert job.status == Job.Status.FAILED
    assert job.error["code"] == "STORAGE_ERROR"
    assert job.error["isRetryable"] is True
    assert list(scratch_root.iterdir()) == []


def test_duplicate_delivery_of_finished_job_is_ignored(store, make_image, scratch_root):
    calls = []
    job = _job(store, make_image, {"type": "photo"}, status=Job.Status.COMPLETED, output={"url": "x"})

    job = run_job(job.id, store=store, registry=_stub_registry(calls))

    assert calls == []
    assert job.output == {"url": "x"}


def test_job_left_running_is_replayed_under_next_attempt(store, make_image, scratch_root):
    calls = []
    job = _job(store, make_image, {"type": "photo"}, status=Job.Status.RUNNING)

    job = run_job(job.id, store=store, registry=_stub_registry(calls))

    assert calls == [str(job.id)]
    assert job.status == Job.Status.COMPLETED
    assert job.attempt_number == 2
    assert job.output["processingTimeMs"] >= 0


def test_job_left_running_on_last_attempt_is_failed(store, make_image, scratch_root):
    calls = []
    job = _job(store, make_image, {"type": "photo"}, status=Job.Status.RUNNING, attempt_number=3)

    job = run_job(job.id, store=store, registry=_stub_registry(calls), state=JobStateStore(max_attempts=3))

    assert calls == []
    assert job.status == Job.Status.FAILED
    assert job.error["isRetryable"] is False


@requires_ffmpeg
def test_ai_image_with_ai_disabled_delivers_cropped_capture(store, make_image, runner, scratch_root):
    def no_ai():
        raise AssertionError("passthrough must not build an AI transformer")

    job = _job(
        store,
        make_image,
        {"type": "ai.image", "aiImage": {"aiEnabled": False, "captureStepId": "s1", "aspectRatio": "9:16"}},
    )

    job = run_job(job.id, store=store, runner=runner, transformer_factory=no_ai)

    assert job.status == Job.Status.COMPLETED, job.error
    assert job.output["format"] == "image"
    assert job.output["dimensions"] == {"width": 1080, "height": 1920}
