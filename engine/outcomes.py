"""
Outcome executor registry.

Every job declares an outcome type. The registry resolves that type to an
executor, refusing unknown or unimplemented types before any file or state
work happens, then times the executor run.
"""
import logging
import time
from dataclasses import replace
from typing import Callable

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import models

from .errors import OutcomeError
from .frames import BOOMERANG, FORWARD
from .pipeline import PipelineContext, run_pipeline, upload_pipeline_output
from .snapshot import JobOutput, JobSnapshot, TransformNode

logger = logging.getLogger(__name__)


class OutcomeType(models.TextChoices):
    PHOTO = "photo", "Photo"
    GIF = "gif", "GIF"
    VIDEO = "video", "Video"
    AI_IMAGE = "ai.image", "AI image"
    AI_VIDEO = "ai.video", "AI video"


class _NotImplementedOutcome:
    def __repr__(self) -> str:
        return "NOT_IMPLEMENTED"


NOT_IMPLEMENTED = _NotImplementedOutcome()

OutcomeExecutor = Callable[[JobSnapshot, PipelineContext], JobOutput]


def target_dimensions(aspect_ratio: str | None) -> tuple[int, int]:
    ratio = aspect_ratio or "1:1"
    try:
        return tuple(settings.ASPECT_RATIO_DIMENSIONS[ratio])
    except KeyError:
        raise OutcomeError(f"Unsupported aspect ratio: {ratio}") from None


def _run(nodes: list[TransformNode], context: PipelineContext, config: dict) -> JobOutput:
    context = replace(
        context,
        target_size=target_dimensions(config.get("aspectRatio")),
        capture_step_id=config.get("captureStepId"),
    )
    result = run_pipeline(nodes, context)
    return upload_pipeline_output(result.stage, context)


def execute_photo(snapshot: JobSnapshot, context: PipelineContext) -> JobOutput:
    """Declared transform nodes; with none, the first capture passes through."""
    config = snapshot.outcome_config("photo")
    return _run(list(snapshot.transform_nodes), context, config)


def execute_gif(snapshot: JobSnapshot, context: PipelineContext) -> JobOutput:
    config = snapshot.outcome_config("gif")
    nodes = [
        TransformNode(
            id="gif-animate",
            type="media.animate",
            config={"format": "gif", "mode": config.get("mode") or BOOMERANG, "fps": config.get("fps") or 2},
        ),
        TransformNode(id="gif-crop", type="media.scaleCrop"),
    ]
    return _run(nodes, context, config)


def execute_video(snapshot: JobSnapshot, context: PipelineContext) -> JobOutput:
    # The mp4 encode already covers and crops to the target size.
    config = snapshot.outcome_config("video")
    nodes = [
        TransformNode(
            id="video-animate",
            type="media.animate",
            config={"format": "mp4", "mode": config.get("mode") or FORWARD, "fps": config.get("fps") or 5},
        ),
    ]
    return _run(nodes, context, config)


def execute_ai_image(snapshot: JobSnapshot, context: PipelineContext) -> JobOutput:
    """
    Generate an image from a prompt, or with ``aiEnabled`` false pass the
    configured capture through. Either way the result is cropped to the
    outcome's aspect ratio.
    """
    config = snapshot.outcome_config("aiImage")
    if not config.get("aiEnabled", True):
        if not config.get("captureStepId"):
            raise OutcomeError("Passthrough mode requires captureStepId")
        logger.info("AI disabled for job %s; passing capture %s through", context.job_id, config["captureStepId"])
        return _run([TransformNode(id="passthrough-crop", type="media.scaleCrop")], context, config)

    prompt = (config.get("prompt") or "").strip()
    if not prompt:
        raise OutcomeError("AI image outcome requires a prompt")
    nodes = [
        TransformNode(
            id="ai-image",
            type="ai.imageGeneration",
            config={
                "prompt": prompt,
                "model": config.get("model"),
                "referenceImages": list(config.get("referenceImages") or []),
                "refMedia": list(config.get("refMedia") or []),
                "aspectRatio": config.get("aspectRatio"),
            },
        ),
        TransformNode(id="ai-crop", type="media.scaleCrop"),
    ]
    return _run(nodes, context, config)


OUTCOME_EXECUTORS: dict[str, OutcomeExecutor | _NotImplementedOutcome] = {
    OutcomeType.PHOTO: execute_photo,
    OutcomeType.GIF: execute_gif,
    OutcomeType.VIDEO: execute_video,
    OutcomeType.AI_IMAGE: execute_ai_image,
    OutcomeType.AI_VIDEO: NOT_IMPLEMENTED,
}


def check_executor_table(executors: dict) -> None:
    declared = {str(key) for key in executors}
    expected = set(OutcomeType.values)
    if declared != expected:
        raise ImproperlyConfigured(
            f"Outcome executor table does not match OutcomeType: "
            f"missing={sorted(expected - declared)} extra={sorted(declared - expected)}"
        )


check_executor_table(OUTCOME_EXECUTORS)


class OutcomeRegistry:
    def __init__(self, executors: dict | None = None):
        executors = OUTCOME_EXECUTORS if executors is None else executors
        check_executor_table(executors)
        self.executors = {str(key): value for key, value in executors.items()}

    def resolve(self, snapshot: JobSnapshot) -> OutcomeExecutor:
        """Executor for the snapshot's outcome, or OutcomeError. Touches nothing."""
        if not snapshot.outcome:
            raise OutcomeError("Job has no outcome configuration")
        outcome_type = snapshot.outcome_type
        if not outcome_type:
            raise OutcomeError("Outcome configuration has no type")
        executor = self.executors.get(outcome_type)
        if executor is None:
            raise OutcomeError(f"Unknown outcome type: {outcome_type}")
        if executor is NOT_IMPLEMENTED:
            raise OutcomeError(f"Outcome type not implemented: {outcome_type}")
        return executor

    def dispatch(self, snapshot: JobSnapshot, context: PipelineContext) -> JobOutput:
        executor = self.resolve(snapshot)
        logger.info("Dispatching outcome %s for job %s", snapshot.outcome_type, context.job_id)
        started = time.monotonic()
        output = executor(snapshot, context)
        elapsed = int((time.monotonic() - started) * 1000)
        logger.info("Outcome %s completed in %sms", snapshot.outcome_type, elapsed)
        return replace(output, processing_time_ms=elapsed)
