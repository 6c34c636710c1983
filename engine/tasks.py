import logging
import time

from celery import shared_task
from django.conf import settings

from .ai import build_transformer
from .errors import (
    SANITIZED_ERROR_MESSAGES,
    InvalidTransitionError,
    JobFailure,
    MediaProcessError,
    classify_failure,
)
from .models import Job
from .outcomes import OutcomeRegistry
from .pipeline import PipelineContext, scratch_directory
from .process import ProcessRunner
from .s3 import ArtifactStore
from .snapshot import JobSnapshot
from .stages import StageLimits
from .state import JobStateStore

logger = logging.getLogger(__name__)


def _recover_crashed(job: Job, state: JobStateStore) -> Job | None:
    """
    A job still marked running when a worker picks it up belonged to a worker
    that died mid-run. Replay it under the next attempt, or fail it if none remain.
    """
    logger.warning("Job %s found running on attempt %s; replaying", job.id, job.attempt_number)
    try:
        return state.reset_for_retry(job.id)
    except InvalidTransitionError as exc:
        failure = JobFailure(
            code="PROCESSING_FAILED",
            message=SANITIZED_ERROR_MESSAGES["PROCESSING_FAILED"],
            is_retryable=False,
            step=job.current_step or "recovery",
            detail=str(exc),
        )
        state.mark_failed(job.id, failure)
        return None


def _log_failure(job_id, failure: JobFailure, exc: BaseException) -> None:
    extra = ""
    if isinstance(exc, MediaProcessError):
        details = exc.details or {}
        stderr = details.get("stderr") or ""
        extra = f" kind={exc.kind.value} exit_code={details.get('exit_code')} stderr_tail={stderr[-1000:]!r}"
    logger.error(
        "Job %s failed at %s: code=%s retryable=%s detail=%s%s",
        job_id,
        failure.step,
        failure.code,
        failure.is_retryable,
        failure.detail,
        extra,
        exc_info=not isinstance(exc, MediaProcessError),
    )


def run_job(
    job_id,
    *,
    store=None,
    runner: ProcessRunner | None = None,
    registry: OutcomeRegistry | None = None,
    state: JobStateStore | None = None,
    limits: StageLimits | None = None,
    transformer_factory=None,
) -> Job:
    """
    Execute one job to exactly one terminal state.

    Collaborators default to instances built from settings; tests pass their own.
    """
    state = state or JobStateStore()
    registry = registry or OutcomeRegistry()

    job = state.get(job_id)
    if job.is_terminal:
        logger.info("Job %s already %s; ignoring duplicate delivery", job.id, job.status)
        return job
    if job.status == Job.Status.RUNNING:
        job = _recover_crashed(job, state)
        if job is None:
            return state.get(job_id)

    state.mark_running(job.id, job.attempt_number)
    started = time.monotonic()
    current = {"step": "setup"}

    def on_progress(step: str, percentage: int) -> None:
        current["step"] = step
        state.mark_progress(job.id, step, percentage)

    try:
        snapshot = JobSnapshot.from_dict(job.snapshot)
        registry.resolve(snapshot)

        store = store or ArtifactStore.from_settings()
        runner = runner or ProcessRunner.from_settings()
        limits = limits or StageLimits.from_settings()
        if transformer_factory is None:
            def transformer_factory():
                return build_transformer(store)

        with scratch_directory(str(job.id)) as scratch:
            context = PipelineContext(
                job_id=str(job.id),
                project_id=job.project_id,
                session_id=job.session_id,
                snapshot=snapshot,
                scratch_dir=scratch,
                store=store,
                runner=runner,
                limits=limits,
                thumbnail_width=settings.THUMBNAIL_WIDTH,
                transformer_factory=transformer_factory,
                on_progress=on_progress,
            )
            output = registry.dispatch(snapshot, context)
    except Exception as exc:
        failure = classify_failure(exc, step=current["step"])
        _log_failure(job.id, failure, exc)
        return state.mark_failed(job.id, failure)

    logger.info(
        "Job %s finished in %sms (outcome %s)",
        job.id,
        int((time.monotonic() - started) * 1000),
        snapshot.outcome_type,
    )
    return state.mark_completed(job.id, output.as_dict())


@shared_task(bind=True, acks_late=True)
def process_job(self, job_id: str):
    job = run_job(job_id)
    return {"job_id": str(job.id), "status": job.status}
