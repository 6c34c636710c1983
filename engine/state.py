"""
Job state adapter.

All writes to a Job's processing state go through ``JobStateStore`` so that
transitions stay forward-only and attempt numbers never go backwards.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .errors import InvalidTransitionError, JobFailure
from .models import Job

logger = logging.getLogger(__name__)

S = Job.Status

# running -> pending is the retry edge; everything else moves forward.
TRANSITIONS = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed", "pending"},
    "failed": {"pending"},
    "completed": set(),
}


class JobStateStore:
    def __init__(self, max_attempts: int | None = None):
        self.max_attempts = max_attempts if max_attempts is not None else settings.JOB_MAX_ATTEMPTS

    def get(self, job_id) -> Job:
        return Job.objects.get(pk=job_id)

    def _locked(self, job_id) -> Job:
        return Job.objects.select_for_update().get(pk=job_id)

    @staticmethod
    def _check(job: Job, target: str) -> None:
        if str(target) not in TRANSITIONS[str(job.status)]:
            raise InvalidTransitionError(f"Job {job.id} cannot move from {job.status} to {target}")

    def mark_running(self, job_id, attempt_number: int) -> Job:
        with transaction.atomic():
            job = self._locked(job_id)
            self._check(job, S.RUNNING)
            if attempt_number != job.attempt_number:
                raise InvalidTransitionError(
                    f"Job {job.id} is on attempt {job.attempt_number}, not {attempt_number}"
                )
            job.status = S.RUNNING
            job.progress = 0
            job.current_step = ""
            job.started_at = timezone.now()
            job.save(update_fields=["status", "progress", "current_step", "started_at", "updated_at"])
        logger.info("Job %s running (attempt %s)", job.id, job.attempt_number)
        return job

    def mark_progress(self, job_id, step: str, percentage: int) -> Job:
        with transaction.atomic():
            job = self._locked(job_id)
            if job.status != S.RUNNING:
                raise InvalidTransitionError(f"Job {job.id} is {job.status}; progress applies only while running")
            job.current_step = step[:64]
            job.progress = max(job.progress, max(0, min(100, int(percentage))))
            job.save(update_fields=["current_step", "progress", "updated_at"])
        logger.debug("Job %s at %s%% (%s)", job.id, job.progress, step)
        return job

    def mark_completed(self, job_id, output: dict) -> Job:
        with transaction.atomic():
            job = self._locked(job_id)
            self._check(job, S.COMPLETED)
            job.status = S.COMPLETED
            job.progress = 100
            job.current_step = "completed"
            job.output = output
            job.error = None
            job.completed_at = timezone.now()
            job.save(
                update_fields=["status", "progress", "current_step", "output", "error", "completed_at", "updated_at"]
            )
        logger.info("Job %s completed: %s", job.id, output.get("url"))
        return job

    def mark_failed(self, job_id, failure: JobFailure) -> Job:
        with transaction.atomic():
            job = self._locked(job_id)
            self._check(job, S.FAILED)
            job.status = S.FAILED
            job.error = failure.as_dict()
            if failure.step:
                job.current_step = failure.step[:64]
            job.completed_at = timezone.now()
            job.save(update_fields=["status", "error", "current_step", "completed_at", "updated_at"])
        logger.info("Job %s failed: %s (retryable=%s)", job.id, failure.code, failure.is_retryable)
        return job

    def reset_for_retry(self, job_id) -> Job:
        """Move a running or failed job back to pending under the next attempt number."""
        with transaction.atomic():
            job = self._locked(job_id)
            self._check(job, S.PENDING)
            if job.attempt_number + 1 > self.max_attempts:
                raise InvalidTransitionError(f"Job {job.id} has used all {self.max_attempts} attempts")
            job.status = S.PENDING
            job.attempt_number += 1
            job.progress = 0
            job.current_step = ""
            job.output = None
            job.error = None
            job.started_at = None
            job.completed_at = None
            job.save(
                update_fields=[
                    "status",
                    "attempt_number",
                    "progress",
                    "current_step",
                    "output",
                    "error",
                    "started_at",
                    "completed_at",
                    "updated_at",
                ]
            )
        logger.info("Job %s reset for attempt %s", job.id, job.attempt_number)
        return job
