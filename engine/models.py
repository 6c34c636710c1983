import uuid
from django.db import models


class Job(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        RUNNING = "running"
        COMPLETED = "completed"
        FAILED = "failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project_id = models.CharField(max_length=128)
    session_id = models.CharField(max_length=128)
    experience_id = models.CharField(max_length=128, blank=True, default="")

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    attempt_number = models.PositiveSmallIntegerField(default=1)
    current_step = models.CharField(max_length=64, blank=True, default="")
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100

    # Frozen at creation; executors read it, nothing writes it back.
    snapshot = models.JSONField(default=dict)
    output = models.JSONField(null=True, blank=True)   # {assetId, url, filePath, format, dimensions, ...}
    error = models.JSONField(null=True, blank=True)    # {code, message, step, isRetryable, timestamp}

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["project_id", "session_id"], name="engine_job_project_session_idx")]

    def __str__(self) -> str:
        return f"Job {self.id} ({self.status}, attempt {self.attempt_number})"

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.Status.COMPLETED, self.Status.FAILED)
