import os
from uuid import uuid4

from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .errors import InvalidTransitionError
from .models import Job
from .s3 import capture_storage_key, create_presigned_get, create_presigned_put
from .serializers import (
    JobCreateSerializer,
    JobSerializer,
    PresignRequestSerializer,
    PresignResponseSerializer,
)
from .state import JobStateStore
from .tasks import process_job


class CreateJobView(views.APIView):
    """
    Creates a Job from a frozen execution snapshot and enqueues the worker.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = JobCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        job = Job.objects.create(**ser.validated_data)
        process_job.delay(str(job.id))
        return Response({"job_id": str(job.id)}, status=status.HTTP_202_ACCEPTED)


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)
        data = JobSerializer(job).data
        # Time-limited download link for the finished artifact
        storage_path = (job.output or {}).get("filePath")
        if storage_path:
            data["download_url"] = create_presigned_get(storage_path)
        return Response(data)


class RetryJobView(views.APIView):
    """
    Caller-driven retry of a failed job. Only retryable failures with
    attempts remaining go back to the queue.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, job_id):
        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            return Response({"detail": "Not found"}, status=404)

        if job.status != Job.Status.FAILED or not (job.error or {}).get("isRetryable"):
            return Response({"detail": "Job is not retryable."}, status=status.HTTP_409_CONFLICT)

        try:
            job = JobStateStore().reset_for_retry(job.id)
        except InvalidTransitionError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        process_job.delay(str(job.id))
        return Response(
            {"job_id": str(job.id), "attempt_number": job.attempt_number},
            status=status.HTTP_202_ACCEPTED,
        )


class PresignUploadView(views.APIView):
    """
    Returns a presigned PUT URL + key so a guest device can upload a capture
    directly to MinIO/S3 without streaming through Django.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = PresignRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        content_type = data.get("content_type") or None

        safe_name = f"{uuid4().hex}_{os.path.basename(data['filename'])}"
        key = capture_storage_key(data["project_id"], data["session_id"], safe_name)

        signed = create_presigned_put(key, content_type=content_type)
        resp = {"key": key, "url": signed["url"], "headers": signed.get("headers", {})}
        out = PresignResponseSerializer(resp).data
        return Response(out, status=201)
