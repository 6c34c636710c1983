from django.urls import path
from .views import CreateJobView, JobDetailView, PresignUploadView, RetryJobView

urlpatterns = [
    path("jobs/", CreateJobView.as_view(), name="job_create"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("jobs/<uuid:job_id>/retry/", RetryJobView.as_view(), name="job_retry"),
    path("uploads/presign/", PresignUploadView.as_view(), name="uploads_presign"),
]
