import logging
import mimetypes
import shutil
from pathlib import Path
from urllib.parse import urlparse

import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .errors import StorageError

logger = logging.getLogger(__name__)


def get_s3_client(endpoint_url: str | None = None):
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url or settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def get_presign_client():
    """
    Separate client for presigned URLs that browsers will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    return get_s3_client(settings.S3_PUBLIC_ENDPOINT)


def create_presigned_put(key: str, content_type: str | None = None, expires: int | None = None) -> dict:
    """
    Presigned PUT URL for a guest capture upload.

    ContentType is deliberately left out of the signature so clients that
    omit or alter the header still match.
    """
    s3 = get_presign_client()
    url = s3.generate_presigned_url(
        ClientMethod="put_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="PUT",
    )
    headers = {"Content-Type": content_type} if content_type else {}
    return {"url": url, "headers": headers}


def create_presigned_get(key: str, expires: int | None = None) -> str:
    s3 = get_presign_client()
    return s3.generate_presigned_url(
        ClientMethod="get_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="GET",
    )


def output_storage_path(project_id: str, session_id: str, kind: str, extension: str) -> str:
    return f"projects/{project_id}/sessions/{session_id}/{kind}.{extension}"


def capture_storage_key(project_id: str, session_id: str, filename: str) -> str:
    return f"projects/{project_id}/sessions/{session_id}/captures/{filename}"


class ArtifactStore:
    """
    Object storage for job inputs and outputs.

    References are opaque strings: ``s3://bucket/key``, a public object URL,
    or a bare key in the default bucket. Relative paths that resolve to a
    file inside MEDIA_ROOT are copied directly (local dev uploads).
    """

    def __init__(self, client, bucket: str, public_endpoint: str, media_root: Path | None = None):
        self.client = client
        self.bucket = bucket
        self.public_endpoint = public_endpoint.rstrip("/")
        self.media_root = Path(media_root) if media_root else None

    @classmethod
    def from_settings(cls) -> "ArtifactStore":
        return cls(
            client=get_s3_client(),
            bucket=settings.S3_BUCKET,
            public_endpoint=settings.S3_PUBLIC_ENDPOINT,
            media_root=settings.MEDIA_ROOT,
        )

    def object_url(self, key: str) -> str:
        return f"{self.public_endpoint}/{self.bucket}/{key}"

    def resolve(self, ref: str) -> tuple[str, str]:
        """Split a reference into (bucket, key)."""
        if ref.startswith("s3://"):
            bucket, _, key = ref[5:].partition("/")
            if not bucket or not key:
                raise StorageError(f"Invalid storage reference: {ref}")
            return bucket, key

        if ref.startswith(("http://", "https://")):
            prefix = f"{self.public_endpoint}/{self.bucket}/"
            if ref.startswith(prefix):
                return self.bucket, ref[len(prefix):].split("?", 1)[0]
            bucket, _, key = urlparse(ref).path.lstrip("/").partition("/")
            if not bucket or not key:
                raise StorageError(f"Invalid storage reference: {ref}")
            return bucket, key

        return self.bucket, ref.lstrip("/")

    def _local_candidate(self, ref: str) -> Path | None:
        if self.media_root is None or "://" in ref or Path(ref).is_absolute():
            return None
        root = self.media_root.resolve()
        candidate = (root / ref).resolve()
        # Only files inside MEDIA_ROOT; anything else is treated as an object key.
        if not candidate.is_relative_to(root):
            return None
        return candidate if candidate.is_file() else None

    def download_by_reference(self, ref: str, local_path: Path) -> Path:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        local = self._local_candidate(ref)
        if local is not None:
            shutil.copyfile(local, local_path)
            return local_path

        bucket, key = self.resolve(ref)
        try:
            self.client.download_file(bucket, key, str(local_path))
        except (Boto3Error, BotoCoreError, ClientError) as exc:
            local_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to download {bucket}/{key}: {exc}") from exc
        logger.debug("Downloaded %s/%s to %s", bucket, key, local_path)
        return local_path

    def read_bytes(self, ref: str) -> bytes:
        local = self._local_candidate(ref)
        if local is not None:
            return local.read_bytes()

        bucket, key = self.resolve(ref)
        try:
            obj = self.client.get_object(Bucket=bucket, Key=key)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to read {bucket}/{key}: {exc}") from exc

    def exists(self, ref: str) -> bool:
        if self._local_candidate(ref) is not None:
            return True
        bucket, key = self.resolve(ref)
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to stat {bucket}/{key}: {exc}") from exc
        return True

    def upload_local_file(self, local_path: Path, storage_path: str, content_type: str | None = None) -> str:
        """Upload ``local_path`` to ``storage_path`` and return its public URL."""
        content_type = content_type or mimetypes.guess_type(str(local_path))[0]
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.upload_file(str(local_path), self.bucket, storage_path, ExtraArgs=extra or None)
        except (Boto3Error, BotoCoreError, ClientError, OSError) as exc:
            raise StorageError(f"Failed to upload {local_path} to {storage_path}: {exc}") from exc
        url = self.object_url(storage_path)
        logger.info("Uploaded %s to %s", local_path, storage_path)
        return url

    @staticmethod
    def stat_local_file(local_path: Path) -> dict:
        try:
            return {"size_bytes": Path(local_path).stat().st_size}
        except OSError as exc:
            raise StorageError(f"Failed to stat {local_path}: {exc}") from exc
