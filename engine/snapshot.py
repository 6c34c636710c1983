"""
Immutable view of a job's execution snapshot.

The snapshot is parsed once when a job starts; executors never re-read
mutable configuration mid-run.
"""
from dataclasses import dataclass, field
from typing import Any

from .errors import OutcomeError


@dataclass(frozen=True)
class MediaReference:
    url: str
    asset_id: str = ""
    step_id: str | None = None
    mime_type: str = "image/jpeg"
    size_bytes: int | None = None
    uploaded_at: int | None = None
    display_name: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "MediaReference":
        url = data.get("url") or data.get("filePath") or data.get("storagePath")
        if not url:
            raise OutcomeError("Media reference has no storage locator")
        return cls(
            url=url,
            asset_id=data.get("assetId") or data.get("mediaAssetId") or "",
            step_id=data.get("stepId"),
            mime_type=data.get("mimeType") or "image/jpeg",
            size_bytes=data.get("sizeBytes"),
            uploaded_at=data.get("uploadedAt"),
            display_name=data.get("displayName") or "",
        )


@dataclass(frozen=True)
class TransformNode:
    id: str
    type: str
    config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "TransformNode":
        return cls(id=str(data.get("id", "")), type=str(data.get("type", "")), config=dict(data.get("config") or {}))


@dataclass(frozen=True)
class SessionResponse:
    """A guest's answer to one experience step; ``data`` is kept as submitted."""

    step_id: str
    step_name: str
    step_type: str = ""
    data: Any = None

    @classmethod
    def from_dict(cls, data: dict) -> "SessionResponse":
        return cls(
            step_id=str(data.get("stepId") or ""),
            step_name=str(data.get("stepName") or ""),
            step_type=str(data.get("stepType") or ""),
            data=data.get("data"),
        )


@dataclass(frozen=True)
class JobSnapshot:
    outcome: dict | None
    captured_media: tuple[MediaReference, ...] = ()
    overlay: MediaReference | None = None
    transform_nodes: tuple[TransformNode, ...] = ()
    session_responses: tuple[SessionResponse, ...] = ()
    experience_version: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "JobSnapshot":
        data = data or {}
        overlay = data.get("overlayChoice")
        return cls(
            outcome=data.get("outcome") or None,
            captured_media=tuple(MediaReference.from_dict(m) for m in data.get("capturedMedia") or []),
            overlay=MediaReference.from_dict(overlay) if overlay else None,
            transform_nodes=tuple(TransformNode.from_dict(n) for n in data.get("transformNodes") or []),
            session_responses=tuple(SessionResponse.from_dict(r) for r in data.get("sessionResponses") or []),
            experience_version=int(data.get("experienceVersion") or 1),
        )

    @property
    def outcome_type(self) -> str | None:
        return (self.outcome or {}).get("type")

    def outcome_config(self, key: str) -> dict:
        """Per-type config block, e.g. ``outcome["gif"]``; empty when absent."""
        return dict((self.outcome or {}).get(key) or {})

    def media_for_step(self, step_id: str | None) -> list[MediaReference]:
        """Captured media bound to ``step_id``, in capture order."""
        if step_id is None:
            return list(self.captured_media)
        media = [m for m in self.captured_media if m.step_id == step_id]
        if not media:
            raise OutcomeError(f"Capture step has no media: {step_id}")
        return media


@dataclass(frozen=True)
class JobOutput:
    asset_id: str
    url: str
    storage_path: str
    format: str
    width: int
    height: int
    size_bytes: int
    thumbnail_url: str | None
    processing_time_ms: int = 0

    def as_dict(self) -> dict:
        return {
            "assetId": self.asset_id,
            "url": self.url,
            "filePath": self.storage_path,
            "format": self.format,
            "dimensions": {"width": self.width, "height": self.height},
            "sizeBytes": self.size_bytes,
            "thumbnailUrl": self.thumbnail_url,
            "processingTimeMs": self.processing_time_ms,
        }
