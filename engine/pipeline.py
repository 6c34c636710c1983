"""
Pipeline runner.

Runs a job's transform nodes strictly in order, threading one StageResult
from node to node. When no node produces an artifact the first captured
media is used as-is. An overlay, when configured, is always applied last,
then the result and its thumbnail are uploaded.
"""
import logging
import mimetypes
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from uuid import uuid4

from .ai import DEFAULT_MODEL, AiTransformConfig, detect_mime_type
from .errors import OutcomeError
from .frames import BOOMERANG, Frame, sequence
from .process import ProcessRunner
from .prompts import resolve_prompt_mentions
from .s3 import output_storage_path
from .snapshot import JobOutput, JobSnapshot, MediaReference, TransformNode
from .stages import (
    DEFAULT_LIMITS,
    StageLimits,
    apply_overlay,
    create_gif,
    create_mp4,
    extract_thumbnail,
    probe_dimensions,
    scale_and_crop,
)

logger = logging.getLogger(__name__)

FORMAT_BY_SUFFIX = {".gif": "gif", ".mp4": "video"}


@contextmanager
def scratch_directory(job_id: str, root: Path | None = None):
    """Job-scoped scratch directory, removed on every exit path."""
    if root is None:
        from django.conf import settings

        root = settings.SCRATCH_ROOT
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"job-{job_id}-", dir=root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("Scratch directory %s could not be fully removed", path)


@dataclass(frozen=True)
class StageResult:
    path: Path
    format: str
    size_bytes: int

    @classmethod
    def of(cls, path: Path) -> "StageResult":
        path = Path(path)
        return cls(path=path, format=FORMAT_BY_SUFFIX.get(path.suffix.lower(), "image"), size_bytes=path.stat().st_size)


@dataclass(frozen=True)
class PipelineContext:
    job_id: str
    project_id: str
    session_id: str
    snapshot: JobSnapshot
    scratch_dir: Path
    store: object
    runner: ProcessRunner
    limits: StageLimits = DEFAULT_LIMITS
    target_size: tuple[int, int] = (1080, 1080)
    thumbnail_width: int = 300
    capture_step_id: str | None = None
    transformer_factory: Callable | None = None
    on_progress: Callable[[str, int], None] | None = None

    def new_path(self, stem: str, suffix: str) -> Path:
        return self.scratch_dir / f"{stem}-{uuid4().hex[:8]}{suffix}"

    def report(self, step: str, percentage: int) -> None:
        if self.on_progress is not None:
            self.on_progress(step, percentage)


@dataclass(frozen=True)
class PipelineResult:
    stage: StageResult
    skipped_nodes: tuple[str, ...] = ()


def _progress_for_step(idx: int, total: int) -> int:
    """Map step index to a 10..90 range; leave the rest for overlay and upload."""
    if total <= 0:
        return 90
    start, end = 10.0, 90.0
    return int(start + (end - start) * (idx / total))


def _suffix_for(media: MediaReference) -> str:
    suffix = Path(media.url.split("?", 1)[0]).suffix.lower()
    if suffix:
        return ".jpg" if suffix == ".jpeg" else suffix
    guessed = mimetypes.guess_extension(media.mime_type or "") or ".jpg"
    return ".jpg" if guessed in (".jpe", ".jpeg") else guessed


def _download(context: PipelineContext, media: MediaReference, stem: str) -> Path:
    return context.store.download_by_reference(media.url, context.new_path(stem, _suffix_for(media)))


def _discard(path: Path | None) -> None:
    if path is not None:
        path.unlink(missing_ok=True)


def _source_for(node: TransformNode, context: PipelineContext, previous: StageResult | None) -> tuple[Path, bool]:
    """The node's input and whether the node downloaded it itself."""
    if previous is not None:
        return previous.path, False
    step_id = node.config.get("captureStepId") or context.capture_step_id
    media = context.snapshot.media_for_step(step_id)
    if not media:
        raise OutcomeError(f"Node {node.id} has no input media")
    return _download(context, media[0], "source"), True


# ---------------------------------------------------------------------------
# Node executors
# ---------------------------------------------------------------------------

def _execute_scale_crop(node: TransformNode, context: PipelineContext, previous: StageResult | None) -> StageResult:
    width = int(node.config.get("width") or context.target_size[0])
    height = int(node.config.get("height") or context.target_size[1])
    source, downloaded = _source_for(node, context, previous)
    try:
        output = scale_and_crop(
            context.runner, source, context.new_path("scaled", source.suffix), width, height, context.limits
        )
    finally:
        if downloaded:
            _discard(source)
    return StageResult.of(output)


def _execute_animate(node: TransformNode, context: PipelineContext, previous: StageResult | None) -> StageResult:
    output_format = node.config.get("format", "gif")
    mode = node.config.get("mode", BOOMERANG)
    fps = float(node.config.get("fps", 2))
    width, height = context.target_size

    step_id = node.config.get("captureStepId") or context.capture_step_id
    media = context.snapshot.media_for_step(step_id)
    if not media:
        raise OutcomeError("No captured frames to animate")

    frame_dir = context.scratch_dir / f"frames-{uuid4().hex[:8]}"
    frame_dir.mkdir()
    try:
        frames = [
            Frame(context.store.download_by_reference(m.url, frame_dir / f"frame-{i:03d}{_suffix_for(m)}"))
            for i, m in enumerate(media)
        ]
        ordered = sequence(frames, mode, fps)
        logger.info(
            "Animating %s frames (%s logical, mode=%s, fps=%s) to %s",
            len(frames),
            len(ordered),
            mode,
            fps,
            output_format,
        )
        if output_format == "gif":
            output = create_gif(context.runner, ordered, context.new_path("animation", ".gif"), width, context.limits)
        elif output_format == "mp4":
            output = create_mp4(
                context.runner, ordered, context.new_path("animation", ".mp4"), width, height, fps, context.limits
            )
        else:
            raise OutcomeError(f"Unsupported animation format: {output_format}")
    finally:
        shutil.rmtree(frame_dir, ignore_errors=True)
    return StageResult.of(output)


def _execute_ai_image(node: TransformNode, context: PipelineContext, previous: StageResult | None) -> StageResult:
    if context.transformer_factory is None:
        raise OutcomeError("AI transform is not configured for this job")
    ref_media = [MediaReference.from_dict(m) for m in node.config.get("refMedia") or []]
    resolved = resolve_prompt_mentions(
        str(node.config.get("prompt", "")),
        context.snapshot.session_responses,
        ref_media,
    )
    logger.info("Prompt resolved: node=%s media_refs=%s", node.id, len(resolved.media))

    references = [*(node.config.get("referenceImages") or ()), *(m.url for m in resolved.media)]
    config = AiTransformConfig(
        prompt=resolved.text,
        model=node.config.get("model") or DEFAULT_MODEL,
        provider=node.config.get("provider") or "google",
        reference_images=tuple(dict.fromkeys(references)),
        aspect_ratio=node.config.get("aspectRatio"),
    )
    source, downloaded = _source_for(node, context, previous)
    try:
        output_bytes = context.transformer_factory().transform(source.read_bytes(), config)
    finally:
        if downloaded:
            _discard(source)

    suffix = mimetypes.guess_extension(detect_mime_type(output_bytes)) or ".png"
    output = context.new_path("ai", ".jpg" if suffix in (".jpe", ".jpeg") else suffix)
    output.write_bytes(output_bytes)
    return StageResult.of(output)


NODE_EXECUTORS: dict[str, Callable[[TransformNode, PipelineContext, StageResult | None], StageResult | None]] = {
    "media.scaleCrop": _execute_scale_crop,
    "media.animate": _execute_animate,
    "ai.imageGeneration": _execute_ai_image,
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def run_pipeline(nodes: list[TransformNode], context: PipelineContext) -> PipelineResult:
    logger.info(
        "Starting transform pipeline: job=%s nodes=%s captured_media=%s",
        context.job_id,
        len(nodes),
        len(context.snapshot.captured_media),
    )

    previous: StageResult | None = None
    skipped: list[str] = []
    for idx, node in enumerate(nodes):
        executor = NODE_EXECUTORS.get(node.type)
        if executor is None:
            # Unknown types mean a config/executor version mismatch; the output changes silently.
            logger.error("Skipping unknown node type: job=%s node=%s type=%s", context.job_id, node.id, node.type)
            skipped.append(node.type)
            continue

        context.report(node.type, _progress_for_step(idx, len(nodes)))
        logger.info("Executing node %s: id=%s type=%s", idx, node.id, node.type)
        result = executor(node, context, previous)
        if result is None:
            continue
        if previous is not None and previous.path != result.path:
            _discard(previous.path)
        previous = result
        logger.info("Node completed: id=%s output=%s size=%s", node.id, result.path.name, result.size_bytes)

    if previous is None:
        previous = _fallback_output(context)

    previous = apply_overlay_if_configured(previous, context)
    logger.info("Pipeline completed: job=%s output=%s format=%s", context.job_id, previous.path.name, previous.format)
    return PipelineResult(stage=previous, skipped_nodes=tuple(skipped))


def _fallback_output(context: PipelineContext) -> StageResult:
    """First capture of the configured step; any step when none is configured."""
    media = context.snapshot.media_for_step(context.capture_step_id)
    if not media:
        raise OutcomeError("No transform nodes executed and no captured media available")

    first = media[0]
    logger.info("Using captured media as output: step=%s asset=%s", first.step_id, first.asset_id)
    return StageResult.of(_download(context, first, "fallback-output"))


def apply_overlay_if_configured(stage: StageResult, context: PipelineContext) -> StageResult:
    overlay_ref = context.snapshot.overlay
    if overlay_ref is None:
        return stage

    context.report("overlay", 90)
    logger.info("Applying overlay %s to %s", overlay_ref.display_name or overlay_ref.url, stage.path.name)
    overlay_path = _download(context, overlay_ref, "overlay")
    try:
        output = apply_overlay(
            context.runner, stage.path, overlay_path, context.new_path("overlaid", stage.path.suffix), context.limits
        )
    finally:
        _discard(overlay_path)
    _discard(stage.path)
    return StageResult.of(output)


def upload_pipeline_output(stage: StageResult, context: PipelineContext) -> JobOutput:
    """Upload the final artifact and its thumbnail; any failure fails the job."""
    context.report("uploading", 95)
    extension = stage.path.suffix.lstrip(".").lower()
    storage_path = output_storage_path(context.project_id, context.session_id, "output", extension)
    url = context.store.upload_local_file(stage.path, storage_path)
    size_bytes = context.store.stat_local_file(stage.path)["size_bytes"]

    thumb_path = context.new_path("thumb", ".jpg")
    extract_thumbnail(context.runner, stage.path, thumb_path, context.thumbnail_width, context.limits)
    thumb_storage_path = output_storage_path(context.project_id, context.session_id, "thumb", "jpg")
    thumbnail_url = context.store.upload_local_file(thumb_path, thumb_storage_path)

    width, height = probe_dimensions(context.runner, stage.path, context.limits)

    logger.info(
        "Output uploaded: url=%s path=%s thumbnail=%s size=%s dims=%sx%s",
        url,
        storage_path,
        thumbnail_url,
        size_bytes,
        width,
        height,
    )
    return JobOutput(
        asset_id=f"{context.session_id}-output",
        url=url,
        storage_path=storage_path,
        format=stage.format,
        width=width,
        height=height,
        size_bytes=size_bytes,
        thumbnail_url=thumbnail_url,
    )
