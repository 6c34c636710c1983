"""
AI image transform.

``AiTransformer`` validates the request, loads reference images from the
artifact store and hands bytes to a provider. Only Google Gemini is
supported; the provider is built explicitly and passed in.
"""
import io
import logging
import time
from dataclasses import dataclass, field

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image, UnidentifiedImageError

from .errors import AiTransformError, StorageError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("google",)
DEFAULT_MODEL = "gemini-2.5-flash-image"


@dataclass(frozen=True)
class AiTransformConfig:
    prompt: str
    model: str = DEFAULT_MODEL
    provider: str = "google"
    reference_images: tuple[str, ...] = field(default_factory=tuple)
    aspect_ratio: str | None = None


def detect_mime_type(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError) as exc:
        raise AiTransformError(f"Input is not a readable image: {exc}", "INVALID_INPUT_IMAGE") from exc
    if not mime:
        raise AiTransformError("Input image format is not supported", "INVALID_INPUT_IMAGE")
    return mime


class GeminiImageProvider:
    def __init__(self, api_key: str, timeout_ms: int = 120_000, client=None):
        if client is None:
            if not api_key or not api_key.strip():
                raise AiTransformError("Google AI API key is required", "INVALID_CONFIG")
            client = genai.Client(api_key=api_key, http_options=types.HttpOptions(timeout=timeout_ms))
        self.client = client
        self.timeout_ms = timeout_ms

    def transform_image(self, input_bytes: bytes, config: AiTransformConfig, reference_images: list[bytes]) -> bytes:
        contents = [types.Part.from_bytes(data=input_bytes, mime_type=detect_mime_type(input_bytes))]
        for ref in reference_images:
            contents.append(types.Part.from_bytes(data=ref, mime_type=detect_mime_type(ref)))
        contents.append(config.prompt)

        image_config = types.ImageConfig(aspect_ratio=config.aspect_ratio) if config.aspect_ratio else None
        try:
            response = self.client.models.generate_content(
                model=config.model,
                contents=contents,
                config=types.GenerateContentConfig(response_modalities=["IMAGE"], image_config=image_config),
            )
        except httpx.TimeoutException as exc:
            raise AiTransformError(f"Gemini request timed out after {self.timeout_ms}ms", "TIMEOUT") from exc
        except genai_errors.APIError as exc:
            raise AiTransformError(f"Gemini API error: {exc}", "API_ERROR") from exc

        for candidate in response.candidates or []:
            for part in (candidate.content.parts if candidate.content else None) or []:
                if part.inline_data and part.inline_data.data:
                    return part.inline_data.data
        raise AiTransformError("Gemini response did not include an image", "API_ERROR")


class AiTransformer:
    def __init__(self, provider, store):
        self.provider = provider
        self.store = store

    def transform(self, input_bytes: bytes, config: AiTransformConfig) -> bytes:
        started = time.monotonic()
        try:
            if not input_bytes:
                raise AiTransformError("Input image buffer is empty", "INVALID_INPUT_IMAGE")
            validate_config(config)

            logger.info(
                "AI transform starting: provider=%s model=%s input_size=%s references=%s",
                config.provider,
                config.model,
                len(input_bytes),
                len(config.reference_images),
            )
            references = self._load_reference_images(config.reference_images)
            output = self.provider.transform_image(input_bytes, config, references)
        except AiTransformError as exc:
            logger.error("AI transform failed: code=%s message=%s duration_ms=%s", exc.code, exc, _elapsed_ms(started))
            raise
        except Exception as exc:
            logger.error("AI transform unexpected error: %s duration_ms=%s", exc, _elapsed_ms(started))
            raise AiTransformError(f"AI transformation failed: {exc}", "API_ERROR") from exc

        if not output:
            raise AiTransformError("AI provider returned an empty image", "API_ERROR")
        logger.info("AI transform completed: duration_ms=%s output_size=%s", _elapsed_ms(started), len(output))
        return output

    def _load_reference_images(self, refs: tuple[str, ...]) -> list[bytes]:
        buffers = []
        for ref in refs:
            try:
                if not self.store.exists(ref):
                    raise AiTransformError(f"Reference image not found: {ref}", "REFERENCE_IMAGE_NOT_FOUND")
                buffers.append(self.store.read_bytes(ref))
            except StorageError as exc:
                raise AiTransformError(
                    f"Failed to load reference image {ref}: {exc}",
                    "REFERENCE_IMAGE_NOT_FOUND",
                ) from exc
        return buffers


def validate_config(config: AiTransformConfig) -> None:
    if config.provider not in SUPPORTED_PROVIDERS:
        raise AiTransformError(
            f"Unsupported AI provider: {config.provider}. Only 'google' is currently supported.",
            "INVALID_CONFIG",
        )
    if not config.model or not config.model.strip():
        raise AiTransformError("Model name is required in config", "INVALID_CONFIG")
    if not config.prompt or not config.prompt.strip():
        raise AiTransformError("Prompt is required in config", "INVALID_CONFIG")
    for ref in config.reference_images:
        if not ref or not ref.strip():
            raise AiTransformError("Reference image path cannot be empty", "INVALID_CONFIG")


def build_transformer(store) -> AiTransformer:
    from django.conf import settings

    provider = GeminiImageProvider(settings.GEMINI_API_KEY, timeout_ms=settings.STAGE_TIMEOUTS_MS["ai_transform"])
    return AiTransformer(provider, store)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
