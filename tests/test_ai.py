import io
from types import SimpleNamespace

import httpx
import pytest
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image

from engine.ai import AiTransformConfig, AiTransformer, GeminiImageProvider, detect_mime_type
from engine.errors import AiTransformError


def _png(color=(10, 20, 30)):
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeProvider:
    def __init__(self, output=b"", exc=None):
        self.output = output or _png((1, 2, 3))
        self.exc = exc
        self.calls = []

    def transform_image(self, input_bytes, config, reference_images):
        self.calls.append((input_bytes, config, reference_images))
        if self.exc is not None:
            raise self.exc
        return self.output


class FakeModels:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.kwargs = None

    def generate_content(self, **kwargs):
        self.kwargs = kwargs
        if self.exc is not None:
            raise self.exc
        return self.response


def _image_response(data):
    return types.GenerateContentResponse(
        candidates=[
            types.Candidate(
                content=types.Content(role="model", parts=[types.Part(inline_data=types.Blob(data=data, mime_type="image/png"))])
            )
        ]
    )


def test_detect_mime_type():
    assert detect_mime_type(_png()) == "image/png"
    with pytest.raises(AiTransformError) as info:
        detect_mime_type(b"not an image")
    assert info.value.code == "INVALID_INPUT_IMAGE"


def test_transform_returns_provider_bytes(store, make_image):
    ref = store.put("refs/style.png", make_image(suffix=".png"))
    provider = FakeProvider()
    out = AiTransformer(provider, store).transform(_png(), AiTransformConfig(prompt="watercolor", reference_images=(ref,)))

    assert out == provider.output
    _, config, refs = provider.calls[0]
    assert config.prompt == "watercolor"
    assert refs == [store.objects[ref].read_bytes()]


def test_empty_input_rejected(store):
    with pytest.raises(AiTransformError) as info:
        AiTransformer(FakeProvider(), store).transform(b"", AiTransformConfig(prompt="x"))
    assert info.value.code == "INVALID_INPUT_IMAGE"


@pytest.mark.parametrize(
    "config",
    [
        AiTransformConfig(prompt=""),
        AiTransformConfig(prompt="x", provider="openai"),
        AiTransformConfig(prompt="x", model=" "),
        AiTransformConfig(prompt="x", reference_images=("",)),
    ],
)
def test_invalid_config_rejected(store, config):
    provider = FakeProvider()
    with pytest.raises(AiTransformError) as info:
        AiTransformer(provider, store).transform(_png(), config)
    assert info.value.code == "INVALID_CONFIG"
    assert provider.calls == []


def test_missing_reference_image(store):
    with pytest.raises(AiTransformError) as info:
        AiTransformer(FakeProvider(), store).transform(_png(), AiTransformConfig(prompt="x", reference_images=("refs/gone.png",)))
    assert info.value.code == "REFERENCE_IMAGE_NOT_FOUND"


def test_unexpected_provider_error_wrapped_as_api_error(store):
    with pytest.raises(AiTransformError) as info:
        AiTransformer(FakeProvider(exc=RuntimeError("socket closed")), store).transform(_png(), AiTransformConfig(prompt="x"))
    assert info.value.code == "API_ERROR"


def test_provider_requires_api_key():
    with pytest.raises(AiTransformError) as info:
        GeminiImageProvider(" ")
    assert info.value.code == "INVALID_CONFIG"


def test_gemini_provider_extracts_inline_image():
    output = _png((200, 0, 0))
    models = FakeModels(response=_image_response(output))
    provider = GeminiImageProvider("key", client=SimpleNamespace(models=models))

    result = provider.transform_image(_png(), AiTransformConfig(prompt="red", aspect_ratio="1:1"), [])

    assert result == output
    assert models.kwargs["model"] == "gemini-2.5-flash-image"
    assert models.kwargs["contents"][-1] == "red"
    assert models.kwargs["config"].image_config.aspect_ratio == "1:1"


def test_gemini_provider_without_image_is_api_error():
    models = FakeModels(response=types.GenerateContentResponse(candidates=[]))
    provider = GeminiImageProvider("key", client=SimpleNamespace(models=models))
    with pytest.raises(AiTransformError) as info:
        provider.transform_image(_png(), AiTransformConfig(prompt="x"), [])
    assert info.value.code == "API_ERROR"


def test_gemini_provider_timeout():
    models = FakeModels(exc=httpx.ReadTimeout("timed out"))
    provider = GeminiImageProvider("key", client=SimpleNamespace(models=models))
    with pytest.raises(AiTransformError) as info:
        provider.transform_image(_png(), AiTransformConfig(prompt="x"), [])
    assert info.value.code == "TIMEOUT"


def test_gemini_provider_api_error():
    exc = genai_errors.APIError(429, {"error": {"code": 429, "message": "quota exceeded", "status": "RESOURCE_EXHAUSTED"}})
    provider = GeminiImageProvider("key", client=SimpleNamespace(models=FakeModels(exc=exc)))
    with pytest.raises(AiTransformError) as info:
        provider.transform_image(_png(), AiTransformConfig(prompt="x"), [])
    assert info.value.code == "API_ERROR"
