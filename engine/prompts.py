"""
Prompt mention resolution.

AI prompts may reference session data with ``@{step:<stepName>}`` and
reference media with ``@{ref:<displayName>}``. Text answers are inlined,
multi-select answers are joined with commas, and anything that is an image
becomes an ``[IMAGE: <name>]`` placeholder whose media is collected for the
generation request. Unknown mentions are left in place.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable

from .snapshot import MediaReference, SessionResponse

logger = logging.getLogger(__name__)

STEP_MENTION = re.compile(r"@\{step:([^}]+)\}")
REF_MENTION = re.compile(r"@\{ref:([^}]+)\}")


@dataclass(frozen=True)
class ResolvedPrompt:
    text: str
    media: tuple[MediaReference, ...] = ()


def _is_media_list(data: list) -> bool:
    first = data[0]
    return isinstance(first, dict) and ("mediaAssetId" in first or "assetId" in first)


def _is_multi_select(data: list) -> bool:
    first = data[0]
    return isinstance(first, dict) and "value" in first


class _MediaCollector:
    def __init__(self):
        self.media: dict[str, MediaReference] = {}

    def add(self, ref: MediaReference) -> None:
        self.media.setdefault(ref.asset_id or ref.url, ref)


def _step_value(response: SessionResponse, collector: _MediaCollector) -> str:
    data = response.data
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    if isinstance(data, list):
        if not data:
            # capture steps keep their placeholder even when nothing was captured
            return f"[IMAGE: {response.step_name}]" if response.step_type.startswith("capture.") else ""
        if _is_multi_select(data):
            return ", ".join(str(option["value"]) for option in data)
        if _is_media_list(data):
            for item in data:
                collector.add(MediaReference.from_dict(item))
            return f"[IMAGE: {response.step_name}]"

    logger.warning(
        "Unsupported response data for prompt mention: step=%s type=%s data=%s",
        response.step_name,
        response.step_type,
        type(data).__name__,
    )
    return ""


def resolve_prompt_mentions(
    prompt: str,
    responses: Iterable[SessionResponse],
    ref_media: Iterable[MediaReference] = (),
) -> ResolvedPrompt:
    """Inline step answers and reference-media placeholders into ``prompt``."""
    responses = list(responses)
    ref_media = list(ref_media)
    collector = _MediaCollector()

    def replace_step(match: re.Match) -> str:
        name = match.group(1)
        response = next((r for r in responses if r.step_name == name), None)
        if response is None:
            logger.warning("Prompt mentions unknown step %r; leaving it in place", name)
            return match.group(0)
        return _step_value(response, collector)

    def replace_ref(match: re.Match) -> str:
        name = match.group(1)
        ref = next((m for m in ref_media if m.display_name == name), None)
        if ref is None:
            logger.warning("Prompt mentions unknown reference media %r; leaving it in place", name)
            return match.group(0)
        collector.add(ref)
        return f"[IMAGE: {name}]"

    text = STEP_MENTION.sub(replace_step, prompt)
    text = REF_MENTION.sub(replace_ref, text)
    return ResolvedPrompt(text=text, media=tuple(collector.media.values()))
