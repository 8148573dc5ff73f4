"""Prompt and caption synthesis for the three visual types."""

import json
import re
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from visualgen.core import config
from visualgen.schemas.visuals import GeneratedContent, VisualType, WordContext
from visualgen.services.http_client import json_headers, request_json

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

NO_TEXT = "CRITICAL: Absolutely NO text, NO letters, NO words, NO writing anywhere in the image."


class ContentParseError(ValueError):
    pass


class ContentService(Protocol):
    async def synthesize(
        self, visual_type: VisualType, context: WordContext
    ) -> GeneratedContent: ...


def has_material(visual_type: VisualType, context: WordContext) -> bool:
    """Whether the model has anything to work from for this visual type."""
    if visual_type == VisualType.CONCEPT:
        return bool(context.definition_en)
    if visual_type == VisualType.MNEMONIC:
        return context.mnemonic is not None
    return bool(context.rhyming_words)


def template_content(visual_type: VisualType, context: WordContext) -> GeneratedContent:
    word = context.word
    definition_en = context.definition_en
    definition_ko = context.definition_ko

    if visual_type == VisualType.CONCEPT:
        meaning = f' which means "{definition_en}"' if definition_en else ""
        return GeneratedContent(
            prompt=(
                f'A 1:1 square cute cartoon illustration showing the meaning of "{word}"{meaning}. '
                "Style: Pixar-like 3D cartoon, bright vibrant colors, friendly character design, "
                "simple clean composition, educational and memorable. "
                f"{NO_TEXT} Pure visual illustration only."
            ),
            caption_en=definition_en or f"The meaning of {word}",
            caption_ko=definition_ko or f"{word}의 의미",
        )

    if visual_type == VisualType.MNEMONIC:
        mnemonic = context.mnemonic
        if mnemonic is None:
            return GeneratedContent(
                prompt=(
                    f'A 1:1 square cartoon illustration of something memorable related to "{word}". '
                    f"Style: cute cartoon, memorable, colorful. {NO_TEXT}"
                ),
                caption_en=f"Memory tip for {word}",
                caption_ko=f"{word} 연상법",
            )
        return GeneratedContent(
            prompt=(
                f"A 1:1 square cartoon illustration visualizing: {mnemonic.content[:100]}. "
                f"Style: cute cartoon, memorable, colorful. {NO_TEXT}"
            ),
            caption_en=mnemonic.content[:50],
            caption_ko=mnemonic.korean_hint or f"{word} 연상법",
        )

    if not context.rhyming_words:
        subject = definition_en or word
        return GeneratedContent(
            prompt=(
                f'A 1:1 square humorous cartoon illustration showing a funny scene that represents "{subject}". '
                f"Style: playful cartoon, bright colors. {NO_TEXT}"
            ),
            caption_en=definition_en or word,
            caption_ko=definition_ko or f"{word}의 의미",
        )
    rhyme = context.rhyming_words[0]
    return GeneratedContent(
        prompt=(
            f'A 1:1 square humorous cartoon illustration showing a funny scene about "{word}". '
            f"Style: playful cartoon, bright colors. {NO_TEXT}"
        ),
        caption_en=f"{word} rhymes with {rhyme}",
        caption_ko=f"{word}는 {rhyme}와 라임!",
    )


def build_messages(visual_type: VisualType, context: WordContext) -> Tuple[str, str, int]:
    """System prompt, user prompt and token budget for the language model."""
    word = context.word
    if visual_type == VisualType.CONCEPT:
        examples = "\n".join(f"- {example}" for example in context.examples[:2])
        return (
            "You design educational illustrations for vocabulary learning. "
            "Always respond in JSON format.",
            f'Design one illustration that shows the meaning of "{word}" '
            f"(meaning: {context.definition_en}).\n"
            + (f"Example sentences:\n{examples}\n" if examples else "")
            + "\nRespond in JSON:\n"
            "{\n"
            '  "imagePrompt": "A 1:1 square cute cartoon illustration of [specific scene]. '
            'Style: Pixar-like 3D cartoon, bright colors. CRITICAL: NO text.",\n'
            '  "captionKo": "짧은 한국어 캡션",\n'
            '  "captionEn": "Short English caption"\n'
            "}",
            500,
        )
    if visual_type == VisualType.MNEMONIC:
        mnemonic = context.mnemonic
        content = mnemonic.content if mnemonic else word
        hint = f"Korean hint: {mnemonic.korean_hint}\n" if mnemonic and mnemonic.korean_hint else ""
        return (
            "You extract visual elements from mnemonic text for image generation. "
            "Always respond in JSON format.",
            f'Extract visual elements from this mnemonic for "{word}":\n'
            f"{content}\n{hint}\n"
            "Respond in JSON:\n"
            "{\n"
            '  "imagePrompt": "A 1:1 square cartoon illustration of [specific scene]. '
            'Style: cute cartoon, memorable, colorful. CRITICAL: NO text.",\n'
            '  "captionKo": "짧은 한국어 캡션",\n'
            '  "captionEn": "Short English caption"\n'
            "}",
            500,
        )
    rhymes = ", ".join(context.rhyming_words[:4])
    return (
        "You create memorable rhyme-based sentences for vocabulary learning. "
        "Always respond in JSON format.",
        f'Create a memorable sentence using "{word}" (meaning: {context.definition_en or word}) '
        f"and rhyming words: {rhymes}.\n\n"
        "Respond in JSON:\n"
        "{\n"
        '  "captionEn": "English sentence using the word and a rhyme",\n'
        '  "captionKo": "한국어 번역"\n'
        "}",
        300,
    )


def extract_json_object(text: str) -> Dict[str, Any]:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ContentParseError("no JSON object in model response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ContentParseError(f"invalid JSON in model response: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ContentParseError("model response is not a JSON object")
    return parsed


def _field(parsed: Dict[str, Any], name: str) -> Optional[str]:
    value = parsed.get(name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_content(
    text: str, visual_type: VisualType, context: WordContext
) -> GeneratedContent:
    parsed = extract_json_object(text)
    defaults = template_content(visual_type, context)
    caption_en = _field(parsed, "captionEn")
    caption_ko = _field(parsed, "captionKo")

    if visual_type == VisualType.RHYME:
        if not caption_en:
            raise ContentParseError("rhyme response is missing captionEn")
        return GeneratedContent(
            prompt=(
                f"A 1:1 square humorous cartoon illustration showing: {caption_en}. "
                f"Style: playful cartoon, bright colors, fun expressions. {NO_TEXT}"
            ),
            caption_en=caption_en,
            caption_ko=caption_ko or defaults.caption_ko,
        )

    image_prompt = _field(parsed, "imagePrompt")
    if not image_prompt:
        raise ContentParseError(f"{visual_type.value.lower()} response is missing imagePrompt")
    return GeneratedContent(
        prompt=image_prompt,
        caption_en=caption_en or defaults.caption_en,
        caption_ko=caption_ko or defaults.caption_ko,
    )


def response_text(data: Any) -> str:
    if not isinstance(data, dict) or not isinstance(data.get("content"), list):
        raise ContentParseError("unexpected messages response shape")
    parts = [
        block.get("text", "")
        for block in data["content"]
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "".join(parts)


class AnthropicContentClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str = config.ANTHROPIC_API_KEY,
        base_url: str = config.ANTHROPIC_API_URL,
        model: str = config.ANTHROPIC_MODEL,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model

    async def synthesize(
        self, visual_type: VisualType, context: WordContext
    ) -> GeneratedContent:
        system, prompt, max_tokens = build_messages(visual_type, context)
        data = await request_json(
            self._client,
            "POST",
            f"{self._base_url}/v1/messages",
            headers=json_headers(
                {
                    "x-api-key": self._api_key,
                    "anthropic-version": config.ANTHROPIC_VERSION,
                }
            ),
            json_body={
                "model": self._model,
                "max_tokens": max_tokens,
                "system": system,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        return parse_content(response_text(data), visual_type, context)
