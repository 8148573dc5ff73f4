import base64
import binascii
from typing import Any, Dict, Protocol

import httpx

from visualgen.core import config
from visualgen.schemas.visuals import StyleProfile, VisualType
from visualgen.services.http_client import json_headers, request_json

_NO_TEXT_NEGATIVE = (
    "text, words, letters, alphabet, typography, writing, captions, labels, "
    "watermark, signature, numbers, characters, font, handwriting, title, subtitle"
)

STYLE_PROFILES: Dict[VisualType, StyleProfile] = {
    VisualType.CONCEPT: StyleProfile(
        style="cute cartoon illustration, Pixar style, bright vibrant colors, friendly, educational",
        negative_prompt=f"{_NO_TEXT_NEGATIVE}, blurry, realistic, photograph, dark, scary",
    ),
    VisualType.MNEMONIC: StyleProfile(
        style="cartoon illustration, cute, memorable, colorful",
        negative_prompt=f"{_NO_TEXT_NEGATIVE}, realistic, photograph",
    ),
    VisualType.RHYME: StyleProfile(
        style="playful cartoon, humorous, bright colors",
        negative_prompt=f"{_NO_TEXT_NEGATIVE}, realistic, photograph",
    ),
}

IMAGE_SIZE = 1024


class ImageResponseError(ValueError):
    pass


class ImageService(Protocol):
    async def synthesize(self, prompt: str, profile: StyleProfile) -> bytes: ...


def build_request_body(prompt: str, profile: StyleProfile) -> Dict[str, Any]:
    return {
        "text_prompts": [
            {"text": f"{prompt} {profile.style}", "weight": 1},
            {"text": profile.negative_prompt, "weight": -1},
        ],
        "cfg_scale": 7,
        "height": IMAGE_SIZE,
        "width": IMAGE_SIZE,
        "steps": 30,
        "samples": 1,
        "sampler": "K_DPM_2_ANCESTRAL",
    }


def decode_artifact(data: Any) -> bytes:
    artifacts = data.get("artifacts") if isinstance(data, dict) else None
    if not artifacts or not isinstance(artifacts[0], dict):
        raise ImageResponseError("image response contained no artifacts")
    artifact = artifacts[0]
    if artifact.get("finishReason") == "CONTENT_FILTERED":
        raise ImageResponseError("image was rejected by the content filter")
    encoded = artifact.get("base64")
    if not isinstance(encoded, str) or not encoded:
        raise ImageResponseError("image artifact has no base64 payload")
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ImageResponseError(f"image payload is not valid base64: {exc}") from exc


class StabilityImageClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str = config.STABILITY_API_KEY,
        base_url: str = config.STABILITY_API_URL,
        engine: str = config.STABILITY_ENGINE,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._engine = engine

    async def synthesize(self, prompt: str, profile: StyleProfile) -> bytes:
        data = await request_json(
            self._client,
            "POST",
            f"{self._base_url}/{self._engine}/text-to-image",
            headers=json_headers({"Authorization": f"Bearer {self._api_key}"}),
            json_body=build_request_body(prompt, profile),
        )
        return decode_artifact(data)
