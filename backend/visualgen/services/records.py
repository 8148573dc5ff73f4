from typing import Any, Dict, List, Protocol
from urllib.parse import quote

import httpx

from visualgen.core import config
from visualgen.schemas.visuals import (
    Definition,
    MnemonicHint,
    VisualAsset,
    VisualType,
    WordContext,
)
from visualgen.services.http_client import json_headers, request_json


class RecordStore(Protocol):
    async def get_word_context(self, word_id: str) -> WordContext: ...

    async def upsert_visual_asset(
        self, word_id: str, visual_type: VisualType, asset: VisualAsset
    ) -> None: ...


def _examples(content: Dict[str, Any]) -> List[str]:
    examples = []
    for example in content.get("examples") or []:
        if isinstance(example, str):
            examples.append(example)
        elif isinstance(example, dict) and example.get("sentence"):
            examples.append(example["sentence"])
    return examples


def _mnemonics(content: Dict[str, Any]) -> List[MnemonicHint]:
    mnemonics = [
        MnemonicHint(content=item["content"], korean_hint=item.get("koreanHint"))
        for item in content.get("mnemonics") or []
        if isinstance(item, dict) and item.get("content")
    ]
    if not mnemonics and content.get("mnemonic"):
        mnemonics.append(
            MnemonicHint(
                content=content["mnemonic"], korean_hint=content.get("mnemonicKorean")
            )
        )
    return mnemonics


def _existing_visuals(word: Dict[str, Any]) -> List[VisualType]:
    known = {visual_type.value for visual_type in VisualType}
    return [
        VisualType(visual["type"])
        for visual in word.get("visuals") or []
        if isinstance(visual, dict) and visual.get("type") in known
    ]


def word_context_from_payload(data: Any) -> WordContext:
    word = data.get("word") if isinstance(data, dict) else None
    if not isinstance(word, dict) or not word.get("id") or not word.get("word"):
        raise ValueError("record store returned an unexpected word payload")
    content = word.get("content") or {}
    return WordContext(
        word_id=word["id"],
        word=word["word"],
        definitions=[
            Definition(
                definition_en=item.get("definitionEn"),
                definition_ko=item.get("definitionKo"),
            )
            for item in content.get("definitions") or []
            if isinstance(item, dict)
        ],
        examples=_examples(content),
        mnemonics=_mnemonics(content),
        rhyming_words=[str(item) for item in content.get("rhymingWords") or []],
        existing_visuals=_existing_visuals(word),
    )


class HttpRecordStore:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = config.RECORDS_API_URL,
        admin_key: str = config.RECORDS_ADMIN_KEY,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = json_headers({"x-admin-key": admin_key})

    def _word_url(self, word_id: str) -> str:
        return f"{self._base_url}/admin/words/{quote(word_id, safe='')}"

    async def get_word_context(self, word_id: str) -> WordContext:
        data = await request_json(
            self._client,
            "GET",
            self._word_url(word_id),
            headers=self._headers,
        )
        return word_context_from_payload(data)

    async def upsert_visual_asset(
        self, word_id: str, visual_type: VisualType, asset: VisualAsset
    ) -> None:
        await request_json(
            self._client,
            "PUT",
            f"{self._word_url(word_id)}/visuals/{visual_type.value}",
            headers=self._headers,
            json_body={
                "type": visual_type.value,
                "imageUrl": asset.image_url,
                "storageKey": asset.storage_key,
                "promptEn": asset.prompt,
                "captionEn": asset.caption_en,
                "captionKo": asset.caption_ko,
            },
        )
