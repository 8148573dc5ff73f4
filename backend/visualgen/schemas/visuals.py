from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class VisualType(str, Enum):
    CONCEPT = "CONCEPT"
    MNEMONIC = "MNEMONIC"
    RHYME = "RHYME"


ALL_VISUAL_TYPES = [VisualType.CONCEPT, VisualType.MNEMONIC, VisualType.RHYME]


class Definition(BaseModel):
    definition_en: Optional[str] = None
    definition_ko: Optional[str] = None


class MnemonicHint(BaseModel):
    content: str
    korean_hint: Optional[str] = None


class WordContext(BaseModel):
    word_id: str
    word: str
    definitions: List[Definition] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)
    mnemonics: List[MnemonicHint] = Field(default_factory=list)
    rhyming_words: List[str] = Field(default_factory=list)
    existing_visuals: List[VisualType] = Field(default_factory=list)

    @property
    def definition_en(self) -> Optional[str]:
        for definition in self.definitions:
            if definition.definition_en:
                return definition.definition_en
        return None

    @property
    def definition_ko(self) -> Optional[str]:
        for definition in self.definitions:
            if definition.definition_ko:
                return definition.definition_ko
        return None

    @property
    def mnemonic(self) -> Optional[MnemonicHint]:
        return self.mnemonics[0] if self.mnemonics else None


class StyleProfile(BaseModel):
    style: str
    negative_prompt: str


class GeneratedContent(BaseModel):
    prompt: str = Field(..., min_length=1)
    caption_en: str
    caption_ko: str


class VisualAsset(BaseModel):
    word_id: str
    visual_type: VisualType
    image_url: str
    storage_key: str
    prompt: str
    caption_en: str
    caption_ko: str
