"""Chapter outline models and the numbering convention for special chapters."""

import re

from pydantic import BaseModel, Field, field_validator

from ..normalize import fold
from .common import LooseInt, StrList, Text
from .world_bible import WorldBible

PROLOGUE = 0
EPILOGUE = 998
AUTHOR_NOTE = 999
SPECIAL_CHAPTERS = {PROLOGUE: "Prologue", EPILOGUE: "Epilogue", AUTHOR_NOTE: "Author's Note"}
_SPECIAL_WORDS = (
    (PROLOGUE, ("prologue", "prólogo", "prologo")),
    (EPILOGUE, ("epilogue", "epílogo", "epilogo")),
    (AUTHOR_NOTE, ("author's note", "author note", "nota del autor")),
)
_ACT_WORDS = {
    "i": 1, "ii": 2, "iii": 3,
    "one": 1, "two": 2, "three": 3, "first": 1, "second": 2, "third": 3,
    "uno": 1, "dos": 2, "tres": 3, "primer": 1, "primero": 1, "segundo": 2, "tercer": 3, "tercero": 3,
}


def chapter_label(number: int) -> str:
    return SPECIAL_CHAPTERS.get(number, f"Chapter {number}")


def outline_sort_key(number: int) -> tuple[int, int]:
    """Prologue first, then regular chapters, then epilogue and author note."""
    if number == PROLOGUE:
        return (0, 0)
    if number in (EPILOGUE, AUTHOR_NOTE):
        return (2, number)
    return (1, number)


def is_regular(number: int) -> bool:
    return number not in SPECIAL_CHAPTERS


def special_number_for(text: str, leading: bool = False) -> int | None:
    """Map a title such as "Prologue: The Fire" onto its reserved number.

    With ``leading`` the marker must open the title, so "The Captain's
    Epilogue" stays a regular chapter.
    """
    lowered = text.lower().strip()
    for number, words in _SPECIAL_WORDS:
        if any(lowered.startswith(w) if leading else w in lowered for w in words):
            return number
    return None


class ChapterOutline(BaseModel):
    number: LooseInt | None = None
    title: Text = ""
    summary: Text = ""
    key_event: Text = ""
    emotional_arc: Text = ""
    act: LooseInt = 1
    location: Text = ""
    temporal_notes: Text = ""
    characters: StrList = Field(default_factory=list)

    @field_validator("number", mode="before")
    @classmethod
    def _special_number(cls, v):
        if isinstance(v, str) and not any(ch.isdigit() for ch in v):
            return special_number_for(v)
        return v

    @field_validator("act", mode="before")
    @classmethod
    def _act_number(cls, v):
        """Read "Act II", "second act" or "2" as an act number; anything else is act 1."""
        if isinstance(v, str):
            m = re.search(r"\d+", v)
            if m:
                return int(m.group(0))
            for word in re.findall(r"[a-z]+", fold(v)):
                if word in _ACT_WORDS:
                    return _ACT_WORDS[word]
            return 1
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return 1
        return v

    @field_validator("act")
    @classmethod
    def _clamp_act(cls, v: int) -> int:
        return min(3, max(1, v))

    @property
    def label(self) -> str:
        return chapter_label(self.number)


class ThreeActStructure(BaseModel):
    act_1: Text = ""
    act_2: Text = ""
    act_3: Text = ""


class OutlineResult(BaseModel):
    """Everything the Outline Architect produces in its bulk call."""

    world_bible: WorldBible = Field(default_factory=WorldBible)
    outline: list[ChapterOutline] = Field(default_factory=list)
    three_act_structure: ThreeActStructure = Field(default_factory=ThreeActStructure)
    warnings: list[str] = Field(default_factory=list)

    def regular_chapters(self) -> list[ChapterOutline]:
        return [c for c in self.outline if is_regular(c.number)]

    def entry(self, number: int) -> ChapterOutline | None:
        for c in self.outline:
            if c.number == number:
                return c
        return None
