"""Outline Architect agent: World Bible, full chapter outline and three-act structure."""

import math
import re

from loguru import logger
from pydantic import BaseModel, Field

from .base import BaseAgent
from ..exceptions import OutlineIncompleteError
from ..llm import ModelClient, ModelOptions
from ..models import (
    Character,
    ChapterOutline,
    OutlineResult,
    Project,
    WorldBible,
    chapter_label,
    is_regular,
    outline_sort_key,
)
from ..models.outline import special_number_for
from ..normalize import OUTLINE_ALIASES, fold
from ..recovery import StructuredOutputParser
from ..tracking.vocabulary import STOP_WORDS

SYSTEM_PROMPT = """You are the Outline Architect, a master story architect who designs complete, coherent novels before a single scene is written.

You produce three things in one pass:
1. A World Bible: characters (name, role, profile, arc, immutable physical attributes, initial resources and skills), locations, world rules, established objects that must pay off later, a timeline of dated events, plot threads (name, description, goal) and themes.
2. A chapter-by-chapter outline. Every chapter has: number, title, a one-paragraph summary, the key event, the emotional arc, the act (1, 2 or 3), the location and temporal notes.
3. A three-act structure description.

Rules:
- Produce EXACTLY the requested number of regular chapters, numbered consecutively from 1.
- A prologue is chapter 0, an epilogue is chapter 998, an author's note is chapter 999. Include them only when requested.
- Distribute chapters roughly 25% / 50% / 25% across the three acts.
- Every plot thread must surface in at least two chapter summaries.
- Name the protagonist and antagonist in the summaries of the chapters where they act.
- Immutable attributes (eye colour, height, scars, birthplace) are canon forever; choose them carefully."""

COMPLETION_PROMPT = """You are the Outline Completer. An outline came back with chapters missing. Write ONLY the missing chapters so they fit seamlessly between the chapters that exist. Keep names, places and threads consistent with the existing outline."""

_OUTLINE_SHAPE = """{
  "world_bible": {
    "characters": [{"name": "", "role": "protagonist|antagonist|supporting", "profile": "", "arc": "",
                    "immutable_attributes": {"eyes": "", "height": ""}, "resources": [""]}],
    "locations": [{"name": "", "description": ""}],
    "rules": [{"rule": "", "category": ""}],
    "objects": [{"name": "", "description": "", "owner": ""}],
    "timeline": [{"when": "", "event": ""}],
    "plot_threads": [{"name": "", "description": "", "goal": ""}],
    "themes": [""]
  },
  "outline": [{"number": 1, "title": "", "summary": "", "key_event": "", "emotional_arc": "",
               "act": 1, "location": "", "temporal_notes": "", "characters": [""]}],
  "three_act_structure": {"act_1": "", "act_2": "", "act_3": ""}
}"""


class OutlineCompletion(BaseModel):
    outline: list[ChapterOutline] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)


class OutlineArchitect(BaseAgent):
    def __init__(
        self,
        client: ModelClient,
        parser: StructuredOutputParser | None = None,
        completion_min_ratio: float = 0.25,
    ):
        super().__init__("OutlineArchitect", client, parser)
        self.completion_min_ratio = completion_min_ratio

    def generate(self, project: Project) -> OutlineResult:
        """Generate the World Bible and a gap-free outline for ``project``."""
        expected = project.expected_chapter_numbers()
        prompt = self._build_prompt(project)
        result = self.call_structured(
            SYSTEM_PROMPT, prompt, OutlineResult,
            aliases=OUTLINE_ALIASES, anchor="outline",
            options=ModelOptions(thinking=True), action="generate_outline",
        )
        result.outline = assign_chapter_numbers(result.outline, expected)

        missing = missing_numbers(result.outline, expected)
        if missing:
            present = len([c for c in result.outline if is_regular(c.number)])
            needed = math.ceil(project.chapter_count * self.completion_min_ratio)
            if present < needed:
                raise OutlineIncompleteError(
                    f"Outline has only {present} of {project.chapter_count} chapters; "
                    f"too few to fill the gap",
                    missing,
                )
            logger.warning(f"Outline missing {len(missing)} chapter(s): {missing}; requesting completion")
            extra = self.complete(project, result.outline, missing, result.world_bible)
            result.outline = assign_chapter_numbers(result.outline + extra, expected)
            missing = missing_numbers(result.outline, expected)
            if missing:
                raise OutlineIncompleteError(
                    f"Outline still missing chapters after completion: {missing}", missing,
                )

        for thread in result.world_bible.plot_threads:
            thread.last_updated_chapter = 0
        result.warnings = check_outline(result)
        for warning in result.warnings:
            logger.warning(f"Outline: {warning}")
        return result

    def complete(
        self,
        project: Project,
        outline: list[ChapterOutline],
        missing: list[int],
        bible: WorldBible | None = None,
    ) -> list[ChapterOutline]:
        """Request only the missing numbered entries.

        Characters the new chapters introduce are merged into ``bible``; a
        reply that contradicts an immutable attribute keeps the canon value.
        """
        existing = "\n".join(
            f"- {c.label}: {c.title} (act {c.act}) {c.summary}" for c in outline
        )
        wanted = ", ".join(f"{chapter_label(n)} (number {n})" for n in missing)
        prompt = (
            f"Premise: {project.premise}\n"
            f"Genre: {project.genre}\n\n"
            f"## Existing outline\n{existing}\n\n"
            f"## Write ONLY these chapters\n{wanted}\n\n"
            f'Return {{"outline": [...]}} using the same fields as the existing entries '
            f"(number, title, summary, key_event, emotional_arc, act, location, temporal_notes). "
            f"Add \"characters\": [...] only for characters these chapters introduce."
        )
        completion = self.call_structured(
            COMPLETION_PROMPT, prompt, OutlineCompletion,
            aliases=OUTLINE_ALIASES, anchor="outline", list_key="outline",
            action="complete_outline",
        )
        if bible is not None:
            for character in completion.characters:
                if not character.name.strip():
                    continue
                for warning in bible.add_character(character, strict=False):
                    logger.warning(f"Outline completion: {warning}")
        wanted_set = set(missing)
        return [c for c in completion.outline if c.number is None or c.number in wanted_set]

    def _build_prompt(self, project: Project) -> str:
        structure = [f"{project.chapter_count} regular chapters (numbered 1 to {project.chapter_count})"]
        if project.has_prologue:
            structure.append("a prologue (chapter 0)")
        if project.has_epilogue:
            structure.append("an epilogue (chapter 998)")
        if project.has_author_note:
            structure.append("an author's note (chapter 999)")

        prompt = (
            f"## Premise\n{project.premise}\n\n"
            f"## Genre\n{project.genre or 'unspecified'}\n\n"
            f"## Tone\n{project.tone or 'unspecified'}\n\n"
            f"## Structure\n{'; '.join(structure)}\n"
        )
        if project.style_guide:
            prompt += f"\n## Style guide\n{project.style_guide}\n"
        prompt += f"\nReturn JSON with exactly this shape:\n{_OUTLINE_SHAPE}"
        return prompt


def assign_chapter_numbers(
    entries: list[ChapterOutline], expected: list[int]
) -> list[ChapterOutline]:
    """Give every entry a valid, unique chapter number and sort in reading order.

    Titles naming a prologue, epilogue or author's note take the reserved
    number when it is expected; an entry that already has a valid number
    must open its title with the marker. Unnumbered entries take the lowest
    free regular numbers in order.
    Duplicates and numbers outside ``expected`` are dropped.
    """
    allowed = set(expected)
    taken: set[int] = set()
    kept: list[ChapterOutline] = []
    unnumbered: list[ChapterOutline] = []

    for entry in entries:
        usable = entry.number is not None and entry.number in allowed
        special = special_number_for(entry.title, leading=usable)
        if special is not None and special in allowed:
            entry.number = special
        if entry.number is None:
            unnumbered.append(entry)
            continue
        if entry.number not in allowed:
            logger.debug(f"Dropping outline entry {entry.number} '{entry.title}': out of range")
            continue
        if entry.number in taken:
            logger.debug(f"Dropping duplicate outline entry {entry.number} '{entry.title}'")
            continue
        taken.add(entry.number)
        kept.append(entry)

    free = [n for n in expected if is_regular(n) and n not in taken]
    for entry, number in zip(unnumbered, free):
        entry.number = number
        taken.add(number)
        kept.append(entry)

    return sorted(kept, key=lambda c: outline_sort_key(c.number))


def missing_numbers(entries: list[ChapterOutline], expected: list[int]) -> list[int]:
    present = {c.number for c in entries}
    return [n for n in expected if n not in present]


def _significant_words(name: str) -> list[str]:
    return [w for w in fold(name).replace("_", " ").split() if len(w) > 3 and w not in STOP_WORDS]


def _mentions(text: str, name: str) -> bool:
    folded = fold(text).replace("_", " ")
    phrase = fold(name).replace("_", " ")
    if phrase and re.search(rf"\b{re.escape(phrase)}\b", folded):
        return True
    words = _significant_words(name)
    if len(words) < 2:
        return False
    present = set(folded.split())
    hits = sum(1 for w in words if w in present)
    return hits >= math.ceil(len(words) / 2)


def check_outline(result: OutlineResult) -> list[str]:
    """Advisory coherence checks; never fails the outline."""
    warnings = []
    regular = result.regular_chapters()
    texts = [f"{c.title} {c.summary} {c.key_event}" for c in result.outline]

    for thread in result.world_bible.plot_threads:
        refs = sum(1 for t in texts if _mentions(t, thread.name))
        if refs < 2:
            warnings.append(
                f"orphaned subplot: '{thread.name}' is referenced by {refs} chapter summary(ies)"
            )

    if regular:
        total = len(regular)
        for act, target in ((1, 25), (2, 50), (3, 25)):
            share = 100 * sum(1 for c in regular if c.act == act) / total
            if abs(share - target) > 10:
                warnings.append(
                    f"unbalanced structure: act {act} holds {share:.0f}% of chapters (target ~{target}%)"
                )

    bible = result.world_bible
    for role, character in (("protagonist", bible.protagonist()), ("antagonist", bible.antagonist())):
        if character is None or not character.name.strip():
            continue
        first_name = character.name.split()[0]
        refs = sum(1 for t in texts if _mentions(t, character.name) or _mentions(t, first_name))
        if refs < 3:
            warnings.append(
                f"incomplete arc: {role} {character.name} appears in only {refs} chapter summary(ies)"
            )
    return warnings
