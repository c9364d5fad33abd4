"""Scene Planner agent: break one outline entry into 3-4 ordered scenes."""

from loguru import logger

from .base import BaseAgent
from ..llm import ModelClient
from ..models import ChapterOutline, ChapterPlan, WorldBible
from ..normalize import SCENE_PLAN_ALIASES
from ..recovery import StructuredOutputParser

SYSTEM_PROMPT = """You are the Scene Planner. You turn one chapter of an outline into 3 or 4 concrete scenes that a prose writer can execute one at a time.

For every scene give: scene_num, characters present, setting, plot_beat (what happens), emotional_beat, sensory_details, dialogue_focus, ending_hook and word_target.

Rules:
- The first scene must connect directly to how the previous chapter ended.
- The last scene carries the chapter's strongest hook.
- Deliver the chapter's key event; do not resolve events planned for later chapters.
- Respect every World Bible fact and consistency constraint.
- Follow the anti-repetition guidance and any pacing directive you are given."""

_PLAN_SHAPE = """{
  "scenes": [{"scene_num": 1, "characters": [""], "setting": "", "plot_beat": "", "emotional_beat": "",
              "sensory_details": [""], "dialogue_focus": "", "ending_hook": "", "word_target": 800}],
  "chapter_hook": "",
  "total_word_target": 3000
}"""


class ScenePlanner(BaseAgent):
    def __init__(self, client: ModelClient, parser: StructuredOutputParser | None = None):
        super().__init__("ScenePlanner", client, parser)

    def plan_chapter(
        self,
        entry: ChapterOutline,
        bible: WorldBible,
        previous_summary: str = "",
        outline_context: str = "",
        constraints: str = "",
        pattern_guidance: str = "",
        pacing_directive: str = "",
        style_guide: str = "",
    ) -> ChapterPlan:
        """Plan the scenes of one chapter."""
        prompt = (
            f"## {entry.label}: {entry.title}\n"
            f"Summary: {entry.summary}\n"
            f"Key event: {entry.key_event}\n"
            f"Emotional arc: {entry.emotional_arc}\n"
            f"Act: {entry.act}\n"
        )
        if entry.location:
            prompt += f"Location: {entry.location}\n"
        if entry.temporal_notes:
            prompt += f"Time: {entry.temporal_notes}\n"
        prompt += f"\n## World Bible\n{bible.to_context_string()}\n"
        if outline_context:
            prompt += f"\n## Outline context\n{outline_context}\n"
        prompt += f"\n## Previous chapter\n{previous_summary or 'This is the opening of the book.'}\n"
        if constraints:
            prompt += f"\n## Consistency constraints\n{constraints}\n"
        if pattern_guidance:
            prompt += f"\n## Anti-repetition guidance\n{pattern_guidance}\n"
        if pacing_directive:
            prompt += f"\n## Pacing directive (follow this)\n{pacing_directive}\n"
        if style_guide:
            prompt += f"\n## Style guide\n{style_guide}\n"
        prompt += f"\nReturn JSON with this shape:\n{_PLAN_SHAPE}"

        plan = self.call_structured(
            SYSTEM_PROMPT, prompt, ChapterPlan,
            aliases=SCENE_PLAN_ALIASES, anchor="scenes", list_key="scenes",
            action="plan_chapter",
        )
        if not 3 <= len(plan.scenes) <= 4:
            logger.warning(f"{entry.label}: planner returned {len(plan.scenes)} scenes (expected 3-4)")
        if not plan.total_word_target:
            plan.total_word_target = sum(s.word_target for s in plan.scenes)
        return plan


def build_outline_context(
    outline: list[ChapterOutline], current: int, completed: set[int], lookahead: int = 3
) -> str:
    """Past / current / next windows over the full outline."""
    numbers = [c.number for c in outline]
    if current not in numbers:
        return ""
    idx = numbers.index(current)
    past = [c for c in outline[:idx] if c.number in completed]
    upcoming = outline[idx + 1: idx + 1 + lookahead]

    parts = []
    if past:
        parts.append("Already written:")
        parts.extend(f"- {c.label}: {c.title}. {c.summary}" for c in past)
    parts.append(f"NOW WRITING {outline[idx].label}: {outline[idx].title}")
    if upcoming:
        parts.append("Coming next (foreshadow, do not resolve):")
        parts.extend(f"- {c.label}: {c.title}. Key event: {c.key_event}" for c in upcoming)
    return "\n".join(parts)
