"""Scene Writer agent: prose for exactly one planned scene."""

import re

from loguru import logger

from .base import BaseAgent
from ..llm import ModelClient, ModelOptions
from ..models import ChapterOutline, ScenePlan, WorldBible
from ..recovery import StructuredOutputParser
from ..utils.text import count_words, ends_with_terminal_punctuation

SYSTEM_PROMPT = """You are the Scene Writer, a novelist who writes one scene at a time from a scene plan.

Rules:
- Write ONLY the scene you are given. Do not start the next scene and do not wrap up the chapter unless this is the final scene.
- Continue seamlessly from the previous scene's last lines.
- Show, don't tell. Ground every moment in the sensory details of the plan.
- Never contradict the World Bible or the consistency constraints.
- Avoid every word, phrase and structure on the avoid list.
- Output prose only: no headings, no notes, no markdown."""

_FENCE_EDGE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n|\n\s*```\s*$")


class SceneWriter(BaseAgent):
    def __init__(
        self,
        client: ModelClient,
        parser: StructuredOutputParser | None = None,
        min_scene_words: int = 150,
    ):
        super().__init__("SceneWriter", client, parser)
        self.min_scene_words = min_scene_words

    def write_scene(
        self,
        scene: ScenePlan,
        entry: ChapterOutline,
        bible: WorldBible,
        total_scenes: int,
        previous_tail: str = "",
        rolling_summary: str = "",
        constraints: str = "",
        vocabulary_guidance: str = "",
        pacing_directive: str = "",
        style_guide: str = "",
    ) -> str:
        """Write one scene and return its text."""
        is_last = scene.scene_num == total_scenes
        prompt = (
            f"## {entry.label}: {entry.title}, scene {scene.scene_num} of {total_scenes}\n"
            f"Characters: {', '.join(scene.characters) or 'as planned'}\n"
            f"Setting: {scene.setting}\n"
            f"Plot beat: {scene.plot_beat}\n"
            f"Emotional beat: {scene.emotional_beat}\n"
            f"Sensory details: {', '.join(scene.sensory_details)}\n"
            f"Dialogue focus: {scene.dialogue_focus}\n"
            f"End on: {scene.ending_hook}\n"
            f"Length: about {scene.word_target} words\n"
        )
        if is_last:
            prompt += "This is the final scene of the chapter: land the chapter hook.\n"
        prompt += f"\n## Story so far\n{rolling_summary or 'Nothing yet; this is the beginning.'}\n"
        if previous_tail:
            prompt += f"\n## Previous scene ended with\n{previous_tail}\n"
        prompt += f"\n## World Bible\n{bible.to_context_string()}\n"
        if constraints:
            prompt += f"\n## Consistency constraints\n{constraints}\n"
        if vocabulary_guidance:
            prompt += f"\n## Avoid list\n{vocabulary_guidance}\n"
        if pacing_directive:
            prompt += f"\n## Pacing directive\n{pacing_directive}\n"
        if style_guide:
            prompt += f"\n## Style guide\n{style_guide}\n"
        prompt += "\nWrite the scene now."

        response = self.call(
            SYSTEM_PROMPT, prompt,
            ModelOptions(max_output_tokens=max(2048, scene.word_target * 3)),
            action="write_scene",
        )
        text = _FENCE_EDGE_RE.sub("", response.text).strip()
        self._check_truncation(text, entry, scene)
        return text

    def _check_truncation(self, text: str, entry: ChapterOutline, scene: ScenePlan) -> bool:
        words = count_words(text)
        suspicious = words < self.min_scene_words or not ends_with_terminal_punctuation(text)
        if suspicious:
            logger.warning(
                f"{entry.label} scene {scene.scene_num} may be truncated "
                f"({words} words, ends with {text[-20:]!r})"
            )
        return suspicious
