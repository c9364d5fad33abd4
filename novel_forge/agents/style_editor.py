"""Style Editor agent: score a chapter, emit patches, and run correction flows."""

import re

from loguru import logger

from .base import BaseAgent
from ..llm import ModelClient, ModelOptions
from ..models import (
    AuditIssue,
    ChapterOutline,
    ChapterPlan,
    EditorResult,
    EditorVerdict,
    Patch,
    PatchList,
    WorldBible,
)
from ..normalize import EDITOR_ALIASES
from ..recovery import StructuredOutputParser

SYSTEM_PROMPT = """You are the Style Editor, a senior literary editor. You evaluate chapters against bestseller standards and fix them with surgical patches instead of rewrites.

Editing philosophy:
1. Preserving beats rewriting: the original text has value.
2. Patches are surgical: minimal change, maximum impact.
3. Both scores above 8 means approve. Do not chase perfection.

Scores:
- logic_score (1-10): continuity, character consistency, causality, fidelity to the scene plan.
- style_score (1-10): prose, rhythm, show-don't-tell, no clichés.

Patch rules:
- "original" must be copied EXACTLY from the chapter, at least 20 characters, and must occur only once.
- "replacement" is a targeted improvement, not a rewrite."""

SURGICAL_FIX_PROMPT = """You are the Continuity Surgeon. You correct continuity errors in a chapter with the smallest possible exact-text patches, preserving the author's voice. Never rewrite the whole chapter."""

REWRITE_PROMPT = """You are the Rewrite Editor. You rewrite a whole chapter to fix the listed problems while keeping its scenes, events, length, voice and tone. Output the complete corrected chapter as prose only, with no commentary and no markdown."""

_EDITOR_SHAPE = """{
  "logic_score": 1-10,
  "style_score": 1-10,
  "is_approved": true|false,
  "needs_rewrite": true|false,
  "feedback": "",
  "patches": [{"original": "exact text from the chapter", "replacement": "", "reason": ""}]
}"""

_FENCE_LINE_RE = re.compile(r"^```[\w]*\n?|```$", re.MULTILINE)


def decide_verdict(
    logic_score: float,
    style_score: float,
    approve_threshold: int = 8,
    rewrite_threshold: int = 5,
) -> EditorVerdict:
    """Approve only when both scores exceed the approve threshold; rewrite when
    either falls below the rewrite threshold; patch otherwise."""
    if logic_score < rewrite_threshold or style_score < rewrite_threshold:
        return EditorVerdict.REWRITE
    if logic_score > approve_threshold and style_score > approve_threshold:
        return EditorVerdict.APPROVE
    return EditorVerdict.PATCH


class StyleEditor(BaseAgent):
    def __init__(
        self,
        client: ModelClient,
        parser: StructuredOutputParser | None = None,
        approve_threshold: int = 8,
        rewrite_threshold: int = 5,
    ):
        super().__init__("StyleEditor", client, parser)
        self.approve_threshold = approve_threshold
        self.rewrite_threshold = rewrite_threshold

    def evaluate(
        self,
        chapter_text: str,
        plan: ChapterPlan | None,
        bible: WorldBible,
        extra_context: str = "",
    ) -> EditorResult:
        """Score the chapter and propose patches.

        ``is_approved`` and ``needs_rewrite`` are recomputed from the scores;
        the model's own flags are not trusted.
        """
        prompt = ""
        if extra_context:
            prompt += f"{extra_context}\n\n"
        if plan is not None:
            scenes = "\n".join(
                f"{s.scene_num}. {s.plot_beat} (ends on: {s.ending_hook})" for s in plan.scenes
            )
            prompt += f"## Scene plan\n{scenes}\nChapter hook: {plan.chapter_hook}\n\n"
        prompt += (
            f"## World Bible\n{bible.to_context_string()}\n\n"
            f"## Chapter\n{chapter_text}\n\n"
            f"Return JSON with this shape:\n{_EDITOR_SHAPE}"
        )
        result = self.call_structured(
            SYSTEM_PROMPT, prompt, EditorResult,
            aliases=EDITOR_ALIASES, anchor="logic_score", action="evaluate",
        )
        verdict = self.verdict_for(result)
        result.is_approved = verdict == EditorVerdict.APPROVE
        result.needs_rewrite = verdict == EditorVerdict.REWRITE
        logger.info(
            f"{self.name}: logic={result.logic_score:g} style={result.style_score:g} "
            f"verdict={verdict.value} patches={len(result.patches)}"
        )
        return result

    def verdict_for(self, result: EditorResult) -> EditorVerdict:
        return decide_verdict(
            result.logic_score, result.style_score,
            self.approve_threshold, self.rewrite_threshold,
        )

    def surgical_fix(
        self,
        chapter_text: str,
        issues: list[AuditIssue],
        constraints: str = "",
    ) -> list[Patch]:
        """Turn audit issues into exact-text patches."""
        problems = "\n".join(
            f"- [{i.severity.value}] {i.type.value}: {i.description}"
            + (f"\n  where: {i.location}" if i.location else "")
            + (f"\n  suggested correction: {i.correction}" if i.correction else "")
            for i in issues
        )
        prompt = f"## Detected errors\n{problems}\n\n"
        if constraints:
            prompt += f"## Consistency constraints\n{constraints}\n\n"
        prompt += (
            f"## Chapter\n{chapter_text}\n\n"
            "Identify ONLY the sentences that carry the errors and patch them. "
            '"original" must be copied exactly from the chapter (20+ characters, unique).\n'
            'Return JSON: {"patches": [{"original": "", "replacement": "", "reason": ""}]}'
        )
        result = self.call_structured(
            SURGICAL_FIX_PROMPT, prompt, PatchList,
            aliases=EDITOR_ALIASES, anchor="patches", list_key="patches",
            action="surgical_fix",
        )
        logger.info(f"{self.name}: surgical fix produced {len(result.patches)} patch(es)")
        return result.patches

    def full_rewrite(
        self,
        chapter_text: str,
        entry: ChapterOutline,
        bible: WorldBible,
        problems: str,
        previous_summary: str = "",
        next_summary: str = "",
        constraints: str = "",
        style_guide: str = "",
    ) -> str | None:
        """Rewrite the whole chapter; None if the result looks truncated."""
        prompt = f"## {entry.label}: {entry.title}\n\n"
        if previous_summary:
            prompt += f"## Previous chapter\n{previous_summary}\n\n"
        if next_summary:
            prompt += f"## Next chapter (planned)\n{next_summary}\n\n"
        prompt += f"## World Bible\n{bible.to_context_string()}\n\n"
        if constraints:
            prompt += f"## Consistency constraints\n{constraints}\n\n"
        if style_guide:
            prompt += f"## Style guide\n{style_guide}\n\n"
        prompt += (
            f"## Problems you MUST fix\n{problems}\n\n"
            f"## Original chapter\n{chapter_text}\n\n"
            "Rewrite the complete chapter from beginning to end. Fix every problem listed. "
            "Keep all scenes and important events and roughly the same length."
        )
        response = self.call(
            REWRITE_PROMPT, prompt,
            ModelOptions(max_output_tokens=max(8192, len(chapter_text) // 2)),
            action="full_rewrite",
        )
        rewritten = _FENCE_LINE_RE.sub("", response.text).strip()
        if len(rewritten) < len(chapter_text) * 0.3:
            logger.warning(
                f"{self.name}: rewrite of {entry.label} looks truncated "
                f"({len(rewritten)} vs {len(chapter_text)} chars); keeping the original"
            )
            return None
        return rewritten
