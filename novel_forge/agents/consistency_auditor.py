"""Consistency Auditor agent: find plot holes and canon violations in a chapter."""

from .base import BaseAgent
from ..llm import ModelClient, ModelOptions
from ..models import AuditResult, ChapterOutline, ChapterPlan, WorldBible
from ..normalize import AUDIT_ALIASES
from ..recovery import StructuredOutputParser

SYSTEM_PROMPT = """You are the Consistency Auditor, a relentless narrative auditor. Your job is to find why the story does NOT work.

Issue types:
- plot_hole: events without explanation, actions without consequences
- contradiction: facts that contradict earlier chapters or the same chapter
- information_gap: information the reader needs that is never given
- world_bible_violation: any deviation from established characters, rules, locations or timeline
- missing_setup: payoffs that were never planted earlier

For each issue give the type, severity (critical, major or minor), a description, the location (quote the passage) and the EXACT corrected text the editor should use.

Compare everything against the World Bible: names, physical attributes, relationships, chronology. Check causal logic: every effect needs a cause.

If there are no issues, return an empty issue list with verdict "approved"; otherwise verdict "requires_correction"."""

_AUDIT_SHAPE = """{
  "issues": [{"type": "plot_hole|contradiction|information_gap|world_bible_violation|missing_setup",
              "severity": "critical|major|minor", "description": "", "location": "", "correction": ""}],
  "verdict": "approved|requires_correction",
  "summary": ""
}"""


class ConsistencyAuditor(BaseAgent):
    def __init__(self, client: ModelClient, parser: StructuredOutputParser | None = None):
        super().__init__("ConsistencyAuditor", client, parser)

    def audit(
        self,
        chapter_text: str,
        entry: ChapterOutline,
        bible: WorldBible,
        prior_context: str = "",
        constraints: str = "",
        plan: ChapterPlan | None = None,
    ) -> AuditResult:
        """Audit one chapter against canon and earlier chapters."""
        prompt = (
            f"AUDIT: {entry.label} - {entry.title}\n\n"
            f"## World Bible (source of truth)\n{bible.to_context_string()}\n\n"
        )
        if constraints:
            prompt += f"## Consistency constraints\n{constraints}\n\n"
        if plan is not None:
            beats = "\n".join(f"{s.scene_num}. {s.plot_beat}" for s in plan.scenes)
            prompt += f"## Scene plan\n{beats}\n\n"
        prompt += (
            f"## Previous chapters\n{prior_context or 'This is the first chapter.'}\n\n"
            f"## Chapter text\n{chapter_text}\n\n"
            f"Return JSON with this shape:\n{_AUDIT_SHAPE}"
        )
        return self.call_structured(
            SYSTEM_PROMPT, prompt, AuditResult,
            aliases=AUDIT_ALIASES, anchor="issues", list_key="issues",
            options=ModelOptions(thinking=True), action="audit",
        )
