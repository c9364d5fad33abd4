"""Pacing Director agent: periodic review of momentum and plot threads."""

from loguru import logger

from .base import BaseAgent
from ..llm import ModelClient, ModelOptions
from ..models import PacingReport, PlotThread
from ..normalize import PACING_ALIASES
from ..recovery import StructuredOutputParser

SYSTEM_PROMPT = """You are the Pacing Director. Every few chapters you step back and judge the momentum of the whole manuscript.

You receive the summaries of the most recent chapters, every plot thread with the chapter that last touched it, and how far through the book we are.

Decide:
- pacing_assessment: is the story dragging, rushing, or on track for this point in the book?
- forgotten_threads: threads that have gone quiet for too long
- tension_level (1-10): where tension is now
- directive: ONE concrete instruction for the next chapters (what must happen, what to stop doing)
- thread_updates: status changes for threads (active, resolved, ignored)

The directive will be given verbatim to the scene planner, so make it actionable."""

_PACING_SHAPE = """{
  "pacing_assessment": "",
  "forgotten_threads": [""],
  "tension_level": 1-10,
  "directive": "",
  "thread_updates": [{"name": "", "status": "active|resolved|ignored", "note": ""}]
}"""


class PacingDirector(BaseAgent):
    def __init__(self, client: ModelClient, parser: StructuredOutputParser | None = None):
        super().__init__("PacingDirector", client, parser)

    def review(
        self,
        recent_summaries: list[tuple[str, str]],
        threads: list[PlotThread],
        progress_fraction: float,
    ) -> PacingReport:
        """Review pacing.

        ``recent_summaries`` are (chapter label, summary) pairs in reading order.
        """
        summaries = "\n".join(f"- {label}: {text}" for label, text in recent_summaries)
        thread_lines = "\n".join(
            f"- {t.name} [{t.status.value}, last touched in chapter {t.last_updated_chapter}]: {t.goal or t.description}"
            for t in threads
        )
        prompt = (
            f"## Progress\n{round(progress_fraction * 100)}% of the book is written.\n\n"
            f"## Recent chapters\n{summaries or 'None yet.'}\n\n"
            f"## Plot threads\n{thread_lines or 'No threads declared.'}\n\n"
            f"Return JSON with this shape:\n{_PACING_SHAPE}"
        )
        report = self.call_structured(
            SYSTEM_PROMPT, prompt, PacingReport,
            aliases=PACING_ALIASES, anchor="directive",
            options=ModelOptions(thinking=True), action="review",
        )
        if report.forgotten_threads:
            logger.warning(f"{self.name}: forgotten threads: {', '.join(report.forgotten_threads)}")
        return report
