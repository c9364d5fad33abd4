"""Summarizer agent: condense a finished chapter into the facts later stages need."""

import re

from .base import BaseAgent
from ..llm import ModelClient, ModelOptions
from ..models import ChapterOutline
from ..recovery import StructuredOutputParser
from ..utils.text import truncate_words

SYSTEM_PROMPT = """You are the Summarizer. You compress a chapter into a dense list of facts. Your summary is the ONLY memory of this chapter that later chapters will see; anything you leave out is lost.

Include:
- events that happened, in order
- changes in characters' state (injuries, knowledge, decisions)
- objects that changed hands and where they are now
- relationship changes
- where each main character is at the end of the chapter
- revelations

Exclude atmosphere, decorative dialogue and style. Write plain prose sentences, no lists, no headings."""

_PREFIX_RE = re.compile(r"^\s*(summary|resumen)\s*:\s*", re.IGNORECASE)


class Summarizer(BaseAgent):
    def __init__(self, client: ModelClient, parser: StructuredOutputParser | None = None):
        super().__init__("Summarizer", client, parser)

    def summarize(self, chapter_text: str, entry: ChapterOutline, max_words: int = 200) -> str:
        prompt = (
            f"## {entry.label}: {entry.title}\n\n"
            f"{chapter_text}\n\n"
            f"Summarize the facts of this chapter in at most {max_words} words."
        )
        response = self.call(
            SYSTEM_PROMPT, prompt,
            ModelOptions(temperature=0.2, max_output_tokens=1024),
            action="summarize",
        )
        summary = _PREFIX_RE.sub("", response.text.strip())
        return truncate_words(summary, max_words)
