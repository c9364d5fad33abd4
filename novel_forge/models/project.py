"""Project model: one manuscript in progress."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .outline import AUTHOR_NOTE, EPILOGUE, PROLOGUE


class ProjectStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    ERROR = "error"
    COMPLETED = "completed"
    ARCHIVED = "archived"


RESUMABLE = (ProjectStatus.PAUSED, ProjectStatus.CANCELLED, ProjectStatus.ERROR)


class TokenCounters(BaseModel):
    input: int = 0
    output: int = 0
    thinking: int = 0

    def add(self, usage) -> None:
        self.input += usage.input
        self.output += usage.output
        self.thinking += usage.thinking

    @property
    def total(self) -> int:
        return self.input + self.output + self.thinking


class Project(BaseModel):
    id: str
    title: str = ""
    premise: str
    genre: str = ""
    tone: str = ""
    chapter_count: int = Field(gt=0)
    has_prologue: bool = False
    has_epilogue: bool = False
    has_author_note: bool = False
    style_guide: str = ""

    status: ProjectStatus = ProjectStatus.IDLE
    error_reason: str | None = None
    tokens: TokenCounters = Field(default_factory=TokenCounters)
    pacing_directive: str = ""
    last_pacing_review: int = 0

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def expected_chapter_numbers(self) -> list[int]:
        """All chapter numbers in reading order."""
        numbers = [PROLOGUE] if self.has_prologue else []
        numbers.extend(range(1, self.chapter_count + 1))
        if self.has_epilogue:
            numbers.append(EPILOGUE)
        if self.has_author_note:
            numbers.append(AUTHOR_NOTE)
        return numbers

    def touch(self) -> None:
        self.updated_at = datetime.now()
