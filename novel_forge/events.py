"""Progress events emitted by the orchestrator."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable


class EventKind(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    SCENE_COMPLETED = "scene_completed"
    CHAPTER_COMPLETED = "chapter_completed"
    PACING_REVIEW_COMPLETED = "pacing_review_completed"
    PROJECT_COMPLETED = "project_completed"
    ERROR = "error"


@dataclass
class ProgressEvent:
    kind: EventKind
    project_id: str
    stage: str = ""
    chapter: int | None = None
    scene: int | None = None
    word_count: int | None = None
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


def _noop_progress(event: ProgressEvent) -> None:
    pass
