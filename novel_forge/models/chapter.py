"""Chapter, scene plan and per-stage result models."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from ..utils.text import count_words
from .common import LooseBool, LooseInt, Score, StrList, Text
from .world_bible import ThreadStatus


class ChapterStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    WRITING = "writing"
    EDITING = "editing"
    REVISION = "revision"
    SUMMARIZED = "summarized"
    COMPLETED = "completed"
    APPROVED = "approved"


FINAL_STATUSES = (ChapterStatus.COMPLETED, ChapterStatus.APPROVED)


class ScenePlan(BaseModel):
    scene_num: LooseInt = 0
    characters: StrList = Field(default_factory=list)
    setting: Text = ""
    plot_beat: Text
    emotional_beat: Text = ""
    sensory_details: StrList = Field(default_factory=list)
    dialogue_focus: Text = ""
    ending_hook: Text = ""
    word_target: LooseInt = 800


class ChapterPlan(BaseModel):
    scenes: list[ScenePlan] = Field(min_length=1)
    chapter_hook: Text = ""
    total_word_target: LooseInt = 0

    @field_validator("scenes")
    @classmethod
    def _order_scenes(cls, scenes: list[ScenePlan]) -> list[ScenePlan]:
        scenes = sorted(scenes, key=lambda s: s.scene_num)
        for i, scene in enumerate(scenes, start=1):
            scene.scene_num = i
        return scenes


class Patch(BaseModel):
    original: Text
    replacement: Text
    reason: Text = ""


class EditorVerdict(str, Enum):
    APPROVE = "approve"
    PATCH = "patch"
    REWRITE = "rewrite"


class EditorResult(BaseModel):
    logic_score: Score
    style_score: Score
    is_approved: LooseBool = False
    needs_rewrite: LooseBool = False
    feedback: Text = ""
    patches: list[Patch] = Field(default_factory=list)


class PatchList(BaseModel):
    patches: list[Patch] = Field(default_factory=list)


class IssueType(str, Enum):
    PLOT_HOLE = "plot_hole"
    CONTRADICTION = "contradiction"
    INFORMATION_GAP = "information_gap"
    WORLD_BIBLE_VIOLATION = "world_bible_violation"
    MISSING_SETUP = "missing_setup"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class AuditVerdict(str, Enum):
    APPROVED = "approved"
    REQUIRES_CORRECTION = "requires_correction"


class AuditIssue(BaseModel):
    type: IssueType = IssueType.CONTRADICTION
    severity: Severity = Severity.MINOR
    description: Text
    location: Text = ""
    correction: Text = ""

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, v):
        return v if v in {t.value for t in IssueType} else IssueType.CONTRADICTION

    @field_validator("severity", mode="before")
    @classmethod
    def _known_severity(cls, v):
        return v if v in {s.value for s in Severity} else Severity.MINOR


class AuditResult(BaseModel):
    issues: list[AuditIssue] = Field(default_factory=list)
    verdict: AuditVerdict = AuditVerdict.APPROVED
    summary: Text = ""
    corrections_applied: int = 0

    @model_validator(mode="before")
    @classmethod
    def _default_verdict(cls, data):
        if isinstance(data, dict) and not data.get("verdict"):
            verdict = AuditVerdict.REQUIRES_CORRECTION if data.get("issues") else AuditVerdict.APPROVED
            return {**data, "verdict": verdict}
        return data

    def blocking_issues(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity in (Severity.CRITICAL, Severity.MAJOR)]


class ThreadUpdate(BaseModel):
    name: Text
    status: ThreadStatus
    note: Text = ""

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, v):
        return v if v in {s.value for s in ThreadStatus} else ThreadStatus.ACTIVE


class PacingReport(BaseModel):
    pacing_assessment: Text = ""
    forgotten_threads: StrList = Field(default_factory=list)
    tension_level: Score = 5
    directive: Text
    thread_updates: list[ThreadUpdate] = Field(default_factory=list)


class Chapter(BaseModel):
    """One generated chapter and the durable output of each stage.

    A stage's field is only set once that stage has fully succeeded, so
    ``next_step`` can always be derived from what is stored.
    """

    number: int
    title: str = ""
    status: ChapterStatus = ChapterStatus.PENDING
    plan: ChapterPlan | None = None
    scenes: list[str] = Field(default_factory=list)
    content: str = ""
    audit: AuditResult | None = None
    editor: EditorResult | None = None
    verdict: EditorVerdict | None = None
    revisions: int = 0
    summary: str | None = None

    @property
    def text(self) -> str:
        return self.content or "\n\n".join(self.scenes)

    @property
    def word_count(self) -> int:
        return count_words(self.text)

    @property
    def quality_score(self) -> float | None:
        if self.editor is None:
            return None
        return min(self.editor.logic_score, self.editor.style_score)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def next_step(self) -> str:
        if self.is_final:
            return "done"
        if self.plan is None:
            return "plan"
        if len(self.scenes) < len(self.plan.scenes):
            return "write"
        if self.audit is None:
            return "audit"
        if self.editor is None:
            return "edit"
        if self.summary is None:
            return "summarize"
        return "finalize"
