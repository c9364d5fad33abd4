from .chapter import (
    AuditIssue,
    AuditResult,
    AuditVerdict,
    Chapter,
    ChapterPlan,
    ChapterStatus,
    EditorResult,
    EditorVerdict,
    IssueType,
    PacingReport,
    Patch,
    PatchList,
    ScenePlan,
    Severity,
    ThreadUpdate,
)
from .outline import (
    AUTHOR_NOTE,
    EPILOGUE,
    PROLOGUE,
    ChapterOutline,
    OutlineResult,
    ThreeActStructure,
    chapter_label,
    is_regular,
    outline_sort_key,
)
from .project import Project, ProjectStatus, TokenCounters
from .world_bible import (
    Character,
    EstablishedObject,
    Location,
    PlotThread,
    ThreadStatus,
    TimelineEvent,
    WorldBible,
    WorldRule,
)

__all__ = [
    "AuditIssue",
    "AuditResult",
    "AuditVerdict",
    "Chapter",
    "ChapterPlan",
    "ChapterStatus",
    "EditorResult",
    "EditorVerdict",
    "IssueType",
    "PacingReport",
    "Patch",
    "PatchList",
    "ScenePlan",
    "Severity",
    "ThreadUpdate",
    "AUTHOR_NOTE",
    "EPILOGUE",
    "PROLOGUE",
    "ChapterOutline",
    "OutlineResult",
    "ThreeActStructure",
    "chapter_label",
    "is_regular",
    "outline_sort_key",
    "Project",
    "ProjectStatus",
    "TokenCounters",
    "Character",
    "EstablishedObject",
    "Location",
    "PlotThread",
    "ThreadStatus",
    "TimelineEvent",
    "WorldBible",
    "WorldRule",
]
