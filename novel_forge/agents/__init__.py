from .base import AgentLog, BaseAgent
from .consistency_auditor import ConsistencyAuditor
from .outline_architect import OutlineArchitect, assign_chapter_numbers, check_outline
from .pacing_director import PacingDirector
from .scene_planner import ScenePlanner, build_outline_context
from .scene_writer import SceneWriter
from .style_editor import StyleEditor, decide_verdict
from .summarizer import Summarizer

__all__ = [
    "AgentLog",
    "BaseAgent",
    "ConsistencyAuditor",
    "OutlineArchitect",
    "PacingDirector",
    "ScenePlanner",
    "SceneWriter",
    "StyleEditor",
    "Summarizer",
    "assign_chapter_numbers",
    "build_outline_context",
    "check_outline",
    "decide_verdict",
]
