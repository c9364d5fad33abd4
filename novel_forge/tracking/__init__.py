from .patterns import PatternAnalysis, PatternRecord, PatternTracker
from .vocabulary import VocabularyReport, VocabularyTracker, analyze_text

__all__ = [
    "PatternAnalysis",
    "PatternRecord",
    "PatternTracker",
    "VocabularyReport",
    "VocabularyTracker",
    "analyze_text",
]
