"""Text helpers shared by the stage agents and trackers."""

import re

_SENTENCE_BREAKS = ['. ', '。', '！', '？', '! ', '? ', '\n']


def count_words(text: str) -> int:
    return len(text.split())


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words])


def tail_text(text: str, max_chars: int) -> str:
    """Last `max_chars` of text, starting on a sentence boundary when one is close."""
    if len(text) <= max_chars:
        return text
    return truncate_text(text, max_chars, from_end=True)


def truncate_text(text: str, max_chars: int, from_end: bool = False) -> str:
    """Truncate text at sentence boundaries.

    Args:
        text: The text to truncate.
        max_chars: Maximum number of characters.
        from_end: If True, keep the end of the text instead of the beginning.
    """
    if len(text) <= max_chars:
        return text

    if from_end:
        chunk = text[-max_chars:]
        for sep in _SENTENCE_BREAKS:
            idx = chunk.find(sep)
            if idx != -1 and idx < 200:
                return chunk[idx + len(sep):]
        return "..." + chunk

    chunk = text[:max_chars]
    best = -1
    for sep in _SENTENCE_BREAKS:
        idx = chunk.rfind(sep)
        if idx != -1 and idx >= max_chars - 200:
            best = max(best, idx + len(sep))
    if best == -1:
        best = max_chars
    return text[:best].rstrip() + "..."


def ends_with_terminal_punctuation(text: str) -> bool:
    stripped = text.rstrip()
    if not stripped or stripped.endswith("...") or stripped.endswith("—"):
        return False
    return stripped[-1] in '.!?"\'»)”’。！？'


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "project"
