"""Exact-match patch application.

A patch replaces one verbatim snippet of the chapter. Snippets that are too
short, missing or ambiguous are rejected whole; nothing is ever partially
or approximately applied.
"""

from dataclasses import dataclass, field

from loguru import logger

from .models import Patch


@dataclass
class PatchResult:
    text: str
    applied: list[Patch] = field(default_factory=list)
    rejected: list[tuple[Patch, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def check_patch(text: str, patch: Patch, min_chars: int = 20) -> str | None:
    """Return why ``patch`` cannot be applied to ``text``, or None if it can."""
    snippet = patch.original
    if len(snippet) < min_chars:
        return f"snippet shorter than {min_chars} characters"
    occurrences = text.count(snippet)
    if occurrences == 0:
        return "snippet not found verbatim"
    if occurrences > 1:
        return f"snippet is ambiguous ({occurrences} matches)"
    if snippet == patch.replacement:
        return "replacement is identical to the original"
    return None


def apply_patches(text: str, patches: list[Patch], min_chars: int = 20) -> PatchResult:
    """Apply patches in order; each is checked against the text as already patched."""
    result = PatchResult(text=text)
    for patch in patches:
        reason = check_patch(result.text, patch, min_chars)
        if reason:
            logger.warning(f"Rejected patch '{patch.original[:40]}...': {reason}")
            result.rejected.append((patch, reason))
            continue
        result.text = result.text.replace(patch.original, patch.replacement, 1)
        result.applied.append(patch)
        logger.debug(f"Applied patch '{patch.original[:30]}...' ({patch.reason or 'no reason'})")
    return result
