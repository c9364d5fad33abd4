"""Vocabulary Tracker: suppress repeated words and phrases across chapters.

Works on English prose. The analysis is purely lexical; the resulting avoid
list is injected into the Scene Writer prompt.
"""

import re
import unicodedata
from collections import Counter, deque
from dataclasses import dataclass, field

from loguru import logger

STOP_WORDS = frozenset("""
a an the and or but nor so yet for of in on at to from by with without about
into onto over under between through during before after above below up down
out off again further then once here there when where why how all any both each
few more most other some such no not only own same than too very can will just
should would could might must shall may is are was were be been being have has
had having do does did doing i me my myself we our ours you your yours he him
his himself she her hers herself it its itself they them their theirs what
which who whom this that these those am as if because until while also even
still back like just into upon onto said says say
""".split())

DIALOGUE_VERBS = [
    "said", "asked", "replied", "answered", "exclaimed", "murmured", "whispered",
    "shouted", "added", "retorted", "inquired", "protested", "admitted",
    "confessed", "insisted", "declared", "denied", "interrupted", "snapped",
    "muttered", "stammered", "blurted",
]

FORCED_DIALOGUE_TAGS = [
    "muttered", "snapped", "growled", "hissed", "barked", "gasped", "stammered",
    "roared", "bellowed", "sputtered", "snarled", "grumbled", "huffed",
    "shrieked", "whimpered", "sobbed", "lamented", "intoned", "pronounced",
    "commanded", "pleaded", "implored", "demanded", "spat", "purred",
]

CLICHES = [re.compile(p, re.IGNORECASE) for p in (
    r"a whirlwind of emotions?",
    r"the weight of (the world|\w+) on (his|her|their) shoulders",
    r"(the )?silence was deafening",
    r"a mix(ture)? of \w+ and \w+",
    r"without (any )?warning",
    r"in a matter of seconds",
    r"as if time (itself )?had stopped",
    r"a shiver (ran|went) down (his|her|their) spine",
    r"(his|her|their) heart (was )?pounding",
    r"their eyes met",
    r"swallowed hard",
    r"(held|holding) (his|her|their) breath",
    r"couldn't believe (what|his|her|their) (eyes|was happening)",
    r"deep down inside",
    r"a lump in (his|her|their) throat",
    r"the world (seemed to )?stop(ped)?",
    r"let out a (deep|long) sigh",
    r"tears (rolled|streamed) down (his|her|their) cheeks",
    r"clenched (his|her|their) fists",
    r"(his|her|their) blood ran cold",
    r"couldn't help but (think|feel|notice)",
    r"before (he|she|they) could react",
    r"everything changed in an instant",
    r"a wave of \w+ washed over",
    r"a sea of doubts?",
    r"the air (grew|was) thick",
    r"just in time",
    r"a strange feeling",
    r"something didn't add up",
    r"(his|her|their) gut told",
    r"the pieces (of the puzzle )?fell into place",
    r"(was )?left speechless",
    r"a palpable tension",
    r"for some reason",
    r"without knowing why",
)]

STRUCTURE_PATTERNS = [
    (re.compile(r"\bnot only (.{5,60}?),? but (?:also )?(.{5,60})", re.IGNORECASE), "not only X, but Y"),
    (re.compile(r"\b(?:it )?(?:was|wasn't|isn't) not (.{5,40}?)[,;] (?:it was|but) (.{5,40})", re.IGNORECASE), "it was not X, it was Y"),
    (re.compile(r"\bmore than (.{5,40}?), (?:it|this|that) was (.{5,40})", re.IGNORECASE), "more than X, it was Y"),
    (re.compile(r"\bboth (.{5,40}?) and (.{5,40})", re.IGNORECASE), "both X and Y"),
    (re.compile(r"\bif (.{5,40}?), then (.{5,40})", re.IGNORECASE), "if X, then Y"),
    (re.compile(r"\bnot (.{5,40}?)[,;.] but (.{5,40})", re.IGNORECASE), "not X, but Y"),
]

_WORD_RE = re.compile(r"[a-z']+")
_SENTENCE_SPLIT = re.compile(r"[.!?;]+")
_CLAUSE_SPLIT = re.compile(r"[,—]+")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    return "".join(c for c in text if not unicodedata.combining(c)).lower()


def _content_words(text: str) -> list[str]:
    return [w for w in _WORD_RE.findall(_fold(text)) if w not in STOP_WORDS]


def extract_phrases(text: str, min_len: int = 8, max_len: int = 60) -> list[str]:
    phrases = []
    for sentence in _SENTENCE_SPLIT.split(text):
        sentence = sentence.strip()
        if len(sentence) < min_len:
            continue
        for clause in _CLAUSE_SPLIT.split(sentence):
            clause = clause.strip()
            if min_len <= len(clause) <= max_len:
                phrases.append(clause)
    return phrases


def phrase_similarity(a: str, b: str) -> float:
    """Dice coefficient over the content words of two phrases."""
    words_a = _WORD_RE.findall(_fold(a))
    words_b = _WORD_RE.findall(_fold(b))
    if words_a == words_b:
        return 1.0
    if len(words_a) < 3 or len(words_b) < 3:
        return 0.0
    content_a = [w for w in words_a if w not in STOP_WORDS]
    content_b = [w for w in words_b if w not in STOP_WORDS]
    if not content_a or not content_b:
        return 0.0
    shared = set(content_a) & set(content_b)
    return (len(shared) * 2) / (len(content_a) + len(content_b))


@dataclass
class VocabularyReport:
    overused_words: list[tuple[str, int]] = field(default_factory=list)
    domain_words: list[tuple[str, int]] = field(default_factory=list)
    dialogue_verbs: list[tuple[str, int]] = field(default_factory=list)
    forced_tags: list[tuple[str, int]] = field(default_factory=list)
    cliches: list[str] = field(default_factory=list)
    similar_phrases: list[tuple[str, str, int]] = field(default_factory=list)
    repetitive_structures: list[tuple[str, int]] = field(default_factory=list)
    paragraph_starters: list[str] = field(default_factory=list)
    avoid: list[str] = field(default_factory=list)

    @property
    def forced_tag_total(self) -> int:
        return sum(n for _, n in self.forced_tags)


def _count_terms(folded: str, terms: list[str]) -> list[tuple[str, int]]:
    counts = []
    for term in terms:
        n = len(re.findall(rf"\b{term}\b", folded))
        if n:
            counts.append((term, n))
    return sorted(counts, key=lambda kv: kv[1], reverse=True)


def analyze_text(text: str) -> VocabularyReport:
    report = VocabularyReport()
    if not text.strip():
        return report
    folded = _fold(text)

    counts = Counter(w for w in _content_words(text) if len(w) > 3)
    repeated = [(w, n) for w, n in counts.most_common() if n >= 2]
    report.overused_words = repeated[:20]
    report.domain_words = [(w, n) for w, n in repeated if len(w) >= 7][:10]
    report.dialogue_verbs = _count_terms(folded, DIALOGUE_VERBS)
    report.forced_tags = _count_terms(folded, FORCED_DIALOGUE_TAGS)

    for rx in CLICHES:
        m = rx.search(text)
        if m:
            report.cliches.append(m.group(0))

    phrases = extract_phrases(text)[:200]
    for i, a in enumerate(phrases):
        for b in phrases[i + 1:]:
            if a == b:
                continue
            sim = phrase_similarity(a, b)
            if sim >= 0.7:
                report.similar_phrases.append((a[:80], b[:80], round(sim * 100)))
    report.similar_phrases = report.similar_phrases[:10]

    for rx, name in STRUCTURE_PATTERNS:
        n = len(rx.findall(text))
        if n >= 2:
            report.repetitive_structures.append((name, n))

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
    report.paragraph_starters = [p.split()[0] for p in paragraphs][-10:]

    avoid = report.avoid
    for verb, n in report.dialogue_verbs:
        avoid.append(f'dialogue verb "{verb}" (already used {n}x)')
    if report.forced_tag_total >= 3:
        tags = ", ".join(f'"{t}"({n}x)' for t, n in report.forced_tags)
        avoid.append(
            f"forced dialogue tags ({report.forced_tag_total}x): {tags}. "
            f"Show emotion through physical action, not speech verbs"
        )
    for tag, n in report.forced_tags:
        if n >= 2:
            avoid.append(f'forced tag "{tag}" ({n}x), use "said" plus an action')
    for a, b, pct in report.similar_phrases:
        avoid.append(f'near-identical phrases: "{a}" ~ "{b}" ({pct}% similar), rephrase completely')
    for name, n in report.repetitive_structures:
        avoid.append(f'repetitive structure "{name}" used {n}x, vary the grammar')
    starters = Counter(s.lower() for s in report.paragraph_starters)
    for starter, n in starters.items():
        if n >= 2:
            avoid.append(f'starting paragraphs with "{starter}"')
    for phrase in report.cliches:
        avoid.append(f'cliché "{phrase}"')
    for word, n in report.overused_words[:8]:
        avoid.append(f"word {word}({n}x)")
    for word, n in report.domain_words:
        avoid.append(f'technical term "{word}" ({n}x), use a synonym')
    return report


class VocabularyTracker:
    """Rolling lexical history for one project."""

    def __init__(self, project_id: str = "", window: int = 2):
        self.project_id = project_id
        self.window = window
        self.history: deque[tuple[int, str]] = deque(maxlen=window)

    def record_chapter(self, chapter: int, text: str) -> None:
        self.history.append((chapter, text))
        logger.debug(f"Vocabulary history now covers chapters {[c for c, _ in self.history]}")

    def previous_text(self) -> str:
        return "\n\n".join(text for _, text in self.history)

    def anti_repetition_prompt(self, current_chapter_text: str = "") -> str:
        """Avoid list built from recent chapters plus the chapter so far."""
        recent = analyze_text(self.previous_text())
        current = analyze_text(current_chapter_text)
        items = list(dict.fromkeys(recent.avoid + current.avoid))
        if not items:
            return ""

        lines = ["VOCABULARY TO AVOID IN THIS SCENE (already overused):"]
        lines.extend(f"- {item}" for item in items)
        lines.append("Use fresh synonyms or rephrase; vary sentence structure.")
        if current.forced_tags:
            lines.append(
                f"\nFORCED DIALOGUE TAGS ({current.forced_tag_total} found): verbs like "
                f'"muttered" or "snapped" tell the emotion instead of showing it. '
                f'Use "said" plus a physical action.'
            )
        if current.similar_phrases:
            lines.append("\nNEAR-IDENTICAL DESCRIPTIONS:")
            lines.extend(f'- "{a}" ~ "{b}" ({pct}%)' for a, b, pct in current.similar_phrases)
        if current.repetitive_structures:
            lines.append("\nREPETITIVE GRAMMATICAL STRUCTURES:")
            lines.extend(f'- "{name}" used {n}x' for name, n in current.repetitive_structures)
        return "\n".join(lines)
