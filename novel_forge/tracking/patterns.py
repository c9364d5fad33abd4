"""Pattern Tracker: keep chapters from repeating the same structural choices.

Each chapter gets a ``PatternRecord`` fingerprint derived from its scene plan
(or, when rebuilding after a restart, from its summary). Before planning the
next chapter, ``analyze_for_chapter`` looks back over the earlier records and
produces advisory constraints for the Scene Planner prompt.
"""

import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field

from loguru import logger

from ..models import ChapterPlan, outline_sort_key

SCENE_TYPES = [
    "action", "dialogue", "investigation", "discovery", "confrontation",
    "interrogation", "infiltration", "reflection", "transition", "revelation",
    "planning", "suspense", "climax", "aftermath", "romantic", "setup",
    "payoff", "escape",
]

# Ordered: the first matching rule wins.
_SCENE_RULES = [
    ("escape", r"\b(escap\w*|flee\w*|fled|getaway|breaks? out|runs? away|on the run)|\b(huye\w*|huida|fuga\w*)"),
    ("action", r"\b(fight\w*|brawl\w*|chas(e|es|ing)|attack\w*|shoot\w*|shot|gunfire|combat|battle\w*|ambush\w*|struggl\w*)|\b(pelea\w*|lucha\w*|persecucion|ataca\w*|dispara\w*|combate)"),
    ("investigation", r"\b(investigat\w*|search\w*|analy[sz]\w*|examin\w*|track\w* down|looks? into|combs? through)|\b(investiga\w*|busca\w*|analiza\w*|examina\w*|rastrea\w*|revisa\w*)"),
    ("discovery", r"\b(discover\w*|finds?|found|uncover\w*|realiz\w*|stumbles? on)|\b(descubre\w*|encuentra\w*|halla\b|se da cuenta)"),
    ("confrontation", r"\b(confront\w*|face[sd]? off|face to face|accus\w*|challeng\w*|stands? up to)|\b(enfrenta\w*|acusa\w*|desafia\w*)"),
    ("interrogation", r"\b(interrogat\w*|question\w*|grill\w*|press(es)? (him|her|them) for)|\b(interroga\w*|pregunta\w*|presiona\w*)"),
    ("infiltration", r"\b(infiltrat\w*|sneak\w*|snuck|disguis\w*|undercover|break\w* into)|\b(infiltra\w*|se cuela|disfraz\w*|encubiert\w*)"),
    ("reflection", r"\b(reflect\w*|ponder\w*|remember\w*|recall\w*|broods?|processes|mulls?)|\b(reflexiona\w*|recuerda\w*|medita\w*)"),
    ("transition", r"\b(travel\w*|drives?|driving|train|flight|plane|journey\w*|road to)|\b(viaja\w*|conduce\w*|tren\b|avion|trayecto)"),
    ("revelation", r"\b(reveal\w*|twist|truth|secret|shock\w*)|\b(revela\b|verdad|secreto)"),
    ("planning", r"\b(plan\w*|strateg\w*|organi[sz]\w*|prepar\w*|coordinat\w*|scheme\w*)|\b(planea\w*|planifica\w*|prepara\w*|organiza\w*)"),
    ("suspense", r"\b(tension|lurk\w*|stalk\w*|waits?|waiting|silence|dread)|\b(acecha\w*|espera\w*|silencio)"),
    ("climax", r"\b(climax|showdown|decisive|final stand)|\b(enfrentamiento final|desenlace)"),
    ("aftermath", r"\b(aftermath|consequences?|recover\w*|afterwards|in the wake)|\b(consecuencias|secuelas)"),
    ("romantic", r"\b(love|kiss\w*|romance|romantic|intimate|passion\w*)|\b(amor\b|beso\w*|besa\w*)"),
    ("dialogue", r"\b(talks?|convers\w*|discuss\w*|argu\w*|dialogue|tells?|says?)|\b(habla\w*|conversa\w*|discute\w*)"),
    ("setup", r"\b(introduc\w*|establish\w*|sets? up|presents?)|\b(presenta\w*|establece\w*)"),
    ("payoff", r"\b(resolv\w*|pays? off|payoff|closes?|settles?)|\b(resuelve\w*|cierra\w*)"),
]
_SCENE_RULES = [(name, re.compile(rx)) for name, rx in _SCENE_RULES]

_INFO_RULES = [
    ("anonymous_tip", r"\b(anonymous (message|note|call|tip|letter|email)|mysterious (call|caller|message)|unknown number|unsigned (note|letter))|\b(mensaje anonimo|nota anonima|llamada misteriosa|numero oculto|correo sin remite)"),
    ("deduction", r"\b(deduc\w*|conclud\w*|reasons? (out|that)|connects? the dots|figures? out|pieces? together)|\b(deduce\w*|concluye\w*|ata cabos)"),
    ("interrogation", r"\b(interrogat\w*|questions?|grill\w*|makes? (him|her|them) talk)|\b(interroga\w*|pregunta\w*|hace hablar)"),
    ("surveillance", r"\b(surveil\w*|watch\w*|follow\w*|tails?|tailing|stake-?out|spies|spying)|\b(vigila\w*|sigue\w*|espia\w*)"),
    ("document_search", r"\b(documents?|files?|records?|papers|archives?|ledger|dossier)|\b(documentos?|archivos?|expedientes?|registros?)"),
    ("digital_forensics", r"\b(hack\w*|computer|digital|database|server|laptop|metadata)|\b(ordenador|computadora|base de datos|hackea\w*)"),
    ("physical_evidence", r"\b(crime scene|evidence|fingerprints?|forensic\w*|footprints?|blood stains?)|\b(escena del crimen|pruebas|huellas)"),
    ("informant", r"\b(informant|contact|source|tip-off|snitch)|\b(informante|confidente|soplon)"),
    ("overheard", r"\b(overhear\w*|overheard|eavesdrop\w*)|\b(escucha a escondidas|oye por casualidad)"),
    ("confession", r"\b(confess\w*|admits?|admitted)|\b(confiesa\w*|admite\w*)"),
    ("accident", r"\b(by chance|stumbles?|accidental\w*|coincidence)|\b(por casualidad|tropieza\w*)"),
]
_INFO_RULES = [(name, re.compile(rx)) for name, rx in _INFO_RULES]

_WEATHER_RE = re.compile(r"\b(rain\w*|snow\w*|storm\w*|wind\w*|heat|cold|fog\w*|sky|sunlight|sunny|thunder\w*|mist)|\b(lluvia|nieve|tormenta|viento|calor|frio|niebla|cielo|sol)\b")
_TRAVEL_RE = re.compile(r"\b(drives?|driving|drove|travel\w*|train|plane|flight|car|taxi|highway|road trip)|\b(conduce\w*|viaja\w*|tren|avion|coche|carretera)\b")
_PHONE_RE = re.compile(r"\b(phone\w*|calls?|called|calling|text message|voicemail|cell)\b|\b(llamada\w*|telefono\w*|movil|mensaje de texto)\b")

_OPENING_RULES = [
    ("in_media_res", re.compile(r"\b(fight\w*|chase\w*|runs?|running|shoot\w*|explosion|attack\w*)")),
    ("dialogue", re.compile(r"\b(says?|asks?|tells?|argu\w*|conversation)|\"")),
    ("flashback", re.compile(r"\b(years (ago|earlier|before)|flashback|memory of|as a child)")),
    ("time_jump", re.compile(r"\b(later|hours|days|weeks|the next (morning|day))")),
    ("description", re.compile(r"\b(describ\w*|setting|atmosphere|landscape|sky|sunlight)")),
    ("reflection", re.compile(r"\b(thinks?|remembers?|reflects?|recalls?)")),
]

_CLOSING_RULES = [
    ("cliffhanger", re.compile(r"\b(danger|gun|aims?|attack\w*|trapped|falls?)")),
    ("threat", re.compile(r"\b(threat\w*|warning|menac\w*)")),
    ("revelation", re.compile(r"\b(discover\w*|reveal\w*|truth|realiz\w*|descubre\w*|revela\b|verdad)")),
    ("decision", re.compile(r"\b(decid\w*|choos\w*|chose|must)")),
    ("arrival", re.compile(r"\b(arriv\w*|reach\w*|finds?)")),
    ("betrayal", re.compile(r"\b(betray\w*|deceiv\w*|deception|lies|lied)")),
    ("loss", re.compile(r"\b(loses?|lost|death|dies|dead|killed)")),
    ("victory", re.compile(r"\b(succeed\w*|manages?|wins?|won|victory)")),
    ("mystery_deepens", re.compile(r"\b(mystery|who|why)|\?")),
]

_CONFLICT_RULES = [
    ("physical", re.compile(r"\b(fight\w*|attack\w*|shoot\w*|combat|battle\w*)")),
    ("investigation", re.compile(r"\b(investigat\w*|search\w*|analy[sz]\w*|clues?)")),
    ("interpersonal", re.compile(r"\b(argu\w*|confront\w*|accus\w*|debat\w*)")),
    ("internal", re.compile(r"\b(doubt\w*|decid\w*|dilemma|torn)")),
    ("survival", re.compile(r"\b(escap\w*|flee\w*|chas(e|ing))")),
    ("infiltration", re.compile(r"\b(infiltrat\w*|spy|spies|undercover)")),
]


@dataclass
class PatternRecord:
    chapter: int
    title: str = ""
    scene_sequence: list[str] = field(default_factory=list)
    info_methods: list[str] = field(default_factory=list)
    opening: str = "continuation"
    closing: str = "question"
    emotional_arc: str = ""
    conflict_type: str = "mixed"
    weather_mentioned: bool = False
    travel_scene: bool = False
    phone_call: bool = False
    anonymous_tip: bool = False

    @property
    def sequence_key(self) -> str:
        return " -> ".join(self.scene_sequence)


@dataclass
class PatternAnalysis:
    recent: list[PatternRecord] = field(default_factory=list)
    avoid_sequences: list[str] = field(default_factory=list)
    avoid_openings: list[str] = field(default_factory=list)
    avoid_closings: list[str] = field(default_factory=list)
    overused_scene_types: list[str] = field(default_factory=list)
    overused_info_methods: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @property
    def anonymous_tip_prohibited(self) -> bool:
        return any("anonymous tip" in s for s in self.suggestions)


def _plain(text: str) -> str:
    """Lower-case and drop accents so "anónimo" matches the rule for "anonimo"."""
    text = unicodedata.normalize("NFKD", text.lower())
    return "".join(c for c in text if not unicodedata.combining(c))


def _first_match(rules, text: str, default):
    for name, rx in rules:
        if rx.search(text):
            return name
    return default


def classify_scene_type(plot_beat: str, emotional_beat: str = "") -> str:
    return _first_match(_SCENE_RULES, _plain(f"{plot_beat} {emotional_beat}"), "dialogue")


def classify_info_method(plot_beat: str) -> str | None:
    return _first_match(_INFO_RULES, _plain(plot_beat), None)


class PatternTracker:
    """Per-project history of chapter fingerprints."""

    RECENT_WINDOW = 5

    def __init__(self, project_id: str = ""):
        self.project_id = project_id
        self.records: dict[int, PatternRecord] = {}

    def register(self, record: PatternRecord) -> None:
        self.records[record.chapter] = record
        logger.debug(f"Pattern for chapter {record.chapter}: {record.sequence_key}")

    def ordered(self) -> list[PatternRecord]:
        return sorted(self.records.values(), key=lambda r: outline_sort_key(r.chapter))

    def extract_pattern_from_scenes(
        self, chapter: int, title: str, scenes: list[dict], chapter_hook: str = ""
    ) -> PatternRecord:
        """Fingerprint a chapter from its scene beats.

        ``scenes`` are dicts with ``plot_beat`` and optionally ``emotional_beat``.
        """
        record = PatternRecord(chapter=chapter, title=title)
        for scene in scenes:
            plot = scene.get("plot_beat", "")
            emotion = scene.get("emotional_beat", "")
            record.scene_sequence.append(classify_scene_type(plot, emotion))
            method = classify_info_method(plot)
            if method:
                record.info_methods.append(method)
                if method == "anonymous_tip":
                    record.anonymous_tip = True
            combined = _plain(f"{plot} {emotion}")
            record.weather_mentioned |= bool(_WEATHER_RE.search(combined))
            record.travel_scene |= bool(_TRAVEL_RE.search(combined))
            record.phone_call |= bool(_PHONE_RE.search(combined))

        first = _plain(scenes[0].get("plot_beat", "")) if scenes else ""
        record.opening = _first_match(_OPENING_RULES, first, "continuation")
        record.closing = _first_match(_CLOSING_RULES, _plain(chapter_hook), "question")
        record.emotional_arc = " -> ".join(s.get("emotional_beat", "") for s in scenes if s.get("emotional_beat"))
        all_plot = _plain(" ".join(s.get("plot_beat", "") for s in scenes))
        record.conflict_type = _first_match(_CONFLICT_RULES, all_plot, "mixed")
        return record

    def register_plan(self, chapter: int, title: str, plan: ChapterPlan) -> PatternRecord:
        scenes = [{"plot_beat": s.plot_beat, "emotional_beat": s.emotional_beat} for s in plan.scenes]
        record = self.extract_pattern_from_scenes(chapter, title, scenes, plan.chapter_hook)
        self.register(record)
        return record

    def load_from_summaries(self, summaries: list[tuple[int, str, str]]) -> None:
        """Rebuild records from (chapter, title, summary) triples."""
        for chapter, title, summary in summaries:
            record = self.extract_pattern_from_scenes(
                chapter, title, [{"plot_beat": summary}], ""
            )
            self.register(record)
        logger.info(f"Rebuilt {len(summaries)} pattern records from summaries")

    def analyze_for_chapter(self, chapter: int) -> PatternAnalysis:
        analysis = PatternAnalysis()
        position = outline_sort_key(chapter)
        prior = [r for r in self.ordered() if outline_sort_key(r.chapter) < position]
        recent = prior[-self.RECENT_WINDOW:]
        analysis.recent = recent
        if not prior:
            return analysis

        scene_counts = Counter(t for r in prior for t in r.scene_sequence)
        info_counts = Counter(m for r in prior for m in r.info_methods)
        threshold = max(3, len(prior) * 0.3)
        analysis.overused_scene_types = [t for t, n in scene_counts.items() if n >= threshold]
        analysis.overused_info_methods = [m for m, n in info_counts.items() if n >= 3]

        if len(recent) >= 2:
            a, b = recent[-2], recent[-1]
            if a.opening == b.opening:
                analysis.avoid_openings.append(b.opening)
                analysis.warnings.append(
                    f"Chapters {a.chapter} and {b.chapter} both opened with '{b.opening}'. Vary the opening."
                )
            if a.closing == b.closing:
                analysis.avoid_closings.append(b.closing)
                analysis.warnings.append(
                    f"Chapters {a.chapter} and {b.chapter} both closed with '{b.closing}'. Vary the closing."
                )
            if a.scene_sequence and a.sequence_key == b.sequence_key:
                analysis.avoid_sequences.append(b.sequence_key)
                analysis.warnings.append(
                    f"Chapters {a.chapter} and {b.chapter} have an identical scene structure. "
                    f"The next chapter must be different."
                )

        sequence_counts = Counter(r.sequence_key for r in prior if r.scene_sequence)
        for seq, n in sequence_counts.items():
            if n >= 2 and seq not in analysis.avoid_sequences:
                analysis.avoid_sequences.append(seq)

        tips = sum(1 for r in prior if r.anonymous_tip)
        if tips >= 1:
            analysis.suggestions.append(
                f"An anonymous tip or mysterious call was already used {tips} time(s). Do not use it again."
            )
        for flag, label, advice in (
            ("weather_mentioned", "mention the weather", "Avoid atmospheric weather openings."),
            ("travel_scene", "contain travel or driving scenes", "Avoid travel transitions."),
            ("phone_call", "hinge on phone calls", "Find another way for characters to communicate."),
        ):
            count = sum(1 for r in recent if getattr(r, flag))
            if count >= 2:
                analysis.suggestions.append(
                    f"{count} of the last {len(recent)} chapters {label}. {advice}"
                )

        if analysis.overused_scene_types:
            alternatives = [t for t in SCENE_TYPES if t not in analysis.overused_scene_types][:4]
            analysis.suggestions.append(
                f"Overused scene types: {', '.join(analysis.overused_scene_types)}. "
                f"Prefer: {', '.join(alternatives)}."
            )
        return analysis

    def format_for_prompt(self, analysis: PatternAnalysis) -> str:
        if not analysis.recent:
            return ""
        lines = ["ANTI-REPETITION TRACKER", "Recent chapter structures (do not repeat):"]
        for r in analysis.recent[-3:]:
            lines.append(f"  Ch {r.chapter}: {r.sequence_key}")
        if analysis.warnings:
            lines.append("Consecutive repetition warnings:")
            lines.extend(f"  - {w}" for w in analysis.warnings)
        if analysis.avoid_sequences:
            lines.append("Scene sequences to avoid:")
            lines.extend(f"  - {s}" for s in analysis.avoid_sequences[:3])
        if analysis.avoid_openings:
            lines.append(f"Recently used openings (vary): {', '.join(analysis.avoid_openings)}")
        if analysis.avoid_closings:
            lines.append(f"Recently used closings (vary): {', '.join(analysis.avoid_closings)}")
        if analysis.overused_info_methods:
            lines.append(
                f"Overused ways of learning information: {', '.join(analysis.overused_info_methods)}"
            )
        if analysis.suggestions:
            lines.append("Recommendations:")
            lines.extend(f"  - {s}" for s in analysis.suggestions)
        return "\n".join(lines)
