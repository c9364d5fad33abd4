"""Map alternative field names and enum spellings onto the canonical schema.

Models drift: the same outline comes back with ``personajes`` instead of
``characters``, ``chapter_number`` instead of ``number``, or a severity of
``Crítica``. Each stage declares an ``Aliases`` table and the parser runs
``normalize`` once, right after JSON recovery, so nothing downstream ever
checks for alternative keys.
"""

import unicodedata
from dataclasses import dataclass, field
from typing import Any


def fold(text: str) -> str:
    """Lower-case, strip accents and collapse separators to underscores."""
    text = unicodedata.normalize("NFKD", str(text))
    text = "".join(c for c in text if not unicodedata.combining(c))
    return "_".join(text.lower().replace("-", " ").split())


@dataclass
class Aliases:
    keys: dict[str, str] = field(default_factory=dict)
    values: dict[str, dict[str, str]] = field(default_factory=dict)

    def __post_init__(self):
        self.keys = {fold(k): v for k, v in self.keys.items()}
        self.values = {
            name: {fold(k): v for k, v in table.items()}
            for name, table in self.values.items()
        }

    def merged(self, other: "Aliases") -> "Aliases":
        values = {k: dict(v) for k, v in self.values.items()}
        for name, table in other.values.items():
            values.setdefault(name, {}).update(table)
        return Aliases(keys={**self.keys, **other.keys}, values=values)

    def canonical_key(self, key: str) -> str:
        folded = fold(key)
        return self.keys.get(folded, folded)

    def canonical_value(self, key: str, value: Any) -> Any:
        table = self.values.get(key)
        if not table or not isinstance(value, str):
            return value
        folded = fold(value)
        return table.get(folded, folded)


def normalize(data: Any, aliases: Aliases) -> Any:
    """Recursively rename keys and canonicalise enum values.

    When both an alias and its canonical key are present, the canonical key
    wins and the alias is dropped.
    """
    if isinstance(data, list):
        return [normalize(item, aliases) for item in data]
    if not isinstance(data, dict):
        return data

    out: dict[str, Any] = {}
    explicit = {fold(k) for k in data if fold(k) not in aliases.keys}
    for key, value in data.items():
        name = aliases.canonical_key(key)
        if fold(key) in aliases.keys and name in explicit:
            continue
        if name in out:
            continue
        out[name] = aliases.canonical_value(name, normalize(value, aliases))
    return out


# ---------------------------------------------------------------------------
# Per-stage alias tables
# ---------------------------------------------------------------------------
_COMMON = Aliases(
    keys={
        "nombre": "name",
        "descripcion": "description",
        "desc": "description",
        "resumen": "summary",
        "titulo": "title",
        "chapter_title": "title",
        "personajes": "characters",
        "characters_present": "characters",
        "ubicacion": "location",
        "lugar": "location",
    }
)

OUTLINE_ALIASES = _COMMON.merged(Aliases(
    keys={
        "biblia_del_mundo": "world_bible",
        "worldbible": "world_bible",
        "bible": "world_bible",
        "story_bible": "world_bible",
        "capitulos": "outline",
        "chapters": "outline",
        "chapter_outline": "outline",
        "escaleta": "outline",
        "estructura_tres_actos": "three_act_structure",
        "three_acts": "three_act_structure",
        "act_structure": "three_act_structure",
        "acto_1": "act_1",
        "act1": "act_1",
        "act_one": "act_1",
        "acto_2": "act_2",
        "act2": "act_2",
        "act_two": "act_2",
        "acto_3": "act_3",
        "act3": "act_3",
        "act_three": "act_3",
        "chapter_num": "number",
        "chapter_number": "number",
        "numero": "number",
        "num": "number",
        "evento_clave": "key_event",
        "key_events": "key_event",
        "arco_emocional": "emotional_arc",
        "emotional_tone": "emotional_arc",
        "acto": "act",
        "notas_temporales": "temporal_notes",
        "timeline_note": "temporal_notes",
        "rol": "role",
        "perfil": "profile",
        "arco": "arc",
        "appearance": "immutable_attributes",
        "apariencia": "immutable_attributes",
        "apariencia_inmutable": "immutable_attributes",
        "physical_traits": "immutable_attributes",
        "recursos": "resources",
        "skills": "resources",
        "habilidades": "resources",
        "reglas": "rules",
        "world_rules": "rules",
        "regla": "rule",
        "settings": "locations",
        "escenarios": "locations",
        "lugares": "locations",
        "temas": "themes",
        "objetos": "objects",
        "established_objects": "objects",
        "chekhov": "objects",
        "propietario": "owner",
        "linea_temporal": "timeline",
        "cronologia": "timeline",
        "fecha": "when",
        "date": "when",
        "evento": "event",
        "hilos": "plot_threads",
        "subtramas": "plot_threads",
        "subplots": "plot_threads",
        "threads": "plot_threads",
        "objetivo": "goal",
        "meta": "goal",
    },
))

SCENE_PLAN_ALIASES = _COMMON.merged(Aliases(
    keys={
        "escenas": "scenes",
        "numero_escena": "scene_num",
        "scene_number": "scene_num",
        "number": "scene_num",
        "escenario": "setting",
        "location": "setting",
        "beat": "plot_beat",
        "beat_argumental": "plot_beat",
        "beat_emocional": "emotional_beat",
        "detalles_sensoriales": "sensory_details",
        "sensory_notes": "sensory_details",
        "foco_dialogo": "dialogue_focus",
        "gancho_final": "ending_hook",
        "hook": "ending_hook",
        "palabras_objetivo": "word_target",
        "target_words": "word_target",
        "word_count": "word_target",
        "gancho_capitulo": "chapter_hook",
        "closing_hook": "chapter_hook",
        "total_palabras": "total_word_target",
    }
))

AUDIT_ALIASES = Aliases(
    keys={
        "errores": "issues",
        "errors": "issues",
        "problems": "issues",
        "tipo": "type",
        "category": "type",
        "severidad": "severity",
        "descripcion": "description",
        "ubicacion": "location",
        "correccion_exacta": "correction",
        "suggested_correction": "correction",
        "fix": "correction",
        "veredicto": "verdict",
        "resumen": "summary",
    },
    values={
        "type": {
            "agujero_guion": "plot_hole",
            "agujero_de_guion": "plot_hole",
            "contradiccion": "contradiction",
            "vacio_informacion": "information_gap",
            "info_gap": "information_gap",
            "violacion_biblia": "world_bible_violation",
            "bible_violation": "world_bible_violation",
            "falta_pista": "missing_setup",
            "missing_foreshadowing": "missing_setup",
        },
        "severity": {
            "critica": "critical",
            "mayor": "major",
            "high": "major",
            "menor": "minor",
            "low": "minor",
            "medium": "major",
        },
        "verdict": {
            "aprobado": "approved",
            "approve": "approved",
            "requiere_correccion": "requires_correction",
            "needs_correction": "requires_correction",
            "rejected": "requires_correction",
        },
    },
)

EDITOR_ALIASES = Aliases(
    keys={
        "logic": "logic_score",
        "puntuacion_logica": "logic_score",
        "style": "style_score",
        "puntuacion_estilo": "style_score",
        "approved": "is_approved",
        "aprobado": "is_approved",
        "rewrite": "needs_rewrite",
        "requiere_reescritura": "needs_rewrite",
        "comentarios": "feedback",
        "parches": "patches",
        "original_text_snippet": "original",
        "original_snippet": "original",
        "texto_original": "original",
        "replacement_text": "replacement",
        "replace": "replacement",
        "texto_nuevo": "replacement",
        "razon": "reason",
        "motivo": "reason",
    }
)

PACING_ALIASES = Aliases(
    keys={
        "evaluacion_ritmo": "pacing_assessment",
        "assessment": "pacing_assessment",
        "hilos_olvidados": "forgotten_threads",
        "tension": "tension_level",
        "nivel_tension": "tension_level",
        "directiva": "directive",
        "actualizaciones_hilos": "thread_updates",
        "nombre": "name",
        "thread": "name",
        "new_status": "status",
        "estado": "status",
        "nota": "note",
    },
    values={
        "status": {
            "activo": "active",
            "open": "active",
            "resuelto": "resolved",
            "closed": "resolved",
            "ignorado": "ignored",
            "dormant": "ignored",
            "abandoned": "ignored",
        },
    },
)
