"""World Bible data models: the canonical fact store for a manuscript."""

from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from ..exceptions import ImmutableFactError
from ..normalize import fold
from .common import LooseInt, StrList, Text


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class Character(BaseModel):
    name: str
    role: Text = ""
    profile: Text = ""
    arc: Text = ""
    immutable_attributes: dict[str, str] = Field(default_factory=dict)
    resources: StrList = Field(default_factory=list)

    @field_validator("immutable_attributes", mode="before")
    @classmethod
    def _attributes_as_dict(cls, v):
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            return {"appearance": v}
        if isinstance(v, list):
            return {f"trait_{i + 1}": str(item) for i, item in enumerate(v) if item}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if val not in (None, "")}
        return v


class Location(BaseModel):
    name: str
    description: Text = ""

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data):
        if isinstance(data, str):
            return {"name": data}
        return data


class WorldRule(BaseModel):
    rule: Text
    category: Text = ""

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data):
        if isinstance(data, str):
            return {"rule": data}
        if isinstance(data, dict) and "rule" not in data:
            text = data.get("description") or data.get("name") or ""
            return {**data, "rule": text}
        return data


class EstablishedObject(BaseModel):
    name: str
    description: Text = ""
    owner: Text = ""
    introduced_chapter: LooseInt | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data):
        if isinstance(data, str):
            return {"name": data}
        return data


class TimelineEvent(BaseModel):
    when: Text = ""
    event: Text
    chapter: LooseInt | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data):
        if isinstance(data, str):
            return {"event": data}
        if isinstance(data, dict) and "event" not in data:
            return {**data, "event": data.get("description", "")}
        return data


class PlotThread(BaseModel):
    name: str
    description: Text = ""
    goal: Text = ""
    status: ThreadStatus = ThreadStatus.ACTIVE
    last_updated_chapter: int = 0


class WorldBible(BaseModel):
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    rules: list[WorldRule] = Field(default_factory=list)
    objects: list[EstablishedObject] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)
    plot_threads: list[PlotThread] = Field(default_factory=list)
    themes: StrList = Field(default_factory=list)

    @model_validator(mode="after")
    def _merge_duplicate_characters(self):
        characters, self.characters = self.characters, []
        for character in characters:
            if not character.name.strip():
                logger.warning(f"Dropping unnamed character (role '{character.role}')")
                continue
            for warning in self.add_character(character, strict=False):
                logger.warning(warning)
        return self

    def character(self, name: str) -> Character | None:
        return _find(self.characters, name)

    def protagonist(self) -> Character | None:
        return self._by_role(("protagonist", "protagonista", "hero", "main"))

    def antagonist(self) -> Character | None:
        return self._by_role(("antagonist", "antagonista", "villain"))

    def _by_role(self, markers: tuple[str, ...]) -> Character | None:
        for c in self.characters:
            if any(m in c.role.lower() for m in markers):
                return c
        return None

    def add_character(self, character: Character, strict: bool = True) -> list[str]:
        """Add or merge a character without contradicting immutable facts.

        With ``strict`` a conflicting immutable attribute raises
        ``ImmutableFactError``; otherwise the existing value is kept and a
        warning is returned.
        """
        existing = self.character(character.name)
        if existing is None:
            self.characters.append(character)
            return []
        return _merge_into(existing, character, strict=strict)

    def consistency_constraints(self) -> str:
        """Hard facts every stage must respect, rendered as a prompt block."""
        parts = []
        fixed = [c for c in self.characters if c.immutable_attributes]
        if fixed:
            parts.append("IMMUTABLE CHARACTER FACTS (never contradict):")
            for c in fixed:
                attrs = ", ".join(f"{k}: {v}" for k, v in c.immutable_attributes.items())
                parts.append(f"- {c.name}: {attrs}")
        if self.rules:
            parts.append("WORLD RULES:")
            parts.extend(f"- {r.rule}" for r in self.rules)
        if self.objects:
            parts.append("ESTABLISHED OBJECTS:")
            for o in self.objects:
                owner = f" (held by {o.owner})" if o.owner else ""
                desc = f": {o.description}" if o.description else ""
                parts.append(f"- {o.name}{owner}{desc}")
        if self.timeline:
            parts.append("TIMELINE:")
            for t in self.timeline:
                when = f"[{t.when}] " if t.when else ""
                parts.append(f"- {when}{t.event}")
        return "\n".join(parts)

    def to_context_string(self, max_chars: int = 6000) -> str:
        """Serialize the World Bible into a context string for agent prompts."""
        parts = []

        if self.characters:
            parts.append("## Characters")
            for c in self.characters:
                line = f"- {c.name}"
                if c.role:
                    line += f" ({c.role})"
                if c.profile:
                    line += f": {c.profile}"
                parts.append(line)
                if c.arc:
                    parts.append(f"  arc: {c.arc}")
                if c.resources:
                    parts.append(f"  resources: {', '.join(c.resources)}")

        if self.locations:
            parts.append("\n## Locations")
            for loc in self.locations:
                parts.append(f"- {loc.name}: {loc.description}" if loc.description else f"- {loc.name}")

        if self.plot_threads:
            parts.append("\n## Plot Threads")
            for pt in self.plot_threads:
                parts.append(f"- [{pt.status.value}] {pt.name}: {pt.description}")

        if self.themes:
            parts.append(f"\n## Themes\n{', '.join(self.themes)}")

        constraints = self.consistency_constraints()
        if constraints:
            parts.append(f"\n## Canon\n{constraints}")

        result = "\n".join(parts)
        if len(result) > max_chars:
            result = result[:max_chars - 3] + "..."
        return result


def _find(characters: list[Character], name: str) -> Character | None:
    key = fold(name)
    for c in characters:
        if fold(c.name) == key:
            return c
    return None


def _merge_into(existing: Character, incoming: Character, strict: bool) -> list[str]:
    warnings = []
    for attr, value in incoming.immutable_attributes.items():
        current = existing.immutable_attributes.get(attr)
        if current is None:
            existing.immutable_attributes[attr] = value
        elif fold(current) != fold(value):
            message = (
                f"Conflicting immutable attribute for {existing.name}.{attr}: "
                f"keeping '{current}', ignoring '{value}'"
            )
            if strict:
                raise ImmutableFactError(message)
            warnings.append(message)
    for name in ("role", "profile", "arc"):
        if not getattr(existing, name) and getattr(incoming, name):
            setattr(existing, name, getattr(incoming, name))
    for item in incoming.resources:
        if item not in existing.resources:
            existing.resources.append(item)
    return warnings
