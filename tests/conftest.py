"""Shared fixtures: a scripted model client and a throwaway project store."""

import json
import re
from dataclasses import dataclass

import pytest
from loguru import logger

from novel_forge.config import Config, PipelineConfig, StorageConfig
from novel_forge.llm import ModelClient, ModelOptions, ModelResponse, TokenUsage
from novel_forge.pipeline import Pipeline
from novel_forge.storage import ProjectStore

ROLES = {
    "You are the Outline Architect": "outline",
    "You are the Outline Completer": "complete",
    "You are the Scene Planner": "plan",
    "You are the Scene Writer": "write",
    "You are the Consistency Auditor": "audit",
    "You are the Style Editor": "edit",
    "You are the Continuity Surgeon": "surgical",
    "You are the Rewrite Editor": "rewrite",
    "You are the Summarizer": "summarize",
    "You are the Pacing Director": "pacing",
}

PROTAGONIST = "Mara Quell"
ANTAGONIST = "Silas Vane"
THREAD = "The Drowned Ledger"

_SCENE_HEADER_RE = re.compile(r"^## (.+?): (.*), scene (\d+) of (\d+)$", re.MULTILINE)
_LABEL_RE = re.compile(r"^## (Prologue|Epilogue|Author's Note|Chapter \d+):", re.MULTILINE)


def outline_entry(number: int, act: int = 2) -> dict:
    title = {0: "Prologue", 998: "Epilogue", 999: "Author's Note"}.get(number, f"Tide {number}")
    return {
        "number": number,
        "title": title,
        "summary": f"{PROTAGONIST} follows {THREAD} deeper while {ANTAGONIST} closes in (part {number}).",
        "key_event": f"Key event {number}",
        "emotional_arc": "dread to resolve",
        "act": act,
        "location": "Port Sallow",
        "temporal_notes": f"Day {number}",
    }


def outline_json(numbers: list[int]) -> str:
    regular = [n for n in numbers if 0 < n < 998]
    entries = []
    for n in numbers:
        if n in regular:
            position = regular.index(n) / max(1, len(regular))
            act = 1 if position < 0.25 else 2 if position < 0.75 else 3
        else:
            act = 1 if n == 0 else 3
        entries.append(outline_entry(n, act))
    return json.dumps({
        "world_bible": {
            "characters": [
                {"name": PROTAGONIST, "role": "protagonist", "profile": "harbour pilot",
                 "immutable_attributes": {"eyes": "grey", "scar": "left palm"}},
                {"name": ANTAGONIST, "role": "antagonist", "profile": "customs magistrate"},
            ],
            "locations": [{"name": "Port Sallow", "description": "fog-bound harbour"}],
            "rules": ["The tide bell rings before every storm"],
            "objects": [{"name": "brass sextant", "description": "Mara's inheritance", "owner": PROTAGONIST}],
            "timeline": [{"when": "Ten years ago", "event": "The Meridian sank"}],
            "plot_threads": [{"name": THREAD, "description": "who forged the manifest", "goal": "expose Vane"}],
            "themes": ["debt"],
        },
        "outline": entries,
        "three_act_structure": {"act_1": "setup", "act_2": "pursuit", "act_3": "reckoning"},
    })


def expected_from_prompt(prompt: str) -> list[int]:
    count = int(re.search(r"numbered 1 to (\d+)", prompt).group(1))
    numbers = [0] if "a prologue (chapter 0)" in prompt else []
    numbers.extend(range(1, count + 1))
    if "an epilogue (chapter 998)" in prompt:
        numbers.append(998)
    if "an author's note (chapter 999)" in prompt:
        numbers.append(999)
    return numbers


def scene_prose(label: str, scene: int, words: int = 80) -> str:
    """Distinct, well-terminated prose for one scene."""
    opening = f"{label} scene {scene} begins on the wet stones of the eastern quay."
    filler = [
        "Gulls wheeled over the cranes", "a bell sounded twice from the customs house",
        "rope creaked against iron", "she counted the lanterns along the breakwater",
        "salt dried white on her sleeves", "someone had chalked a number on the warehouse door",
        "the harbourmaster's boat idled without lights", "water slapped at the pilings",
    ]
    sentences = [opening]
    i = 0
    while len(" ".join(sentences).split()) < words:
        sentences.append(f"In {label.lower()} moment {scene}.{i}, {filler[i % len(filler)]}.")
        i += 1
    sentences.append(f"{label} scene {scene} ends with the ledger still hidden.")
    return " ".join(sentences)


def plan_json(scenes: int = 3) -> str:
    beats = [
        ("Mara searches the archive for the forged manifest", "unease"),
        ("Mara confronts Silas on the customs pier", "anger"),
        ("Mara realizes the ledger was moved before the storm", "shock"),
        ("Mara escapes across the rooftops", "fear"),
    ]
    return json.dumps({
        "scenes": [
            {"scene_num": i + 1, "characters": [PROTAGONIST], "setting": "Port Sallow",
             "plot_beat": beats[i][0], "emotional_beat": beats[i][1],
             "sensory_details": ["salt", "fog"], "ending_hook": "a bell rings", "word_target": 600}
            for i in range(scenes)
        ],
        "chapter_hook": "The ledger is gone.",
    })


def editor_json(logic: int = 9, style: int = 9, patches: list[dict] | None = None) -> str:
    return json.dumps({
        "logic_score": logic, "style_score": style,
        "feedback": "Tighten the middle.", "patches": patches or [],
    })


@dataclass
class FakeCall:
    role: str
    system: str
    prompt: str


class FakeClient(ModelClient):
    """Answers each stage by its system prompt; scripted replies take priority.

    A scripted reply may be a string, an exception instance (raised) or a
    callable ``(system, prompt) -> str``.
    """

    model = "fake-model"

    def __init__(self):
        self.calls: list[FakeCall] = []
        self.scripts: dict[str, list] = {}

    def script(self, role: str, *replies) -> None:
        self.scripts.setdefault(role, []).extend(replies)

    def calls_for(self, role: str) -> list[FakeCall]:
        return [c for c in self.calls if c.role == role]

    def generate(self, system: str, prompt: str, options: ModelOptions | None = None) -> ModelResponse:
        role = next((r for prefix, r in ROLES.items() if system.startswith(prefix)), "unknown")
        self.calls.append(FakeCall(role, system, prompt))
        queue = self.scripts.get(role)
        if queue:
            reply = queue.pop(0)
            if isinstance(reply, Exception):
                raise reply
            text = reply(system, prompt) if callable(reply) else reply
        else:
            text = self.default_reply(role, prompt)
        return ModelResponse(text=text, usage=TokenUsage(input=10, output=20, thinking=1), model=self.model)

    def default_reply(self, role: str, prompt: str) -> str:
        if role == "outline":
            return outline_json(expected_from_prompt(prompt))
        if role == "complete":
            wanted = [int(n) for n in re.findall(r"\(number (\d+)\)", prompt)]
            return json.dumps({"outline": [outline_entry(n) for n in wanted]})
        if role == "plan":
            return plan_json()
        if role == "write":
            m = _SCENE_HEADER_RE.search(prompt)
            return scene_prose(m.group(1), int(m.group(3)))
        if role == "audit":
            return json.dumps({"issues": [], "verdict": "approved", "summary": "clean"})
        if role == "edit":
            return editor_json()
        if role == "surgical":
            return json.dumps({"patches": []})
        if role == "rewrite":
            original = prompt.split("## Original chapter\n", 1)[1]
            original = original.split("\n\nRewrite the complete chapter", 1)[0]
            return original.replace("begins on", "opens on")
        if role == "summarize":
            label = _LABEL_RE.search(prompt).group(1)
            return f"Summary: In {label}, Mara found a clue about {THREAD} and hid the sextant."
        if role == "pacing":
            return json.dumps({
                "pacing_assessment": "steady", "forgotten_threads": [],
                "tension_level": 6, "directive": "Raise the stakes at the customs house.",
                "thread_updates": [{"name": THREAD, "status": "active", "note": "still open"}],
            })
        raise AssertionError(f"unexpected system prompt: {role}")


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def warnings():
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def config(tmp_path):
    return Config(
        storage=StorageConfig(root=tmp_path / "projects"),
        pipeline=PipelineConfig(min_scene_words=50),
    )


@pytest.fixture
def store(config):
    return ProjectStore(config.storage.root)


@pytest.fixture
def events():
    return []


@pytest.fixture
def pipeline(config, store, fake_client, events):
    return Pipeline(config, store, client=fake_client, progress=events.append)


@pytest.fixture
def project(store):
    return store.create_project(
        id="harbour",
        title="The Harbour",
        premise="A harbour pilot uncovers a forged shipping ledger.",
        genre="thriller",
        tone="tense",
        chapter_count=3,
    )
