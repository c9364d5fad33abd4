import json

import pytest

from novel_forge.agents import (
    ConsistencyAuditor,
    PacingDirector,
    ScenePlanner,
    SceneWriter,
    Summarizer,
    build_outline_context,
)
from novel_forge.models import (
    AuditVerdict,
    ChapterOutline,
    IssueType,
    PlotThread,
    ScenePlan,
    Severity,
    WorldBible,
)

from conftest import THREAD, FakeClient, plan_json


@pytest.fixture
def entry():
    return ChapterOutline(
        number=2, title="Fog Bell", summary="Mara follows the ledger to the customs house.",
        key_event="The ledger changes hands", act=1, location="Port Sallow",
    )


@pytest.fixture
def bible():
    return WorldBible.model_validate({
        "characters": [{"name": "Mara Quell", "role": "protagonist", "immutable_attributes": {"eyes": "grey"}}],
        "plot_threads": [{"name": THREAD, "description": "who forged the manifest"}],
    })


class TestScenePlanner:
    def test_plan_chapter(self, entry, bible):
        client = FakeClient()
        plan = ScenePlanner(client).plan_chapter(
            entry, bible,
            previous_summary="Mara lost the sextant.",
            pattern_guidance="ANTI-REPETITION TRACKER",
            pacing_directive="Raise the stakes.",
        )
        assert [s.scene_num for s in plan.scenes] == [1, 2, 3]
        assert plan.total_word_target == 1800
        prompt = client.calls_for("plan")[0].prompt
        assert prompt.startswith("## Chapter 2: Fog Bell")
        assert "Mara lost the sextant." in prompt
        assert "## Pacing directive (follow this)\nRaise the stakes." in prompt
        assert "eyes: grey" in prompt

    def test_scenes_are_renumbered_in_order(self, entry, bible):
        client = FakeClient()
        client.script("plan", json.dumps({"escenas": [
            {"numero_escena": 3, "beat": "Mara escapes"},
            {"numero_escena": 1, "beat": "Mara waits"},
            {"numero_escena": 2, "beat": "Silas arrives"},
        ]}))
        plan = ScenePlanner(client).plan_chapter(entry, bible)
        assert [s.plot_beat for s in plan.scenes] == ["Mara waits", "Silas arrives", "Mara escapes"]
        assert [s.scene_num for s in plan.scenes] == [1, 2, 3]

    def test_unusual_scene_count_warns(self, entry, bible, warnings):
        client = FakeClient()
        client.script("plan", plan_json(scenes=2))
        plan = ScenePlanner(client).plan_chapter(entry, bible)
        assert len(plan.scenes) == 2
        assert any("returned 2 scenes" in m for m in warnings)

    def test_first_chapter_prompt(self, entry, bible):
        client = FakeClient()
        ScenePlanner(client).plan_chapter(entry, bible)
        assert "This is the opening of the book." in client.calls_for("plan")[0].prompt


class TestSceneWriter:
    def scene(self, num=1):
        return ScenePlan(scene_num=num, plot_beat="Mara searches the archive", word_target=600)

    def test_write_scene(self, entry, bible, warnings):
        client = FakeClient()
        text = SceneWriter(client, min_scene_words=50).write_scene(
            self.scene(), entry, bible, total_scenes=3, previous_tail="The bell rang.",
        )
        assert text.startswith("Chapter 2 scene 1 begins on")
        prompt = client.calls_for("write")[0].prompt
        assert "## Previous scene ended with\nThe bell rang." in prompt
        assert "final scene" not in prompt
        assert warnings == []

    def test_final_scene_is_flagged(self, entry, bible):
        client = FakeClient()
        SceneWriter(client, min_scene_words=50).write_scene(self.scene(3), entry, bible, total_scenes=3)
        assert "This is the final scene of the chapter" in client.calls_for("write")[0].prompt

    def test_fences_are_stripped(self, entry, bible):
        client = FakeClient()
        client.script("write", "```markdown\nThe fog lifted.\n```")
        text = SceneWriter(client, min_scene_words=0).write_scene(self.scene(), entry, bible, 3)
        assert text == "The fog lifted."

    @pytest.mark.parametrize("reply", ["She reached for the", "Too short."])
    def test_suspected_truncation_warns(self, entry, bible, warnings, reply):
        client = FakeClient()
        client.script("write", reply)
        text = SceneWriter(client, min_scene_words=50).write_scene(self.scene(), entry, bible, 3)
        assert text == reply
        assert any("may be truncated" in m for m in warnings)


class TestConsistencyAuditor:
    def test_clean_chapter(self, entry, bible):
        result = ConsistencyAuditor(FakeClient()).audit("Chapter text.", entry, bible)
        assert result.verdict == AuditVerdict.APPROVED
        assert result.issues == []

    def test_issues_without_verdict_require_correction(self, entry, bible):
        client = FakeClient()
        client.script("audit", json.dumps({"issues": [
            {"type": "contradiction", "severity": "critical",
             "description": "Mara's eyes are described as blue", "location": "her blue eyes",
             "correction": "her grey eyes"},
            {"type": "pacing", "severity": "trivial", "description": "slow middle"},
        ]}))
        result = ConsistencyAuditor(client).audit("Chapter text.", entry, bible, prior_context="Earlier.")
        assert result.verdict == AuditVerdict.REQUIRES_CORRECTION
        assert result.issues[1].type == IssueType.CONTRADICTION
        assert result.issues[1].severity == Severity.MINOR
        assert [i.description for i in result.blocking_issues()] == ["Mara's eyes are described as blue"]
        assert "## Previous chapters\nEarlier." in client.calls_for("audit")[0].prompt


class TestSummarizer:
    def test_prefix_is_stripped(self, entry):
        summary = Summarizer(FakeClient()).summarize("Chapter text.", entry)
        assert summary == f"In Chapter 2, Mara found a clue about {THREAD} and hid the sextant."

    def test_summary_is_bounded(self, entry):
        client = FakeClient()
        client.script("summarize", "Resumen: " + "word " * 300)
        summary = Summarizer(client).summarize("Chapter text.", entry, max_words=50)
        assert len(summary.split()) == 50
        assert not summary.lower().startswith("resumen")


class TestPacingDirector:
    def test_review(self, warnings):
        client = FakeClient()
        client.script("pacing", json.dumps({
            "evaluacion_ritmo": "dragging", "hilos_olvidados": [THREAD],
            "tension": "4/10", "directiva": "Bring Silas on stage.",
        }))
        threads = [PlotThread(name=THREAD, goal="expose Vane", last_updated_chapter=1)]
        report = PacingDirector(client).review([("Chapter 4", "Mara hid.")], threads, 0.4)
        assert report.directive == "Bring Silas on stage."
        assert report.tension_level == 4
        assert report.forgotten_threads == [THREAD]
        prompt = client.calls_for("pacing")[0].prompt
        assert "40% of the book is written" in prompt
        assert f"- {THREAD} [active, last touched in chapter 1]: expose Vane" in prompt
        assert any("forgotten threads" in m for m in warnings)


class TestOutlineContext:
    @pytest.fixture
    def outline(self):
        return [ChapterOutline(number=n, title=f"Tide {n}", key_event=f"event {n}") for n in range(1, 7)]

    def test_windows(self, outline):
        text = build_outline_context(outline, current=3, completed={1, 2}, lookahead=2)
        assert "Already written:\n- Chapter 1: Tide 1." in text
        assert "NOW WRITING Chapter 3: Tide 3" in text
        assert "- Chapter 5: Tide 5. Key event: event 5" in text
        assert "Chapter 6" not in text

    def test_unknown_chapter(self, outline):
        assert build_outline_context(outline, current=42, completed=set()) == ""


def test_agent_logs_and_usage(entry):
    usages = []
    summarizer = Summarizer(FakeClient())
    summarizer.on_usage = usages.append
    summarizer.summarize("Chapter text.", entry)
    assert summarizer.logs[0].agent_name == "Summarizer"
    assert summarizer.logs[0].action == "summarize"
    assert usages[0].output == 20
