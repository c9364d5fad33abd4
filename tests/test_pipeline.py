import json

import pytest

from novel_forge.events import EventKind
from novel_forge.exceptions import InvalidTransition, ModelCallError, StructuredOutputError
from novel_forge.models import ChapterStatus, EditorVerdict, ProjectStatus, ThreadStatus
from novel_forge.pipeline import Pipeline

from conftest import THREAD, FakeClient, editor_json, outline_json


def kinds(events, kind):
    return [e for e in events if e.kind == kind]


def chapter_prompts(client, role, label):
    return [c for c in client.calls_for(role) if f"## {label}:" in c.prompt]


@pytest.fixture
def long_project(store):
    return store.create_project(
        id="tides", title="Tides", premise="A harbour pilot uncovers a forged ledger.",
        chapter_count=12, has_prologue=True, has_epilogue=True,
    )


class TestFullRun:
    def test_twelve_chapters_with_prologue_and_epilogue(self, pipeline, store, fake_client, events, long_project):
        project = pipeline.start_generation("tides")

        assert project.status == ProjectStatus.COMPLETED
        chapters = store.load_chapters("tides")
        assert [c.number for c in chapters] == [0, *range(1, 13), 998]
        assert all(c.status in (ChapterStatus.COMPLETED, ChapterStatus.APPROVED) for c in chapters)
        assert all(c.summary and len(c.scenes) == 3 for c in chapters)
        assert store.load_project("tides").status == ProjectStatus.COMPLETED

        assert len(fake_client.calls_for("outline")) == 1
        assert len(fake_client.calls_for("plan")) == 14
        assert len(fake_client.calls_for("write")) == 42
        assert len(fake_client.calls_for("pacing")) == 2
        assert len(kinds(events, EventKind.CHAPTER_COMPLETED)) == 14
        assert events[-1].kind == EventKind.PROJECT_COMPLETED

    def test_scenes_follow_each_other(self, pipeline, fake_client, project):
        pipeline.start_generation("harbour")
        writes = chapter_prompts(fake_client, "write", "Chapter 1")
        assert [c.prompt.split("\n", 1)[0] for c in writes] == [
            f"## Chapter 1: Tide 1, scene {n} of 3" for n in (1, 2, 3)
        ]
        assert "## Previous scene ended with" not in writes[0].prompt
        assert "Chapter 1 scene 1 ends with the ledger still hidden." in writes[1].prompt

        next_chapter = chapter_prompts(fake_client, "write", "Chapter 2")[0].prompt
        assert "Chapter 1 scene 3 ends with the ledger still hidden." in next_chapter
        assert "Chapter 1: In Chapter 1, Mara found a clue" in next_chapter

    def test_outline_is_persisted_before_chapters(self, pipeline, store, project):
        pipeline.start_generation("harbour")
        outline = store.load_outline("harbour")
        assert [c.number for c in outline.outline] == [1, 2, 3]
        assert store.load_world_bible("harbour").protagonist().name == "Mara Quell"
        assert [t.name for t in store.load_threads("harbour")] == [THREAD]

    def test_token_counters(self, pipeline, store, fake_client, project):
        pipeline.start_generation("harbour")
        tokens = store.load_project("harbour").tokens
        calls = len(fake_client.calls)
        assert (tokens.input, tokens.output, tokens.thinking) == (10 * calls, 20 * calls, calls)
        assert tokens.total == 31 * calls
        assert len(pipeline.all_logs) == calls


class TestResume:
    def test_resume_at_summarize_step(self, pipeline, store, config):
        store.create_project(id="tides", premise="A forged ledger.", chapter_count=12)
        pipeline.start_generation("tides")

        chapter = store.load_chapter("tides", 7)
        chapter.summary = None
        chapter.status = ChapterStatus.EDITING
        store.save_chapter("tides", chapter)
        for n in range(8, 13):
            store.chapter_path("tides", n).unlink()
        project = store.load_project("tides")
        project.status = ProjectStatus.PAUSED
        project.last_pacing_review = 5
        store.save_project(project)

        client = FakeClient()
        project = Pipeline(config, store, client=client).resume("tides")

        assert project.status == ProjectStatus.COMPLETED
        assert client.calls[0].role == "summarize"
        assert client.calls[0].prompt.startswith("## Chapter 7: Tide 7")
        assert chapter_prompts(client, "write", "Chapter 7") == []
        assert chapter_prompts(client, "plan", "Chapter 7") == []
        assert client.calls_for("outline") == []
        assert len(client.calls_for("plan")) == 5
        assert len(client.calls_for("pacing")) == 1
        assert [c.number for c in store.load_chapters("tides")] == list(range(1, 13))

    def test_resume_mid_chapter_writes_remaining_scenes(self, pipeline, store, config, project):
        pipeline.start_generation("harbour")
        chapter = store.load_chapter("harbour", 3)
        chapter.scenes = chapter.scenes[:1]
        chapter.content = ""
        chapter.audit = chapter.editor = chapter.verdict = chapter.summary = None
        chapter.status = ChapterStatus.WRITING
        store.save_chapter("harbour", chapter)
        project = store.load_project("harbour")
        project.status = ProjectStatus.ERROR
        store.save_project(project)

        client = FakeClient()
        Pipeline(config, store, client=client).resume("harbour")
        writes = client.calls_for("write")
        assert [c.prompt.split("\n", 1)[0] for c in writes] == [
            "## Chapter 3: Tide 3, scene 2 of 3", "## Chapter 3: Tide 3, scene 3 of 3",
        ]
        assert client.calls_for("plan") == []

    def test_cancel_mid_run_then_resume(self, pipeline, store, fake_client, project):
        def cancel_during_call(system, prompt):
            pipeline.cancel("harbour")
            return fake_client.default_reply("summarize", prompt)

        fake_client.script(
            "summarize",
            lambda s, p: fake_client.default_reply("summarize", p),
            cancel_during_call,
        )
        project = pipeline.start_generation("harbour")

        assert project.status == ProjectStatus.CANCELLED
        assert store.load_project("harbour").status == ProjectStatus.CANCELLED
        assert store.stop_requested("harbour") is None
        assert store.load_chapter("harbour", 1).is_final
        second = store.load_chapter("harbour", 2)
        assert second.summary is None
        assert second.next_step() == "summarize"
        assert store.load_chapter("harbour", 3) is None

        calls_before = len(fake_client.calls)
        project = pipeline.resume("harbour")
        resumed = fake_client.calls[calls_before:]
        assert project.status == ProjectStatus.COMPLETED
        assert resumed[0].role == "summarize"
        assert resumed[0].prompt.startswith("## Chapter 2:")
        assert not any(c.role == "write" and c.prompt.startswith("## Chapter 2:") for c in resumed)

    def test_pause_from_another_process(self, pipeline, store, fake_client, project):
        def pause_via_store(system, prompt):
            store.request_stop("harbour", ProjectStatus.PAUSED)
            return fake_client.default_reply("plan", prompt)

        fake_client.script("plan", pause_via_store)
        project = pipeline.start_generation("harbour")
        assert project.status == ProjectStatus.PAUSED
        assert store.load_chapter("harbour", 1) is None
        assert fake_client.calls_for("write") == []


class TestFailures:
    def test_stage_failure_sets_error(self, pipeline, store, fake_client, events, project):
        fake_client.script("write", ModelCallError("timeout"), ModelCallError("timeout"))
        project = pipeline.start_generation("harbour")

        assert project.status == ProjectStatus.ERROR
        assert project.error_reason == "write failed for chapter 1: timeout"
        chapter = store.load_chapter("harbour", 1)
        assert chapter.plan is not None
        assert chapter.scenes == []
        assert not chapter.is_final
        errors = kinds(events, EventKind.ERROR)
        assert [(e.stage, e.chapter) for e in errors] == [("write", 1)]

    def test_one_retry_recovers(self, pipeline, fake_client, project):
        fake_client.script("write", ModelCallError("rate limited"))
        project = pipeline.start_generation("harbour")
        assert project.status == ProjectStatus.COMPLETED
        assert len(fake_client.calls_for("write")) == 10

    def test_resume_after_error(self, pipeline, store, fake_client, project):
        fake_client.script("outline", StructuredOutputError("garbled"), StructuredOutputError("garbled"))
        project = pipeline.start_generation("harbour")
        assert project.status == ProjectStatus.ERROR
        assert project.error_reason.startswith("outline failed")
        assert store.load_outline("harbour") is None

        project = pipeline.resume("harbour")
        assert project.status == ProjectStatus.COMPLETED
        assert project.error_reason is None

    def test_retries_are_configurable(self, config, store, fake_client, project):
        config.pipeline.max_stage_retries = 0
        pipeline = Pipeline(config, store, client=fake_client)
        fake_client.script("plan", ModelCallError("timeout"))
        assert pipeline.start_generation("harbour").status == ProjectStatus.ERROR
        assert len(fake_client.calls_for("plan")) == 1

    def test_unexpected_error_sets_error_status(self, pipeline, store, fake_client, events, project):
        fake_client.script("plan", RuntimeError("boom"))
        project = pipeline.start_generation("harbour")

        assert project.status == ProjectStatus.ERROR
        assert project.error_reason == "unexpected RuntimeError: boom"
        assert store.load_project("harbour").status == ProjectStatus.ERROR
        assert kinds(events, EventKind.ERROR)[-1].message == project.error_reason

        assert pipeline.resume("harbour").status == ProjectStatus.COMPLETED

    def test_unnamed_protagonist_does_not_break_outline(self, pipeline, store, fake_client, project):
        reply = json.loads(outline_json([1, 2, 3]))
        reply["world_bible"]["characters"][0]["name"] = ""
        fake_client.script("outline", json.dumps(reply))

        project = pipeline.start_generation("harbour")
        assert project.status == ProjectStatus.COMPLETED
        bible = store.load_world_bible("harbour")
        assert [c.name for c in bible.characters] == ["Silas Vane"]
        assert bible.protagonist() is None


class TestEditorRouting:
    def test_patch_then_approve(self, pipeline, store, fake_client, project):
        patch = {"original": "scene 1 begins on the wet stones", "replacement": "scene 1 begins on the slick stones"}
        fake_client.script("edit", editor_json(7, 8, [patch]))
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert "scene 1 begins on the slick stones" in chapter.content
        assert chapter.verdict == EditorVerdict.APPROVE
        assert chapter.status == ChapterStatus.APPROVED
        assert len(fake_client.calls_for("edit")) == 4

    def test_patch_that_does_not_apply(self, pipeline, store, fake_client, project):
        patch = {"original": "this sentence is nowhere in the chapter", "replacement": "x"}
        fake_client.script("edit", editor_json(7, 8, [patch]))
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert chapter.verdict == EditorVerdict.PATCH
        assert chapter.status == ChapterStatus.COMPLETED
        assert chapter.editor.logic_score == 7
        assert len(fake_client.calls_for("edit")) == 3

    def test_rewrite_then_approve(self, pipeline, store, fake_client, project):
        fake_client.script("edit", editor_json(3, 9))
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert chapter.revisions == 1
        assert "opens on" in chapter.content
        assert "begins on" not in chapter.content
        assert chapter.status == ChapterStatus.APPROVED
        assert len(fake_client.calls_for("rewrite")) == 1

    def test_rewrite_is_bounded(self, pipeline, store, fake_client, project):
        fake_client.script("edit", editor_json(3, 9), editor_json(4, 9))
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert chapter.revisions == 1
        assert chapter.verdict == EditorVerdict.REWRITE
        assert chapter.status == ChapterStatus.COMPLETED
        assert len(fake_client.calls_for("rewrite")) == 1

    def test_truncated_rewrite_keeps_original(self, pipeline, store, fake_client, project):
        fake_client.script("edit", editor_json(3, 9))
        fake_client.script("rewrite", "Too short.")
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert chapter.revisions == 0
        assert "begins on" in chapter.content
        assert chapter.verdict == EditorVerdict.REWRITE

    def test_blocking_audit_issues_are_patched(self, pipeline, store, fake_client, project):
        fake_client.script("audit", json.dumps({
            "issues": [{"type": "world_bible_violation", "severity": "critical",
                        "description": "Mara's scar moved to her right palm"}],
            "verdict": "requires_correction",
        }))
        fake_client.script("surgical", json.dumps({"patches": [{
            "original": "Chapter 1 scene 2 begins on the wet stones",
            "replacement": "Chapter 1 scene 2 begins on the dry stones",
        }]}))
        pipeline.start_generation("harbour")

        chapter = store.load_chapter("harbour", 1)
        assert chapter.audit.corrections_applied == 1
        assert "Chapter 1 scene 2 begins on the dry stones" in chapter.content
        assert len(fake_client.calls_for("surgical")) == 1

    def test_minor_audit_issues_skip_surgery(self, pipeline, fake_client, project):
        fake_client.script("audit", json.dumps({
            "issues": [{"type": "information_gap", "severity": "minor", "description": "unclear tide time"}],
        }))
        pipeline.start_generation("harbour")
        assert fake_client.calls_for("surgical") == []


class TestPacing:
    def test_review_directive_reaches_planner(self, config, store, fake_client, events, project):
        config.pipeline.pacing_interval = 2
        pipeline = Pipeline(config, store, client=fake_client, progress=events.append)
        pipeline.start_generation("harbour")

        saved = store.load_project("harbour")
        assert saved.pacing_directive == "Raise the stakes at the customs house."
        assert saved.last_pacing_review == 2
        assert len(fake_client.calls_for("pacing")) == 1
        pacing_prompt = fake_client.calls_for("pacing")[0].prompt
        assert "67% of the book is written" in pacing_prompt
        assert "- Chapter 2: In Chapter 2" in pacing_prompt

        plans = fake_client.calls_for("plan")
        assert "Raise the stakes" not in plans[1].prompt
        assert "## Pacing directive (follow this)\nRaise the stakes at the customs house." in plans[2].prompt

        thread = store.load_threads("harbour")[0]
        assert thread.last_updated_chapter == 2
        assert thread.status == ThreadStatus.ACTIVE
        reviews = kinds(events, EventKind.PACING_REVIEW_COMPLETED)
        assert [(e.chapter, e.message) for e in reviews] == [(2, saved.pacing_directive)]

    def test_thread_updates(self, config, store, fake_client, project):
        config.pipeline.pacing_interval = 2
        fake_client.script("pacing", json.dumps({
            "directive": "Close the ledger thread.",
            "thread_updates": [
                {"name": THREAD.lower(), "status": "resuelto"},
                {"name": "A thread nobody declared", "status": "ignored"},
            ],
        }))
        Pipeline(config, store, client=fake_client).start_generation("harbour")

        threads = store.load_threads("harbour")
        assert [(t.name, t.status) for t in threads] == [(THREAD, ThreadStatus.RESOLVED)]
        assert store.load_world_bible("harbour").plot_threads[0].status == ThreadStatus.ACTIVE


class TestTransitions:
    def test_start_requires_idle(self, pipeline, project):
        pipeline.start_generation("harbour")
        with pytest.raises(InvalidTransition):
            pipeline.start_generation("harbour")

    def test_resume_requires_stopped_project(self, pipeline, project):
        with pytest.raises(InvalidTransition):
            pipeline.resume("harbour")

    def test_pause_requires_generating(self, pipeline, project):
        with pytest.raises(InvalidTransition):
            pipeline.pause("harbour")

    def test_cancel_idle_project(self, pipeline, store, project):
        assert pipeline.cancel("harbour").status == ProjectStatus.CANCELLED
        assert store.load_project("harbour").status == ProjectStatus.CANCELLED

    def test_stop_request_while_generating(self, pipeline, store, project):
        project.status = ProjectStatus.GENERATING
        store.save_project(project)
        assert pipeline.pause("harbour").status == ProjectStatus.GENERATING
        assert store.stop_requested("harbour") == ProjectStatus.PAUSED

    def test_force_pause_stale_run(self, pipeline, store, project):
        project.status = ProjectStatus.GENERATING
        store.save_project(project)
        assert pipeline.pause("harbour", force=True).status == ProjectStatus.PAUSED
        assert store.stop_requested("harbour") is None

    def test_archive(self, pipeline, project):
        with pytest.raises(InvalidTransition):
            pipeline.archive("harbour")
        pipeline.start_generation("harbour")
        assert pipeline.archive("harbour").status == ProjectStatus.ARCHIVED
        with pytest.raises(InvalidTransition):
            pipeline.resume("harbour")
