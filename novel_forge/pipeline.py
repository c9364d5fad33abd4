"""Pipeline orchestrator: drive one project through its stages, chapter by chapter."""

import threading
from typing import Callable, TypeVar

from loguru import logger

from .agents import (
    ConsistencyAuditor,
    OutlineArchitect,
    PacingDirector,
    ScenePlanner,
    SceneWriter,
    StyleEditor,
    Summarizer,
    build_outline_context,
)
from .config import Config
from .events import EventKind, ProgressCallback, ProgressEvent, _noop_progress
from .exceptions import (
    InvalidTransition,
    ModelCallError,
    PipelineStopped,
    StageFailure,
    StructuredOutputError,
)
from .llm import ModelClient, TokenUsage, build_client
from .models import (
    AuditVerdict,
    Chapter,
    ChapterOutline,
    ChapterStatus,
    EditorResult,
    EditorVerdict,
    OutlineResult,
    PacingReport,
    PlotThread,
    Project,
    ProjectStatus,
    WorldBible,
    chapter_label,
    is_regular,
    outline_sort_key,
)
from .models.project import RESUMABLE
from .normalize import fold
from .patcher import apply_patches
from .recovery import StructuredOutputParser
from .storage import ProjectStore
from .tracking import PatternTracker, VocabularyTracker
from .utils.text import count_words, tail_text

T = TypeVar("T")

PACING_LOOKBACK = 5


class Pipeline:
    """Orchestrates the stage agents for a single project at a time.

    Chapters and scenes run strictly in order. Every stage result is saved
    before the next stage starts, so ``resume`` can pick up from whatever
    was last committed without repeating work.
    """

    def __init__(
        self,
        config: Config,
        store: ProjectStore,
        client: ModelClient | None = None,
        writer_client: ModelClient | None = None,
        progress: ProgressCallback = _noop_progress,
    ):
        self.config = config
        self.store = store
        self.progress = progress
        pc = config.pipeline

        client = client or build_client(config.llm)
        if writer_client is None:
            writer_client = build_client(config.writer_llm) if config.writer_llm else client
        parser = StructuredOutputParser(max_attempts=pc.repair_max_attempts)

        self.outline_architect = OutlineArchitect(client, parser, pc.completion_min_ratio)
        self.scene_planner = ScenePlanner(client, parser)
        self.scene_writer = SceneWriter(writer_client, parser, pc.min_scene_words)
        self.auditor = ConsistencyAuditor(client, parser)
        self.editor = StyleEditor(client, parser, pc.approve_threshold, pc.rewrite_threshold)
        self.summarizer = Summarizer(client, parser)
        self.pacing_director = PacingDirector(client, parser)
        for agent in self.all_agents:
            agent.on_usage = self._record_usage

        self.project: Project | None = None
        self.outline: OutlineResult | None = None
        self.bible: WorldBible = WorldBible()
        self.threads: list[PlotThread] = []
        self.chapters: dict[int, Chapter] = {}
        self.patterns = PatternTracker()
        self.vocabulary = VocabularyTracker(window=pc.vocabulary_window)
        self.log = logger

        self._stop = threading.Event()
        self._stop_status: ProjectStatus | None = None

    @property
    def all_agents(self) -> list:
        return [
            self.outline_architect,
            self.scene_planner,
            self.scene_writer,
            self.auditor,
            self.editor,
            self.summarizer,
            self.pacing_director,
        ]

    @property
    def all_logs(self) -> list:
        logs = []
        for agent in self.all_agents:
            logs.extend(agent.logs)
        return logs

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    def start_generation(self, project_id: str) -> Project:
        project = self.store.load_project(project_id)
        if project.status != ProjectStatus.IDLE:
            raise InvalidTransition(
                f"Cannot start {project_id}: status is {project.status.value}, expected idle"
            )
        return self._run(project)

    def resume(self, project_id: str) -> Project:
        project = self.store.load_project(project_id)
        if project.status not in RESUMABLE:
            raise InvalidTransition(
                f"Cannot resume {project_id} from status {project.status.value}"
            )
        project.error_reason = None
        return self._run(project)

    def pause(self, project_id: str, force: bool = False) -> Project:
        return self._stop_project(project_id, ProjectStatus.PAUSED, force)

    def cancel(self, project_id: str, force: bool = False) -> Project:
        return self._stop_project(project_id, ProjectStatus.CANCELLED, force)

    def archive(self, project_id: str) -> Project:
        project = self.store.load_project(project_id)
        if project.status != ProjectStatus.COMPLETED:
            raise InvalidTransition(f"Only completed projects can be archived ({project.status.value})")
        project.status = ProjectStatus.ARCHIVED
        self.store.save_project(project)
        logger.info(f"Archived {project_id}")
        return project

    def _stop_project(self, project_id: str, status: ProjectStatus, force: bool) -> Project:
        """Stop a project.

        A generating project is asked to stop at the next stage boundary; the
        running orchestrator records the new status. ``force`` rewrites the
        status directly, for runs whose process is gone.
        """
        project = self.store.load_project(project_id)
        if project.status == ProjectStatus.GENERATING and not force:
            self.store.request_stop(project_id, status)
            if self.project is not None and self.project.id == project_id:
                self._stop_status = status
                self._stop.set()
            return project

        if status == ProjectStatus.CANCELLED:
            allowed = {ProjectStatus.IDLE, ProjectStatus.PAUSED, ProjectStatus.ERROR}
        else:
            allowed = set()
        if force:
            allowed.add(ProjectStatus.GENERATING)
        if project.status not in allowed:
            raise InvalidTransition(
                f"Cannot move {project_id} from {project.status.value} to {status.value}"
            )
        project.status = status
        self.store.save_project(project)
        self.store.clear_stop(project_id)
        logger.info(f"{project_id} marked {status.value}")
        return project

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def _run(self, project: Project) -> Project:
        self.project = project
        self.log = logger.bind(project=project.id)
        self._stop.clear()
        self._stop_status = None
        self.store.clear_stop(project.id)

        project.status = ProjectStatus.GENERATING
        self.store.save_project(project)
        self.log.info(f"Generating '{project.title or project.id}'")

        try:
            outline = self._ensure_outline()
            self._load_state()
            for entry in sorted(outline.outline, key=lambda e: outline_sort_key(e.number)):
                chapter = self.chapters.get(entry.number) or Chapter(number=entry.number, title=entry.title)
                if chapter.is_final:
                    continue
                self._maybe_pacing_review()
                self._generate_chapter(chapter, entry)
        except PipelineStopped as e:
            project.status = ProjectStatus(e.status)
            self.store.save_project(project)
            self.store.clear_stop(project.id)
            self.log.info(f"Generation {e.status}; committed chapters are kept")
            return project
        except StageFailure as e:
            project.status = ProjectStatus.ERROR
            project.error_reason = str(e)
            self.store.save_project(project)
            self.log.error(f"Generation stopped with an error: {e}")
            self._emit(EventKind.ERROR, stage=e.stage, chapter=e.chapter, message=str(e))
            return project
        except Exception as e:
            project.status = ProjectStatus.ERROR
            project.error_reason = f"unexpected {type(e).__name__}: {e}"
            self.store.save_project(project)
            self.log.exception("Generation aborted by an unexpected error")
            self._emit(EventKind.ERROR, message=project.error_reason)
            return project

        project.status = ProjectStatus.COMPLETED
        self.store.save_project(project)
        total_words = sum(c.word_count for c in self.chapters.values())
        self.log.success(
            f"Completed {len(self.chapters)} chapters, {total_words} words, "
            f"{project.tokens.total} tokens"
        )
        self._emit(EventKind.PROJECT_COMPLETED, word_count=total_words)
        return project

    def _ensure_outline(self) -> OutlineResult:
        pid = self.project.id
        outline = self.store.load_outline(pid)
        if outline is None:
            outline = self._run_stage(
                "outline", None, lambda: self.outline_architect.generate(self.project)
            )
            self.store.save_world_bible(pid, outline.world_bible)
            self.store.save_threads(pid, outline.world_bible.plot_threads)
            self.store.save_outline(pid, outline)
            self.store.save_project(self.project)
            if outline.warnings:
                self._emit(
                    EventKind.STAGE_COMPLETED, stage="outline",
                    message="Outline warnings: " + "; ".join(outline.warnings),
                )
        self.outline = outline
        self.bible = self.store.load_world_bible(pid) or outline.world_bible
        self.threads = self.store.load_threads(pid)
        return outline

    def _load_state(self) -> None:
        """Load committed chapters and rebuild the project-scoped trackers."""
        pid = self.project.id
        self.chapters = {c.number: c for c in self.store.load_chapters(pid)}
        self.patterns = PatternTracker(pid)
        self.vocabulary = VocabularyTracker(pid, window=self.config.pipeline.vocabulary_window)

        finals = [c for c in self._ordered_chapters() if c.is_final]
        for c in finals:
            if c.plan is not None:
                self.patterns.register_plan(c.number, c.title, c.plan)
        from_summaries = [(c.number, c.title, c.summary) for c in finals if c.plan is None and c.summary]
        if from_summaries:
            self.patterns.load_from_summaries(from_summaries)
        for c in finals[-self.config.pipeline.vocabulary_window:]:
            self.vocabulary.record_chapter(c.number, c.text)
        if finals:
            self.log.info(f"Resuming after {len(finals)} committed chapter(s)")

    def _generate_chapter(self, chapter: Chapter, entry: ChapterOutline) -> None:
        steps = {
            "plan": self._plan,
            "write": self.advance_chapter,
            "audit": self._audit,
            "edit": self._edit,
            "summarize": self._summarize,
            "finalize": self._finalize,
        }
        step = chapter.next_step()
        if step != "plan":
            self.log.info(f"{entry.label}: continuing at '{step}'")
        while step != "done":
            steps[step](chapter, entry)
            step = chapter.next_step()

    # ------------------------------------------------------------------
    # Chapter stages
    # ------------------------------------------------------------------
    def _plan(self, chapter: Chapter, entry: ChapterOutline) -> None:
        n = chapter.number
        chapter.status = ChapterStatus.PLANNING
        analysis = self.patterns.analyze_for_chapter(n)
        completed = {c.number for c in self.chapters.values() if c.is_final}
        plan = self._run_stage(
            "plan", n,
            lambda: self.scene_planner.plan_chapter(
                entry,
                self.bible,
                previous_summary=self._previous_summary(n),
                outline_context=build_outline_context(self._outline_entries(), n, completed),
                constraints=self.bible.consistency_constraints(),
                pattern_guidance=self.patterns.format_for_prompt(analysis),
                pacing_directive=self.project.pacing_directive,
                style_guide=self.project.style_guide,
            ),
        )
        chapter.plan = plan
        chapter.title = chapter.title or entry.title
        chapter.status = ChapterStatus.WRITING
        self._save_chapter(chapter)

    def advance_chapter(self, chapter: Chapter, entry: ChapterOutline) -> None:
        """Write the chapter's remaining scenes, strictly in plan order.

        Each scene sees the tail of the scene before it and the rolling
        summary of earlier chapters; scene k+1 is only prompted after scene k
        has been saved.
        """
        if chapter.plan is None:
            raise ValueError(f"{entry.label} has no scene plan")
        n = chapter.number
        pc = self.config.pipeline
        scenes = chapter.plan.scenes
        rolling = self._rolling_summary(n)
        constraints = self.bible.consistency_constraints()

        chapter.status = ChapterStatus.WRITING
        for scene in scenes[len(chapter.scenes):]:
            previous_tail = self._scene_tail(chapter, pc.scene_tail_chars)
            guidance = self.vocabulary.anti_repetition_prompt("\n\n".join(chapter.scenes))
            text = self._run_stage(
                "write", n,
                lambda: self.scene_writer.write_scene(
                    scene, entry, self.bible, len(scenes),
                    previous_tail=previous_tail,
                    rolling_summary=rolling,
                    constraints=constraints,
                    vocabulary_guidance=guidance,
                    pacing_directive=self.project.pacing_directive,
                    style_guide=self.project.style_guide,
                ),
                scene=scene.scene_num,
            )
            chapter.scenes.append(text)
            self._save_chapter(chapter)
            self._emit(
                EventKind.SCENE_COMPLETED, stage="write", chapter=n,
                scene=scene.scene_num, word_count=count_words(text),
            )

    def _audit(self, chapter: Chapter, entry: ChapterOutline) -> None:
        n = chapter.number
        text = chapter.text
        constraints = self.bible.consistency_constraints()
        audit = self._run_stage(
            "audit", n,
            lambda: self.auditor.audit(
                text, entry, self.bible,
                prior_context=self._rolling_summary(n),
                constraints=constraints,
                plan=chapter.plan,
            ),
        )
        blocking = audit.blocking_issues()
        if audit.verdict == AuditVerdict.REQUIRES_CORRECTION and blocking:
            self.log.warning(f"{entry.label}: {len(blocking)} blocking continuity issue(s)")
            patches = self._run_stage(
                "surgical_fix", n,
                lambda: self.editor.surgical_fix(text, blocking, constraints),
            )
            result = apply_patches(text, patches, self.config.pipeline.min_patch_chars)
            audit.corrections_applied = len(result.applied)
            text = result.text

        chapter.content = text
        chapter.audit = audit
        chapter.status = ChapterStatus.EDITING
        self._save_chapter(chapter)

    def _edit(self, chapter: Chapter, entry: ChapterOutline) -> None:
        n = chapter.number
        chapter.status = ChapterStatus.EDITING
        result = self._run_stage("edit", n, lambda: self._evaluate(chapter.text, chapter))
        self.apply_editor_verdict(chapter, result, entry)
        self._save_chapter(chapter)

    def apply_editor_verdict(
        self, chapter: Chapter, result: EditorResult, entry: ChapterOutline
    ) -> EditorVerdict:
        """Route an editor result to approval, patching or a rewrite.

        Patching and rewriting each get one re-evaluation; whatever that
        re-evaluation says is final for the chapter.
        """
        n = chapter.number
        pc = self.config.pipeline
        text = chapter.text
        verdict = self.editor.verdict_for(result)

        if verdict == EditorVerdict.PATCH:
            patched = apply_patches(text, result.patches, pc.min_patch_chars)
            if patched.changed:
                text = patched.text
                result = self._run_stage("edit", n, lambda: self._evaluate(text, chapter))
                verdict = self.editor.verdict_for(result)
            else:
                self.log.info(f"{entry.label}: no editor patch applied; keeping scores")

        elif verdict == EditorVerdict.REWRITE:
            chapter.status = ChapterStatus.REVISION
            problems = self._problems_for_rewrite(chapter, result)
            rewritten = self._run_stage(
                "rewrite", n,
                lambda: self.editor.full_rewrite(
                    text, entry, self.bible, problems,
                    previous_summary=self._previous_summary(n),
                    next_summary=self._next_outline_summary(n),
                    constraints=self.bible.consistency_constraints(),
                    style_guide=self.project.style_guide,
                ),
            )
            if rewritten is not None:
                text = rewritten
                chapter.revisions += 1
                chapter.status = ChapterStatus.EDITING
                result = self._run_stage("edit", n, lambda: self._evaluate(text, chapter))
                verdict = self.editor.verdict_for(result)

        chapter.content = text
        chapter.editor = result
        chapter.verdict = verdict
        chapter.status = ChapterStatus.EDITING
        self.log.info(
            f"{entry.label}: editor verdict {verdict.value} "
            f"(logic {result.logic_score:g}, style {result.style_score:g})"
        )
        return verdict

    def _evaluate(self, text: str, chapter: Chapter) -> EditorResult:
        return self.editor.evaluate(
            text, chapter.plan, self.bible,
            extra_context=self.vocabulary.anti_repetition_prompt(text),
        )

    def _problems_for_rewrite(self, chapter: Chapter, result: EditorResult) -> str:
        problems = [result.feedback] if result.feedback else []
        if chapter.audit is not None:
            problems.extend(
                f"{i.type.value}: {i.description}" for i in chapter.audit.issues
            )
        return "\n".join(f"- {p}" for p in problems) or "- General quality below standard"

    def _summarize(self, chapter: Chapter, entry: ChapterOutline) -> None:
        summary = self._run_stage(
            "summarize", chapter.number,
            lambda: self.summarizer.summarize(
                chapter.text, entry, self.config.pipeline.summary_max_words
            ),
        )
        chapter.summary = summary
        chapter.status = ChapterStatus.SUMMARIZED
        self._save_chapter(chapter)

    def _finalize(self, chapter: Chapter, entry: ChapterOutline) -> None:
        self._check_stop()
        approved = chapter.verdict == EditorVerdict.APPROVE
        chapter.status = ChapterStatus.APPROVED if approved else ChapterStatus.COMPLETED
        self._save_chapter(chapter)
        self.store.save_project(self.project)

        self.vocabulary.record_chapter(chapter.number, chapter.text)
        if chapter.plan is not None:
            self.patterns.register_plan(chapter.number, chapter.title, chapter.plan)
        self.log.success(
            f"{entry.label} {chapter.status.value}: {chapter.word_count} words, "
            f"quality {chapter.quality_score}"
        )
        self._emit(
            EventKind.CHAPTER_COMPLETED, chapter=chapter.number,
            word_count=chapter.word_count, message=chapter.status.value,
        )

    # ------------------------------------------------------------------
    # Pacing review
    # ------------------------------------------------------------------
    def _maybe_pacing_review(self) -> PacingReport | None:
        completed = [
            c for c in self._ordered_chapters() if c.is_final and is_regular(c.number)
        ]
        count = len(completed)
        interval = self.config.pipeline.pacing_interval
        if count == 0 or count % interval or count <= self.project.last_pacing_review:
            return None
        return self.pacing_review(completed)

    def pacing_review(self, completed: list[Chapter]) -> PacingReport:
        recent = [(chapter_label(c.number), c.summary or "") for c in completed[-PACING_LOOKBACK:]]
        fraction = len(completed) / self.project.chapter_count
        report = self._run_stage(
            "pacing_review", None,
            lambda: self.pacing_director.review(recent, self.threads, fraction),
        )
        last = completed[-1].number
        by_name = {fold(t.name): t for t in self.threads}
        for update in report.thread_updates:
            thread = by_name.get(fold(update.name))
            if thread is None:
                self.log.warning(f"Pacing update for unknown thread '{update.name}' ignored")
                continue
            thread.status = update.status
            thread.last_updated_chapter = last

        self.project.pacing_directive = report.directive
        self.project.last_pacing_review = len(completed)
        self.store.save_threads(self.project.id, self.threads)
        self.store.save_project(self.project)
        self.log.info(f"Pacing review (tension {report.tension_level:g}): {report.directive}")
        self._emit(
            EventKind.PACING_REVIEW_COMPLETED, stage="pacing_review",
            chapter=last, message=report.directive,
        )
        return report

    # ------------------------------------------------------------------
    # Context helpers
    # ------------------------------------------------------------------
    def _outline_entries(self) -> list[ChapterOutline]:
        return sorted(self.outline.outline, key=lambda e: outline_sort_key(e.number))

    def _ordered_chapters(self) -> list[Chapter]:
        return sorted(self.chapters.values(), key=lambda c: outline_sort_key(c.number))

    def _prior_summaries(self, number: int) -> list[Chapter]:
        position = outline_sort_key(number)
        return [
            c for c in self._ordered_chapters()
            if outline_sort_key(c.number) < position and c.summary
        ]

    def _previous_summary(self, number: int) -> str:
        prior = self._prior_summaries(number)
        return prior[-1].summary if prior else ""

    def _rolling_summary(self, number: int) -> str:
        prior = self._prior_summaries(number)
        window = self.config.pipeline.rolling_summary_window
        if window:
            prior = prior[-window:]
        return "\n".join(f"{chapter_label(c.number)}: {c.summary}" for c in prior)

    def _next_outline_summary(self, number: int) -> str:
        entries = self._outline_entries()
        numbers = [e.number for e in entries]
        if number not in numbers:
            return ""
        idx = numbers.index(number)
        return entries[idx + 1].summary if idx + 1 < len(entries) else ""

    def _scene_tail(self, chapter: Chapter, max_chars: int) -> str:
        if chapter.scenes:
            return tail_text(chapter.scenes[-1], max_chars)
        position = outline_sort_key(chapter.number)
        earlier = [
            c for c in self._ordered_chapters()
            if outline_sort_key(c.number) < position and c.is_final
        ]
        return tail_text(earlier[-1].text, max_chars) if earlier else ""

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------
    def _run_stage(
        self,
        stage: str,
        chapter: int | None,
        fn: Callable[[], T],
        scene: int | None = None,
    ) -> T:
        """Run one model-backed stage with the retry budget.

        The stop flag is checked before the call and again before its result
        is handed back, so a stop requested mid-call discards the result.
        """
        self._check_stop()
        self._emit(EventKind.STAGE_STARTED, stage=stage, chapter=chapter, scene=scene)
        attempts = self.config.pipeline.max_stage_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = fn()
                break
            except (ModelCallError, StructuredOutputError) as e:
                if attempt == attempts:
                    raise StageFailure(stage, chapter, e) from e
                self.log.warning(f"{stage} failed (attempt {attempt}/{attempts}): {e}; retrying")
        self._check_stop()
        self._emit(EventKind.STAGE_COMPLETED, stage=stage, chapter=chapter, scene=scene)
        return result

    def _check_stop(self) -> None:
        status = self.store.stop_requested(self.project.id)
        if status is None and self._stop.is_set():
            status = self._stop_status
        if status is not None:
            raise PipelineStopped(status.value)

    def _save_chapter(self, chapter: Chapter) -> None:
        self.store.save_chapter(self.project.id, chapter)
        self.chapters[chapter.number] = chapter

    def _record_usage(self, usage: TokenUsage) -> None:
        if self.project is not None:
            self.project.tokens.add(usage)

    def _emit(self, kind: EventKind, **fields) -> None:
        self.progress(ProgressEvent(kind=kind, project_id=self.project.id, **fields))
