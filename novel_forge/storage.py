"""File-backed project store.

Layout under the storage root::

    <project_id>/
        project.json
        world_bible.json
        outline.json
        threads.json
        stop.json          (present only while a pause/cancel is requested)
        chapters/0001.json

Every write goes to a temp file in the same directory, is fsynced, and is
moved into place with ``os.replace`` so a crash leaves either the old or the
new file, never a torn one.
"""

import json
import os
import tempfile
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, TypeAdapter

from .exceptions import ProjectNotFound
from .models import Chapter, OutlineResult, PlotThread, Project, ProjectStatus, WorldBible
from .models.outline import outline_sort_key
from .utils.text import slugify

_THREADS = TypeAdapter(list[PlotThread])


def atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class ProjectStore:
    def __init__(self, root: Path | str):
        self.root = Path(root)

    def project_dir(self, project_id: str) -> Path:
        return self.root / project_id

    def _file(self, project_id: str, name: str) -> Path:
        return self.project_dir(project_id) / name

    def _write_model(self, path: Path, model: BaseModel) -> None:
        atomic_write(path, model.model_dump_json(indent=2))

    def _require(self, project_id: str) -> Path:
        path = self._file(project_id, "project.json")
        if not path.exists():
            raise ProjectNotFound(f"No project '{project_id}' under {self.root}")
        return path

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------
    def create_project(self, project: Project | None = None, **fields) -> Project:
        """Persist a new project; the id is derived from the title when absent."""
        if project is None:
            if not fields.get("id"):
                fields["id"] = self._unique_id(slugify(fields.get("title") or fields.get("premise", "")[:40]))
            project = Project(**fields)
        if self._file(project.id, "project.json").exists():
            raise FileExistsError(f"Project '{project.id}' already exists")
        (self.project_dir(project.id) / "chapters").mkdir(parents=True, exist_ok=True)
        self.save_project(project)
        logger.info(f"Created project {project.id} ({project.chapter_count} chapters)")
        return project

    def _unique_id(self, base: str) -> str:
        candidate, n = base, 2
        while self.project_dir(candidate).exists():
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def load_project(self, project_id: str) -> Project:
        path = self._require(project_id)
        return Project.model_validate_json(path.read_text(encoding="utf-8"))

    def save_project(self, project: Project) -> None:
        project.touch()
        self._write_model(self._file(project.id, "project.json"), project)

    def list_projects(self) -> list[Project]:
        if not self.root.exists():
            return []
        projects = []
        for path in sorted(self.root.glob("*/project.json")):
            projects.append(Project.model_validate_json(path.read_text(encoding="utf-8")))
        return projects

    # ------------------------------------------------------------------
    # World Bible, outline, threads
    # ------------------------------------------------------------------
    def load_world_bible(self, project_id: str) -> WorldBible | None:
        self._require(project_id)
        path = self._file(project_id, "world_bible.json")
        if not path.exists():
            return None
        return WorldBible.model_validate_json(path.read_text(encoding="utf-8"))

    def save_world_bible(self, project_id: str, bible: WorldBible) -> None:
        self._write_model(self._file(project_id, "world_bible.json"), bible)

    def load_outline(self, project_id: str) -> OutlineResult | None:
        self._require(project_id)
        path = self._file(project_id, "outline.json")
        if not path.exists():
            return None
        return OutlineResult.model_validate_json(path.read_text(encoding="utf-8"))

    def save_outline(self, project_id: str, outline: OutlineResult) -> None:
        self._write_model(self._file(project_id, "outline.json"), outline)

    def load_threads(self, project_id: str) -> list[PlotThread]:
        self._require(project_id)
        path = self._file(project_id, "threads.json")
        if not path.exists():
            return []
        return _THREADS.validate_json(path.read_text(encoding="utf-8"))

    def save_threads(self, project_id: str, threads: list[PlotThread]) -> None:
        atomic_write(
            self._file(project_id, "threads.json"),
            _THREADS.dump_json(threads, indent=2).decode("utf-8"),
        )

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    def chapter_path(self, project_id: str, number: int) -> Path:
        return self.project_dir(project_id) / "chapters" / f"{number:04d}.json"

    def load_chapter(self, project_id: str, number: int) -> Chapter | None:
        path = self.chapter_path(project_id, number)
        if not path.exists():
            return None
        return Chapter.model_validate_json(path.read_text(encoding="utf-8"))

    def load_chapters(self, project_id: str) -> list[Chapter]:
        """All stored chapters in reading order."""
        self._require(project_id)
        chapters = [
            Chapter.model_validate_json(p.read_text(encoding="utf-8"))
            for p in (self.project_dir(project_id) / "chapters").glob("*.json")
        ]
        return sorted(chapters, key=lambda c: outline_sort_key(c.number))

    def save_chapter(self, project_id: str, chapter: Chapter) -> None:
        self._write_model(self.chapter_path(project_id, chapter.number), chapter)

    # ------------------------------------------------------------------
    # Cooperative stop flag
    # ------------------------------------------------------------------
    def request_stop(self, project_id: str, status: ProjectStatus) -> None:
        """Ask a running orchestrator (possibly in another process) to stop."""
        if status not in (ProjectStatus.PAUSED, ProjectStatus.CANCELLED):
            raise ValueError(f"Stop status must be paused or cancelled, got {status.value}")
        self._require(project_id)
        atomic_write(self._file(project_id, "stop.json"), json.dumps({"status": status.value}))
        logger.info(f"Stop requested for {project_id}: {status.value}")

    def stop_requested(self, project_id: str) -> ProjectStatus | None:
        path = self._file(project_id, "stop.json")
        if not path.exists():
            return None
        return ProjectStatus(json.loads(path.read_text(encoding="utf-8"))["status"])

    def clear_stop(self, project_id: str) -> None:
        path = self._file(project_id, "stop.json")
        if path.exists():
            path.unlink()
