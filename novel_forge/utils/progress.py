from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn
from typing import Optional

from ..events import EventKind, ProgressEvent
from ..models.outline import chapter_label

def create_progress(console: Optional[Console] = None) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    )

class ProgressRenderer:
    """Render pipeline events as one progress bar per project.

    Use as the pipeline's progress callback inside ``with renderer:``.
    """

    def __init__(self, totals: dict[str, int], console: Optional[Console] = None):
        self.totals = totals
        self.progress = create_progress(console)
        self._tasks: dict[str, int] = {}

    def __enter__(self) -> "ProgressRenderer":
        self.progress.start()
        for project_id, total in self.totals.items():
            self._tasks[project_id] = self.progress.add_task(project_id, total=total)
        return self

    def __exit__(self, *exc) -> None:
        self.progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        task_id = self._tasks.get(event.project_id)
        if task_id is None:
            task_id = self.progress.add_task(event.project_id, total=None)
            self._tasks[event.project_id] = task_id

        where = chapter_label(event.chapter) if event.chapter is not None else ""
        if event.kind == EventKind.STAGE_STARTED:
            scene = f" scene {event.scene}" if event.scene else ""
            self.progress.update(task_id, description=f"{event.project_id}: {event.stage} {where}{scene}".rstrip())
        elif event.kind == EventKind.CHAPTER_COMPLETED:
            self.progress.update(task_id, advance=1)
            self.progress.console.print(
                f"[green]{event.project_id}[/green] {where} {event.message} ({event.word_count} words)"
            )
        elif event.kind == EventKind.PACING_REVIEW_COMPLETED:
            self.progress.console.print(f"[cyan]{event.project_id} pacing:[/cyan] {event.message}")
        elif event.kind == EventKind.STAGE_COMPLETED and event.message:
            self.progress.console.print(f"[yellow]{event.project_id}:[/yellow] {event.message}")
        elif event.kind == EventKind.ERROR:
            self.progress.console.print(f"[red]{event.project_id} error:[/red] {event.message}")
        elif event.kind == EventKind.PROJECT_COMPLETED:
            self.progress.update(task_id, description=f"{event.project_id}: done")
