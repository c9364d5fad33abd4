import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .exceptions import NovelForgeError
from .models import ProjectStatus, chapter_label
from .pipeline import Pipeline
from .recovery import recover_json
from .storage import ProjectStore
from .utils.logger import setup_logger
from .utils.progress import ProgressRenderer

console = Console()


@click.group()
@click.option('--config', '-c', type=click.Path(dir_okay=False), default='config.yaml',
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool):
    """Novel Forge - multi-agent long-form fiction generator."""
    ctx.ensure_object(dict)

    config_path = Path(config)
    if config_path.exists():
        ctx.obj['config'] = Config.from_yaml(config_path)
    else:
        ctx.obj['config'] = Config()

    log_level = "DEBUG" if verbose else ctx.obj['config'].log_level
    logger = setup_logger(log_level, ctx.obj['config'].log_file)
    ctx.obj['logger'] = logger
    ctx.obj['store'] = ProjectStore(ctx.obj['config'].storage.root)

    logger.debug(f"Novel Forge v{__version__}")
    if config_path.exists():
        logger.debug(f"Config loaded from: {config_path}")


def _pipeline(ctx: click.Context, progress=None) -> Pipeline:
    if progress is None:
        return Pipeline(ctx.obj['config'], ctx.obj['store'])
    return Pipeline(ctx.obj['config'], ctx.obj['store'], progress=progress)


@cli.command()
@click.option('--premise', '-p', required=True, help='Story premise')
@click.option('--chapters', '-n', type=click.IntRange(min=1), required=True, help='Number of regular chapters')
@click.option('--title', '-t', default='', help='Working title')
@click.option('--genre', default='', help='Genre')
@click.option('--tone', default='', help='Tone')
@click.option('--prologue', is_flag=True, help='Add a prologue')
@click.option('--epilogue', is_flag=True, help='Add an epilogue')
@click.option('--author-note', is_flag=True, help="Add an author's note")
@click.option('--style-guide', type=click.Path(exists=True, dir_okay=False), help='Style guide file')
@click.option('--id', 'project_id', default=None, help='Project id (derived from the title by default)')
@click.pass_context
def init(ctx: click.Context, premise: str, chapters: int, title: str, genre: str, tone: str,
         prologue: bool, epilogue: bool, author_note: bool, style_guide: str, project_id: str):
    """Create a new project."""
    store = ctx.obj['store']
    style = Path(style_guide).read_text(encoding='utf-8') if style_guide else ''
    try:
        project = store.create_project(
            id=project_id, title=title, premise=premise, genre=genre, tone=tone,
            chapter_count=chapters, has_prologue=prologue, has_epilogue=epilogue,
            has_author_note=author_note, style_guide=style,
        )
    except FileExistsError as e:
        raise click.ClickException(str(e))
    click.echo(project.id)


@cli.command()
@click.argument('project_ids', nargs=-1, required=True)
@click.pass_context
def generate(ctx: click.Context, project_ids: tuple):
    """Generate one or more projects (concurrently, one orchestrator each)."""
    store = ctx.obj['store']
    logger = ctx.obj['logger']
    try:
        totals = {pid: len(store.load_project(pid).expected_chapter_numbers()) for pid in project_ids}
    except NovelForgeError as e:
        raise click.ClickException(str(e))

    with ProgressRenderer(totals) as renderer:
        with ThreadPoolExecutor(max_workers=len(project_ids)) as executor:
            futures = {
                pid: executor.submit(_pipeline(ctx, renderer).start_generation, pid)
                for pid in project_ids
            }
            results = {}
            for pid, future in futures.items():
                try:
                    results[pid] = future.result()
                except NovelForgeError as e:
                    logger.error(f"{pid}: {e}")
                    results[pid] = None

    _report(results)


@cli.command()
@click.argument('project_id')
@click.pass_context
def resume(ctx: click.Context, project_id: str):
    """Resume a paused, cancelled or failed project."""
    store = ctx.obj['store']
    try:
        total = len(store.load_project(project_id).expected_chapter_numbers())
        with ProgressRenderer({project_id: total}) as renderer:
            project = _pipeline(ctx, renderer).resume(project_id)
    except NovelForgeError as e:
        raise click.ClickException(str(e))
    _report({project_id: project})


def _report(results: dict):
    failed = []
    for pid, project in results.items():
        if project is None:
            failed.append(f"{pid}: could not start")
        elif project.status == ProjectStatus.ERROR:
            failed.append(f"{pid}: {project.error_reason}")
        else:
            console.print(f"{pid}: [bold]{project.status.value}[/bold] ({project.tokens.total} tokens)")
    if failed:
        raise click.ClickException("; ".join(failed))


@cli.command()
@click.argument('project_id')
@click.option('--force', is_flag=True, help='Mark paused even if no run is active')
@click.pass_context
def pause(ctx: click.Context, project_id: str, force: bool):
    """Pause a project at the next stage boundary."""
    try:
        project = _pipeline(ctx).pause(project_id, force=force)
    except NovelForgeError as e:
        raise click.ClickException(str(e))
    click.echo(f"{project.id}: pause requested" if project.status == ProjectStatus.GENERATING
               else f"{project.id}: {project.status.value}")


@cli.command()
@click.argument('project_id')
@click.option('--force', is_flag=True, help='Mark cancelled even if no run is active')
@click.pass_context
def cancel(ctx: click.Context, project_id: str, force: bool):
    """Cancel a project; committed chapters are kept."""
    try:
        project = _pipeline(ctx).cancel(project_id, force=force)
    except NovelForgeError as e:
        raise click.ClickException(str(e))
    click.echo(f"{project.id}: cancel requested" if project.status == ProjectStatus.GENERATING
               else f"{project.id}: {project.status.value}")


@cli.command()
@click.argument('project_id')
@click.pass_context
def archive(ctx: click.Context, project_id: str):
    """Archive a completed project."""
    try:
        project = _pipeline(ctx).archive(project_id)
    except NovelForgeError as e:
        raise click.ClickException(str(e))
    click.echo(f"{project.id}: {project.status.value}")


@cli.command(name='list')
@click.pass_context
def list_projects(ctx: click.Context):
    """List all projects."""
    table = Table(title="Projects")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Act", justify="right")
    table.add_column("Act", justify="right")
    table.add_column("Status")
    table.add_column("Chapters", justify="right")
    for project in ctx.obj['store'].list_projects():
        table.add_row(project.id, project.title, project.status.value, str(project.chapter_count))
    console.print(table)


@cli.command()
@click.argument('project_id')
@click.pass_context
def status(ctx: click.Context, project_id: str):
    """Show a project's chapters and token usage."""
    store = ctx.obj['store']
    try:
        project = store.load_project(project_id)
        chapters = store.load_chapters(project_id)
        outline = store.load_outline(project_id)
    except NovelForgeError as e:
        raise click.ClickException(str(e))

    table = Table(title=f"{project.title or project.id} [{project.status.value}]")
    table.add_column("Chapter")
    table.add_column("Title")
    table.add_column("Act", justify="right")
    table.add_column("Status")
    table.add_column("Words", justify="right")
    table.add_column("Quality", justify="right")
    table.add_column("Revisions", justify="right")
    for chapter in chapters:
        quality = chapter.quality_score
        entry = outline.entry(chapter.number) if outline else None
        table.add_row(
            chapter_label(chapter.number), chapter.title, "-" if entry is None else str(entry.act),
            chapter.status.value, str(chapter.word_count),
            "-" if quality is None else f"{quality:g}", str(chapter.revisions),
        )
    console.print(table)
    tokens = project.tokens
    console.print(f"Tokens: {tokens.input} in / {tokens.output} out / {tokens.thinking} thinking")
    if project.error_reason:
        console.print(f"[red]Error:[/red] {project.error_reason}")
    if project.pacing_directive:
        console.print(f"[cyan]Pacing directive:[/cyan] {project.pacing_directive}")


@cli.command(name='repair-json')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--anchor', default=None, help='Key expected in the top-level object')
@click.pass_context
def repair_json(ctx: click.Context, file: str, anchor: str):
    """Run the JSON recovery ladder on FILE and print the result."""
    text = Path(file).read_text(encoding='utf-8')
    result = recover_json(text, anchor=anchor, max_attempts=ctx.obj['config'].pipeline.repair_max_attempts)
    if not result.ok:
        raise click.ClickException(f"Could not recover JSON: {result.error}")
    click.echo(f"strategy: {result.strategy}", err=True)
    click.echo(json.dumps(result.value, indent=2, ensure_ascii=False))


def main():
    cli()

if __name__ == '__main__':
    main()
