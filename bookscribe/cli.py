"""
bookscribe.cli - Typer CLI entry point.

Provides subcommands to probe books, run chapter transcription and read
back captions.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from bookscribe import __version__
from bookscribe.config import (
    CONFIG_FILENAME,
    BookscribeConfig,
    create_default_config,
    load_config,
    write_config,
)
from bookscribe.exceptions import BookscribeError, ConfigError, DependencyError
from bookscribe.io import write_text
from bookscribe.library import probe_book
from bookscribe.logging import configure_logging
from bookscribe.models import Book, Priority
from bookscribe.store import ChapterStore
from bookscribe.utils import format_duration, format_srt_time

app = typer.Typer(
    name="bookscribe",
    help="Background chapter transcription for audiobooks.\n\n"
    "Turns chapters into time-stamped sentences stored in SQLite for "
    "captions synchronized to playback.",
    add_completion=False,
)
console = Console()


def find_config_file() -> Path | None:
    """Find bookscribe.yaml in the current directory or its parents."""
    current = Path.cwd()
    while current != current.parent:
        if (current / CONFIG_FILENAME).exists():
            return current / CONFIG_FILENAME
        current = current.parent
    return None


def version_callback(value: bool) -> None:
    if value:
        console.print(f"bookscribe {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: str | None = typer.Option(
        None, "--config", "-c", help=f"Path to {CONFIG_FILENAME}"
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Bookscribe - background chapter transcription for audiobooks."""
    configure_logging(verbose)
    ctx.obj = {"config_path": Path(config_path).expanduser() if config_path else None}


def get_config(ctx: typer.Context) -> BookscribeConfig:
    path = (ctx.obj or {}).get("config_path") or find_config_file()
    try:
        return load_config(path)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def get_book(path: str, config: BookscribeConfig) -> Book:
    try:
        return probe_book(Path(path), config)
    except DependencyError as e:
        console.print(f"[red]Error: {e}[/red]")
        if e.install_hint:
            console.print(f"[dim]{e.install_hint}[/dim]")
        raise typer.Exit(1)
    except BookscribeError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def open_store(config: BookscribeConfig) -> ChapterStore:
    try:
        return ChapterStore(config.database_path, busy_timeout=config.store_busy_timeout)
    except BookscribeError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def chapter_status(store: ChapterStore, book_id: str, chapter_id: str) -> str:
    if store.is_chapter_transcribed(book_id, chapter_id):
        return "[green]transcribed[/green]"
    if store.is_chapter_transcribing(book_id, chapter_id):
        return "[yellow]transcribing[/yellow]"
    return "[dim]not transcribed[/dim]"


@app.command("init-config")
def init_config(
    path: str = typer.Argument(".", help="Directory to write bookscribe.yaml into"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
) -> None:
    """Write a default bookscribe.yaml."""
    config_file = Path(path).expanduser() / CONFIG_FILENAME
    if config_file.exists() and not force:
        console.print(f"[red]Error: '{config_file}' already exists[/red]")
        raise typer.Exit(1)

    write_config(create_default_config(), config_file)
    console.print(f"[green]✓[/green] Wrote {config_file}")


@app.command("setup")
def setup(ctx: typer.Context) -> None:
    """Install the speech model for the configured locale."""
    config = get_config(ctx)

    from bookscribe.transcribe.speech import create_recognizer

    recognizer = create_recognizer(config)
    console.print(f"[cyan]Installing {recognizer.name} backend for {config.locale}...[/cyan]")
    try:
        recognizer.install(config.locale)
    except DependencyError as e:
        console.print(f"[red]Error: {e}[/red]")
        if e.install_hint:
            console.print(f"[dim]{e.install_hint}[/dim]")
        raise typer.Exit(1)
    except BookscribeError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Speech backend ready for {config.locale}")


@app.command("chapters")
def chapters(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Audiobook file"),
) -> None:
    """List a book's chapters and their transcription status."""
    config = get_config(ctx)
    book = get_book(file, config)

    table = Table(title=f"{book.title} ({format_duration(book.duration)})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Start", style="green")
    table.add_column("Duration", style="green")
    table.add_column("Status")

    with open_store(config) as store:
        for i, chapter in enumerate(book.chapters, 1):
            table.add_row(
                str(i),
                chapter.title,
                format_duration(chapter.start),
                format_duration(chapter.duration),
                chapter_status(store, book.id, chapter.id),
            )

    console.print(table)


@app.command("transcribe")
def transcribe(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Audiobook file"),
    chapter_numbers: list[int] | None = typer.Option(
        None, "--chapter", "-n", help="Chapter number (1-based); repeatable"
    ),
    all_chapters: bool = typer.Option(False, "--all", "-a", help="Transcribe every chapter"),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Give up waiting after this many seconds"
    ),
    history_path: str | None = typer.Option(
        None, "--history", help="Write the attempt history as JSON"
    ),
) -> None:
    """Transcribe chapters and wait for the scheduler to finish.

    The first requested chapter runs at high priority, the rest at low
    priority; the chapter after each running one is pre-fetched.
    """
    config = get_config(ctx)
    book = get_book(file, config)
    if not book.chapters:
        console.print("[yellow]Book has no chapters to transcribe.[/yellow]")
        raise typer.Exit(0)

    if all_chapters:
        selected = list(book.chapters)
    else:
        numbers = chapter_numbers or [1]
        invalid = [n for n in numbers if not 1 <= n <= len(book.chapters)]
        if invalid:
            console.print(
                f"[red]Error: chapter {invalid[0]} out of range (1-{len(book.chapters)})[/red]"
            )
            raise typer.Exit(1)
        selected = [book.chapters[n - 1] for n in numbers]

    from bookscribe.pipeline import build_pipeline

    try:
        pipeline = build_pipeline(config)
    except BookscribeError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    with pipeline:
        if not pipeline.engine.is_available():
            console.print(
                f"[yellow]Speech backend '{pipeline.engine.recognizer.name}' unavailable for "
                f"{config.locale}. Run 'bookscribe setup' first.[/yellow]"
            )
            raise typer.Exit(1)

        console.print(f"[cyan]Transcribing {len(selected)} chapter(s) of {book.title}...[/cyan]")
        for i, chapter in enumerate(selected):
            priority = Priority.HIGH if i == 0 else Priority.LOW
            pipeline.scheduler.enqueue_chapter(book, chapter, priority)

        if not pipeline.scheduler.wait_until_idle(timeout=timeout):
            console.print("[yellow]Timed out waiting for transcription; cancelling.[/yellow]")
            pipeline.scheduler.cancel_all_for_book(book.id).result(timeout=5)

        table = Table(title="Transcription Results")
        table.add_column("Chapter", style="cyan")
        table.add_column("Range", style="green")
        table.add_column("Outcome")
        table.add_column("Sentences", justify="right")
        table.add_column("Time", justify="right")
        for entry in pipeline.history.records():
            color = "green" if entry.outcome == "completed" else "yellow"
            table.add_row(
                (book.chapter_by_id(entry.chapter_id) or selected[0]).title,
                f"{format_duration(entry.chapter_start)}-{format_duration(entry.chapter_end)}",
                f"[{color}]{entry.outcome}[/{color}]",
                str(entry.sentence_count),
                f"{entry.duration:.1f}s" if entry.duration is not None else "-",
            )
        console.print(table)

        if history_path:
            pipeline.history.export_json(Path(history_path))
            console.print(f"[dim]  History written to {history_path}[/dim]")

        missing = [c for c in selected if not pipeline.store.is_chapter_transcribed(book.id, c.id)]

    done = len(selected) - len(missing)
    console.print(f"\n[green]✓[/green] Transcribed {done}/{len(selected)} chapter(s)")
    if missing:
        raise typer.Exit(1)


@app.command("captions")
def captions(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Audiobook file"),
    chapter_number: int = typer.Option(..., "--chapter", "-n", help="Chapter number (1-based)"),
    srt: bool = typer.Option(False, "--srt", help="Format as SRT"),
    output: str | None = typer.Option(None, "--output", "-o", help="Write to file instead"),
) -> None:
    """Print a chapter's transcribed sentences."""
    config = get_config(ctx)
    book = get_book(file, config)
    if not 1 <= chapter_number <= len(book.chapters):
        console.print(f"[red]Error: chapter {chapter_number} out of range (1-{len(book.chapters)})[/red]")
        raise typer.Exit(1)
    chapter = book.chapters[chapter_number - 1]

    with open_store(config) as store:
        sentences = store.load_sentences_for_chapter(book.id, chapter.id)
        transcribed = store.is_chapter_transcribed(book.id, chapter.id)

    if not transcribed:
        console.print(f"[yellow]Chapter {chapter_number} has not been transcribed.[/yellow]")
        raise typer.Exit(1)

    if srt:
        blocks = [
            f"{i}\n{format_srt_time(s.start)} --> {format_srt_time(s.end)}\n{s.text}\n"
            for i, s in enumerate(sentences, 1)
        ]
        content = "\n".join(blocks)
    else:
        content = "".join(f"[{format_duration(s.start)}] {s.text}\n" for s in sentences)

    if output:
        write_text(Path(output), content)
        console.print(f"[green]✓[/green] Wrote {len(sentences)} sentences to {output}")
    else:
        console.print(content, end="", markup=False, highlight=False)


@app.command("delete")
def delete(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Audiobook file"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Remove all transcription data for a book."""
    config = get_config(ctx)
    book = get_book(file, config)

    if not yes and not typer.confirm(f"Delete transcription data for '{book.title}'?"):
        raise typer.Exit(0)

    with open_store(config) as store:
        store.delete_transcription(book.id)
    console.print(f"[green]✓[/green] Deleted transcription data for {book.title}")
