"""CLI commands for the book teacher.

Commands:
- init-db: Create the database and seed the agent settings
- add-student / students: Manage students
- import-book / books: Import processed books and list the library
- settings: Show or change the agent settings
- chat: Talk to the tutor about a book
- save: Summarize a session into long-term memory
- history: Show a session's conversation
- progress / reset-progress: Inspect or reset chapter progress
- unenrol: Delete a session and everything it remembers
- serve: Run the Web API
"""

import asyncio
import json
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from book_teacher.config.app_config import load_app_config
from book_teacher.core.capabilities import ChapterStatus, get_book_progress
from book_teacher.core.errors import TransientServiceError, TutorError
from book_teacher.core.summarizer import SummaryResult, SummaryStatus
from book_teacher.core.supervisor import SessionSupervisor
from book_teacher.db import books_repository, init_db, sessions_repository, students_repository
from book_teacher.llm.client import LLMClient, LLMConfig

app = typer.Typer(
    name="book-teacher",
    help="LLM tutor that teaches a student a book, chapter by chapter.",
    no_args_is_help=True,
)

console = Console()

EXIT_WORDS = {"/exit", "/quit", "/q"}

_state: dict[str, Path | None] = {"db_path": None}


@app.callback()
def main(
    db: Path | None = typer.Option(
        None, "--db", help="Database file (default: paths.db_path from the app config)"
    ),
) -> None:
    """LLM tutor that teaches a student a book, chapter by chapter."""
    _state["db_path"] = db


def _open_store() -> None:
    """Initialize the database, seeding settings from the app config."""
    config = load_app_config()
    defaults = config.agent_defaults
    init_db(
        _state["db_path"] or config.db_path,
        ai_model=defaults.ai_model,
        token_budget=defaults.token_budget,
        auto_save_seconds=defaults.auto_save_seconds,
    )


def _require_student(student_id: int) -> str:
    student = students_repository.get_student_by_id(student_id)
    if student is None:
        console.print(f"[red]✗ Student {student_id} not found[/red]")
        raise typer.Exit(code=1)
    return student.name


def _require_book(book_id: int) -> str:
    book = books_repository.get_book_by_id(book_id)
    if book is None:
        console.print(f"[red]✗ Book {book_id} not found[/red]")
        raise typer.Exit(code=1)
    return book.title


def _make_supervisor(provider: str | None) -> SessionSupervisor:
    """Build a supervisor; the model comes from the agent settings row."""
    config = LLMConfig.from_app_config(provider=provider)
    return SessionSupervisor(llm=LLMClient(config), tutor_config=load_app_config().tutor)


def _print_summary(result: SummaryResult) -> None:
    if result.status == SummaryStatus.COMPLETED:
        console.print(
            f"[green]✓ Memory updated[/green] [dim]({result.messages_summarized} messages, "
            f"{len(result.applied)} writes, skipped: {', '.join(result.skipped) or 'none'})[/dim]"
        )
    elif result.status == SummaryStatus.NOTHING_NEW:
        console.print("[dim]Nothing new to save.[/dim]")
    else:
        console.print("[yellow]⚠ A save is already running for this session[/yellow]")


# =============================================================================
# LIBRARY AND STUDENTS
# =============================================================================


@app.command(name="init-db")
def init_db_command() -> None:
    """Create the database and seed the agent settings."""
    _open_store()
    settings = sessions_repository.get_agent_settings()
    console.print("[green]✓ Database ready[/green]")
    console.print(f"  [dim]model:[/dim]  {settings.ai_model}")
    console.print(f"  [dim]budget:[/dim] {settings.token_budget} tokens")


@app.command(name="add-student")
def add_student(name: str = typer.Argument(..., help="Student name")) -> None:
    """Create a student."""
    _open_store()
    name = name.strip()
    if not name:
        console.print("[red]✗ Name cannot be empty[/red]")
        raise typer.Exit(code=1)
    student_id = students_repository.insert_student(name)
    console.print(f"[green]✓ Student created[/green] [dim]id:[/dim] {student_id}")


@app.command()
def students() -> None:
    """List students."""
    _open_store()
    rows = students_repository.get_all_students()
    if not rows:
        console.print("[dim]No students yet. Use add-student.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    for student in rows:
        table.add_row(str(student.id), student.name)
    console.print(table)


@app.command(name="import-book")
def import_book(
    file: Path = typer.Argument(..., help="JSON file with title, author and chapters"),
) -> None:
    """Import a processed book from a JSON file.

    Expected keys: title, author, description, summary and chapters (each
    with chapter_number, name, summary and key_points).
    """
    _open_store()
    try:
        payload = json.loads(file.expanduser().read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]✗ Cannot read {file}: {e}[/red]")
        raise typer.Exit(code=1)

    if not isinstance(payload, dict) or not payload.get("title"):
        console.print("[red]✗ The JSON must be an object with at least a title[/red]")
        raise typer.Exit(code=1)

    try:
        book_id = books_repository.insert_book(
            title=payload["title"],
            author=payload.get("author", ""),
            path=payload.get("path") or str(file.expanduser().resolve()),
            description=payload.get("description"),
            summary=payload.get("summary"),
            chapters=payload.get("chapters", []),
        )
    except (sqlite3.IntegrityError, KeyError, TypeError) as e:
        console.print(f"[red]✗ Import failed: {e}[/red]")
        raise typer.Exit(code=1)

    chapters = books_repository.get_chapters(book_id)
    console.print(f"[green]✓ Imported {payload['title']}[/green]")
    console.print(f"  [dim]book_id:[/dim]  {book_id}")
    console.print(f"  [dim]chapters:[/dim] {len(chapters)}")


@app.command()
def books() -> None:
    """List books."""
    _open_store()
    rows = books_repository.get_all_books()
    if not rows:
        console.print("[dim]No books yet. Use import-book.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Chapters", justify="right")
    for book in rows:
        table.add_row(
            str(book.id), book.title, book.author, str(len(books_repository.get_chapters(book.id)))
        )
    console.print(table)


@app.command()
def settings(
    model: str | None = typer.Option(None, "--model", "-m", help="Model identifier"),
    budget: int | None = typer.Option(None, "--budget", "-b", help="Token budget"),
    auto_save: int | None = typer.Option(
        None, "--auto-save", help="Auto-save interval in seconds"
    ),
    no_auto_save: bool = typer.Option(False, "--no-auto-save", help="Disable auto-save"),
) -> None:
    """Show the agent settings, or change them with options."""
    _open_store()
    if any(v is not None for v in (model, budget, auto_save)) or no_auto_save:
        try:
            current = sessions_repository.update_agent_settings(
                ai_model=model,
                token_budget=budget,
                auto_save_seconds=auto_save,
                clear_auto_save=no_auto_save,
            )
        except ValueError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1)
        console.print("[green]✓ Settings updated[/green] [dim](applies to new sessions)[/dim]")
    else:
        current = sessions_repository.get_agent_settings()

    console.print(f"  [dim]model:[/dim]     {current.ai_model}")
    console.print(f"  [dim]budget:[/dim]    {current.token_budget} tokens")
    auto = f"every {current.auto_save_seconds}s" if current.auto_save_seconds else "off"
    console.print(f"  [dim]auto-save:[/dim] {auto}")


# =============================================================================
# TUTORING
# =============================================================================


@app.command()
def chat(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
    provider: str | None = typer.Option(
        None, "--provider", "-p", help="LLM provider (lmstudio, openai, xai)"
    ),
) -> None:
    """Talk to the tutor. Type /save to save memory, /exit to leave."""
    _open_store()
    student_name = _require_student(student_id)
    title = _require_book(book_id)
    supervisor = _make_supervisor(provider)

    console.print(f"[bold]{title}[/bold] [dim]with {student_name}. /save, /exit[/dim]\n")
    try:
        asyncio.run(_chat_loop(supervisor, student_id, book_id, student_name))
    except TutorError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)


async def _chat_loop(
    supervisor: SessionSupervisor, student_id: int, book_id: int, student_name: str
) -> None:
    await supervisor.open(student_id, book_id)
    try:
        while True:
            try:
                text = await asyncio.to_thread(typer.prompt, f"\n{student_name}")
            except (EOFError, typer.Abort):
                break
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_WORDS:
                break
            if text.lower() == "/save":
                _print_summary(await supervisor.save(student_id, book_id))
                continue

            try:
                with console.status("[dim]thinking...[/dim]"):
                    result = await supervisor.send_message(student_id, book_id, text)
            except TransientServiceError:
                console.print("[yellow]⚠ The tutor is unavailable, please retry[/yellow]")
                continue
            console.print()
            console.print(Markdown(result.reply))
            if result.over_budget:
                console.print("[yellow]⚠ Conversation too long; summarizing memory[/yellow]")
    finally:
        with console.status("[dim]saving memory...[/dim]"):
            await supervisor.shutdown()
        console.print("[dim]Session closed.[/dim]")


@app.command()
def save(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="LLM provider"),
) -> None:
    """Summarize unsaved conversation into long-term memory."""
    _open_store()
    _require_student(student_id)
    _require_book(book_id)
    supervisor = _make_supervisor(provider)

    async def run() -> SummaryResult:
        try:
            return await supervisor.save(student_id, book_id)
        finally:
            await supervisor.discard(student_id=student_id, book_id=book_id)

    try:
        result = asyncio.run(run())
    except TutorError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    _print_summary(result)


@app.command()
def history(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Show only the last N messages"),
) -> None:
    """Show the persisted conversation of a session."""
    _open_store()
    student_name = _require_student(student_id)
    _require_book(book_id)
    tutor_name = load_app_config().tutor.tutor_name

    messages = sessions_repository.get_history(student_id, book_id)
    if not messages:
        console.print("[dim]No conversation yet.[/dim]")
        return

    for message in messages[-limit:]:
        if message.role == "student":
            console.print(f"\n[bold cyan]{student_name}:[/bold cyan] {message.content}")
        else:
            tools = f" [dim]({', '.join(message.tool_calls)})[/dim]" if message.tool_calls else ""
            console.print(f"\n[bold magenta]{tutor_name}:[/bold magenta]{tools}")
            console.print(Markdown(message.content))


@app.command()
def progress(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
) -> None:
    """Show a session's long-term memory and chapter progress."""
    _open_store()
    _require_student(student_id)
    _require_book(book_id)
    if sessions_repository.get_session(student_id, book_id) is None:
        console.print("[dim]This student has not started this book.[/dim]")
        return

    data = get_book_progress(student_id, book_id)
    console.print(f"[dim]current chapter:[/dim] {data['current_chapter_number'] or '-'}")
    console.print(f"[dim]overall:[/dim] {data['progress_summary'] or '-'}")
    console.print(f"[dim]plan:[/dim] {data['plan'] or '-'}")

    if data["chapter_progress"]:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Chapter")
        table.add_column("Status")
        table.add_column("Objectives")
        for row in data["chapter_progress"]:
            table.add_row(
                row["chapter_number"], ChapterStatus(row["status"]).name.lower(), row["objectives"]
            )
        console.print(table)


@app.command(name="reset-progress")
def reset_progress(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
    chapter: str | None = typer.Option(
        None, "--chapter", "-c", help="Only reset this chapter (e.g. '3.2.')"
    ),
) -> None:
    """Reset chapter progress so statuses can start over."""
    _open_store()
    _require_student(student_id)
    _require_book(book_id)

    chapter_number = None
    if chapter is not None:
        record = books_repository.get_chapter(book_id, chapter)
        if record is None:
            console.print(f"[red]✗ Chapter {chapter} not found in book {book_id}[/red]")
            raise typer.Exit(code=1)
        chapter_number = record.chapter_number

    removed = sessions_repository.reset_chapter_progress(student_id, book_id, chapter_number)
    console.print(f"[green]✓ Reset {removed} progress row(s)[/green]")


@app.command()
def unenrol(
    student_id: int = typer.Argument(..., help="Student ID"),
    book_id: int = typer.Argument(..., help="Book ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a session with its history, progress and plan."""
    _open_store()
    student_name = _require_student(student_id)
    title = _require_book(book_id)
    if sessions_repository.get_session(student_id, book_id) is None:
        console.print(f"[yellow]{student_name} has no session on {title}[/yellow]")
        return

    if not yes and not typer.confirm(f"Delete {student_name}'s session on {title}?"):
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=0)

    sessions_repository.delete_session(student_id, book_id)
    console.print(f"[green]✓ Session deleted[/green] [dim]({student_name}, {title})[/dim]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
) -> None:
    """Run the Web API."""
    import uvicorn

    if _state["db_path"] is not None:
        console.print("[yellow]⚠ --db is ignored by serve; set paths.db_path in the app config[/yellow]")
    uvicorn.run("book_teacher.web.api:app", host=host, port=port)


if __name__ == "__main__":
    app()
