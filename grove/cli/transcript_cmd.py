"""CLI commands for importing Claude Code transcripts."""

from pathlib import Path
from typing import Optional

import typer

from grove.cli.common import console, run, short

app = typer.Typer(no_args_is_help=True)


def _git():
    from grove.config import get_settings
    from grove.git import GitClient

    settings = get_settings().git
    return GitClient(git_binary=settings.git_binary, timeout=settings.command_timeout)


@app.command("load")
def load_claude(
    agent_session_id: str = typer.Argument(help="Claude Code session ID"),
    project_dir: Optional[Path] = typer.Option(
        None, "--project-dir", help="Project the session ran in (default: current directory)"
    ),
    board: Optional[str] = typer.Option(None, "--board", "-b", help="Board to add the session to"),
):
    """Load one Claude Code session into Grove."""

    async def _load():
        from grove.config import get_settings
        from grove.ingestion.importer import import_transcript
        from grove.ingestion.transcript import find_transcript, load_transcript
        from grove.storage.db import get_sessionmaker

        settings = get_settings()
        project = project_dir or Path.cwd()
        path = find_transcript(agent_session_id, project, settings.importer.claude_projects_dir)
        console.print(f"Loading [cyan]{path}[/cyan]")

        summary = await import_transcript(
            get_sessionmaker(),
            load_transcript(path),
            agent_session_id=agent_session_id,
            transcript_path=path,
            project_dir=project,
            board=board,
            git=_git(),
        )
        console.print(
            f"[green]Imported[/green] session [cyan]{short(summary.session_id)}[/cyan]: "
            f"{summary.message_count} messages, {summary.task_count} tasks, "
            f"{summary.tool_use_count} tool uses"
        )
        if board and summary.board_id is None:
            console.print(f"[yellow]Board '{board}' not found; session not added[/yellow]")

    run(_load())


@app.command("import")
def import_files(
    paths: list[Path] = typer.Argument(help="Transcript .jsonl files"),
    board: Optional[str] = typer.Option(None, "--board", "-b", help="Board to add the sessions to"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Files imported at once"),
):
    """Import transcript files, several at a time."""

    async def _import():
        from grove.ingestion.importer import import_many
        from grove.storage.db import get_sessionmaker

        result = await import_many(get_sessionmaker(), paths, concurrency, board=board, git=_git())
        for summary in result.imported:
            console.print(
                f"  [green]ok[/green] {summary.transcript_path} -> {short(summary.session_id)} "
                f"({summary.message_count} messages, {summary.task_count} tasks)"
            )
        for path, error in result.failed.items():
            console.print(f"  [red]failed[/red] {path}: {error}")
        console.print(f"\n{len(result.imported)} imported, {len(result.failed)} failed")
        if result.failed:
            raise typer.Exit(1)

    run(_import())
