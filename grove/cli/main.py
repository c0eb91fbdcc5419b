"""Grove CLI main entry point using Typer."""

import logging
from pathlib import Path

import typer
from rich.logging import RichHandler

from grove.cli.board_cmd import app as board_app
from grove.cli.common import console, run
from grove.cli.repo_cmd import app as repo_app
from grove.cli.session_cmd import app as session_app
from grove.cli.transcript_cmd import app as transcript_app

app = typer.Typer(
    name="grove",
    help="Run coding agents side by side in isolated git worktrees.",
    no_args_is_help=True,
)

app.add_typer(session_app, name="session", help="Manage sessions and their genealogy")
app.add_typer(repo_app, name="repo", help="Manage repositories and worktrees")
app.add_typer(board_app, name="board", help="Group sessions on boards")
app.add_typer(transcript_app, name="transcript", help="Import Claude Code transcripts")

DEFAULT_CONFIG = """[general]
# db_url = "postgresql+asyncpg://localhost/grove"
log_level = "INFO"

[git]
git_binary = "git"
# repos_dir = "~/.grove/repos"
# worktrees_dir = "~/.grove/worktrees"

[importer]
batch_size = 100
max_concurrency = 4

[sessions]
default_agent = "claude-code"
"""


def _setup_logging(verbose: bool = False):
    from grove.config import get_settings

    level = logging.DEBUG if verbose else getattr(logging, get_settings().general.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    _setup_logging(verbose)


@app.command()
def init():
    """Create the data directory, a default config and the database."""

    async def _init():
        from grove.config import get_settings

        settings = get_settings()
        config_dir = Path.home() / ".config/grove"
        config_dir.mkdir(parents=True, exist_ok=True)
        config_path = config_dir / "config.toml"
        if not config_path.exists():
            config_path.write_text(DEFAULT_CONFIG)
            console.print(f"  Config written: {config_path}")

        for directory in (settings.general.data_dir, settings.git.repos_dir, settings.git.worktrees_dir):
            Path(directory).expanduser().mkdir(parents=True, exist_ok=True)
        console.print(f"  Data dir: {settings.general.data_dir}")
        console.print("  Database ready.")
        console.print("\n[bold green]Grove initialized![/bold green]")
        console.print("\nNext steps:")
        console.print("  1. Add a repository: [cyan]grove repo add <url>[/cyan]")
        console.print("  2. Create a worktree: [cyan]grove repo worktree add <repo> <name>[/cyan]")
        console.print("  3. Start a session:  [cyan]grove session create --repo <repo> --worktree <name>[/cyan]")

    run(_init())


@app.command()
def status():
    """Show what Grove is tracking."""

    async def _status():
        from grove.config import get_settings
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session
        from grove.storage.repos import RepoRepository
        from grove.storage.sessions import SessionRepository
        from grove.storage.tasks import TaskRepository

        async with get_session() as db:
            sessions = await SessionRepository(db).count()
            running = await SessionRepository(db).find_running()
            tasks = await TaskRepository(db).count()
            repos = await RepoRepository(db).find_all()
            boards = await BoardRepository(db).count()

        console.print(f"[bold]Database:[/bold] {get_settings().general.db_url}")
        console.print(f"  Sessions:     {sessions} ({len(running)} running)")
        console.print(f"  Tasks:        {tasks}")
        console.print(f"  Repositories: {len(repos)}")
        console.print(f"  Worktrees:    {sum(len(r.worktrees) for r in repos)}")
        console.print(f"  Boards:       {boards}")
        pending = [r.slug for r in repos if r.status == "pending"]
        pending += [f"{r.slug}/{w.name}" for r in repos for w in r.worktrees if w.status == "pending"]
        if pending:
            console.print(
                f"[yellow]Pending: {', '.join(pending)} (run [cyan]grove repo reconcile[/cyan])[/yellow]"
            )

    run(_status())


if __name__ == "__main__":
    app()
