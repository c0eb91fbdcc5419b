"""CLI commands for boards."""

from typing import Optional

import typer
from rich.table import Table

from grove.cli.common import check_prefix, console, run, short

app = typer.Typer(no_args_is_help=True)


@app.command("create")
def create_board(
    name: str = typer.Argument(help="Board name"),
    slug: Optional[str] = typer.Option(None, "--slug", "-s", help="Short unique name"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    color: Optional[str] = typer.Option(None, "--color"),
    icon: Optional[str] = typer.Option(None, "--icon"),
):
    """Create a board."""

    async def _create():
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session

        async with get_session() as db:
            board = await BoardRepository(db).create(
                {"name": name, "slug": slug, "description": description, "color": color, "icon": icon}
            )
        console.print(f"Board created: [cyan]{board.slug or board.name}[/cyan] ({short(board.id)})")

    run(_create())


@app.command("list")
def list_boards():
    """List boards."""

    async def _list():
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session

        async with get_session() as db:
            boards = await BoardRepository(db).find_all()

        if not boards:
            console.print("[dim]No boards.[/dim]")
            return

        table = Table(title="Boards")
        table.add_column("ID", style="bold")
        table.add_column("Slug", style="cyan")
        table.add_column("Name")
        table.add_column("Sessions", justify="right")
        for b in boards:
            table.add_row(short(b.id), b.slug or "-", f"{b.icon or ''} {b.name}".strip(), str(len(b.session_ids)))
        console.print(table)

    run(_list())


@app.command("add-session")
def add_session(
    board: str = typer.Argument(help="Board slug or ID"),
    session_id: str = typer.Argument(help="Session ID or prefix"),
):
    """Put a session on a board."""

    async def _add():
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository

        async with get_session() as db:
            sessions = SessionRepository(db)
            session = await sessions.get(check_prefix(session_id))
            found = await BoardRepository(db).get_by_ref(board)
            await BoardRepository(db).add_session(found.id, session.id)
            await sessions.update(session.id, {"board_id": found.id})
        console.print(f"Added {short(session.id)} to [cyan]{found.slug or found.name}[/cyan]")

    run(_add())


@app.command("remove-session")
def remove_session(
    board: str = typer.Argument(help="Board slug or ID"),
    session_id: str = typer.Argument(help="Full session ID or prefix"),
):
    """Take a session off a board. Works for sessions that no longer exist."""

    async def _remove():
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository

        async with get_session() as db:
            boards = BoardRepository(db)
            found = await boards.get_by_ref(board)
            session = await SessionRepository(db).find_by_id(check_prefix(session_id))
            target = session.id if session else session_id
            await boards.remove_session(found.id, target)
            if session and session.board_id == found.id:
                await SessionRepository(db).update(session.id, {"board_id": None})
        console.print(f"Removed {short(target)} from [cyan]{found.slug or found.name}[/cyan]")

    run(_remove())
