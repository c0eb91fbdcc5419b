"""Helpers shared by the CLI command modules."""

import asyncio
from typing import Any, Coroutine, Optional

import typer
from rich.console import Console

from grove.errors import AmbiguousIdError, GroveError

console = Console()


def run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a command body, turning Grove errors into a red message and exit 1."""

    async def _wrapped():
        from grove.storage.db import close_db, init_db

        try:
            await init_db()
            return await coro
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except AmbiguousIdError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[yellow]Use a longer prefix or the full ID.[/yellow]")
        raise typer.Exit(1)
    except GroveError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def short(id: Optional[str]) -> str:
    from grove.ids import format_short_id

    return format_short_id(id) if id else "-"


def check_prefix(ref: str) -> str:
    """Warn when a short ID is below the recommended length; it is still resolved."""
    from grove.ids import MIN_SHORT_ID_LENGTH, is_full_id

    if not is_full_id(ref) and len(ref.replace("-", "")) < MIN_SHORT_ID_LENGTH:
        console.print(
            f"[yellow]'{ref}' is shorter than {MIN_SHORT_ID_LENGTH} characters and may be ambiguous[/yellow]"
        )
    return ref
