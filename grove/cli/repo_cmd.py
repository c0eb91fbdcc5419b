"""CLI commands for repositories and their worktrees."""

from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from grove.cli.common import console, run, short

app = typer.Typer(no_args_is_help=True)
worktree_app = typer.Typer(no_args_is_help=True)
app.add_typer(worktree_app, name="worktree", help="Manage worktrees of a repository")


def _manager():
    from grove.config import get_settings
    from grove.git import GitClient
    from grove.storage.db import get_sessionmaker
    from grove.worktrees import WorktreeManager

    settings = get_settings().git
    git = GitClient(git_binary=settings.git_binary, timeout=settings.command_timeout)
    return WorktreeManager(get_sessionmaker(), git, settings)


def _slug_from_url(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name.removesuffix(".git")


def _print_report(report) -> None:
    for path in report.removed:
        console.print(f"  [dim]deleted {path}[/dim]")
    for failure in report.failures:
        console.print(f"  [yellow]{failure}[/yellow]")


@app.command("add")
def add_repo(
    source: str = typer.Argument(help="Git URL to clone, or a local path with --path"),
    slug: Optional[str] = typer.Option(None, "--slug", "-s", help="Short name (default: from URL)"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    path: bool = typer.Option(False, "--path", help="Register an existing checkout instead of cloning"),
):
    """Clone a repository, or register an existing checkout."""

    async def _add():
        manager = _manager()
        if path:
            local = Path(source).expanduser()
            repo = await manager.register_repository(local, slug or local.resolve().name, name)
        else:
            console.print(f"Cloning [cyan]{source}[/cyan]...")
            repo = await manager.clone_repository(source, slug or _slug_from_url(source), name)
        console.print(
            f"Repository [cyan]{repo.slug}[/cyan] ready at {repo.local_path} "
            f"(default branch {repo.default_branch or '-'})"
        )

    run(_add())


@app.command("list")
def list_repos():
    """List repositories."""

    async def _list():
        from grove.storage.db import get_session
        from grove.storage.repos import RepoRepository

        async with get_session() as db:
            repos = await RepoRepository(db).find_all()

        if not repos:
            console.print("[dim]No repositories.[/dim]")
            return

        table = Table(title="Repositories")
        table.add_column("Slug", style="cyan")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Managed")
        table.add_column("Worktrees", justify="right")
        table.add_column("Path")
        for r in repos:
            table.add_row(
                r.slug,
                short(r.id),
                r.status,
                "yes" if r.managed else "no",
                str(len(r.worktrees)),
                r.local_path,
            )
        console.print(table)

    run(_list())


@app.command("rm")
def remove_repo(
    repo: str = typer.Argument(help="Repository slug or ID"),
    delete_files: bool = typer.Option(False, "--delete-files", help="Also delete directories on disk"),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even if sessions use its worktrees"),
):
    """Remove a repository."""

    async def _remove():
        report = await _manager().remove_repository(repo, delete_files=delete_files, force=force)
        console.print(f"Removed repository [cyan]{repo}[/cyan]")
        _print_report(report)

    run(_remove())


@app.command("reconcile")
def reconcile_repo(
    repo: str = typer.Argument(help="Repository slug or ID"),
    prune: bool = typer.Option(False, "--prune", help="Drop worktrees missing on disk"),
):
    """Compare stored worktrees with what git reports."""

    async def _reconcile():
        report = await _manager().reconcile(repo, prune=prune)
        for label, items, style in (
            ("confirmed", report.confirmed, "green"),
            ("dropped", report.dropped, "yellow"),
            ("missing", report.missing, "red"),
            ("untracked", report.untracked, "dim"),
        ):
            if items:
                console.print(f"[{style}]{label}:[/{style}] {', '.join(items)}")
        if not (report.confirmed or report.dropped or report.missing or report.untracked):
            console.print("[green]In sync.[/green]")

    run(_reconcile())


@worktree_app.command("add")
def add_worktree(
    repo: str = typer.Argument(help="Repository slug or ID"),
    name: str = typer.Argument(help="Worktree name"),
    ref: Optional[str] = typer.Option(None, "--ref", "-r", help="Branch or commit (default: the name)"),
    new_branch: Optional[bool] = typer.Option(
        None, "--new-branch/--existing-branch", help="Create the branch (default: when not on the remote)"
    ),
    base: Optional[str] = typer.Option(None, "--base", help="Start point for a new branch"),
):
    """Create a worktree."""

    async def _add():
        manager = _manager()
        target = ref or name
        create_branch = new_branch
        if create_branch is None:
            create_branch = not await manager.has_remote_branch(repo, target)
        tracking = None if create_branch else target
        result = await manager.create_worktree(
            repo, name, target, create_branch=create_branch, tracking_branch=tracking, base_ref=base
        )
        wt = result.get_worktree(name)
        console.print(
            f"Worktree [cyan]{result.slug}/{name}[/cyan] (#{wt.unique_numeric_id}) at {wt.path}"
            + (" [dim](new branch)[/dim]" if create_branch else "")
        )

    run(_add())


@worktree_app.command("list")
def list_worktrees(repo: str = typer.Argument(help="Repository slug or ID")):
    """List a repository's worktrees."""

    async def _list():
        from grove.storage.db import get_session
        from grove.storage.repos import RepoRepository

        async with get_session() as db:
            found = await RepoRepository(db).get_by_ref(repo)

        if not found.worktrees:
            console.print(f"[dim]{found.slug} has no worktrees.[/dim]")
            return

        table = Table(title=f"Worktrees of {found.slug}")
        table.add_column("#", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Ref")
        table.add_column("Status")
        table.add_column("Sessions", justify="right")
        table.add_column("Commit")
        table.add_column("Path")
        for wt in sorted(found.worktrees, key=lambda w: w.unique_numeric_id):
            table.add_row(
                str(wt.unique_numeric_id),
                wt.name,
                wt.ref,
                wt.status,
                str(len(wt.sessions)),
                (wt.last_commit_sha or "")[:12],
                wt.path,
            )
        console.print(table)

    run(_list())


@worktree_app.command("rm")
def remove_worktree(
    repo: str = typer.Argument(help="Repository slug or ID"),
    name: str = typer.Argument(help="Worktree name"),
    delete_files: bool = typer.Option(False, "--delete-files", help="Also delete the directory"),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even if sessions use it"),
):
    """Remove a worktree."""

    async def _remove():
        report = await _manager().remove_worktree(repo, name, delete_files=delete_files, force=force)
        console.print(f"Removed worktree [cyan]{repo}/{name}[/cyan]")
        _print_report(report)

    run(_remove())
