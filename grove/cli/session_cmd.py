"""CLI commands for sessions and their genealogy."""

from typing import Optional

import typer
from rich.table import Table
from rich.tree import Tree

from grove.cli.common import check_prefix, console, run, short

app = typer.Typer(no_args_is_help=True)

STATUS_STYLES = {"idle": "dim", "running": "cyan", "completed": "green", "failed": "red"}


def _describe(session) -> str:
    style = STATUS_STYLES.get(session.status, "")
    description = (session.description or "").splitlines()[0][:60] if session.description else ""
    return f"[bold]{short(session.id)}[/bold] [{style}]{session.status}[/{style}] {session.agent_kind}  {description}"


@app.command("list")
def list_sessions(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    board: Optional[str] = typer.Option(None, "--board", "-b", help="Only sessions on this board"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
):
    """List sessions."""

    async def _list():
        from grove.storage.boards import BoardRepository
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository

        async with get_session() as db:
            repo = SessionRepository(db)
            if board:
                found = await BoardRepository(db).get_by_ref(board)
                sessions = await repo.find_by_board(found.id)
            elif status:
                sessions = await repo.find_by_status(status)
            else:
                sessions = await repo.find_all()

        if not sessions:
            console.print("[dim]No sessions.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("ID", style="bold")
        table.add_column("Status")
        table.add_column("Agent")
        table.add_column("Tasks", justify="right")
        table.add_column("Messages", justify="right")
        table.add_column("Description")
        for s in sessions[-limit:]:
            style = STATUS_STYLES.get(s.status, "")
            table.add_row(
                short(s.id),
                f"[{style}]{s.status}[/{style}]",
                s.agent_kind,
                str(len(s.task_ids)),
                str(s.message_count),
                (s.description or "")[:60],
            )
        console.print(table)

    run(_list())


@app.command("show")
def show_session(session_id: str = typer.Argument(help="Session ID or prefix")):
    """Show one session."""

    async def _show():
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository
        from grove.storage.tasks import TaskRepository

        async with get_session() as db:
            session = await SessionRepository(db).get(check_prefix(session_id))
            tasks = await TaskRepository(db).find_by_session(session.id)

        console.print(f"[bold]Session {session.id}[/bold]")
        console.print(f"  Status:   {session.status}")
        console.print(f"  Agent:    {session.agent_kind}")
        if session.repo_context:
            ctx = session.repo_context
            where = f"{ctx.repo_slug}/{ctx.worktree_name}" if ctx.worktree_name else ctx.cwd
            console.print(f"  Where:    {where}")
        console.print(f"  Git:      {session.git_state.ref} @ {session.git_state.current_sha[:12] or '-'}")
        origin = session.genealogy.origin
        if origin:
            kind = "spawned by" if session.genealogy.parent else "forked from"
            console.print(f"  Origin:   {kind} {short(origin)}")
        if session.genealogy.children:
            console.print(f"  Children: {', '.join(short(c) for c in session.genealogy.children)}")
        console.print(f"  Messages: {session.message_count}  Tool uses: {session.tool_use_count}")

        if tasks:
            table = Table(title="Tasks")
            table.add_column("ID", style="bold")
            table.add_column("Range")
            table.add_column("Tools", justify="right")
            table.add_column("Model")
            table.add_column("Prompt")
            for t in tasks:
                r = t.message_range
                table.add_row(
                    short(t.id),
                    f"{r.start_index}-{r.end_index}",
                    str(t.tool_use_count),
                    t.model,
                    (t.description or "")[:60],
                )
            console.print(table)

    run(_show())


@app.command("create")
def create_session(
    description: Optional[str] = typer.Option(None, "--description", "-d", help="What the session is for"),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent kind"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository slug or ID"),
    worktree: Optional[str] = typer.Option(None, "--worktree", "-w", help="Worktree name in --repo"),
):
    """Create a new root session, optionally attached to a worktree."""

    async def _create():
        from grove.config import get_settings
        from grove.git import GitClient
        from grove.storage.db import get_session, get_sessionmaker
        from grove.storage.repos import RepoRepository
        from grove.storage.sessions import SessionRepository
        from grove.worktrees import WorktreeManager

        settings = get_settings()
        values = {
            "agent_kind": agent or settings.sessions.default_agent,
            "description": description,
        }
        if worktree and not repo:
            console.print("[red]--worktree needs --repo[/red]")
            raise typer.Exit(1)

        async with get_session() as db:
            if repo:
                found = await RepoRepository(db).get_by_ref(repo)
                wt = found.get_worktree(worktree) if worktree else None
                if worktree and wt is None:
                    from grove.errors import NotFoundError

                    raise NotFoundError("Worktree", f"{found.slug}/{worktree}")
                values["repo_context"] = {
                    "repo_id": found.id,
                    "repo_slug": found.slug,
                    "worktree_name": worktree,
                    "cwd": wt.path if wt else found.local_path,
                    "managed_worktree": wt is not None,
                }
                ref = wt.ref if wt else (found.default_branch or settings.sessions.default_ref)
                sha = (wt.last_commit_sha or "") if wt else ""
                values["git_state"] = {"ref": ref, "base_sha": sha, "current_sha": sha}
            session = await SessionRepository(db).create(values)

        if repo and worktree:
            git = GitClient(git_binary=settings.git.git_binary, timeout=settings.git.command_timeout)
            manager = WorktreeManager(get_sessionmaker(), git, settings.git)
            await manager.attach_session(repo, worktree, session.id)

        console.print(f"Session created: [cyan]{short(session.id)}[/cyan] ({session.id})")

    run(_create())


@app.command("fork")
def fork_session(
    session_id: str = typer.Argument(help="Session to fork"),
    prompt: str = typer.Argument(help="Prompt for the forked session"),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Fork at this task"),
    key: Optional[str] = typer.Option(None, "--idempotency-key", help="Reuse the child from an earlier call"),
):
    """Fork a session to explore an alternative."""

    async def _fork():
        from grove.genealogy import fork
        from grove.storage.db import get_session

        async with get_session() as db:
            child = await fork(db, check_prefix(session_id), prompt, task_id=task, idempotency_key=key)
        console.print(f"Forked: [cyan]{short(child.id)}[/cyan] ({child.id})")

    run(_fork())


@app.command("spawn")
def spawn_session(
    session_id: str = typer.Argument(help="Parent session"),
    prompt: str = typer.Argument(help="Subtask prompt"),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent kind for the child"),
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Spawn from this task"),
    key: Optional[str] = typer.Option(None, "--idempotency-key", help="Reuse the child from an earlier call"),
):
    """Spawn a child session for a subtask."""

    async def _spawn():
        from grove.genealogy import spawn
        from grove.storage.db import get_session

        async with get_session() as db:
            child = await spawn(
                db, check_prefix(session_id), prompt, agent_kind=agent, task_id=task, idempotency_key=key
            )
        console.print(f"Spawned: [cyan]{short(child.id)}[/cyan] ({child.agent_kind})")

    run(_spawn())


@app.command("tree")
def session_tree(session_id: str = typer.Argument(help="Session ID or prefix")):
    """Show a session's ancestors and descendants."""

    async def _tree():
        from grove.genealogy import ancestors, descendants
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository

        async with get_session() as db:
            session = await SessionRepository(db).get(check_prefix(session_id))
            chain = await ancestors(db, session.id)
            below = await descendants(db, session.id)

        by_id = {s.id: s for s in below}
        root_session = chain[-1] if chain else session
        tree = Tree(_describe(root_session))
        node = tree
        for ancestor in reversed(chain[:-1]):
            node = node.add(_describe(ancestor))
        if chain:
            node = node.add(f"{_describe(session)} [yellow]<-[/yellow]")

        def add_children(parent_node, parent):
            for child_id in parent.genealogy.children:
                child = by_id.get(child_id)
                if child is None:
                    continue
                add_children(parent_node.add(_describe(child)), child)

        add_children(node, session)
        console.print(tree)

    run(_tree())


@app.command("reparent")
def reparent_session(
    session_id: str = typer.Argument(help="Session to move"),
    new_parent: str = typer.Argument(help="New origin session"),
):
    """Move a session under another origin."""

    async def _reparent():
        from grove.genealogy import reparent
        from grove.storage.db import get_session

        async with get_session() as db:
            moved = await reparent(db, check_prefix(session_id), check_prefix(new_parent))
        console.print(f"Session {short(moved.id)} now under {short(moved.genealogy.origin)}")

    run(_reparent())


@app.command("delete")
def delete_session(
    session_id: str = typer.Argument(help="Session ID or prefix"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a session with its tasks and messages. Children are kept."""

    async def _delete():
        from grove.storage.db import get_session
        from grove.storage.sessions import SessionRepository

        async with get_session() as db:
            repo = SessionRepository(db)
            session = await repo.get(check_prefix(session_id))
            if not yes and not typer.confirm(f"Delete session {short(session.id)}?"):
                raise typer.Abort()
            await repo.delete(session.id)
        console.print(f"Deleted session {short(session.id)}")
        if session.genealogy.children:
            console.print(f"[yellow]{len(session.genealogy.children)} child session(s) kept[/yellow]")

    run(_delete())
