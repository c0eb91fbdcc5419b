"""Import Claude Code transcripts as Grove sessions.

A transcript becomes one completed session plus its messages, tasks and
message->task links. Each kind is written in fixed-size batches, one
transaction per batch, so a very long transcript never holds a single huge
transaction open. When a batch fails, the batches before it stay committed and
`BatchImportError` says exactly which range broke.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grove.config import get_settings
from grove.entities import GitState, RepoContext
from grove.errors import BatchImportError, ExternalToolError, GroveError, NotFoundError
from grove.git import GitRunner, snapshot_sha, strip_dirty
from grove.ids import generate_id
from grove.ingestion.transcript import (
    batched,
    filter_conversation,
    is_prompt,
    link_messages_to_tasks,
    load_transcript,
    parse_transcript,
    reindex,
    segment_into_tasks,
    transcript_cwd,
)
from grove.storage.boards import BoardRepository
from grove.storage.db import session_scope
from grove.storage.messages import MessageRepository
from grove.storage.sessions import SessionRepository
from grove.storage.tasks import TaskRepository

logger = logging.getLogger(__name__)

IMPORTED_AGENT = "claude-code"


@dataclass
class ImportSummary:
    session_id: str
    message_count: int = 0
    task_count: int = 0
    link_count: int = 0
    tool_use_count: int = 0
    board_id: Optional[str] = None
    transcript_path: Optional[str] = None


@dataclass
class BulkImportResult:
    imported: list[ImportSummary] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def _capture_git_state(git: GitRunner, cwd: str) -> GitState:
    path = Path(cwd)
    if not path.is_dir():
        return GitState(ref="unknown")
    try:
        sha = await asyncio.to_thread(snapshot_sha, git, path)
        branch = await asyncio.to_thread(git.current_branch, path)
    except ExternalToolError as e:
        logger.warning("Could not read git state of %s: %s", cwd, e)
        return GitState(ref="unknown")
    return GitState(ref=branch or "HEAD", base_sha=strip_dirty(sha), current_sha=sha)


async def _write_batches(
    sessionmaker: async_sessionmaker[AsyncSession],
    stage: str,
    items: Sequence,
    size: int,
    session_id: str,
    write: Callable[[AsyncSession, Sequence], Awaitable[object]],
) -> None:
    for batch_index, (start, chunk) in enumerate(batched(items, size)):
        try:
            async with session_scope(sessionmaker) as db:
                await write(db, chunk)
        except GroveError as e:
            raise BatchImportError(stage, batch_index, start, start + len(chunk), session_id, e) from e
        logger.debug(
            "Imported %s %d-%d of %d for session %s",
            stage,
            start,
            start + len(chunk) - 1,
            len(items),
            session_id[:8],
        )


async def import_transcript(
    sessionmaker: async_sessionmaker[AsyncSession],
    lines: Iterable[str],
    *,
    agent_session_id: Optional[str] = None,
    transcript_path: Optional[Path] = None,
    project_dir: Optional[Path] = None,
    board: Optional[str] = None,
    git: Optional[GitRunner] = None,
    batch_size: Optional[int] = None,
    preview_chars: Optional[int] = None,
) -> ImportSummary:
    """Create a session from transcript lines and store its conversation.

    Args:
        sessionmaker: Factory for the per-batch transactions.
        lines: Raw JSONL lines of the transcript.
        agent_session_id: Claude Code's own session ID, kept in metadata.
        transcript_path: Where the lines came from, kept in metadata.
        project_dir: Working directory to record when the transcript has none.
        board: Board slug or ID to add the session to. A missing board is
            logged and skipped.
        git: When given, the working directory's git state is recorded.
        batch_size: Items per transaction (default from settings).
        preview_chars: Length of message previews (default from settings).

    Raises:
        BatchImportError: A message, task or link batch failed.
        SegmentationError: The task ranges do not cover the messages exactly.
    """
    settings = get_settings().importer
    batch_size = batch_size or settings.batch_size
    preview_chars = preview_chars or settings.preview_chars
    lines = list(lines)

    session_id = generate_id()
    parsed = parse_transcript(lines, session_id, preview_chars)
    messages = reindex(filter_conversation(parsed))
    tasks = segment_into_tasks(messages, session_id, preview_chars)
    links = link_messages_to_tasks(messages, tasks) if tasks else []
    tool_use_count = sum(t.tool_use_count for t in tasks)

    cwd = transcript_cwd(lines) or (str(project_dir) if project_dir else "")
    git_state = await _capture_git_state(git, cwd) if git and cwd else GitState(ref="unknown")
    first_prompt = next((m for m in messages if is_prompt(m)), None)

    metadata = {"imported_from": "claude-code", "transcript_lines": len(parsed)}
    if agent_session_id:
        metadata["original_session_id"] = agent_session_id
    if transcript_path:
        metadata["transcript_path"] = str(transcript_path)

    async with session_scope(sessionmaker) as db:
        await SessionRepository(db).create(
            {
                "id": session_id,
                "status": "completed",
                "agent_kind": IMPORTED_AGENT,
                "description": first_prompt.content_preview if first_prompt else "Imported Claude Code session",
                "repo_context": RepoContext(cwd=cwd, managed_worktree=False),
                "git_state": git_state,
                "metadata": metadata,
            }
        )
    logger.info(
        "Importing session %s: %d messages, %d tasks",
        session_id[:8],
        len(messages),
        len(tasks),
    )

    await _write_batches(
        sessionmaker,
        "messages",
        messages,
        batch_size,
        session_id,
        lambda db, chunk: MessageRepository(db).create_many(chunk),
    )
    await _write_batches(
        sessionmaker,
        "tasks",
        tasks,
        batch_size,
        session_id,
        lambda db, chunk: TaskRepository(db).create_many(chunk),
    )
    await _write_batches(
        sessionmaker,
        "links",
        links,
        batch_size,
        session_id,
        lambda db, chunk: MessageRepository(db).assign_tasks(chunk),
    )

    summary = ImportSummary(
        session_id=session_id,
        message_count=len(messages),
        task_count=len(tasks),
        link_count=len(links),
        tool_use_count=tool_use_count,
        transcript_path=str(transcript_path) if transcript_path else None,
    )

    async with session_scope(sessionmaker) as db:
        patch = {
            "task_ids": [t.id for t in tasks],
            "message_count": len(messages),
            "tool_use_count": tool_use_count,
        }
        if board:
            try:
                found = await BoardRepository(db).get_by_ref(board)
            except NotFoundError as e:
                logger.warning("Not adding session %s to board: %s", session_id[:8], e)
            else:
                await BoardRepository(db).add_session(found.id, session_id)
                patch["board_id"] = found.id
                summary.board_id = found.id
        await SessionRepository(db).update(session_id, patch)

    logger.info("Imported session %s", session_id[:8])
    return summary


async def import_many(
    sessionmaker: async_sessionmaker[AsyncSession],
    paths: Sequence[Path],
    max_concurrency: Optional[int] = None,
    **kwargs,
) -> BulkImportResult:
    """Import several transcript files concurrently.

    Each file is its own session; batches within a file stay sequential.
    A failing file is recorded in `failed` and does not stop the others.
    """
    limit = asyncio.Semaphore(max_concurrency or get_settings().importer.max_concurrency)
    result = BulkImportResult()

    async def _one(path: Path) -> None:
        async with limit:
            try:
                summary = await import_transcript(
                    sessionmaker,
                    load_transcript(path),
                    agent_session_id=Path(path).stem,
                    transcript_path=path,
                    **kwargs,
                )
            except GroveError as e:
                logger.error("Failed to import %s: %s", path, e)
                result.failed[str(path)] = str(e)
                return
            result.imported.append(summary)

    await asyncio.gather(*(_one(p) for p in paths))
    logger.info(
        "Transcript import: %d imported, %d failed",
        len(result.imported),
        len(result.failed),
    )
    return result
