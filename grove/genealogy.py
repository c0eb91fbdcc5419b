"""Session genealogy: fork, spawn, and traversal of the session forest.

A fork branches a session at a decision point; a spawn delegates a subtask to
a (possibly different) agent. Both record the link on the child
(`forked_from` / `parent`) and append the child to the origin's `children`
inside the caller's transaction, so the two sides never disagree after a
commit.

Deleting a session never rewrites its children: their back-references keep
pointing at the deleted ID and traversals simply stop or skip there.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from grove.entities import Session
from grove.errors import InvalidStateError
from grove.storage.sessions import IDEMPOTENCY_KEY, SessionRepository
from grove.storage.tasks import TaskRepository

logger = logging.getLogger(__name__)


@dataclass
class GenealogyView:
    session: Session
    ancestors: list[Session] = field(default_factory=list)
    children: list[Session] = field(default_factory=list)


async def _check_task(db: AsyncSession, session: Session, task_id: Optional[str]) -> Optional[str]:
    if task_id is None:
        return None
    task = await TaskRepository(db).get(task_id)
    if task.session_id != session.id:
        raise InvalidStateError(
            f"Task {task.id[:8]} belongs to session {task.session_id[:8]}, not {session.id[:8]}"
        )
    return task.id


def _inherited(parent: Session, prompt: str) -> dict[str, Any]:
    return {
        "status": "idle",
        "agent_kind": parent.agent_kind,
        "description": prompt,
        "repo_context": parent.repo_context.model_dump(mode="json") if parent.repo_context else None,
        "git_state": parent.git_state.model_dump(mode="json"),
        "concept_refs": list(parent.concept_refs),
        "task_ids": [],
    }


async def _create_child(
    db: AsyncSession,
    parent: Session,
    values: dict[str, Any],
    idempotency_key: Optional[str],
) -> Session:
    repo = SessionRepository(db)
    if idempotency_key:
        existing = await repo.find_by_idempotency_key(parent.id, idempotency_key)
        if existing is not None:
            logger.info(
                "Reusing session %s for idempotency key %r", existing.id[:8], idempotency_key
            )
            return existing
        values["metadata"] = {IDEMPOTENCY_KEY: idempotency_key}

    child = await repo.create(values)
    await repo.add_child(parent.id, child.id)
    return child


async def fork(
    db: AsyncSession,
    parent_id: str,
    prompt: str,
    task_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Session:
    """Fork a session, optionally at one of its tasks.

    The child inherits the parent's agent, repository context, git state and
    concept references, and starts idle with no tasks. Retrying with the same
    `idempotency_key` returns the child created by the first call.
    """
    parent = await SessionRepository(db).get(parent_id)
    values = _inherited(parent, prompt)
    values["genealogy"] = {
        "forked_from": parent.id,
        "fork_point_task": await _check_task(db, parent, task_id),
    }
    child = await _create_child(db, parent, values, idempotency_key)
    logger.info("Forked session %s -> %s", parent.id[:8], child.id[:8])
    return child


async def spawn(
    db: AsyncSession,
    parent_id: str,
    prompt: str,
    agent_kind: Optional[str] = None,
    task_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Session:
    """Spawn a subtask session, optionally handing it to another agent kind."""
    parent = await SessionRepository(db).get(parent_id)
    values = _inherited(parent, prompt)
    if agent_kind:
        values["agent_kind"] = agent_kind
    values["genealogy"] = {
        "parent": parent.id,
        "spawn_point_task": await _check_task(db, parent, task_id),
    }
    child = await _create_child(db, parent, values, idempotency_key)
    logger.info("Spawned session %s -> %s (%s)", parent.id[:8], child.id[:8], child.agent_kind)
    return child


async def ancestors(db: AsyncSession, id: str) -> list[Session]:
    """Origins of a session, closest first.

    Follows the spawn parent, else the fork origin. The walk ends at a root,
    at a deleted session, or (logged as an error) at a revisited ID.
    """
    repo = SessionRepository(db)
    current = await repo.get(id)
    seen = {current.id}
    chain: list[Session] = []

    origin = current.genealogy.origin
    while origin:
        if origin in seen:
            logger.error(
                "Genealogy cycle detected at session %s while walking from %s",
                origin[:8],
                current.id[:8],
            )
            break
        seen.add(origin)
        session = await repo.find_by_id(origin)
        if session is None:
            break
        chain.append(session)
        origin = session.genealogy.origin
    return chain


async def descendants(db: AsyncSession, id: str) -> list[Session]:
    """All sessions below `id`, breadth first. Deleted children are skipped."""
    repo = SessionRepository(db)
    root = await repo.get(id)
    seen = {root.id}
    queue = deque(root.genealogy.children)
    found: list[Session] = []

    while queue:
        child_id = queue.popleft()
        if child_id in seen:
            continue
        seen.add(child_id)
        session = await repo.find_by_id(child_id)
        if session is None:
            continue
        found.append(session)
        queue.extend(session.genealogy.children)
    return found


async def children(db: AsyncSession, id: str) -> list[Session]:
    repo = SessionRepository(db)
    session = await repo.get(id)
    return await repo.find_many(session.genealogy.children)


async def genealogy_tree(db: AsyncSession, id: str) -> GenealogyView:
    repo = SessionRepository(db)
    session = await repo.get(id)
    return GenealogyView(
        session=session,
        ancestors=await ancestors(db, session.id),
        children=await repo.find_many(session.genealogy.children),
    )


async def reparent(db: AsyncSession, child_id: str, new_parent_id: str) -> Session:
    """Move a session under a new origin, keeping its relation kind.

    A forked session stays a fork of the new origin; anything else becomes a
    spawn child. The old origin, if it still exists, drops the child.
    """
    repo = SessionRepository(db)
    child = await repo.get(child_id)
    new_parent = await repo.get(new_parent_id)

    if new_parent.id == child.id:
        raise InvalidStateError(f"Session {child.id[:8]} cannot be its own parent")
    if any(s.id == new_parent.id for s in await descendants(db, child.id)):
        raise InvalidStateError(
            f"Session {new_parent.id[:8]} descends from {child.id[:8]}; reparenting would create a cycle"
        )

    old_origin = child.genealogy.origin
    if old_origin and old_origin != new_parent.id and await repo.find_by_id(old_origin):
        await repo.remove_child(old_origin, child.id)

    key = "forked_from" if child.genealogy.forked_from else "parent"
    updated = await repo.update(child.id, {"genealogy": {key: new_parent.id}})
    await repo.add_child(new_parent.id, child.id)
    logger.info("Reparented session %s under %s", child.id[:8], new_parent.id[:8])
    return updated
