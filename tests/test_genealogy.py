"""Tests for fork/spawn and genealogy traversal."""

import asyncio
import logging

import pytest

from grove.errors import InvalidStateError, NotFoundError
from grove.genealogy import ancestors, children, descendants, fork, genealogy_tree, reparent, spawn
from grove.storage.db import session_scope
from grove.storage.sessions import SessionRepository
from grove.storage.tasks import TaskRepository


async def _root(db, **values):
    return await SessionRepository(db).create(
        {
            "agent_kind": "claude-code",
            "repo_context": {"repo_slug": "demo", "worktree_name": "main", "cwd": "/wt/demo/main"},
            "git_state": {"ref": "main", "base_sha": "aaa", "current_sha": "bbb"},
            "concept_refs": ["auth"],
            "task_ids": ["t1"],
            "status": "running",
            **values,
        }
    )


class TestFork:
    @pytest.mark.asyncio
    async def test_fork_links_both_sides(self, db):
        parent = await _root(db)
        child = await fork(db, parent.id, "p")

        assert child.genealogy.forked_from == parent.id
        assert child.genealogy.parent is None
        assert child.task_ids == []
        assert child.status == "idle"
        assert child.description == "p"

        reloaded = await SessionRepository(db).get(parent.id)
        assert reloaded.genealogy.children.count(child.id) == 1

    @pytest.mark.asyncio
    async def test_fork_copies_context(self, db):
        parent = await _root(db)
        child = await fork(db, parent.id, "p")
        assert child.agent_kind == "claude-code"
        assert child.repo_context.cwd == "/wt/demo/main"
        assert child.git_state.current_sha == "bbb"
        assert child.concept_refs == ["auth"]

    @pytest.mark.asyncio
    async def test_fork_by_short_id(self, db):
        parent = await _root(db)
        child = await fork(db, parent.id.replace("-", "")[:12], "p")
        assert child.genealogy.forked_from == parent.id

    @pytest.mark.asyncio
    async def test_fork_at_task(self, db):
        parent = await _root(db)
        task = await TaskRepository(db).create(
            {"session_id": parent.id, "full_prompt": "x", "message_range": {"start_index": 0, "end_index": 0}}
        )
        child = await fork(db, parent.id, "p", task_id=task.id)
        assert child.genealogy.fork_point_task == task.id

    @pytest.mark.asyncio
    async def test_fork_at_foreign_task_rejected(self, db):
        parent = await _root(db)
        other = await _root(db)
        task = await TaskRepository(db).create(
            {"session_id": other.id, "full_prompt": "x", "message_range": {"start_index": 0, "end_index": 0}}
        )
        with pytest.raises(InvalidStateError):
            await fork(db, parent.id, "p", task_id=task.id)

    @pytest.mark.asyncio
    async def test_fork_missing_parent(self, db):
        with pytest.raises(NotFoundError):
            await fork(db, "0193a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b", "p")

    @pytest.mark.asyncio
    async def test_idempotency_key_creates_one_child(self, sessionmaker):
        async with session_scope(sessionmaker) as db:
            parent = await _root(db)
        async with session_scope(sessionmaker) as db:
            first = await fork(db, parent.id, "p", idempotency_key="req-1")
        async with session_scope(sessionmaker) as db:
            second = await fork(db, parent.id, "p", idempotency_key="req-1")
        async with session_scope(sessionmaker) as db:
            reloaded = await SessionRepository(db).get(parent.id)
            total = await SessionRepository(db).count()

        assert first.id == second.id
        assert reloaded.genealogy.children == [first.id]
        assert total == 2

    @pytest.mark.asyncio
    async def test_different_keys_create_separate_children(self, db):
        parent = await _root(db)
        a = await fork(db, parent.id, "p", idempotency_key="a")
        b = await fork(db, parent.id, "p", idempotency_key="b")
        assert a.id != b.id


class TestSpawn:
    @pytest.mark.asyncio
    async def test_spawn_with_agent_override(self, db):
        parent = await _root(db)
        child = await spawn(db, parent.id, "p", agent_kind="X")
        assert child.genealogy.parent == parent.id
        assert child.genealogy.forked_from is None
        assert child.agent_kind == "X"
        reloaded = await SessionRepository(db).get(parent.id)
        assert child.id in reloaded.genealogy.children

    @pytest.mark.asyncio
    async def test_spawn_inherits_agent_by_default(self, db):
        parent = await _root(db, agent_kind="codex")
        child = await spawn(db, parent.id, "p")
        assert child.agent_kind == "codex"

    @pytest.mark.asyncio
    async def test_children_projection(self, db):
        parent = await _root(db)
        a = await spawn(db, parent.id, "a")
        b = await fork(db, parent.id, "b")
        found = await SessionRepository(db).find_children(parent.id)
        assert {s.id for s in found} == {a.id, b.id}
        assert [s.id for s in await children(db, parent.id)] == [a.id, b.id]


class TestTraversal:
    @pytest.mark.asyncio
    async def test_ancestors_of_three_forks(self, db):
        root = await _root(db)
        first = await fork(db, root.id, "1")
        second = await fork(db, first.id, "2")
        third = await fork(db, second.id, "3")

        chain = await ancestors(db, third.id)
        assert [s.id for s in chain] == [second.id, first.id, root.id]

    @pytest.mark.asyncio
    async def test_ancestors_mixed_relations(self, db):
        root = await _root(db)
        spawned = await spawn(db, root.id, "s")
        forked = await fork(db, spawned.id, "f")
        assert [s.id for s in await ancestors(db, forked.id)] == [spawned.id, root.id]

    @pytest.mark.asyncio
    async def test_ancestors_of_root(self, db):
        root = await _root(db)
        assert await ancestors(db, root.id) == []

    @pytest.mark.asyncio
    async def test_ancestors_stop_at_cycle(self, db, caplog):
        repo = SessionRepository(db)
        a = await _root(db)
        b = await _root(db, genealogy={"parent": a.id})
        await repo.update(a.id, {"genealogy": {"parent": b.id}})

        with caplog.at_level(logging.ERROR, logger="grove.genealogy"):
            chain = await ancestors(db, b.id)
        assert [s.id for s in chain] == [a.id]
        assert "cycle" in caplog.text

    @pytest.mark.asyncio
    async def test_descendants_breadth_first(self, db):
        root = await _root(db)
        a = await spawn(db, root.id, "a")
        b = await fork(db, root.id, "b")
        a1 = await fork(db, a.id, "a1")
        b1 = await spawn(db, b.id, "b1")

        found = await descendants(db, root.id)
        assert [s.id for s in found] == [a.id, b.id, a1.id, b1.id]

    @pytest.mark.asyncio
    async def test_genealogy_tree(self, db):
        root = await _root(db)
        mid = await fork(db, root.id, "mid")
        leaf = await spawn(db, mid.id, "leaf")
        view = await genealogy_tree(db, mid.id)
        assert view.session.id == mid.id
        assert [s.id for s in view.ancestors] == [root.id]
        assert [s.id for s in view.children] == [leaf.id]


class TestDeletion:
    @pytest.mark.asyncio
    async def test_deleting_parent_keeps_children(self, db):
        repo = SessionRepository(db)
        parent = await _root(db)
        forked = await fork(db, parent.id, "f")
        spawned = await spawn(db, parent.id, "s")

        await repo.delete(parent.id)

        kept_fork = await repo.get(forked.id)
        kept_spawn = await repo.get(spawned.id)
        assert kept_fork.genealogy.forked_from == parent.id
        assert kept_spawn.genealogy.parent == parent.id
        assert await ancestors(db, forked.id) == []

    @pytest.mark.asyncio
    async def test_descendants_skip_deleted_child(self, db):
        repo = SessionRepository(db)
        root = await _root(db)
        gone = await fork(db, root.id, "gone")
        kept = await fork(db, root.id, "kept")
        await repo.delete(gone.id)

        assert [s.id for s in await descendants(db, root.id)] == [kept.id]
        assert gone.id in (await repo.get(root.id)).genealogy.children


class TestReparent:
    @pytest.mark.asyncio
    async def test_reparent_moves_child(self, db):
        repo = SessionRepository(db)
        old = await _root(db)
        new = await _root(db)
        child = await fork(db, old.id, "c")

        moved = await reparent(db, child.id, new.id)
        assert moved.genealogy.forked_from == new.id
        assert child.id not in (await repo.get(old.id)).genealogy.children
        assert child.id in (await repo.get(new.id)).genealogy.children

    @pytest.mark.asyncio
    async def test_reparent_orphan_after_delete(self, db):
        repo = SessionRepository(db)
        old = await _root(db)
        new = await _root(db)
        child = await spawn(db, old.id, "c")
        await repo.delete(old.id)

        moved = await reparent(db, child.id, new.id)
        assert moved.genealogy.parent == new.id

    @pytest.mark.asyncio
    async def test_reparent_under_descendant_rejected(self, db):
        root = await _root(db)
        child = await spawn(db, root.id, "c")
        with pytest.raises(InvalidStateError):
            await reparent(db, root.id, child.id)

    @pytest.mark.asyncio
    async def test_reparent_onto_self_rejected(self, db):
        root = await _root(db)
        with pytest.raises(InvalidStateError):
            await reparent(db, root.id, root.id)


class TestConcurrentUpdates:
    @pytest.mark.asyncio
    async def test_concurrent_forks_keep_every_child(self, sessionmaker):
        async with session_scope(sessionmaker) as db:
            parent = await _root(db)

        async def fork_one(i):
            async with session_scope(sessionmaker) as db:
                return await fork(db, parent.id, f"attempt {i}")

        forks = await asyncio.gather(*(fork_one(i) for i in range(5)))

        async with session_scope(sessionmaker) as db:
            reloaded = await SessionRepository(db).get(parent.id)
        assert sorted(reloaded.genealogy.children) == sorted(f.id for f in forks)

    @pytest.mark.asyncio
    async def test_concurrent_add_child_is_linearizable(self, sessionmaker):
        async with session_scope(sessionmaker) as db:
            parent = await _root(db)
        child_ids = [f"child-{i}" for i in range(5)]

        async def add(child_id):
            async with session_scope(sessionmaker) as db:
                await SessionRepository(db).add_child(parent.id, child_id)

        await asyncio.gather(*(add(c) for c in child_ids))

        async with session_scope(sessionmaker) as db:
            reloaded = await SessionRepository(db).get(parent.id)
        assert sorted(reloaded.genealogy.children) == sorted(child_ids)
