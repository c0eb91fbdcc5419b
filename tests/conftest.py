"""Shared test fixtures."""

import json
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from grove.config import GitSettings
from grove.errors import ExternalToolError
from grove.git import GitWorktree
from grove.storage.db import create_engine, create_schema, make_sessionmaker, session_scope
from grove.worktrees import WorktreeManager

FAKE_SHA = "0123456789abcdef0123456789abcdef01234567"


class FakeGit:
    """In-memory GitRunner: creates directories, never runs git."""

    def __init__(self):
        self.calls: list[str] = []
        self.added: list[tuple] = []
        self.worktrees: dict[Path, str] = {}
        self.fail_on: set[str] = set()
        self.remote_branches: set[str] = set()
        self.sha = FAKE_SHA
        self.dirty = False
        self.branch: Optional[str] = "main"

    def _call(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail_on:
            raise ExternalToolError(["git", op], 128, f"fatal: {op} failed")

    def clone(self, url, dest):
        self._call("clone")
        dest.mkdir(parents=True)
        return "main"

    def worktree_add(self, repo_path, dest, ref, create_branch, base_ref=None):
        self._call("worktree_add")
        dest.mkdir(parents=True)
        self.worktrees[dest] = ref
        self.added.append((dest, ref, create_branch, base_ref))

    def worktree_remove(self, repo_path, worktree_path):
        self._call("worktree_remove")
        self.worktrees.pop(worktree_path, None)

    def worktree_list(self, repo_path):
        self._call("worktree_list")
        return [
            GitWorktree(path=repo_path, head=self.sha, branch="main"),
            *(GitWorktree(path=p, head=self.sha, branch=ref) for p, ref in self.worktrees.items()),
        ]

    def worktree_prune(self, repo_path):
        self._call("worktree_prune")

    def branch_exists_remote(self, repo_path, branch, remote="origin"):
        self._call("branch_exists_remote")
        return branch in self.remote_branches

    def current_branch(self, repo_path):
        self._call("current_branch")
        return self.branch

    def current_sha(self, repo_path):
        self._call("current_sha")
        return self.sha

    def is_dirty(self, repo_path):
        self._call("is_dirty")
        return self.dirty


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'grove.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return make_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(sessionmaker):
    async with session_scope(sessionmaker) as session:
        yield session


@pytest.fixture
def git():
    return FakeGit()


@pytest.fixture
def git_settings(tmp_path):
    return GitSettings(repos_dir=tmp_path / "repos", worktrees_dir=tmp_path / "worktrees")


@pytest.fixture
def manager(sessionmaker, git, git_settings):
    return WorktreeManager(sessionmaker, git, git_settings)


@pytest_asyncio.fixture
async def repo(manager, tmp_path):
    """A registered user-managed checkout."""
    checkout = tmp_path / "checkout"
    checkout.mkdir()
    return await manager.register_repository(checkout, "demo")


def record(type_, content, *, role=None, model=None, **extra):
    """One transcript record as Claude Code writes it."""
    message = {"role": role or type_, "content": content}
    if model:
        message["model"] = model
    data = {"type": type_, "message": message, "timestamp": "2026-03-01T10:00:00Z"}
    data.update(extra)
    return data


def user(text, **extra):
    return record("user", text, **extra)


def assistant(text="ok", tools=0, model="claude-sonnet", **extra):
    blocks = [{"type": "text", "text": text}]
    blocks += [{"type": "tool_use", "id": f"tu{i}", "name": "Bash", "input": {}} for i in range(tools)]
    return record("assistant", blocks, model=model, **extra)


def tool_result(**extra):
    return record("user", [{"type": "tool_result", "tool_use_id": "tu0", "content": "done"}], **extra)


def jsonl(*records) -> list[str]:
    return [json.dumps(r) for r in records]
