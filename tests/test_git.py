"""Tests for git helpers that do not need a repository."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from grove.entities import GitState
from grove.errors import ExternalToolError
from grove.git import DIRTY_SUFFIX, GitClient, mark_dirty, parse_worktree_porcelain, snapshot_sha, strip_dirty
from tests.conftest import FAKE_SHA, FakeGit

PORCELAIN = """worktree /src/demo
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /home/me/.grove/worktrees/demo/feature-x
HEAD 2222222222222222222222222222222222222222
branch refs/heads/feature-x

worktree /home/me/.grove/worktrees/demo/probe
HEAD 3333333333333333333333333333333333333333
detached
"""


class TestDirtySuffix:
    def test_strip_dirty(self):
        assert strip_dirty("abc123-dirty") == "abc123"
        assert strip_dirty("abc123") == "abc123"

    def test_mark_dirty(self):
        assert mark_dirty("abc123", True) == "abc123" + DIRTY_SUFFIX
        assert mark_dirty("abc123-dirty", False) == "abc123"
        assert mark_dirty("abc123-dirty", True) == "abc123-dirty"
        assert mark_dirty("", True) == ""

    def test_git_state_reads_suffix(self):
        state = GitState(ref="main", base_sha="abc", current_sha="def-dirty")
        assert state.is_dirty
        assert state.current_commit == "def"

    def test_snapshot_sha(self):
        git = FakeGit()
        assert snapshot_sha(git, Path("/repo")) == FAKE_SHA
        git.dirty = True
        assert snapshot_sha(git, Path("/repo")) == FAKE_SHA + DIRTY_SUFFIX


class TestParsePorcelain:
    def test_parses_entries(self):
        worktrees = parse_worktree_porcelain(PORCELAIN)
        assert [w.path for w in worktrees] == [
            Path("/src/demo"),
            Path("/home/me/.grove/worktrees/demo/feature-x"),
            Path("/home/me/.grove/worktrees/demo/probe"),
        ]
        assert worktrees[1].branch == "feature-x"
        assert worktrees[1].head.startswith("2222")
        assert worktrees[2].detached
        assert worktrees[2].branch is None

    def test_bare_repository(self):
        worktrees = parse_worktree_porcelain("worktree /srv/demo.git\nbare\n")
        assert len(worktrees) == 1
        assert worktrees[0].bare

    def test_empty_output(self):
        assert parse_worktree_porcelain("") == []


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestGitClient:
    def test_worktree_add_existing_branch(self, tmp_path):
        client = GitClient()
        with patch("grove.git.subprocess.run", return_value=_completed()) as run:
            client.worktree_add(tmp_path, tmp_path / "wt" / "x", "feature-x", create_branch=False)
        assert run.call_args.args[0] == ["git", "worktree", "add", str(tmp_path / "wt" / "x"), "feature-x"]

    def test_worktree_add_new_branch_with_base(self, tmp_path):
        client = GitClient()
        with patch("grove.git.subprocess.run", return_value=_completed()) as run:
            client.worktree_add(tmp_path, tmp_path / "x", "feature-x", create_branch=True, base_ref="main")
        assert run.call_args.args[0] == ["git", "worktree", "add", "-b", "feature-x", str(tmp_path / "x"), "main"]

    def test_failure_raises_with_stderr(self, tmp_path):
        client = GitClient()
        failed = _completed(returncode=128, stderr="fatal: invalid reference: nope\n")
        with patch("grove.git.subprocess.run", return_value=failed):
            with pytest.raises(ExternalToolError) as exc:
                client.current_sha(tmp_path)
        assert exc.value.returncode == 128
        assert "invalid reference" in exc.value.stderr

    def test_missing_binary(self, tmp_path):
        client = GitClient(git_binary="/nonexistent/git")
        with pytest.raises(ExternalToolError) as exc:
            client.worktree_prune(tmp_path)
        assert exc.value.returncode is None

    def test_unusable_parent_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        client = GitClient()
        with patch("grove.git.subprocess.run") as run:
            with pytest.raises(ExternalToolError) as exc:
                client.clone("https://example.com/acme/demo.git", blocker / "repos" / "demo")
            with pytest.raises(ExternalToolError):
                client.worktree_add(tmp_path, blocker / "wt" / "x", "x", create_branch=True)
        assert exc.value.returncode is None
        assert exc.value.command[:2] == ["git", "clone"]
        run.assert_not_called()

    def test_timeout(self, tmp_path):
        client = GitClient(timeout=1)
        with patch("grove.git.subprocess.run", side_effect=subprocess.TimeoutExpired(["git"], 1)):
            with pytest.raises(ExternalToolError, match="timed out"):
                client.worktree_list(tmp_path)

    def test_current_branch_detached(self, tmp_path):
        client = GitClient()
        with patch("grove.git.subprocess.run", return_value=_completed(returncode=1)):
            assert client.current_branch(tmp_path) is None

    def test_branch_exists_remote(self, tmp_path):
        client = GitClient()
        with patch("grove.git.subprocess.run", return_value=_completed()) as run:
            assert client.branch_exists_remote(tmp_path, "feature-x")
        assert "refs/remotes/origin/feature-x" in run.call_args.args[0]
        with patch("grove.git.subprocess.run", return_value=_completed(returncode=1)):
            assert not client.branch_exists_remote(tmp_path, "feature-x")
