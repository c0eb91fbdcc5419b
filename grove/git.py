"""Git operations used by the worktree lifecycle manager.

`GitRunner` is the capability the rest of Grove depends on; `GitClient` is the
real implementation that shells out to `git` via `subprocess`. Each method
maps to a single git command so callers can reason about side effects. All of
them are blocking: async callers run them in a worker thread.

Failures (non-zero exit, missing binary, timeout) raise `ExternalToolError`
carrying git's stderr.

Recorded SHAs follow a `-dirty` convention: `snapshot_sha()` appends
`DIRTY_SUFFIX` when the working tree has uncommitted changes, and anything
that needs a real commit hash must pass the value through `strip_dirty()`.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from grove.errors import ExternalToolError

logger = logging.getLogger(__name__)

DIRTY_SUFFIX = "-dirty"


def strip_dirty(sha: str) -> str:
    """Remove the dirty marker so the value can be used as a commit hash."""
    if sha.endswith(DIRTY_SUFFIX):
        return sha[: -len(DIRTY_SUFFIX)]
    return sha


def mark_dirty(sha: str, dirty: bool) -> str:
    sha = strip_dirty(sha)
    return f"{sha}{DIRTY_SUFFIX}" if dirty and sha else sha


@dataclass(frozen=True)
class GitWorktree:
    path: Path
    head: str = ""
    branch: Optional[str] = None
    detached: bool = False
    bare: bool = False


class GitRunner(Protocol):
    def clone(self, url: str, dest: Path) -> str: ...

    def worktree_add(
        self,
        repo_path: Path,
        dest: Path,
        ref: str,
        create_branch: bool,
        base_ref: Optional[str] = None,
    ) -> None: ...

    def worktree_remove(self, repo_path: Path, worktree_path: Path) -> None: ...

    def worktree_list(self, repo_path: Path) -> list[GitWorktree]: ...

    def worktree_prune(self, repo_path: Path) -> None: ...

    def branch_exists_remote(self, repo_path: Path, branch: str, remote: str = "origin") -> bool: ...

    def current_branch(self, repo_path: Path) -> Optional[str]: ...

    def current_sha(self, repo_path: Path) -> str: ...

    def is_dirty(self, repo_path: Path) -> bool: ...


def parse_worktree_porcelain(output: str) -> list[GitWorktree]:
    """Parse `git worktree list --porcelain` output."""
    worktrees: list[GitWorktree] = []
    current: dict = {}

    def flush() -> None:
        if current.get("path") is not None:
            worktrees.append(GitWorktree(**current))
        current.clear()

    for line in output.splitlines():
        if not line.strip():
            flush()
            continue
        if line.startswith("worktree "):
            flush()
            current["path"] = Path(line.split(" ", 1)[1])
        elif line.startswith("HEAD "):
            current["head"] = line.split(" ", 1)[1].strip()
        elif line.startswith("branch "):
            current["branch"] = line.split(" ", 1)[1].strip().removeprefix("refs/heads/")
        elif line.strip() == "detached":
            current["detached"] = True
        elif line.strip() == "bare":
            current["bare"] = True

    flush()
    return worktrees


class GitClient:
    def __init__(self, *, git_binary: str = "git", timeout: Optional[float] = 600.0) -> None:
        self.git_binary = git_binary
        self.timeout = timeout

    def clone(self, url: str, dest: Path) -> str:
        """Clone `url` into `dest` and return the checked-out default branch."""
        self._make_parent(dest, ["clone", url, str(dest)])
        self._git(["clone", url, str(dest)], cwd=dest.parent)
        return self.current_branch(dest) or "main"

    def worktree_add(
        self,
        repo_path: Path,
        dest: Path,
        ref: str,
        create_branch: bool,
        base_ref: Optional[str] = None,
    ) -> None:
        self._make_parent(dest, ["worktree", "add", str(dest), ref])
        if create_branch:
            args = ["worktree", "add", "-b", ref, str(dest)]
            if base_ref:
                args.append(base_ref)
        else:
            args = ["worktree", "add", str(dest), ref]
        self._git(args, cwd=repo_path)

    def worktree_remove(self, repo_path: Path, worktree_path: Path) -> None:
        self._git(["worktree", "remove", "--force", str(worktree_path)], cwd=repo_path)

    def worktree_list(self, repo_path: Path) -> list[GitWorktree]:
        out = self._git(["worktree", "list", "--porcelain"], cwd=repo_path)
        return parse_worktree_porcelain(out)

    def worktree_prune(self, repo_path: Path) -> None:
        self._git(["worktree", "prune"], cwd=repo_path)

    def branch_exists_remote(self, repo_path: Path, branch: str, remote: str = "origin") -> bool:
        p = self._run(
            ["show-ref", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}"],
            cwd=repo_path,
        )
        return p.returncode == 0

    def current_branch(self, repo_path: Path) -> Optional[str]:
        """Return the checked-out branch, or None when HEAD is detached."""
        p = self._run(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=repo_path)
        if p.returncode != 0:
            return None
        return p.stdout.strip() or None

    def current_sha(self, repo_path: Path) -> str:
        return self._git(["rev-parse", "HEAD"], cwd=repo_path).strip()

    def is_dirty(self, repo_path: Path) -> bool:
        return bool(self._git(["status", "--porcelain"], cwd=repo_path).strip())

    def _make_parent(self, dest: Path, args: list[str]) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExternalToolError([self.git_binary, *args], None, str(e)) from e

    def _git(self, args: list[str], *, cwd: Path) -> str:
        p = self._run(args, cwd=cwd)
        if p.returncode != 0:
            raise ExternalToolError([self.git_binary, *args], p.returncode, p.stderr or "")
        return p.stdout

    def _run(self, args: list[str], *, cwd: Path) -> subprocess.CompletedProcess:
        cmd = [self.git_binary, *args]
        logger.debug("Running %s in %s", " ".join(cmd), cwd)
        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                text=True,
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(cmd, None, f"timed out after {e.timeout}s") from e
        except OSError as e:
            raise ExternalToolError(cmd, None, str(e)) from e


def snapshot_sha(git: GitRunner, repo_path: Path) -> str:
    """Current HEAD SHA, with the dirty marker when there are uncommitted changes."""
    return mark_dirty(git.current_sha(repo_path), git.is_dirty(repo_path))
