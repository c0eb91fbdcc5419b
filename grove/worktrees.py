"""Repository and worktree lifecycle.

Every operation that touches git follows the same three steps:

1. reserve: a short transaction records the intent (a `pending` repository
   row or worktree descriptor) and claims names, paths and numeric IDs;
2. run git in a worker thread with no transaction open;
3. confirm: a second transaction flips the record to `ready`, or removes the
   reservation if git failed.

A crash between steps leaves a `pending` record behind; `reconcile()` settles
it against what git actually reports.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grove.config import GitSettings, get_settings
from grove.entities import Repo, Worktree
from grove.errors import (
    AlreadyExistsError,
    DuplicateNameError,
    ExternalToolError,
    InvalidStateError,
    NotFoundError,
)
from grove.git import GitRunner, snapshot_sha
from grove.merge import deep_merge
from grove.storage.db import session_scope
from grove.storage.repos import RepoRepository

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """What a removal managed to delete on disk. Failures never abort the removal."""

    removed: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ReconcileReport:
    confirmed: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)


def lowest_unused_id(used: Iterable[int]) -> int:
    """Smallest positive integer not in `used`."""
    taken = set(used)
    candidate = 1
    while candidate in taken:
        candidate += 1
    return candidate


def _same_path(a: str, b: str) -> bool:
    return Path(a).expanduser().resolve() == Path(b).expanduser().resolve()


def _check_name(name: str) -> None:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise InvalidStateError(f"Invalid worktree name: {name!r}")


class WorktreeManager:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        git: GitRunner,
        settings: Optional[GitSettings] = None,
    ):
        self.sessionmaker = sessionmaker
        self.git = git
        self.settings = settings or get_settings().git

    # --- repositories ---

    async def clone_repository(self, url: str, slug: str, name: Optional[str] = None) -> Repo:
        """Clone `url` under the managed repos directory.

        Raises:
            AlreadyExistsError: The slug is taken or the target path exists.
            ExternalToolError: git clone failed; nothing is left recorded.
        """
        dest = self.settings.repos_dir.expanduser() / slug
        if dest.exists():
            raise AlreadyExistsError("Repository", slug, f"path {dest} already exists")

        async with session_scope(self.sessionmaker) as db:
            repo = await RepoRepository(db).create(
                {
                    "slug": slug,
                    "name": name or slug,
                    "remote_url": url,
                    "local_path": str(dest),
                    "managed": True,
                    "status": "pending",
                }
            )

        try:
            branch = await asyncio.to_thread(self.git.clone, url, dest)
        except (ExternalToolError, OSError) as e:
            logger.warning("Clone of %s failed, dropping reservation for %s", url, slug)
            async with session_scope(self.sessionmaker) as db:
                await RepoRepository(db).delete(repo.id)
            if dest.exists():
                await asyncio.to_thread(shutil.rmtree, dest, True)
            raise _as_tool_error(e, ["git", "clone", url, str(dest)])

        async with session_scope(self.sessionmaker) as db:
            repo = await RepoRepository(db).update(
                repo.id, {"status": "ready", "default_branch": branch}
            )
        logger.info("Cloned %s into %s (default branch %s)", url, dest, branch)
        return repo

    async def register_repository(self, path: Path, slug: str, name: Optional[str] = None) -> Repo:
        """Track an existing user-managed checkout. Grove never deletes its directory."""
        path = Path(path).expanduser().resolve()
        if not path.is_dir():
            raise NotFoundError("Directory", str(path))
        branch = await asyncio.to_thread(self.git.current_branch, path)

        async with session_scope(self.sessionmaker) as db:
            repo = await RepoRepository(db).create(
                {
                    "slug": slug,
                    "name": name or path.name,
                    "local_path": str(path),
                    "managed": False,
                    "default_branch": branch,
                    "status": "ready",
                }
            )
        logger.info("Registered repository %s at %s", slug, path)
        return repo

    async def remove_repository(
        self, repo_id: str, delete_files: bool = False, force: bool = False
    ) -> CleanupReport:
        """Forget a repository; with `delete_files`, also delete its directories.

        Each directory is deleted independently and failures are collected in
        the report. The checkout of a user-managed repository is never deleted.
        """
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_by_ref(repo_id)
            busy = [w.name for w in repo.worktrees if w.sessions]
            if busy and not force:
                raise InvalidStateError(
                    f"Repository '{repo.slug}' has worktrees with attached sessions: {', '.join(busy)}"
                )
            await repos.delete(repo.id)

        report = CleanupReport()
        if delete_files:
            for worktree in repo.worktrees:
                await self._rmtree(Path(worktree.path), report)
            if repo.managed:
                await self._rmtree(Path(repo.local_path), report)
            else:
                await self._best_effort(report, "prune worktrees", self.git.worktree_prune, Path(repo.local_path))
        logger.info("Removed repository %s", repo.slug)
        return report

    async def has_remote_branch(self, repo_id: str, branch: str) -> bool:
        repo = await self._load(repo_id)
        return await asyncio.to_thread(
            self.git.branch_exists_remote,
            Path(repo.local_path),
            branch,
            self.settings.default_remote,
        )

    # --- worktrees ---

    async def create_worktree(
        self,
        repo_id: str,
        name: str,
        ref: str,
        create_branch: bool = False,
        tracking_branch: Optional[str] = None,
        base_ref: Optional[str] = None,
    ) -> Repo:
        """Check out `ref` into a new worktree named `name`.

        `create_branch` is passed to git as given: callers decide whether the
        branch is new (see has_remote_branch()).

        Raises:
            DuplicateNameError: The repository already has a worktree `name`.
            AlreadyExistsError: The target path exists or belongs to another worktree.
            ExternalToolError: git failed; the reservation is removed.
        """
        _check_name(name)
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_for_update((await repos.get_by_ref(repo_id)).id)
            if repo.get_worktree(name) is not None:
                raise DuplicateNameError(repo.slug, name)

            path = self.settings.worktrees_dir.expanduser() / repo.slug / name
            if path.exists():
                raise AlreadyExistsError("Worktree", str(path), "path exists on disk")
            owner = await repos.find_worktree_by_path(str(path))
            if owner is not None:
                raise AlreadyExistsError(
                    "Worktree", str(path), f"path used by {owner[0].slug}/{owner[1].name}"
                )

            descriptor = Worktree(
                name=name,
                path=str(path),
                ref=ref,
                new_branch=create_branch,
                unique_numeric_id=lowest_unused_id(w.unique_numeric_id for w in repo.worktrees),
                tracking_branch=tracking_branch,
                status="pending",
            )
            await repos.update(
                repo.id, {"worktrees": [*self._dump(repo.worktrees), descriptor.model_dump(mode="json")]}
            )

        try:
            await asyncio.to_thread(
                self.git.worktree_add, Path(repo.local_path), path, ref, create_branch, base_ref
            )
        except (ExternalToolError, OSError) as e:
            logger.warning("git worktree add failed for %s/%s, dropping reservation", repo.slug, name)
            async with session_scope(self.sessionmaker) as db:
                await self._drop_worktrees(RepoRepository(db), repo.id, {name})
            raise _as_tool_error(e, ["git", "worktree", "add", str(path), ref])

        sha: Optional[str] = None
        try:
            sha = await asyncio.to_thread(snapshot_sha, self.git, path)
        except ExternalToolError as e:
            logger.warning("Could not read HEAD of new worktree %s: %s", path, e)

        async with session_scope(self.sessionmaker) as db:
            repo = await self._patch_worktree(
                RepoRepository(db), repo.id, name, {"status": "ready", "last_commit_sha": sha}
            )
        logger.info(
            "Created worktree %s/%s (#%d) at %s",
            repo.slug,
            name,
            descriptor.unique_numeric_id,
            path,
        )
        return repo

    async def remove_worktree(
        self,
        repo_id: str,
        name: str,
        delete_files: bool = False,
        force: bool = False,
    ) -> CleanupReport:
        """Drop a worktree descriptor, freeing its name and numeric ID.

        With `delete_files`, git's registration, the directory and stale
        administrative entries are removed, each step best-effort.
        """
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_for_update((await repos.get_by_ref(repo_id)).id)
            worktree = repo.get_worktree(name)
            if worktree is None:
                raise NotFoundError("Worktree", f"{repo.slug}/{name}")
            if worktree.sessions and not force:
                raise InvalidStateError(
                    f"Worktree {repo.slug}/{name} is used by {len(worktree.sessions)} session(s)"
                )
            await self._drop_worktrees(repos, repo.id, {name})

        report = CleanupReport()
        if delete_files:
            repo_path = Path(repo.local_path)
            worktree_path = Path(worktree.path)
            await self._best_effort(
                report, "git worktree remove", self.git.worktree_remove, repo_path, worktree_path
            )
            await self._rmtree(worktree_path, report)
            await self._best_effort(report, "prune worktrees", self.git.worktree_prune, repo_path)
        logger.info("Removed worktree %s/%s", repo.slug, name)
        return report

    async def attach_session(self, repo_id: str, name: str, session_id: str) -> Worktree:
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_for_update((await repos.get_by_ref(repo_id)).id)
            worktree = self._require(repo, name)
            sessions = worktree.sessions if session_id in worktree.sessions else [*worktree.sessions, session_id]
            repo = await self._patch_worktree(
                repos, repo.id, name, {"sessions": sessions, "last_used": _now()}
            )
        return repo.get_worktree(name)

    async def detach_session(self, repo_id: str, name: str, session_id: str) -> Worktree:
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_for_update((await repos.get_by_ref(repo_id)).id)
            worktree = self._require(repo, name)
            repo = await self._patch_worktree(
                repos,
                repo.id,
                name,
                {"sessions": [s for s in worktree.sessions if s != session_id], "last_used": _now()},
            )
        return repo.get_worktree(name)

    async def reconcile(self, repo_id: str, prune: bool = False) -> ReconcileReport:
        """Settle stored descriptors against `git worktree list`.

        Pending descriptors that git knows about are confirmed and the rest are
        dropped. Ready descriptors git no longer knows are reported missing,
        and dropped too when `prune` is set. Worktrees git knows but Grove does
        not are reported as untracked and left alone.

        A repository still `pending` from an interrupted clone is settled
        first: confirmed when its checkout answers git, dropped otherwise.
        """
        repo = await self._load(repo_id)
        if repo.status == "pending":
            return await self._settle_pending_repository(repo)
        listed = await asyncio.to_thread(self.git.worktree_list, Path(repo.local_path))
        heads = {str(Path(w.path).resolve()): w.head for w in listed}

        report = ReconcileReport()
        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            repo = await repos.get_for_update(repo.id)
            kept: list[dict[str, Any]] = []
            for worktree in repo.worktrees:
                key = str(Path(worktree.path).expanduser().resolve())
                present = key in heads
                if worktree.status == "pending":
                    if not present:
                        report.dropped.append(worktree.name)
                        continue
                    worktree = worktree.model_copy(
                        update={"status": "ready", "last_commit_sha": heads[key] or worktree.last_commit_sha}
                    )
                    report.confirmed.append(worktree.name)
                elif not present:
                    report.missing.append(worktree.name)
                    if prune:
                        report.dropped.append(worktree.name)
                        continue
                kept.append(worktree.model_dump(mode="json"))

            if report.confirmed or report.dropped:
                await repos.update(repo.id, {"worktrees": kept})

        known = [repo.local_path, *(w.path for w in repo.worktrees)]
        for listed_worktree in listed:
            if listed_worktree.bare:
                continue
            if not any(_same_path(str(listed_worktree.path), p) for p in known):
                report.untracked.append(str(listed_worktree.path))

        if report.confirmed or report.dropped or report.missing or report.untracked:
            logger.info(
                "Reconciled %s: confirmed=%s dropped=%s missing=%s untracked=%d",
                repo.slug,
                report.confirmed,
                report.dropped,
                report.missing,
                len(report.untracked),
            )
        return report

    # --- helpers ---

    async def _settle_pending_repository(self, repo: Repo) -> ReconcileReport:
        report = ReconcileReport()
        path = Path(repo.local_path)
        answered = False
        branch: Optional[str] = None
        if path.is_dir():
            try:
                branch = await asyncio.to_thread(self.git.current_branch, path)
                answered = True
            except ExternalToolError as e:
                logger.warning("Pending repository %s is not a usable checkout: %s", repo.slug, e)

        async with session_scope(self.sessionmaker) as db:
            repos = RepoRepository(db)
            if answered:
                await repos.update(
                    repo.id, {"status": "ready", "default_branch": branch or repo.default_branch}
                )
                report.confirmed.append(repo.slug)
            else:
                await repos.delete(repo.id)
                report.dropped.append(repo.slug)

        if not answered and repo.managed and path.exists():
            await asyncio.to_thread(shutil.rmtree, path, True)
        logger.info(
            "Reconciled pending repository %s: %s", repo.slug, "confirmed" if answered else "dropped"
        )
        return report

    async def _load(self, repo_id: str) -> Repo:
        async with session_scope(self.sessionmaker) as db:
            return await RepoRepository(db).get_by_ref(repo_id)

    @staticmethod
    def _dump(worktrees: list[Worktree]) -> list[dict[str, Any]]:
        return [w.model_dump(mode="json") for w in worktrees]

    @staticmethod
    def _require(repo: Repo, name: str) -> Worktree:
        worktree = repo.get_worktree(name)
        if worktree is None:
            raise NotFoundError("Worktree", f"{repo.slug}/{name}")
        return worktree

    async def _patch_worktree(
        self, repos: RepoRepository, repo_id: str, name: str, patch: dict[str, Any]
    ) -> Repo:
        """Merge `patch` into one descriptor. The repository row is locked first."""
        repo = await repos.get_for_update(repo_id)
        self._require(repo, name)
        worktrees = [
            deep_merge(w.model_dump(mode="json"), patch) if w.name == name else w.model_dump(mode="json")
            for w in repo.worktrees
        ]
        return await repos.update(repo.id, {"worktrees": worktrees})

    async def _drop_worktrees(self, repos: RepoRepository, repo_id: str, names: set[str]) -> Repo:
        repo = await repos.get_for_update(repo_id)
        return await repos.update(
            repo.id, {"worktrees": self._dump([w for w in repo.worktrees if w.name not in names])}
        )

    async def _best_effort(self, report: CleanupReport, what: str, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except ExternalToolError as e:
            logger.warning("%s failed: %s", what, e)
            report.failures.append(f"{what}: {e}")

    async def _rmtree(self, path: Path, report: CleanupReport) -> None:
        if not path.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as e:
            logger.warning("Could not delete %s: %s", path, e)
            report.failures.append(f"delete {path}: {e}")
            return
        report.removed.append(str(path))


def _as_tool_error(e: Exception, command: list[str]) -> ExternalToolError:
    if isinstance(e, ExternalToolError):
        return e
    error = ExternalToolError(command, None, str(e))
    error.__cause__ = e
    return error


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
