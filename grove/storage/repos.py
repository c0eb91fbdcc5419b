"""Repository (git repo) records, including their worktree descriptors."""

from typing import Optional

from sqlalchemy import select

from grove.entities import Repo, Worktree
from grove.errors import AlreadyExistsError
from grove.ids import is_full_id
from grove.storage.base import BaseRepository
from grove.storage.models import RepoRecord


class RepoRepository(BaseRepository[Repo, RepoRecord]):
    record = RepoRecord
    entity = Repo
    entity_type = "Repository"
    columns = {
        "id": "id",
        "slug": "slug",
        "status": "status",
        "created_at": "created_at",
        "updated_at": "updated_at",
    }

    async def _check_unique(self, entity: Repo) -> None:
        with self._storage_errors("check"):
            result = await self.session.execute(
                select(RepoRecord.id).where(RepoRecord.slug == entity.slug, RepoRecord.id != entity.id)
            )
            if result.first() is not None:
                raise AlreadyExistsError("Repository", entity.slug)

    async def find_by_slug(self, slug: str) -> Optional[Repo]:
        matches = await self._find_where(RepoRecord.slug == slug)
        return matches[0] if matches else None

    async def get_by_ref(self, ref: str) -> Repo:
        """Look a repository up by slug first, then by full or short ID."""
        if not is_full_id(ref):
            repo = await self.find_by_slug(ref)
            if repo is not None:
                return repo
        return await self.get(ref)

    async def get_for_update(self, id: str) -> Repo:
        """Load a repository holding its row lock until the transaction ends."""
        return self._to_entity(await self._get_row(id, for_update=True))

    async def find_worktree_by_path(self, path: str) -> Optional[tuple[Repo, Worktree]]:
        """The repository and worktree descriptor that own `path`, if any."""
        for repo in await self.find_all():
            for worktree in repo.worktrees:
                if worktree.path == path:
                    return repo, worktree
        return None
