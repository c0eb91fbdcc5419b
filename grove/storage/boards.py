"""Board repository. Boards only group sessions; references are not validated."""

from typing import Optional

from sqlalchemy import select

from grove.entities import Board
from grove.errors import AlreadyExistsError
from grove.storage.base import BaseRepository
from grove.storage.models import BoardRecord


class BoardRepository(BaseRepository[Board, BoardRecord]):
    record = BoardRecord
    entity = Board
    entity_type = "Board"
    columns = {
        "id": "id",
        "name": "name",
        "slug": "slug",
        "created_at": "created_at",
        "updated_at": "updated_at",
    }

    async def _check_unique(self, entity: Board) -> None:
        if not entity.slug:
            return
        with self._storage_errors("check"):
            result = await self.session.execute(
                select(BoardRecord.id).where(BoardRecord.slug == entity.slug, BoardRecord.id != entity.id)
            )
            if result.first() is not None:
                raise AlreadyExistsError("Board", entity.slug)

    async def find_by_slug(self, slug: str) -> Optional[Board]:
        matches = await self._find_where(BoardRecord.slug == slug)
        return matches[0] if matches else None

    async def get_by_ref(self, ref: str) -> Board:
        """Look a board up by slug first, then by full or short ID."""
        board = await self.find_by_slug(ref)
        if board is not None:
            return board
        return await self.get(ref)

    async def add_session(self, board_id: str, session_id: str) -> Board:
        board = self._to_entity(await self._get_row(board_id, for_update=True))
        if session_id in board.session_ids:
            return board
        return await self.update(board.id, {"session_ids": [*board.session_ids, session_id]})

    async def remove_session(self, board_id: str, session_id: str) -> Board:
        board = self._to_entity(await self._get_row(board_id, for_update=True))
        return await self.update(
            board.id, {"session_ids": [s for s in board.session_ids if s != session_id]}
        )
