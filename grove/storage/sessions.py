"""Session repository."""

from typing import Any, Optional

from sqlalchemy import or_, select

from grove.entities import Session, SessionStatus
from grove.storage.base import BaseRepository
from grove.storage.models import BoardRecord, SessionRecord

IDEMPOTENCY_KEY = "idempotency_key"


class SessionRepository(BaseRepository[Session, SessionRecord]):
    record = SessionRecord
    entity = Session
    entity_type = "Session"
    columns = {
        "id": "id",
        "status": "status",
        "agent_kind": "agent_kind",
        "board_id": "board_id",
        "created_at": "created_at",
        "updated_at": "updated_at",
    }

    def _row_values(self, entity: Session) -> dict[str, Any]:
        values = super()._row_values(entity)
        values["parent_id"] = entity.genealogy.parent
        values["forked_from_id"] = entity.genealogy.forked_from
        values["idempotency_key"] = entity.metadata.get(IDEMPOTENCY_KEY)
        return values

    async def find_by_status(self, status: SessionStatus) -> list[Session]:
        return await self._find_where(SessionRecord.status == status)

    async def find_running(self) -> list[Session]:
        return await self.find_by_status("running")

    async def find_by_agent(self, agent_kind: str) -> list[Session]:
        return await self._find_where(SessionRecord.agent_kind == agent_kind)

    async def find_by_board(self, board_id: str) -> list[Session]:
        """Sessions listed on a board. Stale references are skipped."""
        with self._storage_errors("list"):
            result = await self.session.execute(select(BoardRecord.data).where(BoardRecord.id == board_id))
            data = result.scalar_one_or_none()
        if not data:
            return []
        return await self.find_many(data.get("session_ids", []))

    async def find_children(self, session_id: str) -> list[Session]:
        """Sessions whose spawn parent or fork origin is `session_id`."""
        full_id = await self.resolve_id(session_id)
        return await self._find_where(
            or_(SessionRecord.parent_id == full_id, SessionRecord.forked_from_id == full_id)
        )

    async def find_by_idempotency_key(self, origin_id: str, key: str) -> Optional[Session]:
        """A child of `origin_id` created with the given idempotency key."""
        matches = await self._find_where(
            SessionRecord.idempotency_key == key,
            or_(SessionRecord.parent_id == origin_id, SessionRecord.forked_from_id == origin_id),
        )
        return matches[0] if matches else None

    async def add_child(self, session_id: str, child_id: str) -> Session:
        """Append `child_id` to a session's genealogy children, at most once."""
        session = self._to_entity(await self._get_row(session_id, for_update=True))
        if child_id in session.genealogy.children:
            return session
        return await self.update(
            session.id, {"genealogy": {"children": [*session.genealogy.children, child_id]}}
        )

    async def remove_child(self, session_id: str, child_id: str) -> Session:
        session = self._to_entity(await self._get_row(session_id, for_update=True))
        return await self.update(
            session.id,
            {"genealogy": {"children": [c for c in session.genealogy.children if c != child_id]}},
        )
