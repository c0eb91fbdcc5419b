"""Message repository."""

from typing import Sequence

from sqlalchemy import update

from grove.entities import Message, MessageTaskLink
from grove.storage.base import BaseRepository
from grove.storage.models import MessageRecord


class MessageRepository(BaseRepository[Message, MessageRecord]):
    record = MessageRecord
    entity = Message
    entity_type = "Message"
    columns = {
        "id": "id",
        "session_id": "session_id",
        "task_id": "task_id",
        "type": "type",
        "role": "role",
        "index": "message_index",
        "timestamp": "timestamp",
    }
    touch_fields = ()

    async def find_by_session(self, session_id: str) -> list[Message]:
        return await self._find_where(
            MessageRecord.session_id == session_id,
            order_by=(MessageRecord.message_index.asc(),),
        )

    async def find_by_task(self, task_id: str) -> list[Message]:
        return await self._find_where(
            MessageRecord.task_id == task_id,
            order_by=(MessageRecord.message_index.asc(),),
        )

    async def find_by_range(self, session_id: str, start_index: int, end_index: int) -> list[Message]:
        """Messages with start_index <= index <= end_index."""
        return await self._find_where(
            MessageRecord.session_id == session_id,
            MessageRecord.message_index >= start_index,
            MessageRecord.message_index <= end_index,
            order_by=(MessageRecord.message_index.asc(),),
        )

    async def assign_tasks(self, links: Sequence[MessageTaskLink]) -> int:
        """Set task_id on each linked message. Returns the number of rows touched."""
        touched = 0
        with self._storage_errors("link"):
            by_task: dict[str, list[str]] = {}
            for link in links:
                by_task.setdefault(link.task_id, []).append(link.message_id)
            for task_id, message_ids in by_task.items():
                result = await self.session.execute(
                    update(MessageRecord)
                    .where(MessageRecord.id.in_(message_ids))
                    .values(task_id=task_id)
                )
                touched += result.rowcount or 0
            await self.session.flush()
        return touched
