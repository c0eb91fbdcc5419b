"""Task repository."""

from datetime import datetime, timezone
from typing import Optional

from grove.entities import Task, TaskReport, TaskStatus
from grove.storage.base import BaseRepository
from grove.storage.models import TaskRecord


class TaskRepository(BaseRepository[Task, TaskRecord]):
    record = TaskRecord
    entity = Task
    entity_type = "Task"
    columns = {
        "id": "id",
        "session_id": "session_id",
        "status": "status",
        "created_at": "created_at",
        "completed_at": "completed_at",
    }
    touch_fields = ()

    async def find_by_session(self, session_id: str) -> list[Task]:
        """A session's tasks in conversation order."""
        tasks = await self._find_where(TaskRecord.session_id == session_id)
        return sorted(tasks, key=lambda t: (t.message_range.start_index, t.created_at))

    async def find_by_status(self, status: TaskStatus) -> list[Task]:
        return await self._find_where(TaskRecord.status == status)

    async def find_running(self) -> list[Task]:
        return await self.find_by_status("running")

    async def complete(self, id: str, report: Optional[TaskReport] = None) -> Task:
        patch = {"status": "completed", "completed_at": datetime.now(timezone.utc).isoformat()}
        if report is not None:
            patch["report"] = report.model_dump(mode="json")
        return await self.update(id, patch)

    async def fail(self, id: str) -> Task:
        return await self.update(
            id, {"status": "failed", "completed_at": datetime.now(timezone.utc).isoformat()}
        )
