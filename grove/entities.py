"""Domain entities exchanged between the core and its callers.

These are plain pydantic models: the storage layer converts them to and from
ORM rows, and the CLI renders them. Nothing here touches the database.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from grove.git import strip_dirty

SessionStatus = Literal["idle", "running", "completed", "failed"]
TaskStatus = Literal["created", "running", "completed", "failed"]
MessageRole = Literal["user", "assistant", "system"]
LifecycleStatus = Literal["pending", "ready"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Sessions ---


class RepoContext(BaseModel):
    """Where a session's agent runs: a managed worktree or a user directory."""

    repo_id: Optional[str] = None
    repo_slug: Optional[str] = None
    worktree_name: Optional[str] = None
    cwd: str = ""
    managed_worktree: bool = False


class GitState(BaseModel):
    ref: str = "main"
    base_sha: str = ""
    current_sha: str = ""

    @property
    def is_dirty(self) -> bool:
        return self.current_sha != strip_dirty(self.current_sha)

    @property
    def current_commit(self) -> str:
        """`current_sha` usable as a commit hash."""
        return strip_dirty(self.current_sha)


class Genealogy(BaseModel):
    """Fork/spawn links. `children` is the inverse of both relations."""

    forked_from: Optional[str] = None
    fork_point_task: Optional[str] = None
    parent: Optional[str] = None
    spawn_point_task: Optional[str] = None
    children: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_origin(self) -> "Genealogy":
        if self.forked_from and self.parent:
            raise ValueError(
                "a session cannot be both forked from one session and spawned by another"
            )
        return self

    @property
    def origin(self) -> Optional[str]:
        """The session this one came from, spawn parent first."""
        return self.parent or self.forked_from


class Session(BaseModel):
    id: str
    status: SessionStatus = "idle"
    agent_kind: str = "claude-code"
    description: Optional[str] = None
    board_id: Optional[str] = None
    repo_context: Optional[RepoContext] = None
    git_state: GitState = Field(default_factory=GitState)
    genealogy: Genealogy = Field(default_factory=Genealogy)
    concept_refs: list[str] = Field(default_factory=list)
    task_ids: list[str] = Field(default_factory=list)
    message_count: int = 0
    tool_use_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Tasks ---


class MessageRange(BaseModel):
    start_index: int
    end_index: int
    start_ts: Optional[str] = None
    end_ts: Optional[str] = None

    @model_validator(mode="after")
    def _ordered(self) -> "MessageRange":
        if self.start_index < 0 or self.end_index < self.start_index:
            raise ValueError(
                f"invalid message range [{self.start_index}, {self.end_index}]"
            )
        return self

    def __contains__(self, index: int) -> bool:
        return self.start_index <= index <= self.end_index


class TaskGitState(BaseModel):
    sha_at_start: str = ""
    sha_at_end: Optional[str] = None
    commit_message: Optional[str] = None


class TaskReport(BaseModel):
    path: str
    template: str
    generated_at: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    id: str
    session_id: str
    full_prompt: str
    description: Optional[str] = None
    status: TaskStatus = "created"
    message_range: MessageRange
    tool_use_count: int = 0
    git_state: TaskGitState = Field(default_factory=TaskGitState)
    model: str = "unknown"
    report: Optional[TaskReport] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


# --- Messages ---


class Message(BaseModel):
    id: str
    session_id: str
    task_id: Optional[str] = None
    type: str
    role: MessageRole
    index: int
    timestamp: Optional[str] = None
    content: Union[str, list[dict[str, Any]]] = ""
    content_preview: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    def tool_uses(self) -> list[dict[str, Any]]:
        """Tool invocation blocks carried by this message."""
        if not isinstance(self.content, list):
            return []
        return [b for b in self.content if isinstance(b, dict) and b.get("type") == "tool_use"]


class MessageTaskLink(BaseModel):
    message_id: str
    task_id: str


# --- Repositories and worktrees ---


class Worktree(BaseModel):
    name: str
    path: str
    ref: str
    new_branch: bool = False
    unique_numeric_id: int
    tracking_branch: Optional[str] = None
    status: LifecycleStatus = "ready"
    sessions: list[str] = Field(default_factory=list)
    last_commit_sha: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)


class Repo(BaseModel):
    id: str
    slug: str
    name: str
    remote_url: Optional[str] = None
    local_path: str
    managed: bool = True
    default_branch: Optional[str] = None
    status: LifecycleStatus = "ready"
    worktrees: list[Worktree] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_worktree(self, name: str) -> Optional[Worktree]:
        for worktree in self.worktrees:
            if worktree.name == name:
                return worktree
        return None


# --- Boards ---


class Board(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    session_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
