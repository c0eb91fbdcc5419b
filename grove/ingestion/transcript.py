"""Claude Code transcript parsing and task segmentation.

Transcripts are JSONL files written by Claude Code under
`~/.claude/projects/<escaped project dir>/<session id>.jsonl`, one record per
line. Everything here is pure: records become `Message` entities, the
conversational subset is split into `Task` entities at each user prompt, and
every message is linked to exactly one task. Persistence lives in
`grove.ingestion.importer`.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence, TypeVar

from pydantic import ValidationError

from grove.entities import Message, MessageRange, MessageTaskLink, Task
from grove.errors import NotFoundError, SegmentationError
from grove.ids import generate_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

PREVIEW_CHARS = 200
CONVERSATION_TYPES = ("user", "assistant")
_ROLES = {"user", "assistant", "system"}
_COMMAND_ECHO = re.compile(r"^\s*<(command-name|command-message|local-command-\w+)>")


def _preview(content: Any, limit: int) -> str:
    if isinstance(content, str):
        return content[:limit]
    return json.dumps(content, ensure_ascii=False)[:limit]


def _content(value: Any) -> Any:
    """Text or a list of content blocks; anything else is kept as its JSON text."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(block, dict) for block in value):
        return value
    return json.dumps(value, ensure_ascii=False)


def _record_to_message(record: dict, session_id: str, index: int, preview_chars: int) -> Message:
    body = record.get("message") if isinstance(record.get("message"), dict) else {}
    content = _content(body.get("content"))
    record_type = str(record.get("type") or "system")
    role = body.get("role") or record_type
    if not isinstance(role, str) or role not in _ROLES:
        role = "system"
    timestamp = record.get("timestamp")

    metadata = {
        "original_id": record.get("uuid"),
        "parent_id": record.get("parentUuid"),
        "is_meta": record.get("isMeta"),
        "is_sidechain": record.get("isSidechain"),
        "model": body.get("model"),
        "cwd": record.get("cwd"),
    }
    return Message(
        id=generate_id(),
        session_id=session_id,
        type=record_type,
        role=role,
        index=index,
        timestamp=str(timestamp) if timestamp else datetime.now(timezone.utc).isoformat(),
        content=content,
        content_preview=_preview(content, preview_chars),
        metadata={k: v for k, v in metadata.items() if v is not None},
    )


def parse_transcript(
    raw_lines: Iterable[str],
    session_id: str,
    preview_chars: int = PREVIEW_CHARS,
) -> list[Message]:
    """Turn JSONL lines into messages indexed 0..n-1 in input order.

    Blank lines are skipped; malformed lines are logged and skipped without
    consuming an index.
    """
    messages: list[Message] = []
    for lineno, line in enumerate(raw_lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed transcript line %d: %s", lineno, e)
            continue
        if not isinstance(record, dict):
            logger.warning("Skipping transcript line %d: expected an object", lineno)
            continue
        try:
            message = _record_to_message(record, session_id, len(messages), preview_chars)
        except ValidationError as e:
            logger.warning("Skipping transcript line %d: %s", lineno, e)
            continue
        messages.append(message)
    return messages


def escape_project_dir(project_dir: Path) -> str:
    """Claude Code's directory name for a project: every separator becomes '-'."""
    return re.sub(r"[^A-Za-z0-9-]", "-", str(project_dir))


def find_transcript(
    agent_session_id: str,
    project_dir: Path,
    projects_dir: Optional[Path] = None,
) -> Path:
    """Locate the transcript of a Claude Code session run in `project_dir`."""
    projects_dir = projects_dir or Path.home() / ".claude" / "projects"
    project_dir = Path(project_dir).expanduser().resolve()
    path = projects_dir.expanduser() / escape_project_dir(project_dir) / f"{agent_session_id}.jsonl"
    if not path.is_file():
        raise NotFoundError("Transcript", str(path))
    return path


def load_transcript(path: Path) -> list[str]:
    path = Path(path)
    if not path.is_file():
        raise NotFoundError("Transcript", str(path))
    return path.read_text(encoding="utf-8").splitlines()


def transcript_cwd(raw_lines: Iterable[str]) -> Optional[str]:
    """Working directory recorded by the first record that carries one."""
    for line in raw_lines:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict) and record.get("cwd"):
            return record["cwd"]
    return None


def filter_conversation(messages: Sequence[Message]) -> list[Message]:
    """User and assistant messages of the main thread, indices untouched."""
    return [
        m
        for m in messages
        if m.type in CONVERSATION_TYPES and not m.metadata.get("is_sidechain")
    ]


def reindex(messages: Sequence[Message]) -> list[Message]:
    """Copies of `messages` renumbered 0..n-1."""
    return [m.model_copy(update={"index": i}) for i, m in enumerate(messages)]


def _text_of(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    return "\n".join(
        block.get("text", "")
        for block in message.content
        if isinstance(block, dict) and block.get("type") == "text"
    )


def is_prompt(message: Message) -> bool:
    """Whether a message is something the user actually typed.

    Tool results come back as user-role messages and slash commands leave
    `<command-name>` echoes; neither starts a new task.
    """
    if message.role != "user" or message.type != "user":
        return False
    if message.metadata.get("is_meta"):
        return False
    if isinstance(message.content, list):
        if any(isinstance(b, dict) and b.get("type") == "tool_result" for b in message.content):
            return False
    text = _text_of(message)
    if not text.strip():
        return False
    return not _COMMAND_ECHO.match(text)


def segment_into_tasks(
    messages: Sequence[Message],
    session_id: str,
    preview_chars: int = PREVIEW_CHARS,
) -> list[Task]:
    """Split an ordered conversation into tasks, one per user prompt.

    A task runs from its prompt to the message before the next prompt, the
    last one to the end. Messages before the first prompt belong to the first
    task. A conversation without prompts yields no tasks.
    """
    starts = [i for i, m in enumerate(messages) if is_prompt(m)]
    if not starts:
        return []
    starts[0] = 0
    bounds = list(zip(starts, [s - 1 for s in starts[1:]] + [len(messages) - 1]))

    tasks: list[Task] = []
    for start, end in bounds:
        chunk = messages[start : end + 1]
        prompt_message = next((m for m in chunk if is_prompt(m)), chunk[0])
        prompt = _text_of(prompt_message)
        assistant = [m for m in chunk if m.role == "assistant"]
        model = next((m.metadata["model"] for m in assistant if m.metadata.get("model")), "unknown")
        first, last = chunk[0], chunk[-1]
        tasks.append(
            Task(
                id=generate_id(),
                session_id=session_id,
                full_prompt=prompt,
                description=prompt[:preview_chars],
                status="completed",
                message_range=MessageRange(
                    start_index=first.index,
                    end_index=last.index,
                    start_ts=first.timestamp,
                    end_ts=last.timestamp,
                ),
                tool_use_count=sum(len(m.tool_uses()) for m in assistant),
                model=model,
                created_at=_parse_ts(first.timestamp),
                completed_at=_parse_ts(last.timestamp),
            )
        )
    return tasks


def _parse_ts(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def link_messages_to_tasks(
    messages: Sequence[Message], tasks: Sequence[Task]
) -> list[MessageTaskLink]:
    """One link per message, to the task whose range holds its index.

    Raises:
        SegmentationError: Some message is covered by no task or by several.
    """
    links: list[MessageTaskLink] = []
    gaps: list[int] = []
    overlaps: list[int] = []
    for message in messages:
        owners = [t for t in tasks if message.index in t.message_range]
        if not owners:
            gaps.append(message.index)
            continue
        if len(owners) > 1:
            overlaps.append(message.index)
            continue
        links.append(MessageTaskLink(message_id=message.id, task_id=owners[0].id))

    if gaps or overlaps:
        raise SegmentationError(gaps=gaps, overlaps=overlaps)
    return links


def batched(items: Sequence[T], size: int) -> Iterator[tuple[int, Sequence[T]]]:
    """Yield (start offset, chunk) pairs of at most `size` items."""
    if size < 1:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield start, items[start : start + size]
