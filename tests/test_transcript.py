"""Tests for transcript parsing and task segmentation."""

import json

import pytest

from grove.errors import NotFoundError, SegmentationError
from grove.ingestion.transcript import (
    batched,
    escape_project_dir,
    filter_conversation,
    find_transcript,
    is_prompt,
    link_messages_to_tasks,
    load_transcript,
    parse_transcript,
    reindex,
    segment_into_tasks,
    transcript_cwd,
)
from tests.conftest import assistant, jsonl, record, tool_result, user

SESSION = "0193a1b2-c3d4-7e5f-8a9b-0c1d2e3f4a5b"


def _conversation(*records):
    return reindex(filter_conversation(parse_transcript(jsonl(*records), SESSION)))


class TestParseTranscript:
    def test_dense_indices_in_order(self):
        messages = parse_transcript(jsonl(user("a"), assistant("b"), user("c")), SESSION)
        assert [m.index for m in messages] == [0, 1, 2]
        assert [m.role for m in messages] == ["user", "assistant", "user"]
        assert all(m.session_id == SESSION for m in messages)

    def test_blank_and_malformed_lines_skipped(self, caplog):
        lines = [json.dumps(user("a")), "", "   ", "{not json", json.dumps(assistant("b")), "[1, 2]"]
        messages = parse_transcript(lines, SESSION)
        assert [m.index for m in messages] == [0, 1]
        assert "malformed" in caplog.text

    def test_metadata_and_preview(self):
        long_text = "x" * 500
        messages = parse_transcript(
            jsonl(user(long_text, uuid="u1", parentUuid="u0", isMeta=True)), SESSION
        )
        m = messages[0]
        assert m.metadata["original_id"] == "u1"
        assert m.metadata["parent_id"] == "u0"
        assert m.metadata["is_meta"] is True
        assert m.content_preview == "x" * 200
        assert m.timestamp == "2026-03-01T10:00:00Z"

    def test_block_content_preview_is_json(self):
        m = parse_transcript(jsonl(assistant("hello")), SESSION)[0]
        assert m.content_preview.startswith('[{"type": "text"')
        assert m.metadata["model"] == "claude-sonnet"

    def test_non_conversation_record_gets_system_role(self):
        m = parse_transcript(jsonl({"type": "summary", "summary": "s"}), SESSION)[0]
        assert m.type == "summary"
        assert m.role == "system"

    def test_object_content_does_not_abort_parsing(self):
        lines = jsonl(
            user("hi"),
            {"type": "progress", "message": {"content": {"step": 1}}},
            assistant("ok"),
        )
        messages = parse_transcript(lines, SESSION)
        assert [m.type for m in messages] == ["user", "progress", "assistant"]
        assert messages[1].role == "system"
        assert messages[1].content == '{"step": 1}'
        assert [m.index for m in filter_conversation(messages)] == [0, 2]

    def test_odd_field_types_are_coerced(self):
        lines = jsonl(
            {"type": "user", "message": {"role": ["user"], "content": ["a", "b"]}, "timestamp": 1700000000},
        )
        m = parse_transcript(lines, SESSION)[0]
        assert m.role == "system"
        assert m.content == '["a", "b"]'
        assert m.timestamp == "1700000000"


class TestFilterConversation:
    def test_keeps_user_and_assistant_main_thread(self):
        messages = parse_transcript(
            jsonl(
                {"type": "file-history-snapshot"},
                user("a"),
                assistant("b", isSidechain=True),
                assistant("c"),
                {"type": "summary", "summary": "s"},
            ),
            SESSION,
        )
        kept = filter_conversation(messages)
        assert [m.index for m in kept] == [1, 3]

    def test_reindex(self):
        messages = parse_transcript(jsonl({"type": "summary"}, user("a"), assistant("b")), SESSION)
        kept = reindex(filter_conversation(messages))
        assert [m.index for m in kept] == [0, 1]
        assert messages[1].index == 1


class TestIsPrompt:
    def test_plain_user_text(self):
        assert is_prompt(_conversation(user("fix it"))[0])

    def test_tool_result_is_not_prompt(self):
        assert not is_prompt(_conversation(tool_result())[0])

    def test_meta_is_not_prompt(self):
        assert not is_prompt(_conversation(user("caveat", isMeta=True))[0])

    def test_command_echo_is_not_prompt(self):
        assert not is_prompt(_conversation(user("<command-name>/clear</command-name>"))[0])
        assert not is_prompt(_conversation(user("<local-command-stdout></local-command-stdout>"))[0])

    def test_assistant_is_not_prompt(self):
        assert not is_prompt(_conversation(assistant("hi"))[0])

    def test_text_blocks_count(self):
        blocks = [{"type": "text", "text": "look at this"}, {"type": "image", "source": {}}]
        assert is_prompt(_conversation(record("user", blocks))[0])


class TestSegmentation:
    def test_two_prompts_five_replies(self):
        messages = _conversation(
            user("first"),
            assistant(),
            assistant(),
            user("second"),
            assistant(),
            assistant(),
            assistant(),
        )
        tasks = segment_into_tasks(messages, SESSION)
        assert [(t.message_range.start_index, t.message_range.end_index) for t in tasks] == [(0, 2), (3, 6)]
        assert [t.full_prompt for t in tasks] == ["first", "second"]

        links = link_messages_to_tasks(messages, tasks)
        assert len(links) == 7
        assert len({link.message_id for link in links}) == 7
        assert [link.task_id for link in links] == [tasks[0].id] * 3 + [tasks[1].id] * 4

    def test_tool_results_stay_in_task(self):
        messages = _conversation(
            user("run tests"),
            assistant(tools=2),
            tool_result(),
            assistant(tools=1),
            user("now lint"),
            assistant(),
        )
        tasks = segment_into_tasks(messages, SESSION)
        assert len(tasks) == 2
        assert tasks[0].message_range.end_index == 3
        assert tasks[0].tool_use_count == 3
        assert tasks[1].tool_use_count == 0

    def test_leading_messages_fold_into_first_task(self):
        messages = _conversation(assistant("hello"), user("<command-name>/init</command-name>"), user("go"))
        tasks = segment_into_tasks(messages, SESSION)
        assert len(tasks) == 1
        assert tasks[0].message_range.start_index == 0
        assert tasks[0].full_prompt == "go"

    def test_no_prompts_no_tasks(self):
        assert segment_into_tasks(_conversation(assistant(), tool_result()), SESSION) == []
        assert segment_into_tasks([], SESSION) == []

    def test_model_and_timestamps(self):
        messages = _conversation(user("a"), assistant(model="claude-opus"), assistant(model="claude-haiku"))
        task = segment_into_tasks(messages, SESSION)[0]
        assert task.model == "claude-opus"
        assert task.status == "completed"
        assert task.message_range.start_ts == "2026-03-01T10:00:00Z"
        assert task.message_range.end_ts == "2026-03-01T10:00:00Z"

    def test_model_unknown_without_assistant(self):
        task = segment_into_tasks(_conversation(user("a")), SESSION)[0]
        assert task.model == "unknown"

    def test_description_truncated(self):
        task = segment_into_tasks(_conversation(user("y" * 300)), SESSION)[0]
        assert len(task.full_prompt) == 300
        assert len(task.description) == 200


class TestLinking:
    def test_gap_raises(self):
        messages = _conversation(user("a"), assistant(), assistant())
        tasks = segment_into_tasks(messages, SESSION)
        short = tasks[0].model_copy(
            update={"message_range": tasks[0].message_range.model_copy(update={"end_index": 1})}
        )
        with pytest.raises(SegmentationError) as exc:
            link_messages_to_tasks(messages, [short])
        assert exc.value.gaps == [2]

    def test_overlap_raises(self):
        messages = _conversation(user("a"), assistant(), user("b"), assistant())
        tasks = segment_into_tasks(messages, SESSION)
        widened = tasks[0].model_copy(
            update={"message_range": tasks[0].message_range.model_copy(update={"end_index": 2})}
        )
        with pytest.raises(SegmentationError) as exc:
            link_messages_to_tasks(messages, [widened, tasks[1]])
        assert exc.value.overlaps == [2]


class TestFiles:
    def test_escape_project_dir(self, tmp_path):
        assert escape_project_dir("/home/me/src/my.app") == "-home-me-src-my-app"

    def test_find_and_load(self, tmp_path):
        project = tmp_path / "proj"
        project.mkdir()
        projects_dir = tmp_path / "claude"
        target = projects_dir / escape_project_dir(project.resolve()) / "abc.jsonl"
        target.parent.mkdir(parents=True)
        target.write_text("\n".join(jsonl(user("a", cwd=str(project)), assistant())) + "\n")

        found = find_transcript("abc", project, projects_dir)
        assert found == target
        lines = load_transcript(found)
        assert len(lines) == 2
        assert transcript_cwd(lines) == str(project)

    def test_missing_transcript(self, tmp_path):
        with pytest.raises(NotFoundError):
            find_transcript("abc", tmp_path, tmp_path / "claude")
        with pytest.raises(NotFoundError):
            load_transcript(tmp_path / "nope.jsonl")


class TestBatched:
    def test_chunks_with_offsets(self):
        assert list(batched([1, 2, 3, 4, 5], 2)) == [(0, [1, 2]), (2, [3, 4]), (4, [5])]

    def test_empty(self):
        assert list(batched([], 3)) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(batched([1], 0))
