"""Tests for the CLI against a temporary database."""

import json

import pytest
from typer.testing import CliRunner

from grove.cli.main import app
from grove.config import reset_settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("GROVE_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("GROVE_GIT_REPOS_DIR", str(tmp_path / "repos"))
    monkeypatch.setenv("GROVE_GIT_WORKTREES_DIR", str(tmp_path / "worktrees"))
    reset_settings()
    yield
    reset_settings()


def _created_id(output: str) -> str:
    return output.rsplit("(", 1)[1].split(")", 1)[0]


class TestBoardCommands:
    def test_create_and_list(self):
        result = runner.invoke(app, ["board", "create", "Experiments", "--slug", "exp"])
        assert result.exit_code == 0, result.output
        result = runner.invoke(app, ["board", "list"])
        assert result.exit_code == 0
        assert "exp" in result.output

    def test_duplicate_slug_exits_1(self):
        runner.invoke(app, ["board", "create", "Experiments", "--slug", "exp"])
        result = runner.invoke(app, ["board", "create", "Again", "--slug", "exp"])
        assert result.exit_code == 1
        assert "already exists" in result.output


class TestSessionCommands:
    def test_create_fork_and_show(self):
        result = runner.invoke(app, ["session", "create", "-d", "refactor auth"])
        assert result.exit_code == 0, result.output
        parent = _created_id(result.output)

        result = runner.invoke(app, ["session", "fork", parent[:13], "try another approach"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["session", "show", parent])
        assert result.exit_code == 0
        assert "Children:" in result.output

        result = runner.invoke(app, ["session", "list"])
        assert result.exit_code == 0
        assert parent.replace("-", "")[:8] in result.output

    def test_unknown_session_exits_1(self):
        result = runner.invoke(app, ["session", "show", "ffffffff"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestTranscriptCommands:
    def test_import_file(self, tmp_path):
        path = tmp_path / "abc.jsonl"
        records = [
            {"type": "user", "message": {"role": "user", "content": "hello"}},
            {"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": "hi"}]}},
        ]
        path.write_text("\n".join(json.dumps(r) for r in records) + "\n")

        result = runner.invoke(app, ["transcript", "import", str(path)])
        assert result.exit_code == 0, result.output
        assert "1 imported, 0 failed" in result.output


class TestRepoCommands:
    def test_register_and_worktree_list(self, tmp_path):
        checkout = tmp_path / "checkout"
        checkout.mkdir()
        result = runner.invoke(app, ["repo", "list"])
        assert "No repositories" in result.output

        result = runner.invoke(app, ["repo", "worktree", "list", "nope"])
        assert result.exit_code == 1
