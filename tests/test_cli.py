from pathlib import Path

import pytest
import structlog
from click.testing import CliRunner

import tern.config
import tern.runtime
from tern.cli import main
from tests.conftest import FakeEndpoint

FIX_TWO = "Here is the fix:\n```diff\n--- a/a.txt\n+++ b/a.txt\n@@ -1,3 +1,3 @@\n one\n-two\n+TWO\n three\n```\n"


@pytest.fixture
def workspace_file(workspace: Path) -> Path:
    target = workspace / "a.txt"
    target.write_text("one\ntwo\nthree\n")
    return target


@pytest.fixture
def endpoints(monkeypatch: pytest.MonkeyPatch) -> list[FakeEndpoint]:
    """Each Runtime gets the next scripted endpoint (or a default one)."""
    scripted: list[FakeEndpoint] = []

    def factory(*args, **kwargs) -> FakeEndpoint:
        return scripted.pop(0) if scripted else FakeEndpoint()

    monkeypatch.setattr(tern.runtime, "HttpModelEndpoint", factory)
    return scripted


@pytest.fixture
def cli(tmp_path: Path, workspace: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(tern.config, "SETTINGS_PATH", tmp_path / "home" / "settings.json")
    monkeypatch.chdir(tmp_path)
    env = {"TERN_DATA_DIR": str(tmp_path / "data"), "TERN_WORKSPACE": str(workspace), "TERN_LOG_LEVEL": "ERROR"}
    runner = CliRunner()

    def invoke(*args: str):
        return runner.invoke(main, list(args), env=env)

    yield invoke
    structlog.reset_defaults()


class TestRun:
    def test_prose_turn(self, cli, endpoints):
        endpoints.append(FakeEndpoint([["Hello ", "there."]]))
        result = cli("run", "-p", "hi")
        assert result.exit_code == 0, result.output
        assert "Hello there." in result.output

    def test_patch_is_discarded_without_apply(self, cli, endpoints, workspace_file: Path):
        endpoints.append(FakeEndpoint([[FIX_TWO]]))
        result = cli("run", "-p", "fix it")
        assert result.exit_code == 0, result.output
        assert "Patch proposed: 1 hunk(s) in a.txt" in result.output
        assert "Patch discarded" in result.output
        assert workspace_file.read_text() == "one\ntwo\nthree\n"

    def test_apply_without_approval_fails(self, cli, endpoints, workspace_file: Path):
        endpoints.append(FakeEndpoint([[FIX_TWO]]))
        result = cli("run", "-p", "fix it", "--apply")
        assert result.exit_code == 1
        assert "Patch partially applied" in result.output
        assert workspace_file.read_text() == "one\ntwo\nthree\n"

    def test_apply_journal_revert(self, cli, endpoints, workspace_file: Path):
        endpoints.append(FakeEndpoint([[FIX_TWO]]))
        result = cli("run", "-p", "fix it", "--apply", "--yes")
        assert result.exit_code == 0, result.output
        assert "Applied patch 1 to a.txt" in result.output
        assert workspace_file.read_text() == "one\nTWO\nthree\n"

        result = cli("journal")
        assert result.exit_code == 0, result.output
        assert "a.txt" in result.output

        result = cli("revert", "--id", "1")
        assert result.exit_code == 0, result.output
        assert "Reverted patch 1 (a.txt)" in result.output
        assert workspace_file.read_text() == "one\ntwo\nthree\n"

    def test_new_session(self, cli, endpoints):
        cli("run", "-p", "first")
        endpoint = FakeEndpoint()
        endpoints.append(endpoint)
        cli("run", "-p", "second", "--new-session")
        # system prompt plus the one user message; the earlier session is not resumed
        assert [m.content for m in endpoint.requests[0][1:]] == ["second"]

    def test_prompt_is_required(self, cli):
        result = cli("run")
        assert result.exit_code == 2


class TestJournalAndRevert:
    def test_empty_journal(self, cli):
        result = cli("journal")
        assert result.exit_code == 0
        assert "No applied patches." in result.output

    def test_revert_with_empty_journal(self, cli):
        result = cli("revert")
        assert result.exit_code == 1
        assert "nothing to revert" in result.output

    def test_revert_id_and_count_are_exclusive(self, cli):
        result = cli("revert", "--id", "1", "--count", "2")
        assert result.exit_code == 2
        assert "use either --id or --count" in result.output


class TestStatus:
    def test_status(self, cli, workspace: Path):
        result = cli("status")
        assert result.exit_code == 0, result.output
        assert "Model: gpt-4o-mini" in result.output
        assert "0 messages, 0 patches" in result.output

    def test_invalid_config(self, cli, tmp_path: Path):
        settings = tmp_path / "home" / "settings.json"
        settings.parent.mkdir()
        settings.write_text('{"compaction_threshold": 2}')
        result = cli("status")
        assert result.exit_code == 1
        assert "compaction_threshold" in result.output

    def test_banner(self, cli):
        result = cli()
        assert result.exit_code == 0
        assert "tern run" in result.output
