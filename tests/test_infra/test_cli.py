"""Tests for the click CLI."""

from click.testing import CliRunner

from agentorchestrator.cli import cli


class TestRunCommand:
    def test_run_prints_answer(self, fake_agent, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT_ORCHESTRATOR_EXECUTABLE", str(fake_agent))
        result = CliRunner().invoke(cli, ["run", "say hi", "--cwd", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "echo: say hi" in result.output
        assert "completed" in result.output

    def test_run_json(self, fake_agent, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT_ORCHESTRATOR_EXECUTABLE", str(fake_agent))
        result = CliRunner().invoke(cli, ["run", "say hi", "--cwd", str(tmp_path), "--json"])
        assert result.exit_code == 0, result.output
        assert '"type": "result"' in result.output

    def test_missing_executable(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT_ORCHESTRATOR_EXECUTABLE", str(tmp_path / "nope"))
        result = CliRunner().invoke(cli, ["run", "hi", "--cwd", str(tmp_path)])
        assert result.exit_code != 0
        assert "Failed to start agent" in result.output


class TestConfigCommand:
    def test_show(self, monkeypatch):
        monkeypatch.setenv("AGENT_ORCHESTRATOR_MODEL", "haiku")
        result = CliRunner().invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        assert "Model: haiku" in result.output
        assert "Shutdown grace" in result.output
