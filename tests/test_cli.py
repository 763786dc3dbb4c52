"""Tests for the command-line interface."""

from typer.testing import CliRunner

from gesture_stabilizer.cli import app
from gesture_stabilizer.config import EngineConfig, Mode

runner = CliRunner()


class TestConfigCommand:
    def test_prints_defaults(self):
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "mode: LOCAL" in result.output
        assert "stability_threshold_ms: 1000.0" in result.output

    def test_writes_yaml(self, tmp_path):
        path = tmp_path / "stabilizer.yml"
        result = runner.invoke(app, ["config", "-o", str(path)])
        assert result.exit_code == 0
        assert EngineConfig.from_yaml(path) == EngineConfig()

    def test_overwrite_declined(self, tmp_path):
        path = tmp_path / "stabilizer.yml"
        path.write_text("mode: CLOUD\n")
        result = runner.invoke(app, ["config", "-o", str(path)], input="n\n")
        assert result.exit_code == 1
        assert EngineConfig.from_yaml(path).mode == Mode.CLOUD


class TestConfigErrors:
    def test_watch_with_missing_config(self, tmp_path):
        result = runner.invoke(app, ["watch", "--config", str(tmp_path / "missing.yml")])
        assert result.exit_code == 1

    def test_watch_with_invalid_mode(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("mode: SIDEWAYS\n")
        result = runner.invoke(app, ["watch", "--config", str(path)])
        assert result.exit_code == 1

    def test_watch_with_non_numeric_timeout(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text('analyzer_timeout_s: "soon"\n')
        result = runner.invoke(app, ["watch", "--config", str(path)])
        assert result.exit_code == 1
        assert not isinstance(result.exception, TypeError)
