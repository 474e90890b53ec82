"""Tests for the openturn command line."""

from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from openturn.cli import main
from openturn.errors import UnauthorizedError
from openturn.types import FinishReason, Turn, UsageCounters


def _turn():
    return Turn(
        content="Hello there",
        finish_reason=FinishReason.END_TURN,
        usage=UsageCounters(input_tokens=3, output_tokens=2),
        model="gpt-4o",
    )


class TestCli:
    def test_no_stream(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        with patch("openturn.cli.AsyncLLMClient.send", new=AsyncMock(return_value=_turn())):
            result = CliRunner().invoke(main, ["hi", "--no-stream"])
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output
        assert "end_turn" in result.output

    def test_provider_error_exits_nonzero(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        err = UnauthorizedError("invalid api key", status_code=401)
        with patch("openturn.cli.AsyncLLMClient.send", new=AsyncMock(side_effect=err)):
            result = CliRunner().invoke(main, ["hi", "--no-stream"])
        assert result.exit_code == 1
        assert "invalid api key" in result.output

    def test_missing_config_file(self, tmp_path):
        result = CliRunner().invoke(main, ["hi", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code != 0
