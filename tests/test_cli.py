"""
Tests for the command-line interface.
"""

from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from scenebreak.cli import app
from tests.conftest import ScriptedAnalysisService, analysis_payload

runner = CliRunner()


@pytest.fixture
def screenplay_file(tmp_path, sample_screenplay_text):
    path = tmp_path / "shift.txt"
    path.write_text(sample_screenplay_text, encoding="utf-8")
    return path


@pytest.fixture
def service():
    service = ScriptedAnalysisService([analysis_payload()])
    service.aclose = AsyncMock()
    return service


class TestAnalyzeCommand:
    """Test the analyze command."""

    def test_analyzes_every_scene_and_closes_service(self, screenplay_file, service):
        with patch("scenebreak.cli.build_analysis_service", return_value=service):
            result = runner.invoke(app, ["analyze", str(screenplay_file), "--credits", "10"])

        assert result.exit_code == 0, result.output
        assert service.calls == 3
        assert "Completed 3" in result.output
        service.aclose.assert_awaited_once()

    def test_service_closed_when_balance_halts_the_run(self, screenplay_file, service):
        with patch("scenebreak.cli.build_analysis_service", return_value=service):
            result = runner.invoke(app, ["analyze", str(screenplay_file)])

        assert result.exit_code == 2
        assert service.calls == 0
        service.aclose.assert_awaited_once()


class TestParseCommand:
    """Test the parse command."""

    def test_prints_scenes_as_json(self, screenplay_file):
        result = runner.invoke(app, ["parse", str(screenplay_file), "--json"])

        assert result.exit_code == 0, result.output
        assert '"header": "INT. DINER - NIGHT"' in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["parse", str(tmp_path / "missing.txt")])

        assert result.exit_code == 1
