"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from costboard import __version__
from costboard.main import cli


@pytest.mark.unit
class TestCli:
    def test_window(self):
        result = CliRunner().invoke(cli, ["window", "--month", "2024-02"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "timezone": "UTC",
            "startUtc": "2024-02-01T00:00:00Z",
            "endExclusiveUtc": "2024-03-01T00:00:00Z",
        }

    def test_invalid_month(self):
        result = CliRunner().invoke(cli, ["window", "--month", "Feb"])

        assert result.exit_code == 2
        assert "Invalid month selector" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output
