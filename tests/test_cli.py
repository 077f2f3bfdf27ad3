"""Tests for the command-line interface."""

import json

import pytest

from freeghost_core.cli import FreeghostCLI, run_selftest


class TestCLI:
    """Argument handling and commands."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            FreeghostCLI().run_from_args([])

    def test_config_command(self, capsys):
        assert FreeghostCLI().run_from_args(["config"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert "security" in summary

    def test_selftest_json(self, capsys, monkeypatch):
        monkeypatch.setenv("FREEGHOST_RANGE_PROOF_BITS", "4")
        assert FreeghostCLI().run_from_args(["selftest", "--fast", "--json"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["first_outcome"] == "Accepted"
        assert report["second_outcome"] == "Rejected(StaleResponse)"
        assert report["passed"]

    def test_selftest_summary(self, capsys):
        assert FreeghostCLI().run_from_args(["selftest", "--fast"]) == 0
        out = capsys.readouterr().out
        assert "FREEGHOST CORE - SELF-TEST" in out
        assert "Rejected(StaleResponse)" in out

    def test_selftest_invalid_configuration(self, capsys, monkeypatch):
        monkeypatch.setenv("FREEGHOST_CHALLENGE_TTL", "-1")
        assert FreeghostCLI().run_from_args(["selftest", "--fast"]) == 1
        assert "[ERROR]" in capsys.readouterr().err


class TestRunSelftest:
    """Scenario without the argument parser."""

    def test_report(self, context):
        report = run_selftest(context, salt_samples=32)
        assert report["checks"]["identifiers_differ"]
        assert report["checks"]["first_submission_accepted"]
        assert report["checks"]["resubmission_rejected"]
