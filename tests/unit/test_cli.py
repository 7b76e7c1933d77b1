"""Unit tests for budget_snapshot.cli — flag validation paths that need no DB."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from budget_snapshot.cli import main


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, args):
    return runner.invoke(main, ["--run-id", "t1", *args], env={"BUDGET_DB_DSN": None})


class TestFlagValidation:
    def test_export_requires_scope_and_output(self, runner):
        result = _invoke(runner, ["--mode", "export", "--user-id", "1"])
        assert result.exit_code == 1
        assert "[t1] FATAL: export mode requires: --version-id, --output-path" in result.output

    def test_import_requires_input(self, runner):
        result = _invoke(runner, ["--mode", "import", "--user-id", "1"])
        assert result.exit_code == 1
        assert "--input-path" in result.output

    def test_copy_requires_source_version(self, runner):
        result = _invoke(runner, ["--mode", "copy_version", "--user-id", "1"])
        assert result.exit_code == 1
        assert "--version-id" in result.output

    def test_create_version_requires_user(self, runner):
        result = _invoke(runner, ["--mode", "create_version"])
        assert result.exit_code == 1
        assert "--user-id" in result.output

    def test_verify_scope_needs_both_ids(self, runner):
        result = _invoke(runner, ["--mode", "verify", "--user-id", "1"])
        assert result.exit_code == 1
        assert "both --user-id and --version-id" in result.output

    def test_unknown_mode_rejected(self, runner):
        result = _invoke(runner, ["--mode", "sync"])
        assert result.exit_code == 2

    def test_missing_dsn(self, runner):
        result = _invoke(runner, ["--mode", "verify"])
        assert result.exit_code == 1
        assert "--db-dsn or BUDGET_DB_DSN is required" in result.output


class TestImportFileValidation:
    def test_validate_only_skips_db(self, runner, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({
            "version": {"name": "Main"},
            "tags": [{"id": 1, "name": "Groceries"}],
        }))
        result = _invoke(runner, [
            "--mode", "import", "--user-id", "1",
            "--input-path", str(path), "--validate-only",
        ])
        assert result.exit_code == 0, result.output
        assert "tags=1" in result.output
        assert "skipping DB connection" in result.output

    def test_invalid_file_lists_problems(self, runner, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({"accounts": [{"id": 1}]}))
        result = _invoke(runner, [
            "--mode", "import", "--user-id", "1", "--input-path", str(path),
        ])
        assert result.exit_code == 1
        assert "accounts[0]: missing name" in result.output

    def test_unreadable_file(self, runner, tmp_path):
        result = _invoke(runner, [
            "--mode", "import", "--user-id", "1",
            "--input-path", str(tmp_path / "absent.json"),
        ])
        assert result.exit_code == 1
        assert "cannot read" in result.output

    def test_bad_settings_yaml(self, runner, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("other: 1\n")
        result = _invoke(runner, [
            "--mode", "create_version", "--user-id", "1", "--settings-yaml", str(path),
        ])
        assert result.exit_code == 1
        assert "cannot load default settings" in result.output
