"""Unit tests for budget_snapshot.versions — default settings loading."""

from __future__ import annotations

import json

import pytest

from budget_snapshot.versions import DEFAULT_SETTINGS_PATH, load_default_settings


class TestLoadDefaultSettings:
    def test_packaged_file(self):
        settings = load_default_settings()
        assert DEFAULT_SETTINGS_PATH.exists()
        assert settings["frequency"] == "monthly"
        assert settings["ignoreWeekends"] == "false"
        assert json.loads(settings["fuzziness"])["monthly"] == 1

    def test_custom_file(self, tmp_path):
        path = tmp_path / "s.yaml"
        path.write_text("settings:\n  frequency: weekly\n  showPlanningPage: true\n  unset:\n")
        assert load_default_settings(path) == {"frequency": "weekly", "showPlanningPage": "true"}

    def test_missing_mapping(self, tmp_path):
        path = tmp_path / "s.yaml"
        path.write_text("settings: [a, b]\n")
        with pytest.raises(ValueError, match="expected a 'settings' mapping"):
            load_default_settings(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_default_settings(tmp_path / "absent.yaml")
