"""Unit tests for budget_snapshot.shared — counters, results, reports."""

from __future__ import annotations

import csv
import json

from budget_snapshot.shared import (
    ImportCounters,
    ImportResult,
    OrphanPair,
    RejectWriter,
    ValidationError,
    build_import_report,
    write_run_report,
)


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

class TestImportCounters:
    def test_defaults(self):
        ctrs = ImportCounters()
        assert ctrs.accounts_inserted == 0
        assert ctrs.expense_tags_inserted == 0
        assert ctrs.warnings == []

    def test_imported_shape(self):
        ctrs = ImportCounters(accounts_inserted=3, expenses_inserted=5, expense_tags_inserted=2)
        assert ctrs.imported() == {
            "accounts": 3, "income": 0, "expenses": 5,
            "tags": 0, "settings": 0, "expenseTags": 2,
        }

    def test_warnings_truncated_to_50(self):
        ctrs = ImportCounters(warnings=[f"w{i}" for i in range(100)])
        assert len(ctrs.to_dict()["warnings"]) == 50


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

class TestImportResult:
    def test_to_dict(self):
        result = ImportResult(
            version_id=12,
            counters=ImportCounters(tags_inserted=2, expense_tags_inserted=1),
            skipped_expense_tags=[OrphanPair("e1", 99, "Gone")],
        )
        assert result.to_dict() == {
            "versionId": 12,
            "imported": {
                "accounts": 0, "income": 0, "expenses": 0,
                "tags": 2, "settings": 0, "expenseTags": 1,
            },
            "skipped": {"expenseTags": [{"expense_id": "e1", "tag_id": 99}]},
        }

    def test_report_mentions_skipped(self):
        result = ImportResult(12, ImportCounters(), [OrphanPair("e1", 99)], created_version=True)
        report = build_import_report(result, dry_run=True)
        assert "destination version: 12 (created)" in report
        assert "expense tags skipped (orphan):  1" in report
        assert "dry_run: True" in report


# ---------------------------------------------------------------------------
# ValidationError
# ---------------------------------------------------------------------------

class TestValidationError:
    def test_message_lists_first_ten(self):
        exc = ValidationError([f"p{i}" for i in range(15)])
        assert len(exc.problems) == 15
        assert "p9" in str(exc)
        assert "p10" not in str(exc)
        assert "+5 more" in str(exc)


# ---------------------------------------------------------------------------
# RejectWriter / run report
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_until_first_write(self, tmp_path):
        path = tmp_path / "rejects" / "skipped.csv"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()

    def test_writes_reason_column(self, tmp_path):
        path = tmp_path / "rejects" / "skipped.csv"
        writer = RejectWriter(path)
        writer.write({"expense_id": "e1", "tag_id": 99}, "orphan_reference")
        writer.close()
        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows == [{"expense_id": "e1", "tag_id": "99", "_reject_reason": "orphan_reference"}]


class TestRunReport:
    def test_written_under_run_id(self, tmp_path):
        path = write_run_report(
            "run-1", "2026-01-01T00:00:00+00:00", "import", False,
            {"user_id": 5}, {"accounts_inserted": 3}, report_dir=tmp_path,
        )
        assert path == tmp_path / "run-1.json"
        data = json.loads(path.read_text())
        assert data["mode"] == "import"
        assert data["user_id"] == 5
        assert data["counters"] == {"accounts_inserted": 3}
        assert "finished_at" in data
