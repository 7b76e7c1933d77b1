"""budget_snapshot.shared

Shared types used by the export, import and verify paths.
Includes the exception taxonomy, Scope, ImportCounters/ImportResult,
RejectWriter for skipped rows, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ValidationError(Exception):
    """Raised when a payload is structurally malformed. Nothing was written."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        shown = "; ".join(self.problems[:10])
        more = f" (+{len(self.problems) - 10} more)" if len(self.problems) > 10 else ""
        super().__init__(f"invalid dataset: {shown}{more}")


class ScopeNotFound(Exception):
    """Raised when a (user, version) scope does not exist or is not owned by the user."""


class StorageError(Exception):
    """Raised after a storage failure during a write phase has been rolled back."""


class ImportCancelled(Exception):
    """Raised when the caller cancels an import before its write phase began."""


class VersionRuleError(Exception):
    """Raised when a version lifecycle rule forbids the requested change."""


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Scope:
    user_id: int
    version_id: int


def require_version(conn: psycopg.Connection, scope: Scope) -> tuple[str, str | None]:
    """Return (name, description) of the scope's version or raise ScopeNotFound."""
    row = conn.execute(
        "SELECT name, description FROM budget_versions WHERE id = %s AND user_id = %s",
        (scope.version_id, scope.user_id),
    ).fetchone()
    if row is None:
        raise ScopeNotFound(
            f"version {scope.version_id} not found for user {scope.user_id}"
        )
    return row[0], row[1]


def require_user(conn: psycopg.Connection, user_id: int) -> None:
    row = conn.execute("SELECT id FROM users WHERE id = %s", (user_id,)).fetchone()
    if row is None:
        raise ScopeNotFound(f"user {user_id} not found")


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrphanPair:
    """An expense↔tag pair whose expense or tag could not be resolved.

    Identifiers are the original values, exactly as they appeared in the
    dataset (import) or the join table (verify).  user_id/version_id are
    only set by the verifier, which may scan every scope at once.
    """
    expense_id: Any
    tag_id: Any
    tag_name: str | None = None
    user_id: int | None = None
    version_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"expense_id": self.expense_id, "tag_id": self.tag_id}


# ---------------------------------------------------------------------------
# ImportCounters / ImportResult
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    accounts_inserted: int = 0
    income_inserted: int = 0
    expenses_inserted: int = 0
    tags_inserted: int = 0
    tags_matched_existing: int = 0
    settings_inserted: int = 0
    settings_updated: int = 0
    expense_tags_inserted: int = 0
    expense_tags_duplicate: int = 0
    expense_accounts_unresolved: int = 0
    warnings: list[str] = field(default_factory=list)

    def imported(self) -> dict[str, int]:
        return {
            "accounts": self.accounts_inserted,
            "income": self.income_inserted,
            "expenses": self.expenses_inserted,
            "tags": self.tags_inserted,
            "settings": self.settings_inserted,
            "expenseTags": self.expense_tags_inserted,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "accounts_inserted": self.accounts_inserted,
            "income_inserted": self.income_inserted,
            "expenses_inserted": self.expenses_inserted,
            "tags_inserted": self.tags_inserted,
            "tags_matched_existing": self.tags_matched_existing,
            "settings_inserted": self.settings_inserted,
            "settings_updated": self.settings_updated,
            "expense_tags_inserted": self.expense_tags_inserted,
            "expense_tags_duplicate": self.expense_tags_duplicate,
            "expense_accounts_unresolved": self.expense_accounts_unresolved,
            "warnings": self.warnings[:50],
        }


@dataclass
class ImportResult:
    version_id: int
    counters: ImportCounters
    skipped_expense_tags: list[OrphanPair] = field(default_factory=list)
    created_version: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the import response shape handed to transport layers."""
        return {
            "versionId": self.version_id,
            "imported": self.counters.imported(),
            "skipped": {
                "expenseTags": [p.to_dict() for p in self.skipped_expense_tags],
            },
        }


def build_import_report(result: ImportResult, dry_run: bool = False) -> str:
    ctrs = result.counters
    lines = [
        "=" * 60,
        "Budget Snapshot Import Report",
        f"  destination version: {result.version_id}"
        + (" (created)" if result.created_version else ""),
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  accounts inserted:              {ctrs.accounts_inserted}",
        f"  income inserted:                {ctrs.income_inserted}",
        f"  expenses inserted:              {ctrs.expenses_inserted}",
        f"  tags inserted:                  {ctrs.tags_inserted}",
        f"  tags matched existing:          {ctrs.tags_matched_existing}",
        f"  settings inserted:              {ctrs.settings_inserted}",
        f"  settings updated:               {ctrs.settings_updated}",
        f"  expense tags inserted:          {ctrs.expense_tags_inserted}",
        f"  expense tags duplicate:         {ctrs.expense_tags_duplicate}",
        f"  expense tags skipped (orphan):  {len(result.skipped_expense_tags)}",
        f"  unresolved expense accounts:    {ctrs.expense_accounts_unresolved}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    details: dict[str, Any],
    counters: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **details,
        "counters": counters,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
