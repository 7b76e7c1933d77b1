"""budget_snapshot.extract

Snapshot extraction: read one (user, version) scope into a Dataset with
original identifiers intact.

export_scope() is the read-only entry point.  It runs the whole extraction
in a single REPEATABLE READ, READ ONLY transaction so every entity kind
reflects the same committed moment; an import writing to the same scope is
seen either entirely or not at all.
"""

from __future__ import annotations

import psycopg
from psycopg import pq

from budget_snapshot.dataset import (
    AccountRow,
    Dataset,
    ExpenseRow,
    ExpenseTagRow,
    IncomeRow,
    SettingRow,
    TagRow,
    VersionInfo,
)
from budget_snapshot.shared import Scope, require_version, utc_now_iso


def _fetch_accounts(conn: psycopg.Connection, scope: Scope) -> list[AccountRow]:
    rows = conn.execute(
        """
        SELECT id, name, bank, current_balance, required_balance, is_primary, diff
        FROM accounts
        WHERE user_id = %s AND version_id = %s
        ORDER BY id
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [AccountRow(*r) for r in rows]


def _fetch_income(conn: psycopg.Connection, scope: Scope) -> list[IncomeRow]:
    rows = conn.execute(
        """
        SELECT id, description, amount, frequency, next_due, apply_fuzziness
        FROM income
        WHERE user_id = %s AND version_id = %s
        ORDER BY id
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [IncomeRow(*r) for r in rows]


def _fetch_expenses(conn: psycopg.Connection, scope: Scope) -> list[ExpenseRow]:
    rows = conn.execute(
        """
        SELECT id, description, amount, frequency, next_due, apply_fuzziness,
               notes, account_id
        FROM expenses
        WHERE user_id = %s AND version_id = %s
        ORDER BY id
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [ExpenseRow(*r) for r in rows]


def _fetch_tags(conn: psycopg.Connection, scope: Scope) -> list[TagRow]:
    rows = conn.execute(
        """
        SELECT id, name, color
        FROM tags
        WHERE user_id = %s AND version_id = %s
        ORDER BY id
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [TagRow(*r) for r in rows]


def _fetch_settings(conn: psycopg.Connection, scope: Scope) -> list[SettingRow]:
    rows = conn.execute(
        """
        SELECT key, value
        FROM settings
        WHERE user_id = %s AND version_id = %s
        ORDER BY key
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [SettingRow(*r) for r in rows]


def _fetch_expense_tags(conn: psycopg.Connection, scope: Scope) -> list[ExpenseTagRow]:
    # LEFT JOIN: a join row whose tag has gone is still exported (tag_name NULL)
    # so the importing side reports it as skipped instead of losing it silently.
    rows = conn.execute(
        """
        SELECT et.expense_id, et.tag_id, t.name
        FROM expense_tags et
        JOIN expenses e ON e.id = et.expense_id
        LEFT JOIN tags t
          ON t.id = et.tag_id
         AND t.user_id = e.user_id
         AND t.version_id = e.version_id
        WHERE e.user_id = %s AND e.version_id = %s
        ORDER BY et.expense_id, et.tag_id
        """,
        (scope.user_id, scope.version_id),
    ).fetchall()
    return [ExpenseTagRow(*r) for r in rows]


def extract_dataset(conn: psycopg.Connection, scope: Scope) -> Dataset:
    """Read every row of `scope` into a Dataset.

    Args:
        conn: Open psycopg connection (caller manages transaction).
        scope: (user_id, version_id) already authorized by the caller.

    Raises:
        ScopeNotFound: before any entity row is read, if the version does
            not exist for that user.
    """
    name, description = require_version(conn, scope)
    return Dataset(
        version=VersionInfo(id=scope.version_id, name=name, description=description),
        accounts=_fetch_accounts(conn, scope),
        income=_fetch_income(conn, scope),
        expenses=_fetch_expenses(conn, scope),
        tags=_fetch_tags(conn, scope),
        settings=_fetch_settings(conn, scope),
        expense_tags=_fetch_expense_tags(conn, scope),
        export_date=utc_now_iso(),
    )


def export_scope(conn: psycopg.Connection, scope: Scope) -> Dataset:
    """Extract `scope` from one consistent snapshot.  Read-only.

    The connection must be idle (no open transaction); it is left idle.
    """
    if conn.info.transaction_status != pq.TransactionStatus.IDLE:
        raise RuntimeError("export_scope() needs an idle connection; commit or roll back first")
    with conn.transaction(force_rollback=True):
        conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
        return extract_dataset(conn, scope)
