"""Integration test fixtures.

Applies the budget schema against an ephemeral PostgreSQL database provided
by pytest-postgresql, and offers a small seeder for users, versions and
entity rows.
"""

from __future__ import annotations

import uuid
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_budget_schema.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return a psycopg connection with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    The connection is idle with autocommit off.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------

class Seeder:
    """Inserts rows directly; every method commits so the connection stays idle."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def _one(self, sql: str, params: tuple):
        row = self.conn.execute(sql, params).fetchone()
        self.conn.commit()
        return row[0] if row else None

    def user(self, name: str = "Pat") -> int:
        return self._one(
            "INSERT INTO users (name, email) VALUES (%s, %s) RETURNING id",
            (name, f"{name.lower()}-{uuid.uuid4().hex[:8]}@example.test"),
        )

    def version(self, user_id: int, name: str = "Main", active: bool = False) -> int:
        return self._one(
            """
            INSERT INTO budget_versions (user_id, name, description, is_active)
            VALUES (%s, %s, %s, %s) RETURNING id
            """,
            (user_id, name, f"{name} budget", active),
        )

    def account(self, user_id: int, version_id: int, name: str = "Checking",
                balance: str = "1500.00") -> int:
        return self._one(
            """
            INSERT INTO accounts
              (user_id, version_id, name, bank, current_balance, required_balance, is_primary)
            VALUES (%s, %s, %s, 'First Bank', %s, 200, false) RETURNING id
            """,
            (user_id, version_id, name, balance),
        )

    def income(self, user_id: int, version_id: int, income_id: str,
               description: str = "Salary", amount: str = "3200") -> str:
        return self._one(
            """
            INSERT INTO income
              (id, user_id, version_id, description, amount, frequency, next_due)
            VALUES (%s, %s, %s, %s, %s, 'monthly', '2026-02-01') RETURNING id
            """,
            (income_id, user_id, version_id, description, amount),
        )

    def expense(self, user_id: int, version_id: int, expense_id: str,
                description: str = "Rent", amount: str = "1200",
                account_id: int | None = None) -> str:
        return self._one(
            """
            INSERT INTO expenses
              (id, user_id, version_id, description, amount, frequency, next_due, account_id)
            VALUES (%s, %s, %s, %s, %s, 'monthly', '2026-02-01', %s) RETURNING id
            """,
            (expense_id, user_id, version_id, description, amount, account_id),
        )

    def tag(self, user_id: int, version_id: int, name: str, color: str | None = None) -> int:
        return self._one(
            "INSERT INTO tags (user_id, version_id, name, color) VALUES (%s, %s, %s, %s) RETURNING id",
            (user_id, version_id, name, color),
        )

    def expense_tag(self, expense_id: str, tag_id: int) -> None:
        self.conn.execute(
            "INSERT INTO expense_tags (expense_id, tag_id) VALUES (%s, %s)",
            (expense_id, tag_id),
        )
        self.conn.commit()

    def setting(self, user_id: int, version_id: int, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO settings (user_id, version_id, key, value) VALUES (%s, %s, %s, %s)",
            (user_id, version_id, key, value),
        )
        self.conn.commit()

    def count(self, table: str, user_id: int, version_id: int) -> int:
        if table == "expense_tags":
            sql = """
                SELECT count(*) FROM expense_tags et
                JOIN expenses e ON e.id = et.expense_id
                WHERE e.user_id = %s AND e.version_id = %s
            """
        else:
            sql = f"SELECT count(*) FROM {table} WHERE user_id = %s AND version_id = %s"
        n = self.conn.execute(sql, (user_id, version_id)).fetchone()[0]
        self.conn.commit()
        return n


@pytest.fixture
def seed(db_conn):
    conn, _dsn = db_conn
    return Seeder(conn)
