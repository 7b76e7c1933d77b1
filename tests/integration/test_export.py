"""Integration tests for budget_snapshot.extract — export_scope()."""

from __future__ import annotations

from decimal import Decimal

import psycopg
import pytest
from psycopg import pq

from budget_snapshot.extract import export_scope
from budget_snapshot.shared import Scope, ScopeNotFound


@pytest.fixture
def populated(seed):
    user = seed.user("Alex")
    version = seed.version(user, "Main")
    acct = seed.account(user, version, "Checking", "1500.00")
    seed.income(user, version, "inc-1", "Salary", "3200")
    seed.expense(user, version, "e1", "Rent", "1200", account_id=acct)
    seed.expense(user, version, "e2", "Food", "400")
    cars = seed.tag(user, version, "Cars", "#111111")
    home = seed.tag(user, version, "Home")
    seed.expense_tag("e1", home)
    seed.expense_tag("e2", cars)
    seed.setting(user, version, "frequency", "monthly")
    return {"user": user, "version": version, "account": acct, "cars": cars, "home": home}


class TestExportScope:
    def test_counts(self, db_conn, populated):
        conn, _ = db_conn
        ds = export_scope(conn, Scope(populated["user"], populated["version"]))
        assert ds.counts() == {
            "accounts": 1, "income": 1, "expenses": 2,
            "tags": 2, "settings": 1, "expenseTags": 2,
        }

    def test_original_identifiers_kept(self, db_conn, populated):
        conn, _ = db_conn
        ds = export_scope(conn, Scope(populated["user"], populated["version"]))
        assert ds.version.id == populated["version"]
        assert ds.version.name == "Main"
        assert ds.accounts[0].id == populated["account"]
        assert [e.id for e in ds.expenses] == ["e1", "e2"]
        rent = ds.expenses[0]
        assert rent.account_id == populated["account"]
        assert rent.amount == Decimal("1200")

    def test_expense_tags_carry_tag_name(self, db_conn, populated):
        conn, _ = db_conn
        ds = export_scope(conn, Scope(populated["user"], populated["version"]))
        by_expense = {et.expense_id: (et.tag_id, et.tag_name) for et in ds.expense_tags}
        assert by_expense == {
            "e1": (populated["home"], "Home"),
            "e2": (populated["cars"], "Cars"),
        }

    def test_join_row_to_deleted_tag_still_exported(self, db_conn, populated):
        conn, _ = db_conn
        conn.execute("DELETE FROM tags WHERE id = %s", (populated["cars"],))
        conn.commit()
        ds = export_scope(conn, Scope(populated["user"], populated["version"]))
        orphan = [et for et in ds.expense_tags if et.expense_id == "e2"]
        assert len(orphan) == 1
        assert orphan[0].tag_id == populated["cars"]
        assert orphan[0].tag_name is None

    def test_payload_shape(self, db_conn, populated):
        conn, _ = db_conn
        payload = export_scope(conn, Scope(populated["user"], populated["version"])).to_payload()
        assert payload["accounts"][0]["currentBalance"] == 1500
        assert payload["exportDate"]

    def test_connection_left_idle(self, db_conn, populated):
        conn, _ = db_conn
        export_scope(conn, Scope(populated["user"], populated["version"]))
        assert conn.info.transaction_status == pq.TransactionStatus.IDLE

    def test_open_transaction_refused(self, db_conn, populated):
        conn, _ = db_conn
        conn.execute("SELECT 1")
        with pytest.raises(RuntimeError, match="idle"):
            export_scope(conn, Scope(populated["user"], populated["version"]))
        conn.rollback()


class TestScopeNotFound:
    def test_unknown_version(self, db_conn, populated):
        conn, _ = db_conn
        with pytest.raises(ScopeNotFound):
            export_scope(conn, Scope(populated["user"], 999_999))

    def test_other_users_version(self, db_conn, seed, populated):
        conn, _ = db_conn
        other = seed.user("Blake")
        with pytest.raises(ScopeNotFound):
            export_scope(conn, Scope(other, populated["version"]))


class TestSnapshot:
    def test_uncommitted_write_not_observed(self, db_conn, seed, populated):
        conn, dsn = db_conn
        writer = psycopg.connect(dsn, autocommit=False)
        try:
            writer.execute(
                """
                INSERT INTO accounts
                  (user_id, version_id, name, bank, current_balance, required_balance)
                VALUES (%s, %s, 'Savings', 'Second', 10, 0)
                """,
                (populated["user"], populated["version"]),
            )
            ds = export_scope(conn, Scope(populated["user"], populated["version"]))
            assert [a.name for a in ds.accounts] == ["Checking"]
            writer.commit()
        finally:
            writer.close()
        ds = export_scope(conn, Scope(populated["user"], populated["version"]))
        assert sorted(a.name for a in ds.accounts) == ["Checking", "Savings"]
