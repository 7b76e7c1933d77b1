"""budget_snapshot.remap

Per-import identity remapping: original entity key → destination key.

Key rules:
  - accounts, income, expenses: no natural key; every source row gets a
    freshly minted destination key (database serial for accounts, uuid4
    text for income/expenses) whether or not an equivalent row exists.
  - tags: natural key (user_id, version_id, name).  An existing destination
    tag with the same name is reused as-is (never replaced, recoloured or
    renumbered); otherwise a new row is inserted.
  - expense_tags: never minted; both sides are looked up in the expense and
    tag maps.  A pair with an unmapped side is an orphan: recorded, skipped.

Original keys are compared in normalized text form (see normalize_key),
so an account referenced as 3 and as "3" resolves to the same row.

An IdentityRemapper lives for exactly one import and is never shared.
"""

from __future__ import annotations

import uuid
from typing import Any

import psycopg

from budget_snapshot.dataset import ExpenseTagRow, TagRow
from budget_snapshot.normalize import normalize_key
from budget_snapshot.shared import ImportCounters, OrphanPair, Scope


def mint_text_key() -> str:
    """New surrogate key for text-keyed kinds (income, expenses)."""
    return str(uuid.uuid4())


class IdentityRemapper:
    """Original → destination key maps for one import into `scope`."""

    def __init__(self, scope: Scope) -> None:
        self.scope = scope
        self.accounts: dict[str, int] = {}
        self.tags: dict[str, int] = {}
        self.income: dict[str, str] = {}
        self.expenses: dict[str, str] = {}
        self.orphans: list[OrphanPair] = []
        self._tags_by_name: dict[str, int] = {}

    # -- accounts / income / expenses -------------------------------------

    def map_account(self, original: Any, new_id: int) -> None:
        self.accounts[normalize_key(original)] = new_id

    def map_income(self, original: Any) -> str:
        new_id = mint_text_key()
        self.income[normalize_key(original)] = new_id
        return new_id

    def map_expense(self, original: Any) -> str:
        new_id = mint_text_key()
        self.expenses[normalize_key(original)] = new_id
        return new_id

    def account_for(self, original: Any) -> int | None:
        """Destination account for an expense's accountId, None when unmapped."""
        key = normalize_key(original)
        if key is None:
            return None
        return self.accounts.get(key)

    # -- tags ---------------------------------------------------------------

    def resolve_tag(
        self,
        conn: psycopg.Connection,
        tag: TagRow,
        counters: ImportCounters,
    ) -> int:
        """Select-or-insert a destination tag by name and map the original id."""
        original = normalize_key(tag.id)

        # Same name twice in one dataset → same destination row.
        if tag.name in self._tags_by_name:
            tag_id = self._tags_by_name[tag.name]
            self.tags[original] = tag_id
            counters.warnings.append(
                f"tag {tag.id!r} ({tag.name!r}) repeats an earlier tag name; merged"
            )
            return tag_id

        tag_id = self._lookup_tag(conn, tag.name)
        if tag_id is not None:
            counters.tags_matched_existing += 1
        else:
            row = conn.execute(
                """
                INSERT INTO tags (user_id, version_id, name, color)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, version_id, name) DO NOTHING
                RETURNING id
                """,
                (self.scope.user_id, self.scope.version_id, tag.name, tag.color),
            ).fetchone()
            if row is not None:
                tag_id = int(row[0])
                counters.tags_inserted += 1
            else:
                # Created by someone else between the lookup and the insert.
                tag_id = self._lookup_tag(conn, tag.name)
                counters.tags_matched_existing += 1

        self._tags_by_name[tag.name] = tag_id
        self.tags[original] = tag_id
        return tag_id

    def _lookup_tag(self, conn: psycopg.Connection, name: str) -> int | None:
        row = conn.execute(
            "SELECT id FROM tags WHERE user_id = %s AND version_id = %s AND name = %s",
            (self.scope.user_id, self.scope.version_id, name),
        ).fetchone()
        return int(row[0]) if row else None

    # -- expense_tags ---------------------------------------------------------

    def resolve_expense_tag(self, pair: ExpenseTagRow) -> tuple[str, int] | None:
        """Return (expense_id, tag_id) in the destination, or None for an orphan."""
        expense_id = self.expenses.get(normalize_key(pair.expense_id))
        tag_id = self.tags.get(normalize_key(pair.tag_id))
        if expense_id is None or tag_id is None:
            self.orphans.append(OrphanPair(pair.expense_id, pair.tag_id, pair.tag_name))
            return None
        return expense_id, tag_id
