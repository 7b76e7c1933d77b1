"""budget_snapshot.reconstruct

Replays a Dataset into a destination (user, version) scope.

Insertion order (each step only consumes keys minted by earlier steps):
    1. budget_versions  (created by the coordinator when no destination given)
    2. accounts
    3. tags             (select-or-insert by name)
    4. income
    5. expenses         (accountId resolved through the account map)
    6. expense_tags     (both sides resolved; orphans skipped and recorded)
    7. settings         (upsert by key)

Runs inside the caller's transaction and never commits or rolls back;
see coordinator.import_dataset() for the atomic wrapper.
"""

from __future__ import annotations

import psycopg

from budget_snapshot.dataset import Dataset
from budget_snapshot.remap import IdentityRemapper
from budget_snapshot.shared import ImportCounters


def _insert_accounts(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    if not dataset.accounts:
        return
    scope = remapper.scope
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO accounts
              (user_id, version_id, name, bank, current_balance,
               required_balance, is_primary, diff)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            [
                (scope.user_id, scope.version_id, a.name, a.bank,
                 a.current_balance, a.required_balance, a.is_primary, a.diff)
                for a in dataset.accounts
            ],
            returning=True,
        )
        # One result set per parameter row, in order.
        for account in dataset.accounts:
            new_id = cur.fetchone()[0]
            remapper.map_account(account.id, int(new_id))
            counters.accounts_inserted += 1
            cur.nextset()


def _insert_tags(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    for tag in dataset.tags:
        remapper.resolve_tag(conn, tag, counters)


def _insert_income(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    if not dataset.income:
        return
    scope = remapper.scope
    params = [
        (remapper.map_income(i.id), scope.user_id, scope.version_id, i.description,
         i.amount, i.frequency, i.next_due, i.apply_fuzziness)
        for i in dataset.income
    ]
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO income
              (id, user_id, version_id, description, amount, frequency,
               next_due, apply_fuzziness)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            params,
        )
    counters.income_inserted += len(params)


def _insert_expenses(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    if not dataset.expenses:
        return
    scope = remapper.scope
    params = []
    for e in dataset.expenses:
        account_id = remapper.account_for(e.account_id)
        if e.account_id is not None and account_id is None:
            # accountId is optional: an unknown account degrades to "no account".
            counters.expense_accounts_unresolved += 1
            counters.warnings.append(
                f"expense {e.id!r}: account {e.account_id!r} not in dataset; imported without account"
            )
        params.append(
            (remapper.map_expense(e.id), scope.user_id, scope.version_id, e.description,
             e.amount, e.frequency, e.next_due, e.apply_fuzziness, e.notes, account_id)
        )
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO expenses
              (id, user_id, version_id, description, amount, frequency,
               next_due, apply_fuzziness, notes, account_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            params,
        )
    counters.expenses_inserted += len(params)


def _insert_expense_tags(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    pairs: list[tuple[str, int]] = []
    seen: set[tuple[str, int]] = set()
    for et in dataset.expense_tags:
        resolved = remapper.resolve_expense_tag(et)
        if resolved is None:
            continue
        if resolved in seen:
            # Repeated pair, or two source tags merged by name.
            counters.expense_tags_duplicate += 1
            continue
        seen.add(resolved)
        pairs.append(resolved)

    for orphan in remapper.orphans:
        counters.warnings.append(
            f"expense_tag ({orphan.expense_id!r}, {orphan.tag_id!r}): "
            "expense or tag not in dataset; skipped"
        )

    if not pairs:
        return
    with conn.cursor() as cur:
        cur.executemany(
            "INSERT INTO expense_tags (expense_id, tag_id) VALUES (%s, %s)",
            pairs,
        )
    counters.expense_tags_inserted += len(pairs)


def _insert_settings(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    if not dataset.settings:
        return
    scope = remapper.scope
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO settings (user_id, version_id, key, value)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, version_id, key) DO UPDATE SET value = EXCLUDED.value
            RETURNING (xmax = 0)
            """,
            [(scope.user_id, scope.version_id, s.key, s.value) for s in dataset.settings],
            returning=True,
        )
        # xmax is 0 only on a freshly inserted tuple.
        for _ in dataset.settings:
            if cur.fetchone()[0]:
                counters.settings_inserted += 1
            else:
                counters.settings_updated += 1
            cur.nextset()


_STEPS = (
    _insert_accounts,
    _insert_tags,
    _insert_income,
    _insert_expenses,
    _insert_expense_tags,
    _insert_settings,
)


def reconstruct(
    conn: psycopg.Connection,
    dataset: Dataset,
    remapper: IdentityRemapper,
    counters: ImportCounters,
) -> None:
    """Insert every row of `dataset` into `remapper.scope`.

    Args:
        conn: Open psycopg connection (caller manages transaction).
        dataset: Validated dataset with original identifiers.
        remapper: Fresh IdentityRemapper bound to the destination scope.
        counters: Receives inserted counts and warnings.

    Orphaned expense_tags end up in remapper.orphans.  Any psycopg.Error
    propagates unchanged; the caller must roll back.
    """
    for step in _STEPS:
        step(conn, dataset, remapper, counters)
