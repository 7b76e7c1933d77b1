"""budget_snapshot.verify

Consistency verifier for the expense↔tag join table.

An expense_tags row is offending when its tag_id does not name a tag in
the same (user, version) scope as its expense: the tag was deleted, or
the row points across scopes.  expense_tags.tag_id has no foreign key, so
this scan is the only guard.

Scan runs in one REPEATABLE READ, READ ONLY snapshot.  With delete=True,
offending rows are removed in batches; each batch is its own transaction
and re-checks the orphan condition, so a batch is either fully applied or
not at all and a concurrently repaired row is left alone.
"""

from __future__ import annotations

import psycopg
from psycopg import pq

from budget_snapshot.shared import OrphanPair, Scope, StorageError

_SCAN_SQL = """
SELECT et.expense_id, et.tag_id, e.user_id, e.version_id
FROM expense_tags et
JOIN expenses e ON e.id = et.expense_id
LEFT JOIN tags t
  ON t.id = et.tag_id
 AND t.user_id = e.user_id
 AND t.version_id = e.version_id
WHERE t.id IS NULL
"""

_DELETE_SQL = """
DELETE FROM expense_tags et
USING expenses e
WHERE et.expense_id = %s
  AND et.tag_id = %s
  AND e.id = et.expense_id
  AND NOT EXISTS (
      SELECT 1 FROM tags t
      WHERE t.id = et.tag_id
        AND t.user_id = e.user_id
        AND t.version_id = e.version_id
  )
"""


def find_orphans(conn: psycopg.Connection, scope: Scope | None = None) -> list[OrphanPair]:
    """Return offending expense_tags rows (caller manages transaction)."""
    sql = _SCAN_SQL
    params: tuple = ()
    if scope is not None:
        sql += "  AND e.user_id = %s AND e.version_id = %s\n"
        params = (scope.user_id, scope.version_id)
    sql += "ORDER BY e.user_id, e.version_id, et.expense_id, et.tag_id"
    rows = conn.execute(sql, params).fetchall()
    return [
        OrphanPair(expense_id=r[0], tag_id=r[1], user_id=r[2], version_id=r[3])
        for r in rows
    ]


def _delete_batch(conn: psycopg.Connection, batch: list[OrphanPair]) -> int:
    with conn.transaction():
        with conn.cursor() as cur:
            cur.executemany(_DELETE_SQL, [(p.expense_id, p.tag_id) for p in batch])
            # executemany accumulates rowcount across parameter rows.
            return cur.rowcount


def delete_orphans(
    conn: psycopg.Connection,
    orphans: list[OrphanPair],
    batch_size: int = 500,
) -> int:
    """Delete scanned orphan pairs in batches; return rows actually removed.

    A pair repaired since the scan is re-checked and left alone, so the
    result can be lower than len(orphans).

    Raises:
        StorageError: a delete batch failed; that batch was rolled back,
            earlier batches stay committed.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    deleted = 0
    for start in range(0, len(orphans), batch_size):
        batch = orphans[start:start + batch_size]
        try:
            deleted += _delete_batch(conn, batch)
        except psycopg.Error as exc:
            raise StorageError(
                f"orphan cleanup failed at batch starting {start}; batch rolled back: {exc}"
            ) from exc
    return deleted


def verify_consistency(
    conn: psycopg.Connection,
    scope: Scope | None = None,
    delete: bool = False,
    batch_size: int = 500,
) -> list[OrphanPair]:
    """Find (and optionally delete) expense_tags rows with no tag in scope.

    Args:
        conn: Idle psycopg connection; left idle.
        scope: One (user, version) scope, or None for every scope.
        delete: Remove the offending rows after scanning.
        batch_size: Rows per delete transaction.

    Returns:
        The offending pairs found by the scan.

    Raises:
        StorageError: a delete batch failed; that batch was rolled back,
            earlier batches stay committed.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if conn.info.transaction_status != pq.TransactionStatus.IDLE:
        raise RuntimeError("verify_consistency() needs an idle connection; commit or roll back first")

    with conn.transaction(force_rollback=True):
        conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
        orphans = find_orphans(conn, scope)

    if delete:
        delete_orphans(conn, orphans, batch_size)
    return orphans
