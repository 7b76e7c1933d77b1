"""budget_snapshot.coordinator

Atomic import of a Dataset into a new or existing budget version.

State machine (ImportOperation.state):

    idle → validating → writing → committed
                    │           └→ rolled_back
                    └→ rejected

  validating  payload parsed into (or checked as) a Dataset, arguments
              checked, optional cancellation honoured.  No storage
              access; failures end in `rejected` with nothing written.
  writing     one transaction: scope lock, destination check or version
              creation, reconstruct, commit.  Cannot be cancelled.  Any
              error rolls the whole transaction back (including a version
              row created by this attempt).  psycopg errors surface as
              StorageError and are never retried.

Writers to the same (user, version) scope are serialized with a
transaction-scoped advisory lock; different scopes never wait on each
other.  Creating a new version locks (user_id, 0) instead, which only
serializes version creation for that user.
"""

from __future__ import annotations

from typing import Any, Callable

import psycopg
from psycopg import pq

from budget_snapshot.dataset import Dataset
from budget_snapshot.reconstruct import reconstruct
from budget_snapshot.remap import IdentityRemapper
from budget_snapshot.shared import (
    ImportCancelled,
    ImportCounters,
    ImportResult,
    Scope,
    StorageError,
    ValidationError,
    require_version,
)
from budget_snapshot.versions import create_version

# Version ids are serial (>= 1); slot 0 stands for "a version being created".
_NEW_VERSION_LOCK_SLOT = 0

_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"validating"}),
    "validating": frozenset({"writing", "rejected"}),
    "writing": frozenset({"committed", "rolled_back"}),
    "committed": frozenset(),
    "rolled_back": frozenset(),
    "rejected": frozenset(),
}


def lock_scope(conn: psycopg.Connection, user_id: int, version_id: int) -> None:
    """Block until this transaction holds the write lock for the scope."""
    conn.execute("SELECT pg_advisory_xact_lock(%s, %s)", (user_id, version_id))


class ImportOperation:
    """One import attempt.  Use once; see import_dataset()."""

    def __init__(
        self,
        conn: psycopg.Connection,
        payload: Dataset | dict[str, Any],
        destination: Scope | None = None,
        *,
        user_id: int | None = None,
        version_name: str | None = None,
        version_description: str | None = None,
        should_cancel: Callable[[], bool] | None = None,
        dry_run: bool = False,
    ) -> None:
        self.conn = conn
        self.payload = payload
        self.destination = destination
        self.user_id = user_id
        self.version_name = version_name
        self.version_description = version_description
        self.should_cancel = should_cancel
        self.dry_run = dry_run
        self.state = "idle"
        self.history: list[str] = ["idle"]

    def _advance(self, new_state: str) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal import state transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    # -- validating -----------------------------------------------------------

    def _validate(self) -> tuple[Dataset, int]:
        if isinstance(self.payload, Dataset):
            dataset = self.payload
            dataset.validate()
        else:
            dataset = Dataset.from_payload(self.payload)

        if self.destination is None and self.user_id is None:
            raise ValidationError(["user_id is required when no destination version is given"])
        if (
            self.destination is not None
            and self.user_id is not None
            and self.user_id != self.destination.user_id
        ):
            raise ValidationError([
                f"user_id {self.user_id} does not own destination scope "
                f"(user {self.destination.user_id})"
            ])
        if self.conn.autocommit:
            raise RuntimeError("import needs a connection with autocommit off")
        if self.conn.info.transaction_status != pq.TransactionStatus.IDLE:
            raise RuntimeError("import needs an idle connection; commit or roll back first")
        if self.should_cancel is not None and self.should_cancel():
            raise ImportCancelled("import cancelled before writing began")

        owner = self.destination.user_id if self.destination is not None else self.user_id
        return dataset, owner

    # -- writing --------------------------------------------------------------

    def _write(self, dataset: Dataset, owner: int) -> ImportResult:
        conn = self.conn
        counters = ImportCounters()
        created = False

        if self.destination is not None:
            lock_scope(conn, owner, self.destination.version_id)
            require_version(conn, self.destination)
            scope = self.destination
        else:
            lock_scope(conn, owner, _NEW_VERSION_LOCK_SLOT)
            version_id = create_version(
                conn,
                owner,
                self.version_name or dataset.version.name,
                self.version_description
                if self.version_description is not None
                else dataset.version.description,
            )
            scope = Scope(owner, version_id)
            created = True

        remapper = IdentityRemapper(scope)
        reconstruct(conn, dataset, remapper, counters)
        return ImportResult(
            version_id=scope.version_id,
            counters=counters,
            skipped_expense_tags=list(remapper.orphans),
            created_version=created,
        )

    def _rollback(self) -> None:
        if not self.conn.closed:
            self.conn.rollback()

    def run(self) -> ImportResult:
        self._advance("validating")
        try:
            dataset, owner = self._validate()
        except BaseException:
            self._advance("rejected")
            raise

        self._advance("writing")
        try:
            result = self._write(dataset, owner)
            if self.dry_run:
                self.conn.rollback()
            else:
                self.conn.commit()
        except BaseException as exc:
            self._rollback()
            self._advance("rolled_back")
            if isinstance(exc, psycopg.Error):
                raise StorageError(f"import failed and was rolled back: {exc}") from exc
            raise

        self._advance("rolled_back" if self.dry_run else "committed")
        return result


def import_dataset(
    conn: psycopg.Connection,
    payload: Dataset | dict[str, Any],
    destination: Scope | None = None,
    *,
    user_id: int | None = None,
    version_name: str | None = None,
    version_description: str | None = None,
    should_cancel: Callable[[], bool] | None = None,
    dry_run: bool = False,
) -> ImportResult:
    """Import a dataset atomically.

    Args:
        conn: Idle psycopg connection with autocommit off; left idle.
        payload: A Dataset, or a transfer payload dict (validated first).
        destination: Existing (user, version) to import into.  When None a
            new inactive version is created for `user_id`.
        user_id: Owner of the new version (required without destination).
        version_name: Name for the new version; defaults to the dataset's
            version name, then "Imported Version".  Made unique per user.
        version_description: Description for the new version.
        should_cancel: Checked once, just before writing starts.
        dry_run: Do all the work, then roll back instead of committing.

    Returns:
        ImportResult with per-kind inserted counts and skipped orphan pairs.

    Raises:
        ValidationError: malformed payload; nothing written.
        ImportCancelled: should_cancel() returned True; nothing written.
        ScopeNotFound: destination version or user does not exist; rolled back.
        StorageError: storage failure while writing; rolled back.
    """
    return ImportOperation(
        conn,
        payload,
        destination,
        user_id=user_id,
        version_name=version_name,
        version_description=version_description,
        should_cancel=should_cancel,
        dry_run=dry_run,
    ).run()
