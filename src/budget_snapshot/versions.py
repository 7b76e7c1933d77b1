"""budget_snapshot.versions

Budget version lifecycle: create, activate, set default, delete, copy.

Rules:
  - a new version is never active; activation is a separate call.
  - at most one active version per user (also enforced by a partial
    unique index in 0001_budget_schema.sql).
  - a version can be deleted only when it is not active and the user
    keeps at least one other version.
  - version names are unique per user; create_version() suffixes
    " (2)", " (3)", ... instead of failing on a taken name.

All functions except copy_version() run in the caller's transaction.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import psycopg
import yaml

from budget_snapshot.normalize import normalize_space, setting_text
from budget_snapshot.shared import (
    ImportResult,
    Scope,
    VersionRuleError,
    require_user,
    require_version,
)

DEFAULT_VERSION_NAME = "Imported Version"
DEFAULT_SETTINGS_PATH = Path(__file__).parent / "default_settings.yaml"


# ---------------------------------------------------------------------------
# Default settings
# ---------------------------------------------------------------------------

def load_default_settings(yaml_path: Path | None = None) -> dict[str, str]:
    """Load the settings seeded into blank versions, as key → stored text.

    Raises:
        ValueError: If the file has no `settings` mapping.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_SETTINGS_PATH
    data: dict[str, Any] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    settings = data.get("settings")
    if not isinstance(settings, dict):
        raise ValueError(f"{path}: expected a 'settings' mapping")
    return {str(k): setting_text(v) for k, v in settings.items() if v is not None}


# ---------------------------------------------------------------------------
# Create / activate / default / delete
# ---------------------------------------------------------------------------

def unique_version_name(conn: psycopg.Connection, user_id: int, name: str) -> str:
    taken = {
        r[0] for r in conn.execute(
            "SELECT name FROM budget_versions WHERE user_id = %s", (user_id,)
        ).fetchall()
    }
    candidate = name
    n = 2
    while candidate in taken:
        candidate = f"{name} ({n})"
        n += 1
    return candidate


def create_version(
    conn: psycopg.Connection,
    user_id: int,
    name: str | None,
    description: str | None = None,
    default_settings: dict[str, str] | None = None,
) -> int:
    """Insert an inactive version for `user_id` and return its id."""
    require_user(conn, user_id)
    final_name = unique_version_name(
        conn, user_id, normalize_space(name) or DEFAULT_VERSION_NAME
    )
    row = conn.execute(
        """
        INSERT INTO budget_versions (user_id, name, description, is_active)
        VALUES (%s, %s, %s, false)
        RETURNING id
        """,
        (user_id, final_name, description),
    ).fetchone()
    version_id = int(row[0])

    if default_settings:
        with conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO settings (user_id, version_id, key, value) VALUES (%s, %s, %s, %s)",
                [(user_id, version_id, k, v) for k, v in default_settings.items()],
            )
    return version_id


def activate_version(conn: psycopg.Connection, scope: Scope) -> None:
    require_version(conn, scope)
    conn.execute(
        "UPDATE budget_versions SET is_active = false WHERE user_id = %s AND id <> %s AND is_active",
        (scope.user_id, scope.version_id),
    )
    conn.execute(
        "UPDATE budget_versions SET is_active = true WHERE id = %s AND user_id = %s",
        (scope.version_id, scope.user_id),
    )


def active_version_id(conn: psycopg.Connection, user_id: int) -> int | None:
    row = conn.execute(
        "SELECT id FROM budget_versions WHERE user_id = %s AND is_active",
        (user_id,),
    ).fetchone()
    return int(row[0]) if row else None


def set_default_version(conn: psycopg.Connection, scope: Scope) -> None:
    require_version(conn, scope)
    conn.execute(
        "UPDATE users SET default_version_id = %s WHERE id = %s",
        (scope.version_id, scope.user_id),
    )


def delete_version(conn: psycopg.Connection, scope: Scope) -> None:
    """Delete a version and (by cascade) every row in its scope."""
    count = conn.execute(
        "SELECT count(*) FROM budget_versions WHERE user_id = %s",
        (scope.user_id,),
    ).fetchone()[0]
    require_version(conn, scope)
    if count <= 1:
        raise VersionRuleError("cannot delete the only version; create another one first")
    is_active = conn.execute(
        "SELECT is_active FROM budget_versions WHERE id = %s",
        (scope.version_id,),
    ).fetchone()[0]
    if is_active:
        raise VersionRuleError("cannot delete the active version; activate another one first")
    conn.execute(
        "DELETE FROM budget_versions WHERE id = %s AND user_id = %s",
        (scope.version_id, scope.user_id),
    )


# ---------------------------------------------------------------------------
# Copy
# ---------------------------------------------------------------------------

def copy_version(
    conn: psycopg.Connection,
    source: Scope,
    name: str | None,
    description: str | None = None,
) -> ImportResult:
    """Copy every row of `source` into a new inactive version of the same user.

    Goes through export + import, so the copy gets fresh keys and the same
    tag/orphan handling as a file import.  Requires an idle connection.
    """
    from budget_snapshot.coordinator import import_dataset
    from budget_snapshot.extract import export_scope

    dataset = export_scope(conn, source)
    return import_dataset(
        conn,
        dataset,
        user_id=source.user_id,
        version_name=name or f"Copy of {dataset.version.name}",
        version_description=description if description is not None else dataset.version.description,
    )
