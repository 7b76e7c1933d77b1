"""budget_snapshot.cli

Unified command line for snapshot export, import, verification, version
copy and blank version creation.

    budget-snapshot --mode export --user-id 1 --version-id 4 --output-path out.json
    budget-snapshot --mode import --user-id 1 --input-path out.json [--version-id 9]
    budget-snapshot --mode verify [--user-id 1 --version-id 4] [--delete-orphans]
    budget-snapshot --mode copy_version --user-id 1 --version-id 4 --version-name "Plan B"
    budget-snapshot --mode create_version --user-id 1 --version-name "2027" [--settings-yaml s.yaml]

The DSN comes from --db-dsn or the BUDGET_DB_DSN environment variable.
Every run prints [run_id]-prefixed progress lines and writes a JSON run
report; failures print FATAL to stderr and exit 1.
"""

from __future__ import annotations

import sys
import uuid
from pathlib import Path

import click
import psycopg

from budget_snapshot.shared import (
    ImportCancelled,
    ImportResult,
    RejectWriter,
    Scope,
    ScopeNotFound,
    StorageError,
    ValidationError,
    VersionRuleError,
    build_import_report,
    utc_now_iso,
    write_run_report,
)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _require_flags(mode: str, required: dict[str, object], run_id: str) -> None:
    missing = [k for k, v in required.items() if v is None]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: {mode} mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


def _validate_verify_flags(user_id: int | None, version_id: int | None, run_id: str) -> None:
    if (user_id is None) != (version_id is None):
        click.echo(
            f"[{run_id}] FATAL: verify mode takes both --user-id and --version-id, or neither (all scopes)",
            err=True,
        )
        sys.exit(1)


def _write_skipped(result: ImportResult, rejects_path: str, run_id: str) -> None:
    if not result.skipped_expense_tags:
        return
    rejects = RejectWriter(Path(rejects_path))
    try:
        for pair in result.skipped_expense_tags:
            rejects.write(
                {"expense_id": pair.expense_id, "tag_id": pair.tag_id, "tag_name": pair.tag_name},
                "orphan_reference",
            )
    finally:
        rejects.close()
    click.echo(
        f"[{run_id}] {len(result.skipped_expense_tags)} skipped expense tag(s) written to {rejects_path}"
    )


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_export(conn: psycopg.Connection, scope: Scope, output_path: str, run_id: str) -> dict:
    from budget_snapshot.dataset import dump_dataset
    from budget_snapshot.extract import export_scope

    dataset = export_scope(conn, scope)
    path = dump_dataset(dataset, output_path)
    counts = dataset.counts()
    click.echo(
        f"[{run_id}] Exported version {scope.version_id} ({dataset.version.name!r}) to {path}: "
        + ", ".join(f"{k}={v}" for k, v in counts.items())
    )
    return counts


def _run_import(
    conn: psycopg.Connection,
    dataset,
    user_id: int,
    version_id: int | None,
    version_name: str | None,
    version_description: str | None,
    dry_run: bool,
    verify_after_import: bool,
    rejects_path: str,
    run_id: str,
) -> dict:
    from budget_snapshot.coordinator import import_dataset
    from budget_snapshot.verify import verify_consistency

    destination = Scope(user_id, version_id) if version_id is not None else None
    result = import_dataset(
        conn,
        dataset,
        destination,
        user_id=user_id,
        version_name=version_name,
        version_description=version_description,
        dry_run=dry_run,
    )
    click.echo(build_import_report(result, dry_run=dry_run))
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN — rolled back.")
    else:
        click.echo(f"[{run_id}] Committed into version {result.version_id}.")
    _write_skipped(result, rejects_path, run_id)

    out = {"result": result.to_dict(), "counters": result.counters.to_dict()}
    if verify_after_import and not dry_run:
        offending = verify_consistency(conn, Scope(user_id, result.version_id))
        click.echo(f"[{run_id}] Post-import verify: {len(offending)} orphaned expense tag(s)")
        out["post_import_orphans"] = len(offending)
    return out


def _run_verify(
    conn: psycopg.Connection,
    scope: Scope | None,
    delete: bool,
    run_id: str,
) -> dict:
    from budget_snapshot.verify import delete_orphans, verify_consistency

    offending = verify_consistency(conn, scope)
    where = f"version {scope.version_id} of user {scope.user_id}" if scope else "all scopes"
    click.echo(f"[{run_id}] Verify {where}: {len(offending)} orphaned expense tag(s)")
    for pair in offending[:20]:
        click.echo(
            f"  user={pair.user_id} version={pair.version_id} "
            f"expense={pair.expense_id} tag={pair.tag_id}"
        )
    if len(offending) > 20:
        click.echo(f"  ... and {len(offending) - 20} more")
    deleted = 0
    if delete and offending:
        deleted = delete_orphans(conn, offending)
        click.echo(f"[{run_id}] Deleted {deleted} orphaned expense tag(s).")
    return {"orphans_found": len(offending), "orphans_deleted": deleted}


def _run_create_version(
    conn: psycopg.Connection,
    user_id: int,
    version_name: str | None,
    version_description: str | None,
    default_settings: dict[str, str],
    dry_run: bool,
    run_id: str,
) -> dict:
    from budget_snapshot.versions import create_version

    version_id = create_version(
        conn, user_id, version_name, version_description, default_settings=default_settings,
    )
    if dry_run:
        conn.rollback()
        click.echo(f"[{run_id}] DRY RUN — rolled back.")
    else:
        conn.commit()
        click.echo(
            f"[{run_id}] Created version {version_id} for user {user_id} "
            f"with {len(default_settings)} default setting(s)."
        )
    return {"version_id": version_id, "settings_seeded": len(default_settings)}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="export",
    type=click.Choice(["export", "import", "verify", "copy_version", "create_version"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", envvar="BUDGET_DB_DSN", default=None, help="PostgreSQL DSN (or BUDGET_DB_DSN)")
@click.option("--user-id", default=None, type=int, help="Owning user of the scope")
@click.option("--version-id", default=None, type=int, help="[export|copy_version] source version; [import] existing destination version; [verify] scope")
@click.option("--input-path", default=None, type=click.Path(), help="[import] Snapshot JSON file")
@click.option("--output-path", default=None, type=click.Path(), help="[export] Snapshot JSON file to write")
@click.option("--version-name", default=None, help="[import|copy_version] Name for the new version")
@click.option("--version-description", default=None, help="[import|copy_version] Description for the new version")
@click.option("--delete-orphans", is_flag=True, default=False, help="[verify] Delete orphaned expense tags")
@click.option(
    "--verify-after-import/--no-verify-after-import",
    default=False,
    show_default=True,
    help="[import] Run the orphan scan on the destination after committing",
)
@click.option("--validate-only", is_flag=True, default=False, help="[import] Validate the file only; no DB connection")
@click.option(
    "--settings-yaml",
    default=None,
    type=click.Path(),
    help="[create_version] Default settings YAML (defaults to the packaged default_settings.yaml)",
)
@click.option("--dry-run", is_flag=True, default=False, help="[import|create_version] Roll back instead of committing; [verify] never delete")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/skipped_expense_tags.csv",
    show_default=True,
    help="[import] CSV of skipped (orphaned) expense tags",
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str | None,
    user_id: int | None,
    version_id: int | None,
    input_path: str | None,
    output_path: str | None,
    version_name: str | None,
    version_description: str | None,
    delete_orphans: bool,
    verify_after_import: bool,
    validate_only: bool,
    settings_yaml: str | None,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
) -> None:
    """Budget version snapshot CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "export":
        _require_flags(mode, {"--user-id": user_id, "--version-id": version_id, "--output-path": output_path}, run_id)
    elif mode == "import":
        _require_flags(mode, {"--user-id": user_id, "--input-path": input_path}, run_id)
    elif mode == "copy_version":
        _require_flags(mode, {"--user-id": user_id, "--version-id": version_id}, run_id)
    elif mode == "create_version":
        _require_flags(mode, {"--user-id": user_id}, run_id)
    else:
        _validate_verify_flags(user_id, version_id, run_id)

    dataset = None
    if mode == "import":
        from budget_snapshot.dataset import load_dataset
        try:
            dataset = load_dataset(input_path)  # type: ignore[arg-type]
        except ValidationError as exc:
            click.echo(f"[{run_id}] FATAL: {len(exc.problems)} validation problem(s):", err=True)
            for problem in exc.problems[:50]:
                click.echo(f"  {problem}", err=True)
            sys.exit(1)
        except OSError as exc:
            click.echo(f"[{run_id}] FATAL: cannot read {input_path}: {exc}", err=True)
            sys.exit(1)
        click.echo(
            f"[{run_id}] Validated {input_path}: "
            + ", ".join(f"{k}={v}" for k, v in dataset.counts().items())
        )
        if validate_only:
            click.echo(f"[{run_id}] validate_only=True — skipping DB connection.")
            return


    default_settings: dict[str, str] = {}
    if mode == "create_version":
        from budget_snapshot.versions import load_default_settings
        try:
            default_settings = load_default_settings(Path(settings_yaml) if settings_yaml else None)
        except (OSError, ValueError) as exc:
            click.echo(f"[{run_id}] FATAL: cannot load default settings: {exc}", err=True)
            sys.exit(1)

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or BUDGET_DB_DSN is required", err=True)
        sys.exit(1)

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if mode == "export":
            counters = _run_export(conn, Scope(user_id, version_id), output_path, run_id)  # type: ignore[arg-type]
            details = {"user_id": user_id, "version_id": version_id, "output_path": output_path}
        elif mode == "import":
            counters = _run_import(
                conn, dataset, user_id, version_id,  # type: ignore[arg-type]
                version_name, version_description,
                dry_run, verify_after_import, rejects_path, run_id,
            )
            details = {"user_id": user_id, "version_id": version_id, "input_path": input_path}
        elif mode == "copy_version":
            from budget_snapshot.versions import copy_version
            result = copy_version(conn, Scope(user_id, version_id), version_name, version_description)  # type: ignore[arg-type]
            click.echo(build_import_report(result))
            click.echo(f"[{run_id}] Copied version {version_id} into version {result.version_id}.")
            counters = {"result": result.to_dict(), "counters": result.counters.to_dict()}
            details = {"user_id": user_id, "source_version_id": version_id}
        elif mode == "create_version":
            counters = _run_create_version(
                conn, user_id, version_name, version_description,  # type: ignore[arg-type]
                default_settings, dry_run, run_id,
            )
            details = {"user_id": user_id, "settings_yaml": settings_yaml}
        else:
            scope = Scope(user_id, version_id) if user_id is not None else None  # type: ignore[arg-type]
            counters = _run_verify(conn, scope, delete_orphans and not dry_run, run_id)
            details = {"user_id": user_id, "version_id": version_id, "delete_orphans": delete_orphans}
    except (ScopeNotFound, ValidationError, ImportCancelled, VersionRuleError, StorageError) as exc:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run, details, counters, report_dir=Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
