"""budget_snapshot.dataset

In-memory snapshot of one (user, version) scope.

A Dataset holds every row of every entity kind with its ORIGINAL
identifiers.  It is produced by extract.export_scope() or parsed from a
transfer payload with Dataset.from_payload(), which is also the validation
pass of an import: it never touches storage and raises ValidationError
listing every malformed row at once.  Dataset.validate() runs the row-type
and id-uniqueness checks on a Dataset built any other way.

Transfer payload (camelCase keys):

    {
      "exportDate": "...",
      "version":  {"id", "name", "description"},
      "accounts": [{"id", "name", "bank", "currentBalance", "requiredBalance",
                    "isPrimary", "diff"}],
      "income":   [{"id", "description", "amount", "frequency", "nextDue",
                    "applyFuzziness"}],
      "expenses": [{... income fields ..., "notes", "accountId"}],
      "tags":     [{"id", "name", "color"}],
      "settings": [{"key", "value"}],
      "expenseTags": [{"expense_id", "tag_id", "tag_name"}]
    }

Missing kinds are treated as empty lists.  Unknown keys are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from budget_snapshot.normalize import (
    normalize_key,
    normalize_space,
    parse_flag,
    parse_numeric,
    setting_text,
    text_or_none,
    to_json_number,
    trim,
)
from budget_snapshot.shared import ValidationError, utc_now_iso

# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass
class VersionInfo:
    id: Any = None
    name: str | None = None
    description: str | None = None


@dataclass
class AccountRow:
    id: Any
    name: str
    bank: str
    current_balance: Decimal
    required_balance: Decimal
    is_primary: bool = False
    diff: Decimal = Decimal(0)


@dataclass
class IncomeRow:
    id: Any
    description: str
    amount: Decimal
    frequency: str
    next_due: str
    apply_fuzziness: bool = False


@dataclass
class ExpenseRow:
    id: Any
    description: str
    amount: Decimal
    frequency: str
    next_due: str
    apply_fuzziness: bool = False
    notes: str | None = None
    account_id: Any = None


@dataclass
class TagRow:
    id: Any
    name: str
    color: str | None = None


@dataclass
class SettingRow:
    key: str
    value: str


@dataclass
class ExpenseTagRow:
    expense_id: Any
    tag_id: Any
    tag_name: str | None = None


_KINDS = ("accounts", "income", "expenses", "tags", "settings", "expenseTags")


# ---------------------------------------------------------------------------
# Field helpers: each appends to `problems` and returns None when invalid
# ---------------------------------------------------------------------------

def _where(kind: str, idx: int) -> str:
    return f"{kind}[{idx}]"


def _req_key(raw: dict, name: str, where: str, problems: list[str]) -> Any:
    value = raw.get(name)
    if normalize_key(value) is None:
        problems.append(f"{where}: missing {name}")
        return None
    return value


def _req_text(raw: dict, name: str, where: str, problems: list[str]) -> str | None:
    value = text_or_none(raw.get(name))
    if value is None:
        problems.append(f"{where}: missing {name}")
    return value


def _req_number(raw: dict, name: str, where: str, problems: list[str]) -> Decimal | None:
    if raw.get(name) is None:
        problems.append(f"{where}: missing {name}")
        return None
    value = parse_numeric(raw.get(name))
    if value is None:
        problems.append(f"{where}: {name}={raw.get(name)!r} is not a number")
    return value


def _opt_number(raw: dict, name: str, where: str, problems: list[str]) -> Decimal:
    if raw.get(name) is None:
        return Decimal(0)
    value = parse_numeric(raw.get(name))
    if value is None:
        problems.append(f"{where}: {name}={raw.get(name)!r} is not a number")
        return Decimal(0)
    return value


def _opt_flag(raw: dict, name: str, where: str, problems: list[str]) -> bool:
    if raw.get(name) is None:
        return False
    value = parse_flag(raw.get(name))
    if value is None:
        problems.append(f"{where}: {name}={raw.get(name)!r} is not a boolean")
        return False
    return value


def _opt_ref(raw: dict, name: str) -> Any:
    """Optional reference to another row; blank placeholders become None."""
    value = raw.get(name)
    if normalize_key(value) is None:
        return None
    return value


# ---------------------------------------------------------------------------
# Per-kind parsers
# ---------------------------------------------------------------------------

def _parse_account(raw: dict, where: str, problems: list[str]) -> AccountRow | None:
    before = len(problems)
    row_id = _req_key(raw, "id", where, problems)
    name = _req_text(raw, "name", where, problems)
    bank = _req_text(raw, "bank", where, problems)
    current = _req_number(raw, "currentBalance", where, problems)
    required = _req_number(raw, "requiredBalance", where, problems)
    is_primary = _opt_flag(raw, "isPrimary", where, problems)
    diff = _opt_number(raw, "diff", where, problems)
    if len(problems) > before:
        return None
    return AccountRow(row_id, name, bank, current, required, is_primary, diff)


def _parse_income(raw: dict, where: str, problems: list[str]) -> IncomeRow | None:
    before = len(problems)
    row_id = _req_key(raw, "id", where, problems)
    description = _req_text(raw, "description", where, problems)
    amount = _req_number(raw, "amount", where, problems)
    frequency = _req_text(raw, "frequency", where, problems)
    next_due = _req_text(raw, "nextDue", where, problems)
    fuzz = _opt_flag(raw, "applyFuzziness", where, problems)
    if len(problems) > before:
        return None
    return IncomeRow(row_id, description, amount, frequency, next_due, fuzz)


def _parse_expense(raw: dict, where: str, problems: list[str]) -> ExpenseRow | None:
    before = len(problems)
    row_id = _req_key(raw, "id", where, problems)
    description = _req_text(raw, "description", where, problems)
    amount = _req_number(raw, "amount", where, problems)
    frequency = _req_text(raw, "frequency", where, problems)
    next_due = _req_text(raw, "nextDue", where, problems)
    fuzz = _opt_flag(raw, "applyFuzziness", where, problems)
    notes = raw.get("notes")
    if notes is not None and not isinstance(notes, str):
        problems.append(f"{where}: notes must be text")
    if len(problems) > before:
        return None
    return ExpenseRow(
        row_id, description, amount, frequency, next_due, fuzz,
        notes=notes, account_id=_opt_ref(raw, "accountId"),
    )


def _parse_tag(raw: dict, where: str, problems: list[str]) -> TagRow | None:
    before = len(problems)
    row_id = _req_key(raw, "id", where, problems)
    name = normalize_space(raw.get("name")) if isinstance(raw.get("name"), str) else None
    if name is None:
        problems.append(f"{where}: missing name")
    color = raw.get("color")
    if color is not None and not isinstance(color, str):
        problems.append(f"{where}: color must be text")
    if len(problems) > before:
        return None
    return TagRow(row_id, name, trim(color))


def _parse_setting(raw: dict, where: str, problems: list[str]) -> SettingRow | None:
    key = text_or_none(raw.get("key"))
    value = setting_text(raw.get("value"))
    if key is None:
        problems.append(f"{where}: missing key")
    if value is None:
        problems.append(f"{where}: missing value")
    if key is None or value is None:
        return None
    return SettingRow(key, value)


def _parse_expense_tag(raw: dict, where: str, problems: list[str]) -> ExpenseTagRow | None:
    before = len(problems)
    expense_id = _req_key(raw, "expense_id", where, problems)
    tag_id = _req_key(raw, "tag_id", where, problems)
    if len(problems) > before:
        return None
    tag_name = raw.get("tag_name")
    return ExpenseTagRow(
        expense_id, tag_id,
        normalize_space(tag_name) if isinstance(tag_name, str) else None,
    )


_PARSERS = {
    "accounts": _parse_account,
    "income": _parse_income,
    "expenses": _parse_expense,
    "tags": _parse_tag,
    "settings": _parse_setting,
    "expenseTags": _parse_expense_tag,
}


def _check_unique(kind: str, keys: list[str | None], problems: list[str], label: str) -> None:
    seen: dict[str, int] = {}
    for idx, key in enumerate(keys):
        if key is None:
            continue
        if key in seen:
            problems.append(
                f"{_where(kind, idx)}: duplicate {label} {key!r} (first at index {seen[key]})"
            )
        else:
            seen[key] = idx


# ---------------------------------------------------------------------------
# Typed-row checks for Dataset.validate(): same problem wording as above
# ---------------------------------------------------------------------------

def _check_key(value: Any, name: str, where: str, problems: list[str]) -> None:
    if normalize_key(value) is None:
        problems.append(f"{where}: missing {name}")


def _check_text(value: Any, name: str, where: str, problems: list[str]) -> None:
    if not isinstance(value, str):
        problems.append(f"{where}: missing {name}")


def _check_number(value: Any, name: str, where: str, problems: list[str]) -> None:
    if value is None:
        problems.append(f"{where}: missing {name}")
    elif isinstance(value, bool) or not isinstance(value, (Decimal, int)):
        problems.append(f"{where}: {name}={value!r} is not a number")
    elif isinstance(value, Decimal) and not value.is_finite():
        problems.append(f"{where}: {name}={value!r} is not a number")


def _check_flag(value: Any, name: str, where: str, problems: list[str]) -> None:
    if not isinstance(value, bool):
        problems.append(f"{where}: {name}={value!r} is not a boolean")


def _check_optional_text(value: Any, name: str, where: str, problems: list[str]) -> None:
    if value is not None and not isinstance(value, str):
        problems.append(f"{where}: {name} must be text")


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------

@dataclass
class Dataset:
    version: VersionInfo = field(default_factory=VersionInfo)
    accounts: list[AccountRow] = field(default_factory=list)
    income: list[IncomeRow] = field(default_factory=list)
    expenses: list[ExpenseRow] = field(default_factory=list)
    tags: list[TagRow] = field(default_factory=list)
    settings: list[SettingRow] = field(default_factory=list)
    expense_tags: list[ExpenseTagRow] = field(default_factory=list)
    export_date: str | None = None

    def counts(self) -> dict[str, int]:
        return {
            "accounts": len(self.accounts),
            "income": len(self.income),
            "expenses": len(self.expenses),
            "tags": len(self.tags),
            "settings": len(self.settings),
            "expenseTags": len(self.expense_tags),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Dataset:
        """Validate a transfer payload and build a Dataset.

        Raises:
            ValidationError: listing every structural problem found.
        """
        if not isinstance(payload, dict):
            raise ValidationError(["payload must be a JSON object"])

        problems: list[str] = []

        raw_version = payload.get("version") or {}
        if not isinstance(raw_version, dict):
            problems.append("version must be an object")
            raw_version = {}
        version = VersionInfo(
            id=raw_version.get("id"),
            name=normalize_space(raw_version.get("name"))
            if isinstance(raw_version.get("name"), str) else None,
            description=raw_version.get("description")
            if isinstance(raw_version.get("description"), str) else None,
        )

        parsed: dict[str, list] = {}
        for kind in _KINDS:
            raw_rows = payload.get(kind)
            if raw_rows is None:
                parsed[kind] = []
                continue
            if not isinstance(raw_rows, list):
                problems.append(f"{kind} must be a list")
                parsed[kind] = []
                continue
            rows = []
            parser = _PARSERS[kind]
            for idx, raw in enumerate(raw_rows):
                where = _where(kind, idx)
                if not isinstance(raw, dict):
                    problems.append(f"{where}: row must be an object")
                    continue
                row = parser(raw, where, problems)
                if row is not None:
                    rows.append(row)
            parsed[kind] = rows

        if problems:
            raise ValidationError(problems)

        export_date = payload.get("exportDate")
        dataset = cls(
            version=version,
            accounts=parsed["accounts"],
            income=parsed["income"],
            expenses=parsed["expenses"],
            tags=parsed["tags"],
            settings=parsed["settings"],
            expense_tags=parsed["expenseTags"],
            export_date=export_date if isinstance(export_date, str) else None,
        )
        dataset.validate()
        return dataset

    def validate(self) -> None:
        """Check every row of an already-built Dataset.

        Covers required fields, value types and uniqueness of original ids
        (and setting keys) within each kind.  Touches no storage.

        Raises:
            ValidationError: listing every problem found.
        """
        problems: list[str] = []

        for idx, a in enumerate(self.accounts):
            where = _where("accounts", idx)
            _check_key(a.id, "id", where, problems)
            _check_text(a.name, "name", where, problems)
            _check_text(a.bank, "bank", where, problems)
            _check_number(a.current_balance, "currentBalance", where, problems)
            _check_number(a.required_balance, "requiredBalance", where, problems)
            _check_flag(a.is_primary, "isPrimary", where, problems)
            _check_number(a.diff, "diff", where, problems)

        for kind, rows in (("income", self.income), ("expenses", self.expenses)):
            for idx, r in enumerate(rows):
                where = _where(kind, idx)
                _check_key(r.id, "id", where, problems)
                _check_text(r.description, "description", where, problems)
                _check_number(r.amount, "amount", where, problems)
                _check_text(r.frequency, "frequency", where, problems)
                _check_text(r.next_due, "nextDue", where, problems)
                _check_flag(r.apply_fuzziness, "applyFuzziness", where, problems)
                if kind == "expenses":
                    _check_optional_text(r.notes, "notes", where, problems)

        for idx, t in enumerate(self.tags):
            where = _where("tags", idx)
            _check_key(t.id, "id", where, problems)
            _check_text(t.name, "name", where, problems)
            _check_optional_text(t.color, "color", where, problems)

        for idx, s in enumerate(self.settings):
            where = _where("settings", idx)
            _check_text(s.key, "key", where, problems)
            _check_text(s.value, "value", where, problems)

        for idx, et in enumerate(self.expense_tags):
            where = _where("expenseTags", idx)
            _check_key(et.expense_id, "expense_id", where, problems)
            _check_key(et.tag_id, "tag_id", where, problems)

        # Original ids must be unambiguous within a kind, or remapping is undefined.
        for kind, rows in (
            ("accounts", self.accounts),
            ("income", self.income),
            ("expenses", self.expenses),
            ("tags", self.tags),
        ):
            _check_unique(kind, [normalize_key(r.id) for r in rows], problems, "id")
        _check_unique(
            "settings",
            [s.key if isinstance(s.key, str) else None for s in self.settings],
            problems,
            "key",
        )

        if problems:
            raise ValidationError(problems)

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-serializable transfer payload."""
        return {
            "exportDate": self.export_date or utc_now_iso(),
            "version": {
                "id": self.version.id,
                "name": self.version.name,
                "description": self.version.description,
            },
            "accounts": [
                {
                    "id": a.id,
                    "name": a.name,
                    "bank": a.bank,
                    "currentBalance": to_json_number(a.current_balance),
                    "requiredBalance": to_json_number(a.required_balance),
                    "isPrimary": a.is_primary,
                    "diff": to_json_number(a.diff),
                }
                for a in self.accounts
            ],
            "income": [
                {
                    "id": i.id,
                    "description": i.description,
                    "amount": to_json_number(i.amount),
                    "frequency": i.frequency,
                    "nextDue": i.next_due,
                    "applyFuzziness": i.apply_fuzziness,
                }
                for i in self.income
            ],
            "expenses": [
                {
                    "id": e.id,
                    "description": e.description,
                    "amount": to_json_number(e.amount),
                    "frequency": e.frequency,
                    "nextDue": e.next_due,
                    "applyFuzziness": e.apply_fuzziness,
                    "notes": e.notes,
                    "accountId": e.account_id,
                }
                for e in self.expenses
            ],
            "tags": [{"id": t.id, "name": t.name, "color": t.color} for t in self.tags],
            "settings": [{"key": s.key, "value": s.value} for s in self.settings],
            "expenseTags": [
                {"expense_id": et.expense_id, "tag_id": et.tag_id, "tag_name": et.tag_name}
                for et in self.expense_tags
            ],
        }


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def load_dataset(path: Path | str) -> Dataset:
    """Read and validate a transfer payload from a JSON file."""
    p = Path(path)
    try:
        payload = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError([f"{p.name}: not valid JSON ({exc.msg} at line {exc.lineno})"]) from exc
    return Dataset.from_payload(payload)


def dump_dataset(dataset: Dataset, path: Path | str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(dataset.to_payload(), indent=2, default=str), encoding="utf-8")
    return p
