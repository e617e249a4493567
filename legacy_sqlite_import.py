"""Import budget files written by the HomeBudget desktop application.

Those files are plain SQLite databases with ``categoryTypes``, ``categories``
and ``expenses`` tables. Amounts are stored as doubles and dates as text.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from database import storage_errors
from models import Category, CategoryType, Expense, LEGACY_CATEGORY_TYPES

logger = logging.getLogger(__name__)

LEGACY_COLUMNS: dict[str, set[str]] = {
    "categories": {"Id", "TypeId", "Description"},
    "expenses": {"Id", "CategoryId", "Amount", "Description", "Date"},
}

CategoryKey = tuple[CategoryType, str]


@dataclass(frozen=True)
class LegacyCategoryMappingRow:
    legacy_id: int
    description: str
    type: CategoryType
    expense_count: int
    suggested_category_id: Optional[int]


@dataclass(frozen=True)
class LegacyDBPreview:
    categories_count: int
    expenses_count: int
    min_expense_date: Optional[date]
    max_expense_date: Optional[date]
    mapping_rows: list[LegacyCategoryMappingRow]
    warnings: list[str]


def _check_schema(con: sqlite3.Connection) -> None:
    tables = con.execute("select name from sqlite_master where type='table'")
    names = {row["name"] for row in tables}
    absent = sorted(set(LEGACY_COLUMNS) - names)
    if absent:
        raise ValueError(f"Legacy DB missing tables: {', '.join(absent)}")
    for table, expected in LEGACY_COLUMNS.items():
        found = {row["name"] for row in con.execute(f"pragma table_info({table})")}
        if expected - found:
            raise ValueError(
                f"Legacy DB table '{table}' missing columns: "
                f"{', '.join(sorted(expected - found))}"
            )


@contextmanager
def _open_legacy(path: Path) -> Iterator[sqlite3.Connection]:
    if not path.exists():
        raise ValueError("Legacy DB file not found")
    try:
        con = sqlite3.connect(f"file:{path.resolve()}?mode=ro", uri=True)
    except sqlite3.Error as exc:
        raise ValueError(f"Cannot open legacy DB: {exc}") from exc
    con.row_factory = sqlite3.Row
    try:
        con.execute("PRAGMA query_only=ON;")
        _check_schema(con)
        yield con
    except sqlite3.DatabaseError as exc:
        raise ValueError(f"Not a legacy budget file: {exc}") from exc
    finally:
        con.close()


def _legacy_datetime(text: str) -> datetime:
    text = text.strip()
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    # System.Data.SQLite may append up to seven fractional digits
    try:
        return datetime.strptime(text[:19], "%Y-%m-%d %H:%M:%S")
    except ValueError as exc:
        raise ValueError(f"Invalid legacy datetime: {text}") from exc


def _legacy_cents(text: str) -> int:
    try:
        return int((Decimal(text) * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid legacy amount: {text}") from exc


def _legacy_type(type_id: int) -> CategoryType:
    if not 1 <= type_id <= len(LEGACY_CATEGORY_TYPES):
        raise ValueError(f"Unknown legacy category type: {type_id}")
    return LEGACY_CATEGORY_TYPES[type_id - 1]


def _key(category_type: CategoryType, description: str) -> CategoryKey:
    return category_type, description.strip().lower()


class LegacySQLiteImportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _existing_categories(self) -> dict[CategoryKey, Category]:
        stmt = select(Category).order_by(Category.id)
        found: dict[CategoryKey, Category] = {}
        with storage_errors():
            for category in self.session.scalars(stmt):
                found.setdefault(_key(category.type, category.description), category)
        return found

    def preview(self, legacy_db_path: Path) -> LegacyDBPreview:
        with _open_legacy(legacy_db_path) as con:
            stats = con.execute(
                "select count(*) as n, min(Date) as first_date, max(Date) as last_date "
                "from expenses"
            ).fetchone()
            category_rows = con.execute(
                "select c.Id, c.TypeId, c.Description, count(e.Id) as n "
                "from categories c left join expenses e on e.CategoryId = c.Id "
                "group by c.Id order by c.Id"
            ).fetchall()
            dangling = con.execute(
                "select count(*) from expenses e "
                "where not exists "
                "(select 1 from categories c where c.Id = e.CategoryId)"
            ).fetchone()[0]

        existing = self._existing_categories()
        mapping_rows = []
        for r in category_rows:
            category_type = _legacy_type(int(r["TypeId"]))
            description = str(r["Description"])
            match = existing.get(_key(category_type, description))
            mapping_rows.append(
                LegacyCategoryMappingRow(
                    legacy_id=int(r["Id"]),
                    description=description,
                    type=category_type,
                    expense_count=int(r["n"]),
                    suggested_category_id=match.id if match else None,
                )
            )

        warnings: list[str] = []
        spellings: dict[str, set[str]] = {}
        for m in mapping_rows:
            key = m.description.strip().lower()
            spellings.setdefault(key, set()).add(m.description)
        warnings.extend(
            f"Category casing differs: {', '.join(sorted(variants))}"
            for variants in spellings.values()
            if len(variants) > 1
        )
        if dangling:
            warnings.append(
                f"{dangling} expense(s) reference a missing category "
                "and will be skipped."
            )

        first, last = stats["first_date"], stats["last_date"]
        return LegacyDBPreview(
            categories_count=len(mapping_rows),
            expenses_count=int(stats["n"]),
            min_expense_date=_legacy_datetime(first).date() if first else None,
            max_expense_date=_legacy_datetime(last).date() if last else None,
            mapping_rows=mapping_rows,
            warnings=warnings,
        )

    def commit(self, legacy_db_path: Path) -> dict[str, int]:
        with _open_legacy(legacy_db_path) as con:
            category_rows = con.execute(
                "select Id, TypeId, Description from categories order by Id"
            ).fetchall()
            expense_rows = con.execute(
                "select CategoryId, cast(Amount as text) as amount, Description, Date "
                "from expenses order by Date, Id"
            ).fetchall()

        existing = self._existing_categories()
        target_ids: dict[int, int] = {}
        created = 0
        for r in category_rows:
            category_type = _legacy_type(int(r["TypeId"]))
            description = str(r["Description"]).strip()
            key = _key(category_type, description)
            if key not in existing:
                existing[key] = Category(description=description, type=category_type)
                self.session.add(existing[key])
                with storage_errors():
                    self.session.flush()
                created += 1
            target_ids[int(r["Id"])] = existing[key].id

        inserted = skipped = 0
        for r in expense_rows:
            category_id = target_ids.get(r["CategoryId"])
            if category_id is None:
                skipped += 1
                continue
            self.session.add(
                Expense(
                    category_id=category_id,
                    amount_cents=_legacy_cents(str(r["amount"])),
                    description=str(r["Description"] or ""),
                    date=_legacy_datetime(str(r["Date"])),
                )
            )
            inserted += 1

        with storage_errors():
            self.session.commit()
        logger.info(
            f"legacy_import: path={legacy_db_path} categories_created={created} "
            f"expenses_inserted={inserted} expenses_skipped={skipped}"
        )
        return {
            "created_categories": created,
            "inserted_expenses": inserted,
            "skipped_expenses": skipped,
        }
