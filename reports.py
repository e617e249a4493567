"""Budget reports built from expenses joined with their categories.

Every report is derived from :meth:`BudgetReportService.budget_items`, which
returns expenses in date order with a running balance. The balance only
covers the rows that were selected: a category filter or a month window
restarts it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from itertools import accumulate
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import storage_errors
from models import Category, Expense
from periods import datetime_bounds, month_end, month_label, month_start, open_range
from services import CategoryService, InvalidCategoryReference

logger = logging.getLogger(__name__)

TOTALS_LABEL = "TOTALS"


@dataclass(frozen=True)
class BudgetItem:
    expense_id: int
    category_id: int
    category: str
    date: datetime
    amount_cents: int
    short_description: str
    balance_cents: int


@dataclass
class BudgetItemsByMonth:
    month: str
    details: list[BudgetItem]
    total_cents: int


@dataclass
class BudgetItemsByCategory:
    category: str
    details: list[BudgetItem]
    total_cents: int


@dataclass
class CategoryMonthRow:
    """One row of the category by month table.

    ``details`` and ``subtotals`` are keyed by category description. The
    closing ``TOTALS`` row has no ``total_cents`` and no details; its
    ``subtotals`` hold the grand total of each category.
    """

    month: str
    total_cents: Optional[int]
    details: dict[str, list[BudgetItem]] = field(default_factory=dict)
    subtotals: dict[str, int] = field(default_factory=dict)

    @property
    def is_totals(self) -> bool:
        return self.month == TOTALS_LABEL

    def to_dict(self) -> dict[str, object]:
        """Plain record for presentation.

        Category entries live under ``categories`` so a category named like
        one of the row fields cannot overwrite it.
        """
        categories: dict[str, dict[str, object]] = {}
        for name, subtotal in self.subtotals.items():
            entry: dict[str, object] = {"subtotal_cents": subtotal}
            if name in self.details:
                entry["details"] = self.details[name]
            categories[name] = entry
        record: dict[str, object] = {"month": self.month}
        if self.total_cents is not None:
            record["total_cents"] = self.total_cents
        record["categories"] = categories
        return record


def _group_by_category(items: list[BudgetItem]) -> dict[str, list[BudgetItem]]:
    groups: dict[str, list[BudgetItem]] = {}
    for item in items:
        groups.setdefault(item.category, []).append(item)
    return {name: groups[name] for name in sorted(groups)}


class BudgetReportService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.categories = CategoryService(session)

    def _check_filter(self, filter_flag: bool, category_id: int) -> None:
        if filter_flag and not self.categories.exists(category_id):
            raise InvalidCategoryReference(f"Category {category_id} does not exist")

    def _fetch_items(
        self, start: date, end: date, filter_flag: bool, category_id: int
    ) -> list[BudgetItem]:
        lower, upper = datetime_bounds(start, end)
        stmt = (
            select(
                Expense.id,
                Expense.category_id,
                Category.description.label("category"),
                Expense.date,
                Expense.amount_cents,
                Expense.description,
            )
            .join(Category, Expense.category_id == Category.id)
            .where(Expense.date >= lower, Expense.date < upper)
            .order_by(Expense.date, Expense.id)
        )
        if filter_flag:
            stmt = stmt.where(Expense.category_id == category_id)
        with storage_errors():
            rows = self.session.execute(stmt).all()

        balances = accumulate(row.amount_cents for row in rows)
        return [
            BudgetItem(
                expense_id=row.id,
                category_id=row.category_id,
                category=row.category,
                date=row.date,
                amount_cents=row.amount_cents,
                short_description=row.description,
                balance_cents=balance,
            )
            for row, balance in zip(rows, balances)
        ]

    def budget_items(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        filter_flag: bool = False,
        category_id: int = 0,
    ) -> list[BudgetItem]:
        self._check_filter(filter_flag, category_id)
        start, end = open_range(start, end)
        items = self._fetch_items(start, end, filter_flag, category_id)
        logger.debug(
            f"report_generated: kind=budget_items start={start} end={end} "
            f"filter={filter_flag} category_id={category_id} items={len(items)}"
        )
        return items

    def _months_in_range(
        self, start: date, end: date, filter_flag: bool, category_id: int
    ) -> list[tuple[int, int]]:
        lower, upper = datetime_bounds(start, end)
        year = func.strftime("%Y", Expense.date).label("year")
        month = func.strftime("%m", Expense.date).label("month")
        stmt = (
            select(year, month)
            .join(Category, Expense.category_id == Category.id)
            .where(Expense.date >= lower, Expense.date < upper)
            .group_by(year, month)
            .order_by(year, month)
        )
        if filter_flag:
            stmt = stmt.where(Expense.category_id == category_id)
        with storage_errors():
            rows = self.session.execute(stmt).all()
        return [(int(row.year), int(row.month)) for row in rows]

    def items_by_month(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        filter_flag: bool = False,
        category_id: int = 0,
    ) -> list[BudgetItemsByMonth]:
        self._check_filter(filter_flag, category_id)
        start, end = open_range(start, end)

        summary: list[BudgetItemsByMonth] = []
        for year, month in self._months_in_range(start, end, filter_flag, category_id):
            window_start = max(start, month_start(year, month))
            window_end = min(end, month_end(year, month))
            details = self._fetch_items(
                window_start, window_end, filter_flag, category_id
            )
            if not details:
                # rows removed between the month scan and this query
                continue
            summary.append(
                BudgetItemsByMonth(
                    month=month_label(year, month),
                    details=details,
                    total_cents=sum(item.amount_cents for item in details),
                )
            )
        logger.debug(
            f"report_generated: kind=by_month start={start} end={end} "
            f"filter={filter_flag} months={len(summary)}"
        )
        return summary

    def items_by_category(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        filter_flag: bool = False,
        category_id: int = 0,
    ) -> list[BudgetItemsByCategory]:
        items = self.budget_items(start, end, filter_flag, category_id)
        summary = [
            BudgetItemsByCategory(
                category=name,
                details=details,
                total_cents=sum(item.amount_cents for item in details),
            )
            for name, details in _group_by_category(items).items()
        ]
        logger.debug(
            f"report_generated: kind=by_category filter={filter_flag} "
            f"categories={len(summary)}"
        )
        return summary

    def by_category_and_month(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        filter_flag: bool = False,
        category_id: int = 0,
    ) -> list[CategoryMonthRow]:
        months = self.items_by_month(start, end, filter_flag, category_id)

        rows: list[CategoryMonthRow] = []
        totals_per_category: dict[str, int] = {}
        for month_group in months:
            row = CategoryMonthRow(
                month=month_group.month, total_cents=month_group.total_cents
            )
            for name, details in _group_by_category(month_group.details).items():
                subtotal = sum(item.amount_cents for item in details)
                row.details[name] = details
                row.subtotals[name] = subtotal
                totals_per_category[name] = totals_per_category.get(name, 0) + subtotal
            rows.append(row)

        totals_row = CategoryMonthRow(month=TOTALS_LABEL, total_cents=None)
        for category in self.categories.list_all():
            # categories without items in range are left out
            grand_total = totals_per_category.get(category.description)
            if grand_total is None:
                continue
            totals_row.subtotals[category.description] = grand_total
        rows.append(totals_row)

        logger.debug(
            f"report_generated: kind=by_category_and_month months={len(months)} "
            f"categories={len(totals_row.subtotals)}"
        )
        return rows
