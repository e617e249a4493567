from __future__ import annotations

import logging
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, joinedload

from csv_utils import export_budget_items, parse_csv
from database import storage_errors
from models import Category, CategoryType, Expense
from schemas import CategoryIn, CSVRow, ExpenseIn

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES: list[tuple[str, CategoryType]] = [
    ("Utilities", CategoryType.expense),
    ("Rent", CategoryType.expense),
    ("Food", CategoryType.expense),
    ("Entertainment", CategoryType.expense),
    ("Education", CategoryType.expense),
    ("Miscellaneous", CategoryType.expense),
    ("Medical Expenses", CategoryType.expense),
    ("Vacation", CategoryType.expense),
    ("Credit Card", CategoryType.credit),
    ("Clothes", CategoryType.expense),
    ("Gifts", CategoryType.expense),
    ("Insurance", CategoryType.expense),
    ("Transportation", CategoryType.expense),
    ("Eating Out", CategoryType.expense),
    ("Savings", CategoryType.savings),
    ("Income", CategoryType.income),
]


class CategoryNotFound(ValueError):
    pass


class ExpenseNotFound(ValueError):
    pass


class InvalidCategoryReference(ValueError):
    pass


class CategoryInUse(ValueError):
    pass


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.id)
        with storage_errors():
            return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        with storage_errors():
            category = self.session.get(Category, category_id)
        if not category:
            raise CategoryNotFound(f"Category {category_id} not found")
        return category

    def exists(self, category_id: int) -> bool:
        with storage_errors():
            return self.session.get(Category, category_id) is not None

    def create(self, data: CategoryIn) -> Category:
        category = Category(description=data.description.strip(), type=data.type)
        self.session.add(category)
        with storage_errors():
            self.session.commit()
            self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} description={category.description}"
        )
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        category.description = data.description.strip()
        category.type = data.type
        with storage_errors():
            self.session.commit()
        logger.info(f"category_updated: id={category_id}")
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        with storage_errors():
            in_use = int(
                self.session.execute(
                    select(func.count(Expense.id)).where(
                        Expense.category_id == category_id
                    )
                ).scalar_one()
            )
        if in_use:
            raise CategoryInUse(
                f"Category '{category.description}' is used by {in_use} expense(s)"
            )
        self.session.delete(category)
        with storage_errors():
            self.session.commit()
        logger.info(f"category_deleted: id={category_id}")

    def set_defaults(self) -> list[Category]:
        with storage_errors():
            expense_count = int(
                self.session.execute(select(func.count(Expense.id))).scalar_one()
            )
        if expense_count:
            raise CategoryInUse("Cannot reset categories while expenses exist")
        with storage_errors():
            self.session.execute(delete(Category))
            self.session.flush()
            for description, category_type in DEFAULT_CATEGORIES:
                self.session.add(Category(description=description, type=category_type))
            self.session.commit()
        logger.info(f"categories_reset: count={len(DEFAULT_CATEGORIES)}")
        return self.list_all()


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _require_category(self, category_id: int) -> Category:
        with storage_errors():
            category = self.session.get(Category, category_id)
        if not category:
            raise InvalidCategoryReference(f"Category {category_id} does not exist")
        return category

    def list_all(self) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .order_by(Expense.id)
        )
        with storage_errors():
            return list(self.session.scalars(stmt).all())

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.id == expense_id)
        )
        with storage_errors():
            expense = self.session.scalar(stmt)
        if not expense:
            raise ExpenseNotFound(f"Expense {expense_id} not found")
        return expense

    def create(self, data: ExpenseIn) -> Expense:
        self._require_category(data.category_id)
        expense = Expense(
            date=data.date,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            description=data.description,
        )
        self.session.add(expense)
        with storage_errors():
            self.session.commit()
            self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} category_id={expense.category_id} "
            f"amount_cents={expense.amount_cents}"
        )
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        self._require_category(data.category_id)
        expense.date = data.date
        expense.category_id = data.category_id
        expense.amount_cents = data.amount_cents
        expense.description = data.description
        with storage_errors():
            self.session.commit()
            self.session.refresh(expense)
        logger.info(f"expense_updated: id={expense_id}")
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        with storage_errors():
            self.session.commit()
        logger.info(f"expense_deleted: id={expense_id}")

    def delete_all(self) -> int:
        with storage_errors():
            result = self.session.execute(delete(Expense))
            self.session.commit()
        logger.info(f"expenses_emptied: count={result.rowcount}")
        return int(result.rowcount or 0)


class CSVService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _resolve_category(
        self, name: str, categories: list[Category]
    ) -> tuple[Optional[int], Optional[str]]:
        """Match ``name`` to a category id, returning ``(id, error)``."""
        clean = name.strip()
        if not clean:
            return None, "Missing category"
        input_lower = clean.lower()
        exact = [c for c in categories if c.description.lower() == input_lower]
        if len(exact) == 1:
            return exact[0].id, None
        if len(exact) > 1:
            return None, f"Category '{clean}' is ambiguous"

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.description.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.description for c in best}))
                return None, f"Category '{clean}' is ambiguous; matches: {options}"
            return best[0].id, None
        return None, f"Unknown category '{clean}'"

    def _resolve_rows(
        self, rows: list[CSVRow]
    ) -> tuple[list[dict[str, object]], list[str]]:
        categories = CategoryService(self.session).list_all()
        resolved: list[dict[str, object]] = []
        errors: list[str] = []
        for row in rows:
            category_id, error = self._resolve_category(row.category, categories)
            if error:
                errors.append(f"Row {row.row_number}: {error}")
            resolved.append(
                {
                    "row_number": row.row_number,
                    "date": row.date,
                    "amount_cents": row.amount_cents,
                    "category": row.category,
                    "description": row.description,
                    "category_id": category_id,
                }
            )
        return resolved, errors

    def preview(self, content: str) -> tuple[list[dict[str, object]], list[str]]:
        rows, parse_errors = parse_csv(content)
        preview_rows, category_errors = self._resolve_rows(rows)
        return preview_rows, parse_errors + category_errors

    def commit(self, content: str) -> int:
        rows, parse_errors = parse_csv(content)
        if parse_errors:
            raise ValueError("; ".join(parse_errors))
        preview_rows, category_errors = self._resolve_rows(rows)
        if category_errors:
            raise InvalidCategoryReference("; ".join(category_errors))
        for row in preview_rows:
            self.session.add(
                Expense(
                    date=row["date"],
                    category_id=row["category_id"],
                    amount_cents=row["amount_cents"],
                    description=row["description"],
                )
            )
        with storage_errors():
            self.session.commit()
        logger.info(f"csv_imported: rows={len(preview_rows)}")
        return len(preview_rows)

    def export(self, items) -> str:
        return export_budget_items(items)

