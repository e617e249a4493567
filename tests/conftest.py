from datetime import datetime

import pytest

from database import open_database
from schemas import ExpenseIn
from services import ExpenseService

# Default category ids after seeding: 9 Credit Card, 10 Clothes, 14 Eating Out.
CREDIT_CARD = 9
CLOTHES = 10
EATING_OUT = 14

SCENARIO_EXPENSES = [
    (datetime(2018, 1, 10), CLOTHES, 1000, "hat"),
    (datetime(2018, 1, 11), CREDIT_CARD, -1000, "hat (on credit)"),
    (datetime(2019, 1, 10), CLOTHES, 1500, "scarf"),
    (datetime(2020, 1, 10), CREDIT_CARD, -1500, "scarf (on credit)"),
    (datetime(2020, 1, 11), EATING_OUT, 4500, "McDonalds"),
    (datetime(2020, 1, 12), EATING_OUT, 2500, "Wendys"),
]


@pytest.fixture
def budget_db():
    db = open_database("sqlite://", new=True)
    yield db
    db.close()


@pytest.fixture
def session(budget_db):
    with budget_db.session_scope() as session:
        yield session


@pytest.fixture
def scenario(session):
    expenses = ExpenseService(session)
    for when, category_id, amount_cents, description in SCENARIO_EXPENSES:
        expenses.create(
            ExpenseIn(
                date=when,
                category_id=category_id,
                amount_cents=amount_cents,
                description=description,
            )
        )
    return session
