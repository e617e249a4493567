from datetime import date, datetime

from sqlalchemy.orm import Session

from conftest import CLOTHES, CREDIT_CARD, EATING_OUT
from reports import TOTALS_LABEL, BudgetReportService
from schemas import CategoryIn, ExpenseIn
from services import CategoryService, ExpenseService


def test_months_are_chronological_with_independent_balances(scenario: Session) -> None:
    months = BudgetReportService(scenario).items_by_month()

    assert [m.month for m in months] == ["2018/01", "2019/01", "2020/01"]
    assert [len(m.details) for m in months] == [2, 1, 3]
    assert [[i.balance_cents for i in m.details] for m in months] == [
        [1000, 0],
        [1500],
        [-1500, 3000, 5500],
    ]
    assert [m.total_cents for m in months] == [0, 1500, 5500]
    for m in months:
        assert m.total_cents == sum(i.amount_cents for i in m.details)
        assert m.details[0].balance_cents == m.details[0].amount_cents


def test_month_details_are_subset_of_full_range(scenario: Session) -> None:
    service = BudgetReportService(scenario)
    start, end = date(2018, 1, 11), date(2020, 1, 11)
    flat_ids = {i.expense_id for i in service.budget_items(start, end)}

    months = service.items_by_month(start, end)

    assert [m.month for m in months] == ["2018/01", "2019/01", "2020/01"]
    for m in months:
        assert {i.expense_id for i in m.details} <= flat_ids
    assert [i.short_description for i in months[-1].details] == [
        "scarf (on credit)",
        "McDonalds",
    ]


def test_single_item_month(scenario: Session) -> None:
    months = BudgetReportService(scenario).items_by_month(
        date(2019, 1, 1), date(2019, 12, 31)
    )

    assert len(months) == 1
    assert len(months[0].details) == 1
    assert months[0].total_cents == 1500


def test_filtered_months_only_include_matching_category(scenario: Session) -> None:
    months = BudgetReportService(scenario).items_by_month(
        filter_flag=True, category_id=EATING_OUT
    )

    assert [m.month for m in months] == ["2020/01"]
    assert [i.balance_cents for i in months[0].details] == [4500, 7000]


def test_month_buckets_skip_empty_months(session: Session) -> None:
    expenses = ExpenseService(session)
    for when in (datetime(2023, 11, 30, 23, 59), datetime(2024, 2, 1)):
        expenses.create(
            ExpenseIn(date=when, category_id=CLOTHES, amount_cents=200, description="x")
        )

    months = BudgetReportService(session).items_by_month()

    assert [m.month for m in months] == ["2023/11", "2024/02"]


def test_categories_sorted_alphabetically_with_totals(scenario: Session) -> None:
    groups = BudgetReportService(scenario).items_by_category()

    assert [g.category for g in groups] == ["Clothes", "Credit Card", "Eating Out"]
    assert [g.total_cents for g in groups] == [2500, -2500, 7000]
    assert [i.short_description for i in groups[0].details] == ["hat", "scarf"]


def test_category_groups_keep_flat_run_order_and_balances(scenario: Session) -> None:
    service = BudgetReportService(scenario)
    flat = service.budget_items()

    groups = service.items_by_category()

    by_id = {i.expense_id: i for i in flat}
    for group in groups:
        assert all(by_id[i.expense_id] == i for i in group.details)
        assert [i.date for i in group.details] == sorted(i.date for i in group.details)
    assert sum(len(g.details) for g in groups) == len(flat)


def test_filtered_category_report_has_single_group(scenario: Session) -> None:
    service = BudgetReportService(scenario)

    groups = service.items_by_category(filter_flag=True, category_id=CREDIT_CARD)

    assert len(groups) == 1
    assert groups[0].category == "Credit Card"
    assert groups[0].total_cents == -2500
    assert groups[0].details == service.budget_items(
        filter_flag=True, category_id=CREDIT_CARD
    )


def test_category_grouping_uses_ordinal_order(session: Session) -> None:
    categories = CategoryService(session)
    lower = categories.create(CategoryIn(description="apples"))
    upper = categories.create(CategoryIn(description="Zebra"))
    expenses = ExpenseService(session)
    for category in (lower, upper):
        expenses.create(
            ExpenseIn(
                date=datetime(2024, 1, 1),
                category_id=category.id,
                amount_cents=100,
                description="x",
            )
        )

    groups = BudgetReportService(session).items_by_category()

    assert [g.category for g in groups] == ["Zebra", "apples"]


def test_category_month_table_rows_and_totals(scenario: Session) -> None:
    rows = BudgetReportService(scenario).by_category_and_month()

    assert [r.month for r in rows] == ["2018/01", "2019/01", "2020/01", TOTALS_LABEL]

    jan_2018 = rows[0]
    assert jan_2018.total_cents == 0
    assert list(jan_2018.subtotals) == ["Clothes", "Credit Card"]
    assert jan_2018.subtotals == {"Clothes": 1000, "Credit Card": -1000}
    assert [i.short_description for i in jan_2018.details["Credit Card"]] == [
        "hat (on credit)"
    ]

    jan_2020 = rows[2]
    assert jan_2020.subtotals == {"Credit Card": -1500, "Eating Out": 7000}
    assert jan_2020.total_cents == 5500

    totals = rows[-1]
    assert totals.is_totals
    assert totals.total_cents is None
    assert totals.details == {}
    # category store order: Credit Card (9), Clothes (10), Eating Out (14)
    assert list(totals.subtotals) == ["Credit Card", "Clothes", "Eating Out"]
    assert totals.subtotals == {"Credit Card": -2500, "Clothes": 2500, "Eating Out": 7000}


def test_category_month_subtotals_add_up_to_grand_totals(scenario: Session) -> None:
    rows = BudgetReportService(scenario).by_category_and_month()
    *months, totals = rows

    for name, grand_total in totals.subtotals.items():
        assert sum(r.subtotals.get(name, 0) for r in months) == grand_total


def test_category_month_record_shape(scenario: Session) -> None:
    rows = BudgetReportService(scenario).by_category_and_month()

    record = rows[1].to_dict()
    assert record["month"] == "2019/01"
    assert record["total_cents"] == 1500
    clothes = record["categories"]["Clothes"]
    assert clothes["subtotal_cents"] == 1500
    assert [i.short_description for i in clothes["details"]] == ["scarf"]

    totals_record = rows[-1].to_dict()
    assert totals_record == {
        "month": TOTALS_LABEL,
        "categories": {
            "Credit Card": {"subtotal_cents": -2500},
            "Clothes": {"subtotal_cents": 2500},
            "Eating Out": {"subtotal_cents": 7000},
        },
    }


def test_category_named_like_row_field_keeps_record_intact(session: Session) -> None:
    categories = CategoryService(session)
    for name in ("Month", "Total", "month"):
        category = categories.create(CategoryIn(description=name))
        ExpenseService(session).create(
            ExpenseIn(
                date=datetime(2021, 3, 1),
                category_id=category.id,
                amount_cents=700,
                description="x",
            )
        )

    rows = BudgetReportService(session).by_category_and_month()

    record = rows[0].to_dict()
    assert record["month"] == "2021/03"
    assert record["total_cents"] == 2100
    assert sorted(record["categories"]) == ["Month", "Total", "month"]
    assert record["categories"]["month"]["subtotal_cents"] == 700
    assert rows[-1].to_dict()["month"] == TOTALS_LABEL


def test_category_month_table_for_empty_range_only_has_totals(
    scenario: Session,
) -> None:
    rows = BudgetReportService(scenario).by_category_and_month(
        date(2031, 1, 1), date(2031, 1, 31)
    )

    assert len(rows) == 1
    assert rows[0].month == TOTALS_LABEL
    assert rows[0].subtotals == {}


def test_filtered_category_month_table(scenario: Session) -> None:
    rows = BudgetReportService(scenario).by_category_and_month(
        filter_flag=True, category_id=CLOTHES
    )

    assert [r.month for r in rows] == ["2018/01", "2019/01", TOTALS_LABEL]
    assert rows[-1].subtotals == {"Clothes": 2500}
