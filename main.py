import logging
import tempfile
from datetime import date
from pathlib import Path
from typing import Iterator, NoReturn, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import BudgetDatabase, StorageUnavailable, open_database
from legacy_sqlite_import import LegacySQLiteImportService
from models import Category, Expense
from periods import resolve_period
from reports import BudgetItem, BudgetReportService
from schemas import CategoryIn, ExpenseIn, ReportQuery
from services import (
    CSVService,
    CategoryInUse,
    CategoryNotFound,
    CategoryService,
    ExpenseNotFound,
    ExpenseService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Home Budget")


@app.on_event("startup")
def startup_event():
    app.state.budget_db = open_database(get_settings().database_url)


@app.on_event("shutdown")
def shutdown_event():
    budget_db = getattr(app.state, "budget_db", None)
    if budget_db is not None:
        budget_db.close()


@app.exception_handler(StorageUnavailable)
def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(f"storage_unavailable: path={request.url.path} error={exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


def get_db(request: Request) -> Iterator[Session]:
    budget_db: BudgetDatabase = request.app.state.budget_db
    with budget_db.session_scope() as session:
        yield session


def report_query_from_request(request: Request) -> ReportQuery:
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"), params.get("start"), params.get("end")
        )
        filter_flag = params.get("filter", "false").lower() in {"1", "true", "yes", "on"}
        category_id = int(params.get("category", "0") or 0)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReportQuery(
        start=period.start,
        end=period.end,
        filter_flag=filter_flag,
        category_id=category_id,
    )


def _report_args(query: ReportQuery) -> tuple:
    return (query.start, query.end, query.filter_flag, query.category_id)


def category_payload(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "description": category.description,
        "type": category.type.value,
    }


def expense_payload(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "date": expense.date.isoformat(),
        "category_id": expense.category_id,
        "amount_cents": expense.amount_cents,
        "description": expense.description,
    }


def budget_item_payload(item: BudgetItem) -> dict[str, object]:
    return {
        "expense_id": item.expense_id,
        "category_id": item.category_id,
        "category": item.category,
        "date": item.date.isoformat(),
        "amount_cents": item.amount_cents,
        "short_description": item.short_description,
        "balance_cents": item.balance_cents,
    }


def _raise_http(exc: ValueError) -> NoReturn:
    if isinstance(exc, (CategoryNotFound, ExpenseNotFound)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, CategoryInUse):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [category_payload(c) for c in CategoryService(db).list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    return category_payload(CategoryService(db).create(data))


@app.post("/api/categories/defaults")
def api_default_categories(db: Session = Depends(get_db)):
    try:
        categories = CategoryService(db).set_defaults()
    except ValueError as exc:
        _raise_http(exc)
    return [category_payload(c) for c in categories]


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int, data: CategoryIn, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db).update(category_id, data)
    except ValueError as exc:
        _raise_http(exc)
    return category_payload(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        _raise_http(exc)


@app.get("/api/expenses")
def api_expenses(db: Session = Depends(get_db)):
    return [expense_payload(e) for e in ExpenseService(db).list_all()]


@app.post("/api/expenses", status_code=201)
def api_create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).create(data)
    except ValueError as exc:
        _raise_http(exc)
    return expense_payload(expense)


@app.put("/api/expenses/{expense_id}")
def api_update_expense(
    expense_id: int, data: ExpenseIn, db: Session = Depends(get_db)
):
    try:
        expense = ExpenseService(db).update(expense_id, data)
    except ValueError as exc:
        _raise_http(exc)
    return expense_payload(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def api_delete_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        ExpenseService(db).delete(expense_id)
    except ValueError as exc:
        _raise_http(exc)


@app.get("/api/budget-items")
def api_budget_items(request: Request, db: Session = Depends(get_db)):
    query = report_query_from_request(request)
    try:
        items = BudgetReportService(db).budget_items(*_report_args(query))
    except ValueError as exc:
        _raise_http(exc)
    return [budget_item_payload(item) for item in items]


@app.get("/api/budget-items/by-month")
def api_budget_items_by_month(request: Request, db: Session = Depends(get_db)):
    query = report_query_from_request(request)
    try:
        months = BudgetReportService(db).items_by_month(*_report_args(query))
    except ValueError as exc:
        _raise_http(exc)
    return [
        {
            "month": m.month,
            "total_cents": m.total_cents,
            "details": [budget_item_payload(item) for item in m.details],
        }
        for m in months
    ]


@app.get("/api/budget-items/by-category")
def api_budget_items_by_category(request: Request, db: Session = Depends(get_db)):
    query = report_query_from_request(request)
    try:
        groups = BudgetReportService(db).items_by_category(*_report_args(query))
    except ValueError as exc:
        _raise_http(exc)
    return [
        {
            "category": g.category,
            "total_cents": g.total_cents,
            "details": [budget_item_payload(item) for item in g.details],
        }
        for g in groups
    ]


@app.get("/api/budget-items/by-category-and-month")
def api_budget_items_by_category_and_month(
    request: Request, db: Session = Depends(get_db)
):
    query = report_query_from_request(request)
    try:
        rows = BudgetReportService(db).by_category_and_month(*_report_args(query))
    except ValueError as exc:
        _raise_http(exc)
    payload = []
    for row in rows:
        record = row.to_dict()
        for entry in record["categories"].values():
            if "details" in entry:
                entry["details"] = [budget_item_payload(i) for i in entry["details"]]
        payload.append(record)
    return payload


@app.get("/budget-items/export.csv")
def export_budget_items_endpoint(request: Request, db: Session = Depends(get_db)):
    query = report_query_from_request(request)
    try:
        items = BudgetReportService(db).budget_items(*_report_args(query))
    except ValueError as exc:
        _raise_http(exc)
    csv_text = CSVService(db).export(items)
    filename = f"budget_items_{query.start}_{query.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/expenses/import/preview")
async def import_preview(file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = (await file.read()).decode("utf-8")
    rows, errors = CSVService(db).preview(content)
    return {
        "rows": [{**row, "date": row["date"].isoformat()} for row in rows],
        "errors": errors,
    }


@app.post("/api/expenses/import/commit")
async def import_commit(file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = (await file.read()).decode("utf-8")
    try:
        count = CSVService(db).commit(content)
    except ValueError as exc:
        _raise_http(exc)
    return {"imported": count}


async def _spool_upload(file: UploadFile) -> Path:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        tmp.write(await file.read())
    return Path(tmp.name)


@app.post("/admin/import-legacy/preview")
async def import_legacy_preview(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    path = await _spool_upload(file)
    try:
        preview = LegacySQLiteImportService(db).preview(path)
    except ValueError as exc:
        _raise_http(exc)
    finally:
        path.unlink(missing_ok=True)
    return {
        "categories_count": preview.categories_count,
        "expenses_count": preview.expenses_count,
        "min_expense_date": _iso_or_none(preview.min_expense_date),
        "max_expense_date": _iso_or_none(preview.max_expense_date),
        "mapping_rows": [
            {
                "legacy_id": m.legacy_id,
                "description": m.description,
                "type": m.type.value,
                "expense_count": m.expense_count,
                "suggested_category_id": m.suggested_category_id,
            }
            for m in preview.mapping_rows
        ],
        "warnings": preview.warnings,
    }


@app.post("/admin/import-legacy/commit")
async def import_legacy_commit(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    path = await _spool_upload(file)
    try:
        result = LegacySQLiteImportService(db).commit(path)
    except ValueError as exc:
        _raise_http(exc)
    finally:
        path.unlink(missing_ok=True)
    return result


def _iso_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
