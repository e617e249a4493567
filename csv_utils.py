import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, TYPE_CHECKING

from schemas import CSVRow

if TYPE_CHECKING:  # pragma: no cover
    from reports import BudgetItem

# Cells a spreadsheet would evaluate or follow when the export is opened.
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
_RISKY_CELL = re.compile(
    r"^(?:cmd|powershell|bash|sh)\b|^\.|^https?://", re.IGNORECASE
)
_CURRENCY_MARKS = str.maketrans("", "", "€$ ")

EXPORT_HEADER = ["Date", "Category", "Description", "Amount", "Balance"]


def sanitize_csv_value(value: str) -> str:
    """Neutralize cells that spreadsheet tools would run as formulas.

    Risky cells are prefixed with a tab so they are read as plain text.
    """
    text = (value or "").strip()
    if text.startswith(_FORMULA_PREFIXES) or _RISKY_CELL.match(text):
        return "\t" + text
    return text


def parse_datetime(value: str) -> datetime:
    value = value.strip()
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y")


def parse_amount(value: str) -> int:
    """Signed amount in cents. Accepts ``,`` or ``.`` as decimal mark."""
    clean = value.translate(_CURRENCY_MARKS).replace(",", ".")
    whole, sep, fraction = clean.rpartition(".")
    if sep:
        clean = whole.replace(".", "") + "." + fraction
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value.strip()}'") from exc
    return int((amount * 100).quantize(Decimal("1")))


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, rest = divmod(abs(cents), 100)
    return f"{sign}{whole}.{rest:02d}"


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_datetime(raw.get("Date") or "")
            amount_value = parse_amount(raw.get("Amount") or "0")
            category = (raw.get("Category") or "").strip()
            description = (raw.get("Description") or "").strip()
            if not description:
                raise ValueError("Missing description")
            rows.append(
                CSVRow(
                    row_number=idx,
                    date=date_value,
                    amount_cents=amount_value,
                    category=category,
                    description=description,
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_budget_items(items: Iterable["BudgetItem"]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for item in items:
        writer.writerow(
            [
                item.date.isoformat(sep=" "),
                sanitize_csv_value(item.category),
                sanitize_csv_value(item.short_description),
                format_cents(item.amount_cents),
                format_cents(item.balance_cents),
            ]
        )
    return output.getvalue()
