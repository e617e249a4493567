from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import CategoryType


class CategoryIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense


class ExpenseIn(BaseModel):
    date: datetime
    category_id: int
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)


class ReportQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: Optional[date] = None
    end: Optional[date] = None
    filter_flag: bool = False
    category_id: int = 0


class CSVRow(BaseModel):
    row_number: int
    date: datetime
    amount_cents: int
    category: str
    description: str
