from datetime import date, datetime
from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from models import CategoryType
from periods import PERIOD_PATTERN, Frequency

ItemT = TypeVar("ItemT")


class UserIn(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1, max_length=120)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class CostCenterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    cost_center_id: Optional[int] = None


class PaymentTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class EntryIn(BaseModel):
    amount: float
    description: Optional[str] = None
    category_id: int
    period: str = Field(..., pattern=PERIOD_PATTERN)
    payment_type_id: Optional[int] = None


class RecurringEntryIn(BaseModel):
    amount: float
    description: Optional[str] = None
    frequency: Frequency
    category_id: int
    payment_type_id: Optional[int] = None
    next_run: datetime


class ListParams(BaseModel):
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    items_per_page: int = Field(default=10, ge=1, le=100)
    sort_by: list[str] = Field(default_factory=list)
    sort_order: list[Literal["asc", "desc"]] = Field(default_factory=list)


class Page(BaseModel, Generic[ItemT]):
    items: list[ItemT]
    total: int
    page: int
    items_per_page: int


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str


class TokenOut(BaseModel):
    token: str
    user: UserOut


class CostCenterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    created_at: datetime
    updated_at: datetime


class CategoryRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType


class PaymentTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class CategoryOut(CategoryRef):
    cost_center_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class EntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: float
    description: Optional[str] = None
    period: str
    category: CategoryRef
    payment_type: Optional[PaymentTypeOut] = None
    recurring_entry_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime


class RecurringEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: float
    description: Optional[str] = None
    frequency: Frequency
    category: CategoryRef
    payment_type: Optional[PaymentTypeOut] = None
    next_run: datetime
    last_run: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class MaterializationOut(BaseModel):
    run_at: datetime
    period: str
    posted: int
    skipped: list[int]
    failed: list[int]
