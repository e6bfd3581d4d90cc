from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, contains_eager, joinedload

from auth import hash_password, issue_token, verify_password
from errors import (
    DuplicateError,
    MissingDependencyError,
    NotFoundError,
    ReferentialIntegrityError,
    UnauthorizedError,
)
from models import (
    Category,
    CategoryType,
    CostCenter,
    Entry,
    PaymentType,
    RecurringEntry,
    User,
)
from periods import Period, month_bounds
from recurrence import (
    MaterializationResult,
    RecurringEngine,
    local_now,
    to_local_naive,
)
from schemas import (
    CategoryIn,
    CostCenterIn,
    EntryIn,
    ListParams,
    LoginIn,
    PaymentTypeIn,
    RecurringEntryIn,
    UserIn,
)


logger = logging.getLogger(__name__)

NO_PAYMENT_TYPE = "no payment type"


def _get_owned(session: Session, model, obj_id: int, user_id: int, label: str):
    obj = session.get(model, obj_id)
    if not obj or obj.user_id != user_id:
        raise NotFoundError(f"{label} not found")
    return obj


def _paginate(
    session: Session,
    stmt,
    params: ListParams,
    sortable: dict[str, object],
    default_order: list,
    options: tuple = (),
) -> tuple[list, int]:
    """Run ``stmt`` for one page and count the full result alongside it.

    Loader ``options`` only apply to the page query, never to the count.
    """
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = int(session.execute(count_stmt).scalar_one() or 0)

    order_by = []
    for index, field in enumerate(params.sort_by):
        column = sortable.get(field)
        if column is None:
            raise ValueError(f"Unsupported sort field: {field}")
        direction = (
            params.sort_order[index] if index < len(params.sort_order) else "asc"
        )
        order_by.append(column.desc() if direction == "desc" else column.asc())
    order_by.extend(default_order)

    offset = (params.page - 1) * params.items_per_page
    items = session.scalars(
        stmt.options(*options)
        .order_by(*order_by)
        .offset(offset)
        .limit(params.items_per_page)
    ).all()
    return list(items), total


def percentage_change(current: float, previous: float) -> float:
    """Month-over-month balance change; 0 when there is nothing to compare to."""
    if previous == 0:
        return 0.0
    return round((current - previous) / abs(previous) * 100, 2)


def comparison_change(current: float, previous: float) -> float:
    """Category comparison change; growth from nothing counts as +100%."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / abs(previous) * 100


def process_recurring_entries(
    session: Session,
    now: Optional[datetime] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> MaterializationResult:
    engine = RecurringEngine(session, clock=clock)
    result = engine.post_due_entries(now)
    session.commit()
    return result


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: UserIn) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise DuplicateError("User with this email already exists")
        user = User(
            email=email,
            name=data.name.strip(),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> tuple[User, str]:
        email = data.email.strip().lower()
        user = self.session.scalar(select(User).where(User.email == email))
        if not user or not verify_password(data.password, user.password_hash):
            raise UnauthorizedError("Invalid credentials")
        return user, issue_token(user.id, user.email)

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user


class CostCenterService:
    SORTABLE = {
        "name": CostCenter.name,
        "created_at": CostCenter.created_at,
        "updated_at": CostCenter.updated_at,
    }

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, params: ListParams) -> tuple[list[CostCenter], int]:
        stmt = select(CostCenter).where(CostCenter.user_id == self.user_id)
        if params.search:
            stmt = stmt.where(CostCenter.name.ilike(f"%{params.search.strip()}%"))
        default_order = [] if params.sort_by else [CostCenter.name.asc()]
        return _paginate(
            self.session,
            stmt,
            params,
            self.SORTABLE,
            default_order + [CostCenter.id.asc()],
        )

    def get(self, cost_center_id: int) -> CostCenter:
        return _get_owned(
            self.session, CostCenter, cost_center_id, self.user_id, "Cost center"
        )

    def create(self, data: CostCenterIn) -> CostCenter:
        cost_center = CostCenter(user_id=self.user_id, name=data.name.strip())
        self.session.add(cost_center)
        self.session.commit()
        self.session.refresh(cost_center)
        return cost_center

    def update(self, cost_center_id: int, data: CostCenterIn) -> CostCenter:
        cost_center = self.get(cost_center_id)
        cost_center.name = data.name.strip()
        self.session.commit()
        self.session.refresh(cost_center)
        return cost_center

    def delete(self, cost_center_id: int) -> None:
        cost_center = self.get(cost_center_id)
        linked = self.session.execute(
            select(func.count(Category.id)).where(
                Category.cost_center_id == cost_center.id
            )
        ).scalar_one()
        if linked:
            raise ReferentialIntegrityError(
                "Cost center cannot be deleted while categories are linked to it"
            )
        self.session.delete(cost_center)
        self.session.commit()


class CategoryService:
    SORTABLE = {
        "name": Category.name,
        "type": Category.type,
        "created_at": Category.created_at,
        "updated_at": Category.updated_at,
    }

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        params: ListParams,
        *,
        type: Optional[CategoryType] = None,
        cost_center_id: Optional[int] = None,
    ) -> tuple[list[Category], int]:
        stmt = select(Category).where(Category.user_id == self.user_id)
        if type is not None:
            stmt = stmt.where(Category.type == type)
        if cost_center_id is not None:
            stmt = stmt.where(Category.cost_center_id == cost_center_id)
        if params.search:
            stmt = stmt.where(Category.name.ilike(f"%{params.search.strip()}%"))
        default_order = (
            [] if params.sort_by else [Category.type.asc(), Category.name.asc()]
        )
        return _paginate(
            self.session,
            stmt,
            params,
            self.SORTABLE,
            default_order + [Category.id.asc()],
        )

    def get(self, category_id: int) -> Category:
        return _get_owned(self.session, Category, category_id, self.user_id, "Category")

    def _check_unique(
        self, name: str, type: CategoryType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            Category.name == name,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise DuplicateError("Category with the same name and type already exists")

    def _check_cost_center(
        self, type: CategoryType, cost_center_id: Optional[int]
    ) -> None:
        if type == CategoryType.income:
            if cost_center_id is not None:
                raise ValueError("Income categories cannot have a cost center")
            return
        if cost_center_id is None:
            raise MissingDependencyError("Expense categories require a cost center")
        _get_owned(
            self.session, CostCenter, cost_center_id, self.user_id, "Cost center"
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._check_unique(name, data.type)
        self._check_cost_center(data.type, data.cost_center_id)
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            cost_center_id=data.cost_center_id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        self._check_unique(name, data.type, exclude_id=category.id)
        self._check_cost_center(data.type, data.cost_center_id)
        if data.type == CategoryType.expense and category.type != CategoryType.expense:
            unpaid = self.session.execute(
                select(func.count(RecurringEntry.id)).where(
                    RecurringEntry.category_id == category.id,
                    RecurringEntry.payment_type_id.is_(None),
                )
            ).scalar_one()
            if unpaid:
                raise MissingDependencyError(
                    "Recurring entries of this category need a payment type "
                    "before it can become an expense category"
                )
        category.name = name
        category.type = data.type
        category.cost_center_id = data.cost_center_id
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        entries = self.session.execute(
            select(func.count(Entry.id)).where(Entry.category_id == category.id)
        ).scalar_one()
        recurring = self.session.execute(
            select(func.count(RecurringEntry.id)).where(
                RecurringEntry.category_id == category.id
            )
        ).scalar_one()
        if entries or recurring:
            raise ReferentialIntegrityError(
                "Category cannot be deleted while entries are linked to it"
            )
        self.session.delete(category)
        self.session.commit()


class PaymentTypeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, search: Optional[str] = None) -> list[PaymentType]:
        stmt = (
            select(PaymentType)
            .where(PaymentType.user_id == self.user_id)
            .order_by(PaymentType.name, PaymentType.id)
        )
        if search:
            stmt = stmt.where(PaymentType.name.ilike(f"%{search.strip()}%"))
        return list(self.session.scalars(stmt).all())

    def get(self, payment_type_id: int) -> PaymentType:
        return _get_owned(
            self.session, PaymentType, payment_type_id, self.user_id, "Payment type"
        )

    def create(self, data: PaymentTypeIn) -> PaymentType:
        payment_type = PaymentType(user_id=self.user_id, name=data.name.strip())
        self.session.add(payment_type)
        self.session.commit()
        self.session.refresh(payment_type)
        return payment_type

    def update(self, payment_type_id: int, data: PaymentTypeIn) -> PaymentType:
        payment_type = self.get(payment_type_id)
        payment_type.name = data.name.strip()
        self.session.commit()
        self.session.refresh(payment_type)
        return payment_type

    def delete(self, payment_type_id: int) -> None:
        payment_type = self.get(payment_type_id)
        entries = self.session.execute(
            select(func.count(Entry.id)).where(
                Entry.payment_type_id == payment_type.id
            )
        ).scalar_one()
        recurring = self.session.execute(
            select(func.count(RecurringEntry.id)).where(
                RecurringEntry.payment_type_id == payment_type.id
            )
        ).scalar_one()
        if entries or recurring:
            raise ReferentialIntegrityError(
                "Payment type cannot be deleted while entries use it"
            )
        self.session.delete(payment_type)
        self.session.commit()


class EntryService:
    SORTABLE = {
        "amount": Entry.amount,
        "period": Entry.period,
        "description": Entry.description,
        "created_at": Entry.created_at,
        "updated_at": Entry.updated_at,
        "category.name": Category.name,
        "category.type": Category.type,
    }

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_refs(self, category_id: int, payment_type_id: Optional[int]) -> None:
        _get_owned(self.session, Category, category_id, self.user_id, "Category")
        if payment_type_id is not None:
            _get_owned(
                self.session, PaymentType, payment_type_id, self.user_id, "Payment type"
            )

    def list(
        self, params: ListParams, *, period: Optional[str] = None
    ) -> tuple[list[Entry], int]:
        stmt = (
            select(Entry)
            .join(Category, Entry.category_id == Category.id)
            .where(Entry.user_id == self.user_id)
        )
        if period:
            Period.from_key(period)
            stmt = stmt.where(Entry.period == period)
        if params.search:
            stmt = stmt.where(Entry.description.ilike(f"%{params.search.strip()}%"))
        default_order = (
            [] if params.sort_by else [Entry.period.desc(), Entry.created_at.desc()]
        )
        return _paginate(
            self.session,
            stmt,
            params,
            self.SORTABLE,
            default_order + [Entry.id.desc()],
            options=(contains_eager(Entry.category), joinedload(Entry.payment_type)),
        )

    def get(self, entry_id: int) -> Entry:
        stmt = (
            select(Entry)
            .options(joinedload(Entry.category), joinedload(Entry.payment_type))
            .where(Entry.user_id == self.user_id, Entry.id == entry_id)
        )
        entry = self.session.scalar(stmt)
        if not entry:
            raise NotFoundError("Entry not found")
        return entry

    def create(self, data: EntryIn) -> Entry:
        Period.from_key(data.period)
        self._check_refs(data.category_id, data.payment_type_id)
        entry = Entry(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            category_id=data.category_id,
            payment_type_id=data.payment_type_id,
            period=data.period,
        )
        self.session.add(entry)
        self.session.commit()
        return self.get(entry.id)

    def update(self, entry_id: int, data: EntryIn) -> Entry:
        entry = self.get(entry_id)
        Period.from_key(data.period)
        self._check_refs(data.category_id, data.payment_type_id)
        entry.amount = data.amount
        entry.description = data.description
        entry.category_id = data.category_id
        entry.payment_type_id = data.payment_type_id
        entry.period = data.period
        self.session.commit()
        self.session.expire(entry)
        return self.get(entry_id)

    def delete(self, entry_id: int) -> None:
        entry = self.get(entry_id)
        self.session.delete(entry)
        self.session.commit()


class RecurringEntryService:
    SORTABLE = {
        "amount": RecurringEntry.amount,
        "description": RecurringEntry.description,
        "frequency": RecurringEntry.frequency,
        "next_run": RecurringEntry.next_run,
        "last_run": RecurringEntry.last_run,
        "created_at": RecurringEntry.created_at,
    }

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_refs(self, data: RecurringEntryIn) -> None:
        category = _get_owned(
            self.session, Category, data.category_id, self.user_id, "Category"
        )
        if data.payment_type_id is not None:
            _get_owned(
                self.session,
                PaymentType,
                data.payment_type_id,
                self.user_id,
                "Payment type",
            )
        elif category.type == CategoryType.expense:
            raise MissingDependencyError(
                "Recurring expenses require a payment type"
            )

    def list(self, params: ListParams) -> tuple[list[RecurringEntry], int]:
        stmt = select(RecurringEntry).where(RecurringEntry.user_id == self.user_id)
        if params.search:
            stmt = stmt.where(
                RecurringEntry.description.ilike(f"%{params.search.strip()}%")
            )
        default_order = [] if params.sort_by else [RecurringEntry.next_run.asc()]
        return _paginate(
            self.session,
            stmt,
            params,
            self.SORTABLE,
            default_order + [RecurringEntry.id.asc()],
            options=(
                joinedload(RecurringEntry.category),
                joinedload(RecurringEntry.payment_type),
            ),
        )

    def get(self, recurring_entry_id: int) -> RecurringEntry:
        return _get_owned(
            self.session,
            RecurringEntry,
            recurring_entry_id,
            self.user_id,
            "Recurring entry",
        )

    def create(self, data: RecurringEntryIn) -> RecurringEntry:
        self._check_refs(data)
        next_run = to_local_naive(data.next_run)
        recurring = RecurringEntry(
            user_id=self.user_id,
            amount=data.amount,
            description=data.description,
            frequency=data.frequency,
            category_id=data.category_id,
            payment_type_id=data.payment_type_id,
            next_run=next_run,
            anchor_day=next_run.day,
        )
        self.session.add(recurring)
        self.session.commit()
        self.session.refresh(recurring)
        return recurring

    def update(self, recurring_entry_id: int, data: RecurringEntryIn) -> RecurringEntry:
        recurring = self.get(recurring_entry_id)
        self._check_refs(data)
        next_run = to_local_naive(data.next_run)
        if next_run != recurring.next_run:
            recurring.next_run = next_run
            recurring.anchor_day = next_run.day
        recurring.amount = data.amount
        recurring.description = data.description
        recurring.frequency = data.frequency
        recurring.category_id = data.category_id
        recurring.payment_type_id = data.payment_type_id
        self.session.commit()
        self.session.refresh(recurring)
        return recurring

    def delete(self, recurring_entry_id: int) -> None:
        recurring = self.get(recurring_entry_id)
        self.session.delete(recurring)
        self.session.commit()

    def upcoming(self, year: int, month: int) -> list[RecurringEntry]:
        start, end = month_bounds(year, month)
        stmt = (
            select(RecurringEntry)
            .options(
                joinedload(RecurringEntry.category),
                joinedload(RecurringEntry.payment_type),
            )
            .where(
                RecurringEntry.user_id == self.user_id,
                RecurringEntry.next_run.between(start, end),
            )
            .order_by(RecurringEntry.next_run, RecurringEntry.id)
        )
        return list(self.session.scalars(stmt).all())


class DashboardService:
    """Read-only aggregates over one user's entries.

    Months are matched on the entry's ``period`` key, not on its timestamps.
    Empty windows produce zeros; division by a zero base resolves to the
    sentinel documented on each method instead of raising.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or local_now

    def _sum_by_type(self, *conditions) -> tuple[float, float]:
        stmt = (
            select(Category.type, func.coalesce(func.sum(Entry.amount), 0.0))
            .join(Category, Entry.category_id == Category.id)
            .where(Entry.user_id == self.user_id, *conditions)
            .group_by(Category.type)
        )
        totals = {
            CategoryType(row[0]): float(row[1] or 0)
            for row in self.session.execute(stmt)
        }
        return (
            totals.get(CategoryType.income, 0.0),
            totals.get(CategoryType.expense, 0.0),
        )

    def _balance(self, *conditions) -> float:
        income, expense = self._sum_by_type(*conditions)
        return income - expense

    def yearly_balance(self, year: int) -> list[dict[str, object]]:
        stmt = (
            select(
                Entry.period,
                Category.type,
                func.coalesce(func.sum(Entry.amount), 0.0).label("total"),
            )
            .join(Category, Entry.category_id == Category.id)
            .where(Entry.user_id == self.user_id, Entry.period.like(f"{year:04d}-%"))
            .group_by(Entry.period, Category.type)
        )
        buckets = {
            Period(year, month).key: {"income": 0.0, "expense": 0.0}
            for month in range(1, 13)
        }
        for row in self.session.execute(stmt):
            bucket = buckets.get(row.period)
            if bucket is None:
                continue
            bucket[CategoryType(row.type).value] += float(row.total or 0)
        return [
            {
                "month": key,
                "income": round(bucket["income"], 2),
                "expense": round(bucket["expense"], 2),
            }
            for key, bucket in buckets.items()
        ]

    def category_totals(self, year: int, month: int) -> list[dict[str, object]]:
        key = Period(year, month).key
        stmt = (
            select(
                Category.id,
                Category.name,
                Category.type,
                func.coalesce(func.sum(Entry.amount), 0.0).label("total"),
            )
            .outerjoin(
                Entry,
                and_(
                    Entry.category_id == Category.id,
                    Entry.user_id == self.user_id,
                    Entry.period == key,
                ),
            )
            .where(Category.user_id == self.user_id)
            .group_by(Category.id, Category.name, Category.type)
            .order_by(Category.type, Category.name, Category.id)
        )
        return [
            {
                "category_id": row.id,
                "category_name": row.name,
                "type": CategoryType(row.type).value,
                "total": float(row.total or 0),
            }
            for row in self.session.execute(stmt)
        ]

    def monthly_balance(self, year: int, month: int) -> dict[str, float]:
        """Balance of a month next to the month before it.

        ``percentage_change`` is relative to the absolute previous balance
        and is 0 when the previous balance is exactly 0.
        """
        period = Period(year, month)
        previous = period.previous()
        current_balance = self._balance(Entry.period == period.key)
        previous_balance = self._balance(Entry.period == previous.key)
        return {
            "current_balance": current_balance,
            "previous_balance": previous_balance,
            "percentage_change": percentage_change(current_balance, previous_balance),
        }

    def _highest_by_type(self, period: Period) -> dict[CategoryType, dict[str, object]]:
        stmt = (
            select(
                Category.type,
                Category.name,
                func.coalesce(func.sum(Entry.amount), 0.0).label("total"),
            )
            .join(Category, Entry.category_id == Category.id)
            .where(Entry.user_id == self.user_id, Entry.period == period.key)
            .group_by(Category.id, Category.type, Category.name)
            .order_by(Category.name, Category.id)
        )
        highest: dict[CategoryType, dict[str, object]] = {
            kind: {"category": "", "amount": 0.0} for kind in CategoryType
        }
        for row in self.session.execute(stmt):
            kind = CategoryType(row.type)
            total = float(row.total or 0)
            if total > highest[kind]["amount"]:
                highest[kind] = {"category": row.name, "amount": total}
        return highest

    def category_comparison(self, year: int, month: int) -> dict[str, dict[str, object]]:
        """Top income and top expense category of a month against last month's.

        When last month's top amount is 0 the change is 100 for any positive
        amount this month, 0 otherwise.
        """
        period = Period(year, month)
        current = self._highest_by_type(period)
        previous = self._highest_by_type(period.previous())

        def slot(kind: CategoryType) -> dict[str, object]:
            amount = float(current[kind]["amount"])
            return {
                "category": current[kind]["category"],
                "amount": amount,
                "percentage_change": comparison_change(
                    amount, float(previous[kind]["amount"])
                ),
            }

        return {
            "highest_income": slot(CategoryType.income),
            "highest_expense": slot(CategoryType.expense),
        }

    def income_expense_ratio(self, year: int, month: int) -> float:
        income, expense = self._sum_by_type(Entry.period == Period(year, month).key)
        if expense == 0:
            return float("inf")
        return income / expense

    def total_balance(self) -> float:
        return self._balance()

    def survival_time(self, today: Optional[date] = None) -> float:
        """Months the current balance lasts at the recent spending pace.

        The pace is the average expense of the trailing twelve months
        (current month included), counting only months with expenses.
        """
        today = today or self.clock().date()
        current = Period.containing(today)
        first = current.shifted(-11)
        stmt = (
            select(Entry.period, func.coalesce(func.sum(Entry.amount), 0.0))
            .join(Category, Entry.category_id == Category.id)
            .where(
                Entry.user_id == self.user_id,
                Category.type == CategoryType.expense,
                Entry.period >= first.key,
                Entry.period <= current.key,
            )
            .group_by(Entry.period)
        )
        monthly = [float(total or 0) for _period, total in self.session.execute(stmt)]
        average = sum(monthly) / len(monthly) if monthly else 0.0
        if average == 0:
            return float("inf")
        return self.total_balance() / average

    def payment_type_totals(self, year: int, month: int) -> dict[str, float]:
        key = Period(year, month).key
        stmt = (
            select(
                PaymentType.name,
                func.coalesce(func.sum(Entry.amount), 0.0).label("total"),
            )
            .select_from(Entry)
            .outerjoin(PaymentType, Entry.payment_type_id == PaymentType.id)
            .where(Entry.user_id == self.user_id, Entry.period == key)
            .group_by(Entry.payment_type_id, PaymentType.name)
        )
        totals: dict[str, float] = {}
        for name, total in self.session.execute(stmt):
            label = name if name is not None else NO_PAYMENT_TYPE
            totals[label] = totals.get(label, 0.0) + float(total or 0)
        return totals
