from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import read_token
from database import Base
from errors import (
    DuplicateError,
    ErrorKind,
    MissingDependencyError,
    NotFoundError,
    ReferentialIntegrityError,
    UnauthorizedError,
)
from models import CategoryType
from periods import Frequency
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
from services import (
    CategoryService,
    CostCenterService,
    EntryService,
    PaymentTypeService,
    RecurringEntryService,
    UserService,
)


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


def _user(session, email="dora@example.com"):
    return UserService(session).register(
        UserIn(email=email, password="secret123", name="Dora")
    )


def test_register_and_authenticate(session):
    user = _user(session, email="Dora@Example.com")
    assert user.email == "dora@example.com"
    assert user.password_hash != "secret123"

    service = UserService(session)
    found, token = service.authenticate(
        LoginIn(email="dora@example.com", password="secret123")
    )
    assert found.id == user.id
    assert read_token(token) == user.id

    with pytest.raises(UnauthorizedError):
        service.authenticate(LoginIn(email="dora@example.com", password="wrong"))
    with pytest.raises(UnauthorizedError):
        service.authenticate(LoginIn(email="nobody@example.com", password="x"))
    with pytest.raises(DuplicateError):
        _user(session)


def test_expense_category_needs_cost_center(session):
    user = _user(session)
    categories = CategoryService(session, user.id)

    with pytest.raises(MissingDependencyError) as excinfo:
        categories.create(CategoryIn(name="Rent", type=CategoryType.expense))
    assert excinfo.value.kind == ErrorKind.missing_dependency

    home = CostCenterService(session, user.id).create(CostCenterIn(name="Home"))
    with pytest.raises(ValueError):
        categories.create(
            CategoryIn(name="Salary", type=CategoryType.income, cost_center_id=home.id)
        )

    rent = categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
    )
    assert rent.cost_center_id == home.id


def test_duplicate_category_name_per_type(session):
    user = _user(session)
    home = CostCenterService(session, user.id).create(CostCenterIn(name="Home"))
    categories = CategoryService(session, user.id)
    categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
    )

    with pytest.raises(DuplicateError):
        categories.create(
            CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
        )

    # Same name is fine for the other type and for another user.
    categories.create(CategoryIn(name="Rent", type=CategoryType.income))
    other = _user(session, email="eli@example.com")
    other_home = CostCenterService(session, other.id).create(CostCenterIn(name="Home"))
    CategoryService(session, other.id).create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=other_home.id)
    )


def test_linked_records_cannot_be_deleted(session):
    user = _user(session)
    cost_centers = CostCenterService(session, user.id)
    home = cost_centers.create(CostCenterIn(name="Home"))
    home_id = home.id
    categories = CategoryService(session, user.id)
    rent = categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
    )
    card = PaymentTypeService(session, user.id).create(PaymentTypeIn(name="Card"))
    entry = EntryService(session, user.id).create(
        EntryIn(amount=10, category_id=rent.id, period="2024-01", payment_type_id=card.id)
    )

    with pytest.raises(ReferentialIntegrityError):
        cost_centers.delete(home.id)
    with pytest.raises(ReferentialIntegrityError):
        categories.delete(rent.id)
    with pytest.raises(ReferentialIntegrityError):
        PaymentTypeService(session, user.id).delete(card.id)

    EntryService(session, user.id).delete(entry.id)
    categories.delete(rent.id)
    cost_centers.delete(home_id)
    with pytest.raises(NotFoundError):
        cost_centers.get(home_id)


def test_other_users_records_are_not_found(session):
    owner = _user(session)
    intruder = _user(session, email="eve@example.com")
    home = CostCenterService(session, owner.id).create(CostCenterIn(name="Home"))
    rent = CategoryService(session, owner.id).create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
    )

    with pytest.raises(NotFoundError):
        CostCenterService(session, intruder.id).get(home.id)
    with pytest.raises(NotFoundError):
        CategoryService(session, intruder.id).delete(rent.id)
    with pytest.raises(NotFoundError):
        EntryService(session, intruder.id).create(
            EntryIn(amount=5, category_id=rent.id, period="2024-01")
        )


def test_recurring_expense_needs_payment_type(session):
    user = _user(session)
    home = CostCenterService(session, user.id).create(CostCenterIn(name="Home"))
    rent = CategoryService(session, user.id).create(
        CategoryIn(name="Rent", type=CategoryType.expense, cost_center_id=home.id)
    )
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    recurring = RecurringEntryService(session, user.id)

    with pytest.raises(MissingDependencyError):
        recurring.create(
            RecurringEntryIn(
                amount=1200,
                frequency=Frequency.monthly,
                category_id=rent.id,
                next_run=datetime(2024, 1, 31),
            )
        )

    pay = recurring.create(
        RecurringEntryIn(
            amount=5000,
            frequency=Frequency.monthly,
            category_id=salary.id,
            next_run=datetime(2024, 1, 31),
        )
    )
    assert pay.anchor_day == 31


def test_recurring_update_resets_anchor_only_when_rescheduled(session):
    user = _user(session)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    recurring = RecurringEntryService(session, user.id)
    data = RecurringEntryIn(
        amount=5000,
        frequency=Frequency.monthly,
        category_id=salary.id,
        next_run=datetime(2024, 1, 31),
    )
    pay = recurring.create(data)
    pay.next_run = datetime(2024, 2, 29)
    session.commit()

    updated = recurring.update(
        pay.id, data.model_copy(update={"amount": 5200, "next_run": pay.next_run})
    )
    assert updated.amount == 5200
    assert updated.anchor_day == 31

    updated = recurring.update(
        pay.id, data.model_copy(update={"next_run": datetime(2024, 3, 5)})
    )
    assert updated.anchor_day == 5


def test_upcoming_lists_month_window(session):
    user = _user(session)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    recurring = RecurringEntryService(session, user.id)
    for when in [datetime(2024, 2, 1), datetime(2024, 2, 29, 23, 0), datetime(2024, 3, 1)]:
        recurring.create(
            RecurringEntryIn(
                amount=1,
                frequency=Frequency.monthly,
                category_id=salary.id,
                next_run=when,
            )
        )

    upcoming = recurring.upcoming(2024, 2)
    assert [r.next_run.day for r in upcoming] == [1, 29]


def test_entry_listing_paginates_sorts_and_searches(session):
    user = _user(session)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    entries = EntryService(session, user.id)
    for amount in [30, 10, 20, 50, 40]:
        entries.create(
            EntryIn(
                amount=amount,
                description=f"payment {amount}",
                category_id=salary.id,
                period="2024-01",
            )
        )
    entries.create(
        EntryIn(amount=99, description="bonus", category_id=salary.id, period="2024-02")
    )

    items, total = entries.list(
        ListParams(page=2, items_per_page=2, sort_by=["amount"], sort_order=["desc"]),
        period="2024-01",
    )
    assert total == 5
    assert [e.amount for e in items] == [30, 20]
    assert items[0].category.name == "Salary"

    items, total = entries.list(ListParams(search="bonus"))
    assert total == 1
    assert items[0].period == "2024-02"

    with pytest.raises(ValueError):
        entries.list(ListParams(sort_by=["password"]))
    with pytest.raises(ValueError):
        entries.list(ListParams(), period="2024-13")


def test_entry_update_moves_between_periods(session):
    user = _user(session)
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    entries = EntryService(session, user.id)
    entry = entries.create(EntryIn(amount=10, category_id=salary.id, period="2024-01"))

    updated = entries.update(
        entry.id, EntryIn(amount=12.5, category_id=salary.id, period="2024-03")
    )

    assert updated.period == "2024-03"
    assert updated.amount == 12.5
    with pytest.raises(NotFoundError):
        entries.get(entry.id + 100)


def test_income_category_with_unpaid_recurring_cannot_become_expense(session):
    user = _user(session)
    home = CostCenterService(session, user.id).create(CostCenterIn(name="Home"))
    card = PaymentTypeService(session, user.id).create(PaymentTypeIn(name="Card"))
    categories = CategoryService(session, user.id)
    side_job = categories.create(CategoryIn(name="Side job", type=CategoryType.income))
    recurring = RecurringEntryService(session, user.id)
    data = RecurringEntryIn(
        amount=300,
        frequency=Frequency.monthly,
        category_id=side_job.id,
        next_run=datetime(2024, 1, 10),
    )
    pending = recurring.create(data)

    as_expense = CategoryIn(
        name="Side job", type=CategoryType.expense, cost_center_id=home.id
    )
    with pytest.raises(MissingDependencyError):
        categories.update(side_job.id, as_expense)
    assert categories.get(side_job.id).type == CategoryType.income

    recurring.update(
        pending.id,
        data.model_copy(update={"payment_type_id": card.id}),
    )
    updated = categories.update(side_job.id, as_expense)
    assert updated.type == CategoryType.expense
    assert recurring.get(pending.id).payment_type_id == card.id
