from datetime import datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Category,
    CategoryType,
    CostCenter,
    Entry,
    PaymentType,
    RecurringEntry,
    User,
)
from periods import Frequency
from recurrence import RecurringEngine


def _setup(session: Session) -> tuple[User, Category, PaymentType]:
    user = User(email="ana@example.com", name="Ana", password_hash="x")
    session.add(user)
    session.flush()
    housing = CostCenter(user_id=user.id, name="Housing")
    session.add(housing)
    session.flush()
    rent = Category(
        user_id=user.id,
        name="Rent",
        type=CategoryType.expense,
        cost_center_id=housing.id,
    )
    card = PaymentType(user_id=user.id, name="Credit card")
    session.add_all([rent, card])
    session.flush()
    return user, rent, card


def _recurring(
    user: User,
    category: Category,
    payment_type: PaymentType,
    next_run: datetime,
    frequency: Frequency = Frequency.monthly,
    amount: float = 1500.0,
) -> RecurringEntry:
    return RecurringEntry(
        user_id=user.id,
        amount=amount,
        description="Rent",
        frequency=frequency,
        category_id=category.id,
        payment_type_id=payment_type.id,
        next_run=next_run,
        anchor_day=next_run.day,
    )


def test_month_end_entry_fires_into_processing_month():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        session.add(_recurring(user, rent, card, datetime(2024, 1, 31)))
        session.commit()

    with Session(engine) as session:
        result = RecurringEngine(session).post_due_entries(datetime(2024, 2, 1, 0, 5))
        session.commit()
        assert result.posted == 1
        assert result.period == "2024-02"

    with Session(engine) as session:
        entry = session.scalars(select(Entry)).one()
        recurring = session.scalars(select(RecurringEntry)).one()
        assert entry.period == "2024-02"
        assert entry.amount == 1500.0
        assert entry.description == "Rent"
        assert entry.category_id == recurring.category_id
        assert entry.payment_type_id == recurring.payment_type_id
        assert entry.user_id == recurring.user_id
        assert entry.recurring_entry_id == recurring.id
        assert recurring.next_run == datetime(2024, 2, 29)
        assert recurring.last_run == datetime(2024, 2, 1, 0, 5)


def test_second_pass_on_same_day_creates_nothing():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        # Daily entry a week behind: still due after the first pass.
        session.add(
            _recurring(user, rent, card, datetime(2024, 3, 1), Frequency.daily)
        )
        session.commit()

    for hour in (0, 13):
        with Session(engine) as session:
            RecurringEngine(session).post_due_entries(datetime(2024, 3, 8, hour))
            session.commit()

    with Session(engine) as session:
        assert session.query(Entry).count() == 1
        recurring = session.scalars(select(RecurringEntry)).one()
        assert recurring.next_run == datetime(2024, 3, 2)

    with Session(engine) as session:
        RecurringEngine(session).post_due_entries(datetime(2024, 3, 9, 0, 1))
        session.commit()
        assert session.query(Entry).count() == 2


def test_future_entries_stay_pending():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        session.add(_recurring(user, rent, card, datetime(2024, 6, 1, 9, 0)))
        session.commit()

        # Same calendar day, but due entries are compared against midnight.
        result = RecurringEngine(session).post_due_entries(datetime(2024, 6, 1, 10))
        session.commit()
        assert result.posted == 0
        assert session.query(Entry).count() == 0

        result = RecurringEngine(session).post_due_entries(datetime(2024, 6, 2, 0, 1))
        session.commit()
        assert result.posted == 1


def test_existing_occurrence_is_not_duplicated():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        recurring = _recurring(user, rent, card, datetime(2024, 4, 10))
        session.add(recurring)
        session.flush()
        session.add(
            Entry(
                user_id=user.id,
                amount=recurring.amount,
                category_id=rent.id,
                period="2024-04",
                recurring_entry_id=recurring.id,
                occurrence_date=recurring.next_run.date(),
            )
        )
        session.commit()

        result = RecurringEngine(session).post_due_entries(datetime(2024, 4, 11))
        session.commit()

        assert result.posted == 0
        assert result.skipped == [recurring.id]
        assert session.query(Entry).count() == 1
        assert recurring.next_run == datetime(2024, 5, 10)


def test_failure_is_isolated_and_rolled_back(monkeypatch):
    import periods

    real_advance = periods.advance

    def flaky_advance(value, frequency, *, anchor_day=None):
        if value.day == 15:
            raise RuntimeError("store unavailable")
        return real_advance(value, frequency, anchor_day=anchor_day)

    monkeypatch.setattr("recurrence.advance", flaky_advance)

    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        broken = _recurring(user, rent, card, datetime(2024, 5, 15))
        healthy = _recurring(user, rent, card, datetime(2024, 5, 20), amount=80.0)
        session.add_all([broken, healthy])
        session.commit()
        broken_id, healthy_id = broken.id, healthy.id

    with Session(engine) as session:
        result = RecurringEngine(session).post_due_entries(datetime(2024, 5, 21))
        session.commit()
        assert result.failed == [broken_id]
        assert result.posted == 1

    with Session(engine) as session:
        entries = session.scalars(select(Entry)).all()
        assert [e.recurring_entry_id for e in entries] == [healthy_id]
        broken = session.get(RecurringEntry, broken_id)
        assert broken.next_run == datetime(2024, 5, 15)
        assert broken.last_run is None


def test_clock_is_used_when_no_time_is_given():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, rent, card = _setup(session)
        session.add(
            _recurring(user, rent, card, datetime(2024, 12, 25), Frequency.yearly)
        )
        session.commit()

        recurring_engine = RecurringEngine(
            session, clock=lambda: datetime(2025, 1, 2, 7, 0)
        )
        result = recurring_engine.post_due_entries()
        session.commit()

        assert result.period == "2025-01"
        recurring = session.scalars(select(RecurringEntry)).one()
        assert recurring.next_run == datetime(2025, 12, 25)
