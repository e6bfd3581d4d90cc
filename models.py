from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import Frequency


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)


class CostCenter(Base, TimestampMixin):
    __tablename__ = "cost_centers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="cost_center"
    )

    __table_args__ = (Index("ix_cost_centers_user_name", "user_id", "name"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    cost_center_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("cost_centers.id")
    )

    cost_center: Mapped[Optional["CostCenter"]] = relationship(
        "CostCenter", back_populates="categories"
    )
    entries: Mapped[list["Entry"]] = relationship("Entry", back_populates="category")
    recurring_entries: Mapped[list["RecurringEntry"]] = relationship(
        "RecurringEntry", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class PaymentType(Base, TimestampMixin):
    __tablename__ = "payment_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (Index("ix_payment_types_user_name", "user_id", "name"),)


class Entry(Base, TimestampMixin):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    payment_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_types.id")
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    recurring_entry_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_entries.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped["Category"] = relationship("Category", back_populates="entries")
    payment_type: Mapped[Optional["PaymentType"]] = relationship("PaymentType")
    recurring_entry: Mapped[Optional["RecurringEntry"]] = relationship(
        "RecurringEntry", back_populates="entries"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_entry_id",
            "occurrence_date",
            name="uq_entry_recurring_occurrence",
        ),
        Index("ix_entries_user_period", "user_id", "period"),
        Index("ix_entries_user_category_period", "user_id", "category_id", "period"),
    )


class RecurringEntry(Base, TimestampMixin):
    __tablename__ = "recurring_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    payment_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_types.id")
    )
    next_run: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Day of month that monthly/yearly steps return to after a short month.
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="recurring_entries"
    )
    payment_type: Mapped[Optional["PaymentType"]] = relationship("PaymentType")
    entries: Mapped[list["Entry"]] = relationship(
        "Entry", back_populates="recurring_entry"
    )

    __table_args__ = (Index("ix_recurring_entries_next_run", "next_run"),)
