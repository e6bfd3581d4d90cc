import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Entry, RecurringEntry
from periods import advance, period_key


logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


@dataclass
class MaterializationResult:
    run_at: datetime
    period: str
    posted: int = 0
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class RecurringEngine:
    """Turns due recurring entries into ledger entries.

    A recurring entry is due when its ``next_run`` is at or before the start
    of the processing day. Each due record gets one entry per pass, booked in
    the processing month, and its ``next_run`` moves one step forward. Both
    writes share a savepoint, so a record either fully fires or is left as it
    was. Records that already fired today are left alone until tomorrow.
    """

    def __init__(
        self, session: Session, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.session = session
        self.clock = clock or local_now

    def due_entries(self, today: date) -> list[RecurringEntry]:
        cutoff = datetime.combine(today, time.min)
        stmt = (
            select(RecurringEntry)
            .where(
                RecurringEntry.next_run <= cutoff,
                or_(
                    RecurringEntry.last_run.is_(None),
                    RecurringEntry.last_run < cutoff,
                ),
            )
            .order_by(RecurringEntry.next_run, RecurringEntry.id)
        )
        return list(self.session.scalars(stmt).all())

    def post_due_entries(self, now: Optional[datetime] = None) -> MaterializationResult:
        now = to_local_naive(now or self.clock())
        period = period_key(now)
        result = MaterializationResult(run_at=now, period=period)

        due = self.due_entries(now.date())
        logger.info(f"recurring_pass: period={period} due={len(due)}")
        for recurring in due:
            recurring_id = recurring.id
            try:
                with self.session.begin_nested():
                    posted = self._post_occurrence(recurring, now, period)
            except Exception:
                logger.exception(
                    f"recurring_pass: failed recurring_entry_id={recurring_id}"
                )
                result.failed.append(recurring_id)
                continue
            if posted:
                result.posted += 1
            else:
                result.skipped.append(recurring_id)

        logger.info(
            f"recurring_pass: period={period} posted={result.posted} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        return result

    def _post_occurrence(
        self, recurring: RecurringEntry, now: datetime, period: str
    ) -> bool:
        occurrence_date = recurring.next_run.date()
        exists_stmt = (
            select(Entry.id)
            .where(
                Entry.recurring_entry_id == recurring.id,
                Entry.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        posted = False
        if self.session.execute(exists_stmt).scalar_one_or_none() is None:
            entry = Entry(
                user_id=recurring.user_id,
                amount=recurring.amount,
                description=recurring.description,
                category_id=recurring.category_id,
                payment_type_id=recurring.payment_type_id,
                period=period,
                recurring_entry_id=recurring.id,
                occurrence_date=occurrence_date,
            )
            self.session.add(entry)
            self.session.flush()
            posted = True
            logger.debug(
                f"recurring_pass: posted entry_id={entry.id} "
                f"recurring_entry_id={recurring.id} occurrence={occurrence_date}"
            )

        recurring.next_run = advance(
            recurring.next_run, recurring.frequency, anchor_day=recurring.anchor_day
        )
        recurring.last_run = now
        self.session.flush()
        return posted
