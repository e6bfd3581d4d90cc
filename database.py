import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or get_settings().database_url
    is_sqlite = url.startswith("sqlite")
    connect_args: dict[str, object] = {"check_same_thread": False} if is_sqlite else {}
    ledger_engine = create_engine(url, connect_args=connect_args)
    if is_sqlite:
        event.listen(ledger_engine, "connect", _sqlite_on_connect)
    return ledger_engine


def _sqlite_on_connect(dbapi_conn, _record):
    # SQLite ships with foreign keys off; ON DELETE SET NULL needs them.
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine) -> None:
    import models  # noqa: F401

    existing = set(inspect(bind).get_table_names())
    Base.metadata.create_all(bind)
    created = sorted(set(Base.metadata.tables) - existing)
    if created:
        logger.info(f"init_db: created tables {', '.join(created)}")


@contextmanager
def session_scope(
    factory: Optional[sessionmaker] = None,
) -> Iterator[Session]:
    """Session for work outside a request; rolled back if the block raises."""
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
