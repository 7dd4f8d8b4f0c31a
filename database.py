from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def enable_sqlite_pragmas(dbapi_conn, _record):
    # Owner, category and budget cascades are declared as foreign keys,
    # which SQLite ignores unless asked per connection.
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def build_engine(url: str) -> Engine:
    if is_sqlite(url):
        eng = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(eng, "connect", enable_sqlite_pragmas)
        return eng
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Session for work outside a request, such as scheduled jobs."""
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
