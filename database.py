import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

logger = logging.getLogger(__name__)


def _set_wal_mode(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    """Engine for ``database_url``; SQLite files run in WAL mode and may be
    shared with the scheduler thread."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)
    eng = create_engine(database_url, connect_args={"check_same_thread": False})
    event.listen(eng, "connect", _set_wal_mode)
    return eng


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Optional[Engine] = None) -> None:
    import models  # noqa: F401  registers the documents table on Base.metadata

    target = bind or engine
    Base.metadata.create_all(target)
    logger.info(f"db_ready: tables={sorted(inspect(target).get_table_names())}")


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
