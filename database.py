from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    is_sqlite = settings.database_url.startswith("sqlite")
    if is_sqlite:
        # Web handlers, the webhook and the recap job share one file.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    eng = create_engine(settings.database_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables. Alembic owns real migrations; this is for dev and tests."""
    import models  # noqa: F401  registers mappers on Base.metadata

    Base.metadata.create_all(bind or engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
