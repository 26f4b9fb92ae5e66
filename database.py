from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


class Base(DeclarativeBase):
    pass


def _is_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite+pysqlite://") or ":memory:" in url


def _sqlite_pragmas(wal: bool):
    def _apply(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return _apply


def build_engine(url: str, timeout: Optional[float] = None) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    connect_args: dict[str, object] = {"check_same_thread": False}
    if timeout is not None:
        # Busy timeout; a locked database surfaces as an OperationalError.
        connect_args["timeout"] = timeout
    in_memory = _is_memory(url)
    if in_memory:
        # Single shared connection, or each checkout would see an empty database.
        eng = create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    else:
        eng = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    event.listen(eng, "connect", _sqlite_pragmas(wal=not in_memory))
    return eng


def build_sessionmaker(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


_settings = get_settings()
engine = build_engine(_settings.database_url, _settings.db_timeout_secs)
SessionLocal = build_sessionmaker(engine)


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
