# FILE: credvault/db.py
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from credvault.config import DEFAULT_BUSY_TIMEOUT_MS, load_settings
from credvault.errors import TransactionError

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(database_url: str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS, **kwargs) -> Engine:
    """
    Create an engine. For SQLite, foreign keys are enforced and writers wait
    up to busy_timeout_ms for the lock instead of failing immediately.
    """
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})  # Required for SQLite
        if database_url == "sqlite://" or ":memory:" in database_url:
            # One shared connection, otherwise each thread sees its own empty database
            kwargs.setdefault("poolclass", StaticPool)

    # hide_parameters keeps bound values (ciphertext, legacy plaintext) out of error messages
    db_engine = create_engine(database_url, echo=False, hide_parameters=True, **kwargs)

    if is_sqlite:
        @event.listens_for(db_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.close()

    return db_engine


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


_settings = load_settings()
DATABASE_URL = _settings.database_url

engine = create_db_engine(DATABASE_URL, _settings.busy_timeout_ms)
SessionLocal = create_session_factory(engine)


def get_db():
    """FastAPI dependency that yields a DB session and closes it after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """
    Create all tables. Development convenience only: in production the
    external migration runner owns the DDL.
    """
    # Import models so Base.metadata knows about them
    from credvault.credentials import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a unit of work atomically: commit on success, roll back on any error.

    SQLAlchemy failures surface as TransactionError; anything else (e.g. an
    EncryptionError raised between statements) propagates unchanged after
    the rollback.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(f"[db] Transaction rolled back: {type(exc).__name__}")
        raise TransactionError("database transaction failed and was rolled back") from exc
    except BaseException:
        db.rollback()
        raise
