"""Database engine and session factories"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from casefund.core.config import settings
from casefund.models.base import Base


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool settings for a server database; SQLite keeps its default pool and is shared across threads"""
    if make_url(database_url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
    }


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for scheduler jobs and other work outside a request.

    Anything left uncommitted when the job raises is rolled back before the
    connection goes back to the pool.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Create any missing tables"""
    import casefund.models  # noqa: F401  register every model with Base.metadata
    Base.metadata.create_all(bind=engine)
