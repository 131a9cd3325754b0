from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL

_engine = None
_SessionLocal = None


def _connect_args(url: str) -> dict:
    # sync routes run in a threadpool; sqlite connections must be shareable
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        if not DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set")
        _engine = create_engine(
            DATABASE_URL,
            connect_args=_connect_args(DATABASE_URL),
            pool_pre_ping=True,
            future=True,
        )
    return _engine


def get_session_factory():
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, future=True)
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Request-scoped label store session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
