"""Database session dependency."""

from collections.abc import Generator

from sqlalchemy.orm import Session, sessionmaker

from product_importer.db.session import SessionLocal, get_db


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a managed SQLAlchemy session."""
    yield from get_db()


def get_session_factory() -> sessionmaker:
    """Factory for code that outlives the request session (SSE streams)."""
    return SessionLocal
