from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    """
    Engine options per backend.

    SQLite (used for local development and tests) needs check_same_thread=False
    because FastAPI runs sync routes in a threadpool; an in-memory database must
    also share a single connection or every session would see an empty schema.
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {"pool_pre_ping": True}


# Engine configured for typical web usage.
engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


# PUBLIC_INTERFACE
def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session and ensures closure."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# PUBLIC_INTERFACE
def init_db() -> None:
    """Create all tables registered on the declarative Base (development helper)."""
    # Import models so every table is registered on Base.metadata.
    from src.api.models import address, driver, join_request, payment_method, ride, user  # noqa: F401
    from src.api.models.base import Base

    Base.metadata.create_all(bind=engine)
