"""Engine, session factory and shared column types for the notification store."""

from sqlalchemy import JSON, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from dealerhub.common.config import settings


def make_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        # The API thread pool and the event loop share the file database.
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(
        dsn,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


engine = make_engine(settings.postgres_dsn)
# Records returned by the inbox and registry stay readable after their session closes.
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for notification-owned tables and backend read models."""
