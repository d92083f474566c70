"""Database handle shared by the order and catalog services.

`Database` owns one SQLAlchemy engine and its session factory. It is built by
the app factory (or a script) and passed to the services that need it; call
`dispose()` on shutdown to release pooled connections.
"""

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


class Database:
    """Explicitly constructed engine + session factory pair."""

    def __init__(self, dsn: str | None = None, engine: Engine | None = None) -> None:
        if engine is None:
            if not dsn:
                raise ValueError("Database needs a DSN or an engine")
            engine = create_engine(dsn, pool_pre_ping=True)
        self.engine = engine
        # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
        self.session_factory = sessionmaker(
            bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def create_all(self) -> None:
        """Create every mapped table; used by tests and local bootstrap only."""

        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
