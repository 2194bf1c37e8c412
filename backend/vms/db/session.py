"""Database session management."""

from collections.abc import Generator
from typing import Annotated, Any, Dict, Optional, Tuple

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from vms.core.config import Settings, settings


def engine_options(database_url: str, config: Optional[Settings] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Connect args and pool options for ``database_url``.

    SQLite connections are shared with the scheduler's worker threads, so the
    same-thread check is off. Server databases get the configured pool.
    """
    config = config or settings
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}, {"pool_pre_ping": True}
    return {}, {
        "pool_size": config.db_pool_size,
        "max_overflow": config.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": config.db_pool_recycle_seconds,
    }


connect_args, pool_config = engine_options(settings.database_url)

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=settings.debug,
    **pool_config,
)


def enable_sqlite_foreign_keys(target_engine) -> None:
    """Visit rows reference their entity; SQLite only enforces that with the pragma on."""

    @event.listens_for(target_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if settings.database_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]
