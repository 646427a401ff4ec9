"""Declarative base, engine and session factory shared by routing and pauses."""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from memberbill.exceptions import ConfigurationError
from memberbill.utils.datetime import utc_now
from memberbill.utils.logging import get_logger

logger = get_logger(__name__)

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Surrogate integer key plus UTC audit timestamps on every table."""

    metadata = metadata

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(database_url: str | None = None) -> Engine:
    """Bind the module-level engine and session factory and create missing tables.

    Without an explicit URL the configured ``database_url`` is used. SQLite
    connections get foreign key enforcement switched on.
    """
    global engine, SessionLocal

    if database_url is None:
        from memberbill.utils.config import get_settings

        database_url = get_settings().database_url

    engine = create_engine(database_url, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=True)

    # Every mapped class must be imported before create_all
    import memberbill.pauses.domain.models  # noqa: F401
    import memberbill.routing.domain.models  # noqa: F401
    import memberbill.storage.database.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("database_ready", dialect=engine.dialect.name, tables=len(metadata.tables))
    return engine


def get_session() -> Session:
    if SessionLocal is None:
        raise ConfigurationError(
            "Database is not initialised; run `memberbill init-db` or call init_db()",
            setting="database_url",
        )
    return SessionLocal()
