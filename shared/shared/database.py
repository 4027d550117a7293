from datetime import datetime, timezone

from sqlalchemy import DateTime, JSON, event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


def get_engine(database_url: str, echo: bool = False):
    engine = create_async_engine(database_url, echo=echo, future=True)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_writers(engine)
    return engine


def _serialize_sqlite_writers(engine):
    """
    SQLite has no row locks, so every transaction takes the write lock up front
    (BEGIN IMMEDIATE). Concurrent writers then queue on the busy timeout instead
    of failing with "database is locked" halfway through.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # stop the driver from emitting its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


Base = declarative_base()


def violates_unique(exc, constraint: str, columns: str) -> bool:
    """
    Whether an IntegrityError came from one specific unique constraint.
    Postgres names the constraint in its message; SQLite lists `table.column`s.
    """
    detail = str(getattr(exc, "orig", exc))
    return constraint in detail or columns in detail


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes on every backend.
    SQLite drops tzinfo on the way in, so naive values read back are UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Snapshot(TypeDecorator):
    """
    Stores a frozen pydantic model as JSON and hands the model back on load.
    """

    impl = JSON
    cache_ok = True

    def __init__(self, model, *args, **kwargs):
        self.model = model
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.model.model_validate(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
