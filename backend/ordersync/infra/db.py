import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable

from fastapi import Request
from sqlalchemy import event, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ordersync.infra.tracing import instrument_sqlalchemy

Base = declarative_base()

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Database:
    """Owns the async engine and session factory for one database URL.

    Callers construct it, ``open()`` it before use and ``close()`` it on shutdown.
    """

    def __init__(self, url: str, *, engine_kwargs: dict[str, Any] | None = None, app_settings=None) -> None:
        self.url = url
        self._engine_kwargs = engine_kwargs
        self._settings = app_settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql://", "postgresql+"))

    def _resolve_engine_kwargs(self) -> dict[str, Any]:
        if self._engine_kwargs is not None:
            return dict(self._engine_kwargs)
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if self.is_postgres and self._settings is not None:
            engine_kwargs.update(
                {
                    "pool_size": self._settings.database_pool_size,
                    "max_overflow": self._settings.database_max_overflow,
                    "pool_timeout": self._settings.database_pool_timeout_seconds,
                    "connect_args": {
                        "options": f"-c statement_timeout={int(self._settings.database_statement_timeout_ms)}",
                    },
                }
            )
        return engine_kwargs

    async def open(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, **self._resolve_engine_kwargs())
        _configure_error_logging(self._engine)
        instrument_sqlalchemy(self._engine.sync_engine)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)
        logger.info("database_opened", extra={"extra": {"dialect": self._engine.dialect.name}})

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("database_not_open")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("database_not_open")
        return self._session_factory

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


def _configure_error_logging(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning("db_pool_timeout")


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    factory = getattr(request.app.state, "db_session_factory", None)
    if factory is None:
        raise RuntimeError("database_not_open")
    return factory


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_factory = get_session_factory(request)
    try:
        async with session_factory() as session:
            yield session
    except TimeoutError as exc:
        logger.warning("db_pool_timeout", exc_info=exc)
        raise


async def insert_if_absent(
    session: AsyncSession,
    model,
    values: dict[str, Any],
    *,
    index_elements: Iterable[str],
) -> bool:
    """Atomically insert ``values`` unless a row with the same unique key exists.

    Returns True when this call created the row.
    """
    index_elements = list(index_elements)
    dialect = session.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        result = await session.execute(stmt)
        return result.rowcount == 1

    conditions = [getattr(model, column) == values[column] for column in index_elements]
    existing = await session.scalar(select(model).where(*conditions))
    if existing is not None:
        return False
    try:
        async with session.begin_nested():
            await session.execute(model.__table__.insert().values(**values))
    except IntegrityError:
        return False
    return True
