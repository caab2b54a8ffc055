"""
SQL Backend Client Implementation

Production implementation: PostgreSQL through SQLAlchemy async sessions
for point queries and writes, and the Redis change feed for realtime
notifications. Every committed write publishes its change notification,
standing in for the database's change-data-capture trigger.

Requirements:
    - DATABASE_URL pointing at an async driver (postgresql+psycopg://...)
    - REDIS_URL for the change feed

Version: 1.0.0
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence

from redis.asyncio import Redis
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ordersync.core.config import Settings, get_settings
from ordersync.database import create_engine_from_settings, create_session_factory, init_db
from ordersync.models import MODELS
from ordersync.schemas import ChangeEvent, ChangeType
from ordersync.services.backend.base import (
    BackendError,
    BaseBackendClient,
    ChangeFilter,
    ChangeHandler,
    DuplicateRecord,
    RecordNotFound,
    Subscription,
    changed_columns,
    relation_foreign_key,
    strip_unknown,
)
from ordersync.services.backend.feed import RedisChangeFeed

logger = logging.getLogger(__name__)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime) and value.tzinfo is None:
        # SQLite hands back naive datetimes
        return value.replace(tzinfo=timezone.utc)
    return value


def row_to_dict(obj: Any, relations: Sequence[str] = ()) -> dict[str, Any]:
    """Serialize a mapped row (and loaded relations) to a plain dict."""
    data = {
        column.key: _column_value(getattr(obj, column.key))
        for column in obj.__table__.columns
    }
    for relation in relations:
        data[relation] = [row_to_dict(child) for child in getattr(obj, relation)]
    return data


def _integrity_error(table: str, error: IntegrityError) -> BackendError:
    """Map unique violations (PostgreSQL 23505, SQLite) to DuplicateRecord."""
    orig = error.orig
    if getattr(orig, "sqlstate", None) == "23505" or "UNIQUE constraint failed" in str(orig):
        return DuplicateRecord(f"Duplicate row in {table}: {orig}", table=table)
    return BackendError(f"Integrity error on {table}: {orig}", table=table)


class SqlBackendClient(BaseBackendClient):
    """
    Production backend client.

    Example:
        >>> backend = create_sql_backend()
        >>> await backend.initialize()
        >>> order = await backend.fetch_one("orders", order_id, relations=("order_items",))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: RedisChangeFeed,
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self._feed = feed
        self._engine = engine
        logger.info("SqlBackendClient initialized")

    @property
    def provider_name(self) -> str:
        return "sql"

    async def initialize(self) -> None:
        if self._engine is not None:
            await init_db(self._engine)

    def _model(self, table: str):
        try:
            return MODELS[table]
        except KeyError:
            raise BackendError(f"Unknown table {table}", table=table) from None

    def _load_options(self, table: str, model, relations: Sequence[str]) -> list:
        options = []
        for relation in relations:
            relation_foreign_key(table, relation)
            options.append(selectinload(getattr(model, relation)))
        return options

    def _build(self, model, values: dict[str, Any]):
        columns = model.__table__.columns.keys()
        return model(**{k: _column_value(v) for k, v in strip_unknown(values, columns).items()})

    async def _publish(self, event: ChangeEvent, row: dict[str, Any]) -> None:
        # Already committed: a lost notification is not a failed write
        try:
            await self._feed.publish(event, row)
        except BackendError as e:
            logger.error(f"Committed {event.event_type.value} on {event.table} {event.key} not published: {e}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def fetch_one(
        self,
        table: str,
        key: str,
        relations: Sequence[str] = (),
    ) -> dict[str, Any]:
        model = self._model(table)
        stmt = (
            select(model)
            .where(model.id == key)
            .options(*self._load_options(table, model, relations))
        )
        try:
            async with self._session_factory() as session:
                obj = (await session.execute(stmt)).scalar_one_or_none()
                if obj is None:
                    raise RecordNotFound(table, key)
                return row_to_dict(obj, relations)
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to fetch {table} {key}: {e}", table=table, key=key) from e

    async def fetch_many(
        self,
        table: str,
        *,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        relations: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        model = self._model(table)
        stmt = select(model).options(*self._load_options(table, model, relations))
        for column, value in (filters or {}).items():
            stmt = stmt.where(getattr(model, column) == _column_value(value))
        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row_to_dict(obj, relations) for obj in result.scalars().all()]
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to list {table}: {e}", table=table) from e

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        try:
            async with self._session_factory() as session:
                obj = self._build(model, values)
                session.add(obj)
                await session.commit()
                await session.refresh(obj)
                row = row_to_dict(obj)
        except IntegrityError as e:
            raise _integrity_error(table, e) from e
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to insert into {table}: {e}", table=table) from e

        await self._publish(ChangeEvent(event_type=ChangeType.INSERT, table=table, new_record=row), row)
        return row

    async def insert_with_children(
        self,
        table: str,
        values: dict[str, Any],
        children: dict[str, list[dict[str, Any]]],
    ) -> dict[str, Any]:
        model = self._model(table)
        relations = list(children)
        try:
            async with self._session_factory() as session:
                parent = self._build(model, values)
                session.add(parent)
                # Assigns the parent id
                await session.flush()
                key = parent.id
                for relation, rows in children.items():
                    fk = relation_foreign_key(table, relation)
                    child_model = self._model(relation)
                    session.add_all([self._build(child_model, {**row, fk: key}) for row in rows])
                await session.commit()

                stmt = (
                    select(model)
                    .where(model.id == key)
                    .options(*self._load_options(table, model, relations))
                    .execution_options(populate_existing=True)
                )
                obj = (await session.execute(stmt)).scalar_one()
                row = row_to_dict(obj, relations)
        except IntegrityError as e:
            raise _integrity_error(table, e) from e
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to insert into {table}: {e}", table=table) from e

        parent_row = {k: v for k, v in row.items() if k not in children}
        await self._publish(
            ChangeEvent(event_type=ChangeType.INSERT, table=table, new_record=parent_row),
            parent_row,
        )
        for relation in relations:
            for child in row[relation]:
                await self._publish(
                    ChangeEvent(event_type=ChangeType.INSERT, table=relation, new_record=child),
                    child,
                )
        return row

    async def update(self, table: str, key: str, values: dict[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        columns = model.__table__.columns.keys()
        try:
            async with self._session_factory() as session:
                obj = await session.get(model, key)
                if obj is None:
                    raise RecordNotFound(table, key)
                before = row_to_dict(obj)
                diff = changed_columns(
                    before,
                    {k: _column_value(v) for k, v in strip_unknown(values, columns).items()},
                )
                for column, value in diff.items():
                    setattr(obj, column, value)
                await session.commit()
                await session.refresh(obj)
                row = row_to_dict(obj)
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to update {table} {key}: {e}", table=table, key=key) from e

        await self._publish(
            ChangeEvent(
                event_type=ChangeType.UPDATE,
                table=table,
                new_record={"id": key, **diff, "updated_at": row.get("updated_at")},
                old_record={"id": key},
            ),
            row,
        )
        return row

    async def update_where(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        rows = await self.fetch_many(table, filters=filters)
        return [await self.update(table, row["id"], values) for row in rows]

    async def delete(self, table: str, key: str) -> None:
        model = self._model(table)
        try:
            async with self._session_factory() as session:
                obj = await session.get(model, key)
                if obj is None:
                    raise RecordNotFound(table, key)
                row = row_to_dict(obj)
                await session.delete(obj)
                await session.commit()
        except SQLAlchemyError as e:
            raise BackendError(f"Failed to delete {table} {key}: {e}", table=table, key=key) from e

        await self._publish(
            ChangeEvent(event_type=ChangeType.DELETE, table=table, old_record={"id": key}),
            row,
        )

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        change_filter: Optional[ChangeFilter] = None,
    ) -> Subscription:
        self._model(table)
        return await self._feed.subscribe(table, handler, change_filter)

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return await self._feed.ping()

    async def close(self) -> None:
        await self._feed.close()
        if self._engine is not None:
            await self._engine.dispose()


def create_sql_backend(settings: Optional[Settings] = None) -> SqlBackendClient:
    """Build the production client from settings."""
    settings = settings or get_settings()
    engine = create_engine_from_settings(settings)
    feed = RedisChangeFeed(
        Redis.from_url(settings.redis_url),
        prefix=settings.change_channel_prefix,
    )
    return SqlBackendClient(create_session_factory(engine), feed, engine=engine)
