"""
catalog.py — Persistent Catalog Store for the Inventory Service

Plain key-value storage of catalog items (`get_item`, `put_item`) on top of
SQLAlchemy Core, plus the transaction primitive the Stock Ledger builds its
atomic operations on.

Tables:
    stock_items      one row per item: available quantity and version token
    stock_movements  journal of ledger mutations keyed by (order_id, kind)

On SQLite every transaction is opened with BEGIN IMMEDIATE, so the read and the
write inside one ledger operation hold the database write lock together. On
server databases the ledger reads rows FOR UPDATE and guards every UPDATE with
the expected version, which gives the same compare-and-swap semantics.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from contracts.errors import StorageUnavailable
from contracts.stock import CatalogItem

from .config import SQLITE_BUSY_TIMEOUT

log = logging.getLogger(__name__)

metadata = MetaData()

stock_items = Table(
    "stock_items",
    metadata,
    Column("item_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False, default=""),
    Column("available", Integer, nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("available >= 0", name="ck_stock_available_non_negative"),
)

# kind is "decrement" or "restore"
stock_movements = Table(
    "stock_movements",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("kind", String(16), primary_key=True),
    Column("item_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True)),
)


def create_store_engine(url: str) -> Engine:
    """
    Creates the SQLAlchemy engine for the catalog database.

    SQLite connections are switched to explicit transaction control and every
    transaction starts with BEGIN IMMEDIATE (the pysqlite recipe from the
    SQLAlchemy documentation).
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogStore:
    """
    Key-value access to catalog items.

    All storage failures are raised as `StorageUnavailable`; integrity errors
    are left to the caller, since they carry meaning (duplicate journal rows).
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create_schema(self):
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self):
        """Yields a connection inside a single committed-or-rolled-back transaction."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            log.error(f"Catalog store unavailable: {e}")
            raise StorageUnavailable(f"Catalog store unavailable: {e.__class__.__name__}") from e

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        with self.transaction() as conn:
            row = conn.execute(
                select(stock_items).where(stock_items.c.item_id == item_id)
            ).first()
        if row is None:
            return None
        return CatalogItem(itemId=row.item_id, name=row.name, available=row.available, version=row.version)

    def put_item(self, item_id: str, available: int, name: str = "") -> CatalogItem:
        """
        Creates an item or overwrites its available quantity.

        An overwrite bumps the version, so any quote taken before the put fails
        its conditional decrement with a version conflict.
        """
        with self.transaction() as conn:
            row = conn.execute(
                select(stock_items).where(stock_items.c.item_id == item_id).with_for_update()
            ).first()
            if row is None:
                conn.execute(
                    insert(stock_items).values(
                        item_id=item_id, name=name, available=available, version=0, updated_at=utcnow()
                    )
                )
                version = 0
            else:
                version = row.version + 1
                name = name or row.name
                conn.execute(
                    update(stock_items)
                    .where(stock_items.c.item_id == item_id)
                    .values(name=name, available=available, version=version, updated_at=utcnow())
                )
        log.info(f"[Item: {item_id}] Catalog put: available={available}, version={version}")
        return CatalogItem(itemId=item_id, name=name, available=available, version=version)
