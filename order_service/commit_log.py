"""
commit_log.py — Order Commit Log

Durable record of orders. Once `commit()` returns, the order is final: the
record has been written and the transaction committed, so a crash afterwards
cannot lose it.

Operations:
    append(record)                 insert a new record, DuplicateOrder on an existing orderId
    get(order_id)                  the record, or None
    commit(order_id)               Pending -> Committed
    transition(order_id, status)   Pending -> any terminal status
    pending(older_than)            Pending records awaiting reconciliation
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from contracts.errors import DuplicateOrder, StorageUnavailable

from .config import SQLITE_BUSY_TIMEOUT
from .models import OrderRecord, OrderStatus, RejectionReason

log = logging.getLogger(__name__)

metadata = MetaData()

order_records = Table(
    "order_records",
    metadata,
    Column("order_id", String(64), primary_key=True),
    Column("item_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("reason", String(32)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True)),
)


def create_log_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"timeout": SQLITE_BUSY_TIMEOUT, "check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def _to_record(row) -> OrderRecord:
    return OrderRecord(
        orderId=row.order_id,
        itemId=row.item_id,
        quantity=row.quantity,
        status=OrderStatus(row.status),
        reason=RejectionReason(row.reason) if row.reason else None,
        createdAt=row.created_at,
        updatedAt=row.updated_at,
    )


class OrderCommitLog:
    def __init__(self, engine: Engine):
        self.engine = engine

    def create_schema(self):
        metadata.create_all(self.engine)

    def append(self, record: OrderRecord) -> OrderRecord:
        """
        Appends a new order record.

        Raises:
            DuplicateOrder: A record with the same orderId exists; it is attached
                as `existing` when it can be read back.
            StorageUnavailable: The log could not be written.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(order_records).values(
                        order_id=record.orderId,
                        item_id=record.itemId,
                        quantity=record.quantity,
                        status=record.status.value,
                        reason=record.reason.value if record.reason else None,
                        created_at=record.createdAt,
                        updated_at=record.updatedAt,
                    )
                )
        except IntegrityError as e:
            raise DuplicateOrder(record.orderId, existing=self.get(record.orderId)) from e
        except SQLAlchemyError as e:
            log.error(f"[Order: {record.orderId}] Commit log append failed: {e}")
            raise StorageUnavailable("Order commit log unavailable") from e
        return record

    def get(self, order_id: str) -> Optional[OrderRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(order_records).where(order_records.c.order_id == order_id)
                ).first()
        except SQLAlchemyError as e:
            log.error(f"[Order: {order_id}] Commit log read failed: {e}")
            raise StorageUnavailable("Order commit log unavailable") from e
        return _to_record(row) if row is not None else None

    def commit(self, order_id: str) -> OrderRecord:
        """Finalizes a Pending order as Committed."""
        return self.transition(order_id, OrderStatus.COMMITTED)

    def transition(
            self,
            order_id: str,
            status: OrderStatus,
            reason: Optional[RejectionReason] = None,
    ) -> OrderRecord:
        """
        Moves a Pending record to `status`. Terminal records never change, so the
        returned record is the one actually stored: callers compare its status
        with the one they asked for.

        Raises:
            KeyError: No record exists for `order_id`.
            StorageUnavailable: The log could not be written.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(order_records)
                    .where(order_records.c.order_id == order_id)
                    .where(order_records.c.status == OrderStatus.PENDING.value)
                    .values(
                        status=status.value,
                        reason=reason.value if reason else None,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                row = conn.execute(
                    select(order_records).where(order_records.c.order_id == order_id)
                ).first()
        except SQLAlchemyError as e:
            log.error(f"[Order: {order_id}] Commit log transition to {status.value} failed: {e}")
            raise StorageUnavailable("Order commit log unavailable") from e
        if row is None:
            raise KeyError(order_id)
        record = _to_record(row)
        if record.status != status:
            log.warning(f"[Order: {order_id}] Transition to {status.value} ignored, record is {record.status.value}.")
        return record

    def pending(self, older_than: Optional[timedelta] = None) -> List[OrderRecord]:
        query = select(order_records).where(order_records.c.status == OrderStatus.PENDING.value)
        if older_than is not None:
            query = query.where(order_records.c.created_at <= datetime.now(timezone.utc) - older_than)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query.order_by(order_records.c.created_at)).all()
        except SQLAlchemyError as e:
            log.error(f"Commit log scan for pending orders failed: {e}")
            raise StorageUnavailable("Order commit log unavailable") from e
        return [_to_record(row) for row in rows]
