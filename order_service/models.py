"""
models.py — Data Models for Order Processing

This module defines the data structures used for order requests, the durable
order records kept by the commit log, and the outcome returned to callers.
It uses Pydantic models to ensure type safety and automatic validation of incoming data.

Models:
    - OrderRequest: An incoming request to reserve stock for one item.
    - OrderRecord: The durable record of an order in the Order Commit Log.
    - OrderOutcome: The terminal (or in-flight) result returned to the caller.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "Pending"
    COMMITTED = "Committed"
    FAILED = "Failed"
    COMPENSATED = "Compensated"


class RejectionReason(str, Enum):
    UNKNOWN_ITEM = "UnknownItem"
    INSUFFICIENT_STOCK = "InsufficientStock"
    CONTENTION = "Contention"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


class OrderResult(str, Enum):
    COMMITTED = "Committed"
    REJECTED = "Rejected"
    COMPENSATED = "Compensated"
    PENDING = "Pending"


RESULT_BY_STATUS = {
    OrderStatus.PENDING: OrderResult.PENDING,
    OrderStatus.COMMITTED: OrderResult.COMMITTED,
    OrderStatus.FAILED: OrderResult.REJECTED,
    OrderStatus.COMPENSATED: OrderResult.COMPENSATED,
}


def new_order_id() -> str:
    return str(uuid.uuid4())


class OrderRequest(BaseModel):
    """
    Represents an order for a single item.

    Attributes:
        orderId (str): Idempotency key of the order. Assigned when the caller omits it;
            callers that may retry after a timeout must send their own.
        itemId (str): The item to take stock from.
        quantity (int): Units requested. Must be greater than zero.
    """
    orderId: str = Field(default_factory=new_order_id)
    itemId: str
    quantity: int = Field(..., gt=0)


class OrderRecord(BaseModel):
    """
    Durable record of an order.

    Created as Pending right before the first decrement is attempted (or directly
    as Failed for a rejection), then moved once to a terminal status.
    """
    orderId: str
    itemId: str
    quantity: int
    status: OrderStatus
    reason: Optional[RejectionReason] = None
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updatedAt: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != OrderStatus.PENDING


class OrderOutcome(BaseModel):
    """
    What the order requester gets back: Committed(orderId), Rejected(reason),
    Compensated(orderId), or Pending while another execution owns the order.

    `replayed` is set when the outcome was read from an existing record
    instead of being produced by this call.
    """
    orderId: str
    result: OrderResult
    reason: Optional[RejectionReason] = None
    replayed: bool = False

    @classmethod
    def from_record(cls, record: OrderRecord, replayed: bool = False) -> "OrderOutcome":
        return cls(
            orderId=record.orderId,
            result=RESULT_BY_STATUS[record.status],
            reason=record.reason,
            replayed=replayed,
        )
