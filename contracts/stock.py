"""
stock.py — Wire models for the Stock Ledger API

These models describe the request and response bodies exchanged between the
order service and the inventory service. Field names follow the camelCase
convention used on the wire.
"""

from typing import Optional

from pydantic import BaseModel, Field


class CatalogItem(BaseModel):
    """
    Catalog entry as stored by the inventory service.

    Attributes:
        itemId (str): Unique item identifier.
        name (str): Human readable item name.
        available (int): Units currently available. Never negative.
        version (int): Optimistic-concurrency token, bumped on every mutation.
    """
    itemId: str
    name: str = ""
    available: int = Field(..., ge=0)
    version: int = Field(0, ge=0)


class PutItemRequest(BaseModel):
    name: str = ""
    available: int = Field(..., ge=0)


class StockLevel(BaseModel):
    """Result of readStock: the quantity together with the version it was read at."""
    itemId: str
    available: int
    version: int


class DecrementRequest(BaseModel):
    """
    Body of a conditional decrement.

    Attributes:
        quantity (int): Units to remove. Must be greater than zero.
        expectedVersion (int): Version observed by the caller's preceding read.
        orderId (str, optional): Idempotency key; a repeated decrement for the same
            orderId returns the original result instead of decrementing again.
    """
    quantity: int = Field(..., gt=0)
    expectedVersion: int = Field(..., ge=0)
    orderId: Optional[str] = None


class RestoreRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    orderId: Optional[str] = None


class StockMutation(BaseModel):
    """
    Result of a decrement or restore.

    `applied` is False when the call was recognised as a replay (or, for a
    restore, when the order never decremented anything) and stock was left as is.
    `quantity` is the number of units the order moved, including on a replay:
    a restore that reports 0 means the order never held any stock.
    """
    itemId: str
    available: int
    version: int
    quantity: int = 0
    applied: bool = True

