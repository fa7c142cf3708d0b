"""
errors.py — Error taxonomy for the stock reservation protocol

Every failure the protocol reasons about is one of the exceptions below. Each
class carries a stable `code` that is used on the wire, so an error raised by
the ledger inside the inventory service is raised again, unchanged, by the
HTTP client inside the order service.

    InventoryError
     ├── ItemNotFound         unknown item, terminal
     ├── InsufficientStock    business rejection, terminal
     ├── VersionConflict      transient contention, retried with a bound
     ├── StorageUnavailable   infrastructure failure, retried with backoff
     └── DuplicateOrder       idempotent replay, resolved by the prior result
"""

from typing import Optional


class InventoryError(Exception):
    """Base class for all protocol errors."""

    code = "INVENTORY_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ItemNotFound(InventoryError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class InsufficientStock(InventoryError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, requested: int, available: Optional[int] = None):
        super().__init__(f"Item {item_id}: requested {requested}, available {available}")
        self.item_id = item_id
        self.requested = requested
        self.available = available


class VersionConflict(InventoryError):
    code = "VERSION_CONFLICT"

    def __init__(self, item_id: str, expected: int, actual: Optional[int] = None):
        super().__init__(f"Item {item_id}: expected version {expected}, found {actual}")
        self.item_id = item_id
        self.expected = expected
        self.actual = actual


class StorageUnavailable(InventoryError):
    """Ledger, catalog or commit log could not be reached or did not answer."""

    code = "STORAGE_UNAVAILABLE"


class DuplicateOrder(InventoryError):
    """An order record with the same orderId already exists."""

    code = "DUPLICATE_ORDER"

    def __init__(self, order_id: str, existing=None):
        super().__init__(f"Order {order_id} already exists")
        self.order_id = order_id
        self.existing = existing
