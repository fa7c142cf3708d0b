"""
ledger.py — Stock Ledger, the single source of truth for available quantities

The ledger exposes three operations, each one atomic on its own:

    read_stock(item_id)                                   -> StockLevel
    conditional_decrement(item_id, qty, expected_version) -> StockMutation
    restore(item_id, qty)                                 -> StockMutation

No lock is held between calls. A caller that wants "check, then decrement"
passes the version it read to `conditional_decrement`; if anything changed the
item in between, the decrement fails with `VersionConflict` and the caller
decides whether to try again. Insufficient stock is reported before a version
mismatch, whatever version the caller read.

Mutations may carry an order id. The ledger journals every keyed mutation in
the same transaction as the stock change, which makes both operations safe to
repeat: a second decrement for the same order returns the first result, and a
restore undoes exactly what that order decremented, once.
"""

import logging
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from contracts.errors import (
    DuplicateOrder,
    InsufficientStock,
    ItemNotFound,
    StorageUnavailable,
    VersionConflict,
)
from contracts.stock import StockLevel, StockMutation

from .catalog import CatalogStore, stock_items, stock_movements, utcnow

log = logging.getLogger(__name__)

DECREMENT = "decrement"
RESTORE = "restore"


class StockLedger:
    """
    Versioned stock records layered on the catalog store.

    Invariants:
        - available never drops below zero
        - version increases by one on every applied mutation
        - for one item, applied decrements are totally ordered by version
    """

    def __init__(self, catalog: CatalogStore):
        self.catalog = catalog

    def read_stock(self, item_id: str) -> StockLevel:
        """
        Returns the current quantity and version of an item.

        Raises:
            ItemNotFound: If the item does not exist.
            StorageUnavailable: If the catalog cannot be read.
        """
        item = self.catalog.get_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        return StockLevel(itemId=item.itemId, available=item.available, version=item.version)

    def conditional_decrement(
            self,
            item_id: str,
            quantity: int,
            expected_version: int,
            order_id: Optional[str] = None,
    ) -> StockMutation:
        """
        Removes `quantity` units if the item exists, holds enough stock and is
        still at `expected_version`. Check and write happen in one transaction.

        When `order_id` was already decremented, the original result is returned
        with `applied=False` and stock is left untouched.

        Raises:
            ItemNotFound: The item does not exist.
            VersionConflict: The item changed since `expected_version` was read.
            InsufficientStock: The item holds fewer than `quantity` units.
            DuplicateOrder: The order was already compensated; it must not
                decrement again.
            StorageUnavailable: The catalog could not complete the transaction.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        try:
            return self._decrement(item_id, quantity, expected_version, order_id)
        except IntegrityError:
            # Another request for the same order committed its journal row first.
            log.info(f"[Order: {order_id}] Concurrent decrement for the same order, returning its result.")
            try:
                return self._decrement(item_id, quantity, expected_version, order_id)
            except IntegrityError as e:
                raise StorageUnavailable(f"Journal conflict for order {order_id}") from e

    def _decrement(self, item_id, quantity, expected_version, order_id) -> StockMutation:
        with self.catalog.transaction() as conn:
            if order_id is not None:
                journal = self._journal(conn, order_id)
                if RESTORE in journal:
                    raise DuplicateOrder(order_id)
                if DECREMENT in journal:
                    prior = journal[DECREMENT]
                    current = self._locked_row(conn, prior.item_id)
                    log.info(f"[Order: {order_id}] Decrement replay, already applied at version {prior.version}.")
                    return StockMutation(
                        itemId=prior.item_id,
                        available=current.available if current is not None else 0,
                        version=prior.version,
                        quantity=prior.quantity,
                        applied=False,
                    )

            row = self._locked_row(conn, item_id)
            if row is None:
                raise ItemNotFound(item_id)
            # sufficiency before version
            if row.available < quantity:
                raise InsufficientStock(item_id, quantity, row.available)
            if row.version != expected_version:
                raise VersionConflict(item_id, expected_version, row.version)

            new_version = row.version + 1
            result = conn.execute(
                update(stock_items)
                .where(stock_items.c.item_id == item_id)
                .where(stock_items.c.version == expected_version)
                .where(stock_items.c.available >= quantity)
                .values(
                    available=stock_items.c.available - quantity,
                    version=new_version,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                raise VersionConflict(item_id, expected_version, row.version)

            if order_id is not None:
                conn.execute(
                    insert(stock_movements).values(
                        order_id=order_id,
                        kind=DECREMENT,
                        item_id=item_id,
                        quantity=quantity,
                        version=new_version,
                        created_at=utcnow(),
                    )
                )

        log.info(f"[Order: {order_id}] Decremented {item_id} by {quantity}: "
                 f"available={row.available - quantity}, version={new_version}")
        return StockMutation(
            itemId=item_id, available=row.available - quantity, version=new_version, quantity=quantity
        )

    def restore(self, item_id: str, quantity: int, order_id: Optional[str] = None) -> StockMutation:
        """
        Compensating increment. Never checks the version, so concurrent
        orders cannot block it.

        With an `order_id`, the quantity that order actually decremented is put
        back, at most once; if the order never decremented anything the call is
        a successful no-op and later decrements for that order are refused.

        Raises:
            ItemNotFound: The item does not exist.
            StorageUnavailable: The catalog could not complete the transaction.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        try:
            return self._restore(item_id, quantity, order_id)
        except IntegrityError:
            log.info(f"[Order: {order_id}] Concurrent restore for the same order, returning its result.")
            try:
                return self._restore(item_id, quantity, order_id)
            except IntegrityError as e:
                raise StorageUnavailable(f"Journal conflict for order {order_id}") from e

    def _restore(self, item_id, quantity, order_id) -> StockMutation:
        with self.catalog.transaction() as conn:
            row = self._locked_row(conn, item_id)
            if row is None:
                raise ItemNotFound(item_id)

            amount = quantity
            if order_id is not None:
                journal = self._journal(conn, order_id)
                if RESTORE in journal:
                    log.info(f"[Order: {order_id}] Restore replay, nothing to do.")
                    return StockMutation(
                        itemId=item_id,
                        available=row.available,
                        version=row.version,
                        quantity=journal[RESTORE].quantity,
                        applied=False,
                    )
                amount = journal[DECREMENT].quantity if DECREMENT in journal else 0

            version = row.version
            if amount:
                version = row.version + 1
                conn.execute(
                    update(stock_items)
                    .where(stock_items.c.item_id == item_id)
                    .values(available=stock_items.c.available + amount, version=version, updated_at=utcnow())
                )

            if order_id is not None:
                conn.execute(
                    insert(stock_movements).values(
                        order_id=order_id,
                        kind=RESTORE,
                        item_id=item_id,
                        quantity=amount,
                        version=version,
                        created_at=utcnow(),
                    )
                )

        if amount:
            log.info(f"[Order: {order_id}] Restored {amount} of {item_id}: "
                     f"available={row.available + amount}, version={version}")
        else:
            log.info(f"[Order: {order_id}] Restore for {item_id}: order never decremented, nothing restored.")
        return StockMutation(
            itemId=item_id, available=row.available + amount, version=version, quantity=amount, applied=bool(amount)
        )

    @staticmethod
    def _locked_row(conn, item_id):
        return conn.execute(
            select(stock_items).where(stock_items.c.item_id == item_id).with_for_update()
        ).first()

    @staticmethod
    def _journal(conn, order_id) -> dict:
        rows = conn.execute(
            select(stock_movements).where(stock_movements.c.order_id == order_id)
        ).all()
        return {row.kind: row for row in rows}
