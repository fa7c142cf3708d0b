"""
workflow.py — Reservation Protocol for Order Processing

This module contains the protocol that takes stock for an order from the
inventory authority and records the order, without any transaction spanning
both services.

Protocol Overview:
    Start ──readStock──▶ Quoted ──conditionalDecrement──▶ Decremented ──commit──▶ Recorded
      │                    │                                   │
      │ unknown item       │ insufficient stock / contention   │ record not finalized
      ▼                    ▼                                   ▼
    Rejected            Rejected                         Compensating ──restore──▶ Compensated

1. Read the current stock and its version token.
2. Reject without touching the ledger when the quantity is not available.
   Otherwise write a Pending record and decrement, passing the version read in
   step 1. A version conflict restarts from step 1 (bounded, jittered backoff).
3. Move the record to Committed. From here on the order is final.
4. If the record cannot be finalized, restore the stock (retried until it
   succeeds, with alerting) and mark the order Compensated.

The orderId is the idempotency key: re-entering the protocol for an order that
already has a record returns that record's outcome and never decrements again.
Once a Pending record exists the protocol runs to a terminal state inside the
calling thread, whether or not the original caller is still waiting.
"""

import logging
import threading
import time
from datetime import timedelta
from enum import Enum
from typing import Callable, List, Optional

from contracts.errors import (
    DuplicateOrder,
    InsufficientStock,
    ItemNotFound,
    StorageUnavailable,
    VersionConflict,
)

from .compensation import (
    TRANSIENT_POLICY,
    CompensationController,
    CompensationFailed,
    RetryPolicy,
    call_with_retries,
)
from .models import (
    OrderOutcome,
    OrderRecord,
    OrderRequest,
    OrderResult,
    OrderStatus,
    RejectionReason,
)

log = logging.getLogger(__name__)


class ProtocolState(str, Enum):
    START = "Start"
    QUOTED = "Quoted"
    DECREMENTED = "Decremented"
    RECORDED = "Recorded"
    REJECTED = "Rejected"
    COMPENSATING = "Compensating"
    COMPENSATED = "Compensated"


class ReservationProtocol:
    """
    Executes the reservation protocol for single-item orders.

    Args:
        ledger: StockLedger or InventoryClient (read_stock, conditional_decrement, restore).
        commit_log (OrderCommitLog): Durable order records.
        compensation (CompensationController): Restores stock when a decrement cannot be recorded.
        policy (RetryPolicy): Bound for version conflicts and transient storage failures.
        sleep (callable): Used for backoff delays.
    """

    def __init__(
            self,
            ledger,
            commit_log,
            compensation: CompensationController,
            policy: RetryPolicy = TRANSIENT_POLICY,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.commit_log = commit_log
        self.compensation = compensation
        self.policy = policy
        self.sleep = sleep

    def _enter(self, order_id: str, state: ProtocolState):
        log.info(f"[Order: {order_id}] -> {state.value}")

    def process_order(self, request: OrderRequest) -> OrderOutcome:
        """
        Runs one order through the protocol and returns its outcome.

        Returns:
            OrderOutcome: Committed, Rejected(reason) or Compensated; Pending only
            when another execution currently owns the same orderId.
        """
        order_id = request.orderId
        log_prefix = f"[Order: {order_id}]"
        log.info(f"{log_prefix} Processing order: {request.quantity} x {request.itemId}.")

        try:
            existing = call_with_retries(
                lambda: self.commit_log.get(order_id), self.policy, log_prefix=log_prefix, sleep=self.sleep
            )
        except StorageUnavailable:
            log.error(f"{log_prefix} Rejected: order log unreachable, cannot check for a previous attempt.")
            return OrderOutcome(
                orderId=order_id, result=OrderResult.REJECTED, reason=RejectionReason.STORAGE_UNAVAILABLE
            )
        if existing is not None:
            return self._replay(request, existing)

        self._enter(order_id, ProtocolState.START)
        pending = False
        conflicts = 0
        storage_failures = 0

        while True:
            # --- Start -> Quoted ---
            try:
                level = self.ledger.read_stock(request.itemId)
            except ItemNotFound:
                return self._reject(request, RejectionReason.UNKNOWN_ITEM, pending)
            except StorageUnavailable as e:
                if self.policy.exhausted(storage_failures):
                    log.error(f"{log_prefix} Stock read failed, retries exhausted: {e}")
                    return self._reject(request, RejectionReason.STORAGE_UNAVAILABLE, pending)
                self.sleep(self.policy.backoff(storage_failures))
                storage_failures += 1
                continue
            self._enter(order_id, ProtocolState.QUOTED)

            if request.quantity > level.available:
                log.info(f"{log_prefix} Requested {request.quantity}, only {level.available} available.")
                return self._reject(request, RejectionReason.INSUFFICIENT_STOCK, pending)

            # --- Pending record, written once before the first decrement ---
            if not pending:
                try:
                    call_with_retries(
                        lambda: self.commit_log.append(
                            OrderRecord(
                                orderId=order_id,
                                itemId=request.itemId,
                                quantity=request.quantity,
                                status=OrderStatus.PENDING,
                            )
                        ),
                        self.policy,
                        log_prefix=log_prefix,
                        sleep=self.sleep,
                    )
                except DuplicateOrder as e:
                    log.info(f"{log_prefix} Another execution already owns this order.")
                    if e.existing is not None:
                        return self._replay(request, e.existing)
                    return OrderOutcome(orderId=order_id, result=OrderResult.PENDING, replayed=True)
                except StorageUnavailable:
                    return self._reject(request, RejectionReason.STORAGE_UNAVAILABLE, pending)
                pending = True

            # --- Quoted -> Decremented ---
            try:
                mutation = call_with_retries(
                    lambda: self.ledger.conditional_decrement(
                        request.itemId, request.quantity, level.version, order_id=order_id
                    ),
                    self.policy,
                    log_prefix=log_prefix,
                    sleep=self.sleep,
                )
            except VersionConflict:
                if self.policy.exhausted(conflicts):
                    log.warning(f"{log_prefix} Version conflicts on {request.itemId}, retries exhausted.")
                    return self._reject(request, RejectionReason.CONTENTION, pending)
                delay = self.policy.backoff(conflicts)
                conflicts += 1
                log.info(f"{log_prefix} Version conflict on {request.itemId}, "
                         f"restart {conflicts} in {delay:.3f}s.")
                self.sleep(delay)
                self._enter(order_id, ProtocolState.START)
                continue
            except InsufficientStock:
                return self._reject(request, RejectionReason.INSUFFICIENT_STOCK, pending)
            except ItemNotFound:
                return self._reject(request, RejectionReason.UNKNOWN_ITEM, pending)
            except DuplicateOrder:
                # The ledger already holds a restore for this order (reconciliation got there first).
                return self._compensate(request)
            except StorageUnavailable:
                log.error(f"{log_prefix} Decrement outcome unknown after retries, compensating.")
                return self._compensate(request)
            break

        self._enter(order_id, ProtocolState.DECREMENTED)
        if not mutation.applied:
            log.info(f"{log_prefix} Decrement had already been applied at version {mutation.version}.")

        # --- Decremented -> Recorded ---
        try:
            record = self.commit_log.commit(order_id)
        except StorageUnavailable:
            log.error(f"{log_prefix} Order could not be recorded after decrement, compensating.")
            return self._compensate(request, check_committed=True)

        if record.status != OrderStatus.COMMITTED:
            return OrderOutcome.from_record(record, replayed=True)
        self._enter(order_id, ProtocolState.RECORDED)
        log.info(f"{log_prefix} Order committed: {request.quantity} x {request.itemId} "
                 f"(version {mutation.version}).")
        return OrderOutcome.from_record(record)

    def _replay(self, request: OrderRequest, existing: OrderRecord) -> OrderOutcome:
        log_prefix = f"[Order: {request.orderId}]"
        if existing.itemId != request.itemId or existing.quantity != request.quantity:
            log.warning(f"{log_prefix} Replay differs from the recorded order "
                        f"({existing.quantity} x {existing.itemId}); returning the recorded result.")
        log.info(f"{log_prefix} Replay: order is already {existing.status.value}.")
        return OrderOutcome.from_record(existing, replayed=True)

    def _reject(self, request: OrderRequest, reason: RejectionReason, pending: bool) -> OrderOutcome:
        """Records the order as Failed and returns the rejection. Stock was never touched."""
        order_id = request.orderId
        log_prefix = f"[Order: {order_id}]"
        self._enter(order_id, ProtocolState.REJECTED)
        log.warning(f"{log_prefix} Rejected: {reason.value}.")

        try:
            if pending:
                record = self.commit_log.transition(order_id, OrderStatus.FAILED, reason)
            else:
                record = self.commit_log.append(
                    OrderRecord(
                        orderId=order_id,
                        itemId=request.itemId,
                        quantity=request.quantity,
                        status=OrderStatus.FAILED,
                        reason=reason,
                    )
                )
        except DuplicateOrder as e:
            if e.existing is not None:
                return self._replay(request, e.existing)
            record = None
        except StorageUnavailable:
            # A rejection holds no stock; the order may simply be retried.
            log.warning(f"{log_prefix} Rejection could not be recorded.")
            record = None

        if record is not None and record.status != OrderStatus.FAILED:
            return OrderOutcome.from_record(record, replayed=True)
        return OrderOutcome(orderId=order_id, result=OrderResult.REJECTED, reason=reason)

    def _compensate(self, request: OrderRequest, check_committed: bool = False) -> OrderOutcome:
        """
        Compensating -> Compensated.

        Restores whatever the order decremented and finalizes its record. The
        order ends Compensated if stock was put back, or Failed(StorageUnavailable)
        if the ledger shows the order never decremented anything.
        """
        order_id = request.orderId
        log_prefix = f"[Order: {order_id}]"

        if check_committed:
            # The commit may have been applied even though its acknowledgment was lost.
            try:
                record = call_with_retries(
                    lambda: self.commit_log.get(order_id), self.policy, log_prefix=log_prefix, sleep=self.sleep
                )
            except StorageUnavailable:
                record = None
            if record is not None and record.status == OrderStatus.COMMITTED:
                log.info(f"{log_prefix} Commit had been applied, no compensation needed.")
                return OrderOutcome.from_record(record)

        self._enter(order_id, ProtocolState.COMPENSATING)
        try:
            mutation = self.compensation.restore(order_id, request.itemId, request.quantity)
        except CompensationFailed as e:
            log.critical(f"{log_prefix} Order left Pending for reconciliation: {e}")
            return OrderOutcome(orderId=order_id, result=OrderResult.PENDING)

        if mutation.quantity > 0:
            status, reason = OrderStatus.COMPENSATED, None
        else:
            status, reason = OrderStatus.FAILED, RejectionReason.STORAGE_UNAVAILABLE

        try:
            record = call_with_retries(
                lambda: self.commit_log.transition(order_id, status, reason),
                self.policy,
                log_prefix=log_prefix,
                sleep=self.sleep,
            )
        except StorageUnavailable:
            # Stock is back; the reconciliation sweep finalizes the record later.
            log.error(f"{log_prefix} Stock restored but record still Pending.")
            record = None
        except KeyError:
            log.error(f"{log_prefix} No order record to finalize after compensation.")
            record = None

        if record is not None and record.status == OrderStatus.COMMITTED:
            log.critical(f"{log_prefix} INCONSISTENT: order is Committed but its stock was restored. "
                         f"MANUAL ACTION REQUIRED!")
            self.compensation.alerts.publish_alert(
                order_id, request.itemId, request.quantity, 0, "Committed order was compensated"
            )
            return OrderOutcome.from_record(record)

        if status == OrderStatus.COMPENSATED:
            self._enter(order_id, ProtocolState.COMPENSATED)
            return OrderOutcome(orderId=order_id, result=OrderResult.COMPENSATED)
        self._enter(order_id, ProtocolState.REJECTED)
        return OrderOutcome(orderId=order_id, result=OrderResult.REJECTED, reason=reason)

    def reconcile_pending(self, older_than: Optional[timedelta] = None) -> List[OrderOutcome]:
        """
        Drives Pending records left behind (by a crash, or by a compensation that
        could not finish) through compensation to a terminal state.
        """
        outcomes = []
        for record in self.commit_log.pending(older_than):
            log.warning(f"[Order: {record.orderId}] Reconciling order left Pending since {record.createdAt}.")
            request = OrderRequest(orderId=record.orderId, itemId=record.itemId, quantity=record.quantity)
            outcomes.append(self._compensate(request))
        return outcomes


def start_reconciliation_loop(
        protocol: ReservationProtocol,
        older_than: timedelta,
        interval: float,
        stop: threading.Event,
):
    """
    Periodically reconciles Pending orders until `stop` is set.
    Runs in a background thread started by the API on startup.
    """
    log.info("Reconciliation loop starting...")
    while not stop.is_set():
        try:
            outcomes = protocol.reconcile_pending(older_than)
            if outcomes:
                log.info(f"Reconciliation finished {len(outcomes)} pending order(s).")
        except StorageUnavailable as e:
            log.warning(f"Reconciliation skipped, order log unavailable: {e}")
        stop.wait(interval)
    log.info("Reconciliation loop stopped.")
