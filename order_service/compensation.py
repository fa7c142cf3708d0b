"""
compensation.py — Compensation/Retry Controller

Two retry regimes govern the reservation protocol:

    • Transient (TRANSIENT_POLICY): version conflicts and storage hiccups before
      the order holds any stock. Bounded exponential backoff with full jitter;
      once exhausted the order is rejected with an explicit reason.

    • Compensation (COMPENSATION_POLICY): restoring stock after a decrement
      that could not be recorded. Retries never stop. After `alert_after`
      failed attempts an operator alert is published, and retrying continues,
      because a decrement without a record silently loses inventory.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

from contracts.errors import ItemNotFound, StorageUnavailable
from contracts.stock import StockMutation

from .config import (
    COMPENSATION_ALERT_AFTER,
    COMPENSATION_MAX_DELAY,
    RESERVATION_MAX_RETRIES,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)

log = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Exponential backoff with full jitter.

    Attributes:
        max_retries (int, optional): Retries allowed after the first attempt.
            None retries forever.
        base_delay (float): Upper bound of the first delay, in seconds.
        max_delay (float): Cap for the upper bound of any delay.
    """
    max_retries: Optional[int] = 3
    base_delay: float = 0.05
    max_delay: float = 1.0

    def exhausted(self, retries: int) -> bool:
        return self.max_retries is not None and retries >= self.max_retries

    def backoff(self, retry: int) -> float:
        """Delay before retry number `retry` (0-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** min(retry, 32)))
        return random.uniform(0, ceiling)


TRANSIENT_POLICY = RetryPolicy(RESERVATION_MAX_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY)
COMPENSATION_POLICY = RetryPolicy(None, RETRY_BASE_DELAY, COMPENSATION_MAX_DELAY)


def call_with_retries(
        fn: Callable,
        policy: RetryPolicy,
        retry_on: Tuple[Type[BaseException], ...] = (StorageUnavailable,),
        log_prefix: str = "",
        sleep: Callable[[float], None] = time.sleep,
):
    """
    Calls `fn` until it returns, retrying the exceptions in `retry_on` under
    `policy`. The last exception propagates once the policy is exhausted.
    """
    retries = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            if policy.exhausted(retries):
                log.error(f"{log_prefix} Giving up after {retries} retries: {e}")
                raise
            delay = policy.backoff(retries)
            retries += 1
            log.warning(f"{log_prefix} Transient failure ({e}), retry {retries} in {delay:.3f}s.")
            sleep(delay)


class CompensationFailed(Exception):
    """Stock could not be restored; the order needs manual reconciliation."""

    def __init__(self, order_id: str, cause: Exception):
        super().__init__(f"Compensation for order {order_id} failed: {cause}")
        self.order_id = order_id
        self.cause = cause


class CompensationController:
    """
    Restores stock for an order whose decrement could not be finalized.

    The ledger's restore is keyed by order id, so running this more than once
    for the same order (after a crash, or from the reconciliation loop) puts
    stock back at most once.
    """

    def __init__(
            self,
            ledger,
            alerts,
            policy: RetryPolicy = COMPENSATION_POLICY,
            alert_after: int = COMPENSATION_ALERT_AFTER,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.alerts = alerts
        self.policy = policy
        self.alert_after = alert_after
        self.sleep = sleep

    def restore(self, order_id: str, item_id: str, quantity: int) -> StockMutation:
        """
        Calls the ledger's restore until it succeeds.

        Raises:
            CompensationFailed: The item no longer exists, or a bounded policy ran
                out. An alert has been published in both cases.
        """
        log_prefix = f"[Order: {order_id}]"
        failures = 0
        alerted = False

        while True:
            try:
                mutation = self.ledger.restore(item_id, quantity, order_id=order_id)
            except ItemNotFound as e:
                log.critical(f"{log_prefix} COMPENSATION IMPOSSIBLE: item {item_id} no longer exists.")
                self.alerts.publish_alert(order_id, item_id, quantity, failures + 1, str(e))
                raise CompensationFailed(order_id, e) from e
            except StorageUnavailable as e:
                failures += 1
                log.error(f"{log_prefix} Compensation attempt {failures} failed: {e}")
                if failures >= self.alert_after and not alerted:
                    log.critical(f"{log_prefix} COMPENSATION STUCK after {failures} attempts. "
                                 f"{quantity} x {item_id} still decremented. MANUAL ACTION MAY BE REQUIRED!")
                    self.alerts.publish_alert(order_id, item_id, quantity, failures, str(e))
                    alerted = True
                if self.policy.exhausted(failures - 1):
                    if not alerted:
                        self.alerts.publish_alert(order_id, item_id, quantity, failures, str(e))
                    raise CompensationFailed(order_id, e) from e
                self.sleep(self.policy.backoff(failures - 1))
                continue

            if alerted:
                log.warning(f"{log_prefix} Compensation recovered after {failures} failed attempts.")
            log.info(f"{log_prefix} Compensation done: {mutation.quantity} x {item_id} restored "
                     f"(available={mutation.available}, version={mutation.version}).")
            return mutation
