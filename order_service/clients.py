"""
This module provides communication clients for external systems used by the order service:
- Inventory Service (REST API), the Stock Ledger authority
- Operator alerting (RabbitMQ), for compensations that need manual attention
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import threading
import time
from typing import Optional

import httpx
import pika
import pika.exceptions

from contracts.errors import (
    DuplicateOrder,
    InsufficientStock,
    ItemNotFound,
    StorageUnavailable,
    VersionConflict,
)
from contracts.stock import StockLevel, StockMutation

from .config import (
    HTTP_TIMEOUT,
    INVENTORY_SERVICE_URL,
    RABBITMQ_HOST,
    RABBITMQ_PASSWORD,
    RABBITMQ_USER,
    RECONCILIATION_QUEUE,
)

log = logging.getLogger(__name__)


# --- Inventory Client (REST) ---
class InventoryClient:
    """
    Client for the Inventory Service (REST API).

    Offers the same three operations as the in-process StockLedger and raises
    the same exceptions, so the reservation protocol works against either.
    Transport failures (timeouts, refused connections, 5xx answers) surface as
    StorageUnavailable: the caller cannot tell whether the request was applied.
    """

    def __init__(self, base_url: str = INVENTORY_SERVICE_URL, client: Optional[httpx.Client] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Inventory Service base URL.
            client (httpx.Client, optional): Preconfigured client to use instead.
        """
        if client is None:
            timeout_config = httpx.Timeout(HTTP_TIMEOUT, read=HTTP_TIMEOUT)
            client = httpx.Client(base_url=base_url, timeout=timeout_config)
        self.client = client

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def _send(self, method: str, path: str, order_id: Optional[str], **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            log.error(f"[Order: {order_id}] Inventory Service timeout on {method} {path}. Outcome unknown.")
            raise StorageUnavailable(f"Inventory Service timeout: {e.__class__.__name__}") from e
        except httpx.TransportError as e:
            log.error(f"[Order: {order_id}] Inventory Service unreachable on {method} {path}: {e}")
            raise StorageUnavailable(f"Inventory Service unreachable: {e.__class__.__name__}") from e

        if response.status_code >= 500:
            log.error(f"[Order: {order_id}] Inventory Service error {response.status_code} on {method} {path}.")
            raise StorageUnavailable(f"Inventory Service answered {response.status_code}")
        return response

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            detail = response.json().get("detail")
        except ValueError:
            return ""
        return detail.get("code", "") if isinstance(detail, dict) else ""

    def read_stock(self, item_id: str) -> StockLevel:
        """
        Reads the current stock and version of an item.

        Raises:
            ItemNotFound: If the item does not exist.
            StorageUnavailable: If the Inventory Service cannot be reached.
        """
        response = self._send("GET", f"/v1/stock/{item_id}", None)
        if response.status_code == 404:
            raise ItemNotFound(item_id)
        response.raise_for_status()
        return StockLevel(**response.json())

    def conditional_decrement(
            self,
            item_id: str,
            quantity: int,
            expected_version: int,
            order_id: Optional[str] = None,
    ) -> StockMutation:
        """
        Sends a conditional decrement.

        Raises:
            ItemNotFound, InsufficientStock, VersionConflict, DuplicateOrder:
                Rejections reported by the Inventory Service.
            StorageUnavailable: No answer; the decrement may or may not have been
                applied. Retrying with the same order_id is safe.
            httpx.HTTPStatusError: Any other 4xx answer (malformed request).
        """
        payload = {"quantity": quantity, "expectedVersion": expected_version, "orderId": order_id}
        response = self._send("POST", f"/v1/stock/{item_id}/decrement", order_id, json=payload)

        if response.status_code in (404, 409):
            code = self._error_code(response)
            if code == ItemNotFound.code:
                raise ItemNotFound(item_id)
            if code == InsufficientStock.code:
                raise InsufficientStock(item_id, quantity)
            if code == VersionConflict.code:
                raise VersionConflict(item_id, expected_version)
            if code == DuplicateOrder.code:
                raise DuplicateOrder(order_id)
        response.raise_for_status()
        return StockMutation(**response.json())

    def restore(self, item_id: str, quantity: int, order_id: Optional[str] = None) -> StockMutation:
        """
        Sends a compensating restore. Never fail silently: every failure is raised
        so the compensation controller can retry it.

        Raises:
            ItemNotFound: If the item does not exist.
            StorageUnavailable: If the Inventory Service cannot be reached.
        """
        payload = {"quantity": quantity, "orderId": order_id}
        response = self._send("POST", f"/v1/stock/{item_id}/restore", order_id, json=payload)
        if response.status_code == 404:
            raise ItemNotFound(item_id)
        response.raise_for_status()
        return StockMutation(**response.json())


# --- Alert Publisher (MQ) ---
class AlertPublisher:
    """
    Publishes operator alerts to RabbitMQ.

    Alerts are sent as persistent JSON messages to the reconciliation queue.
    Publishing is best effort: a broker outage is logged at CRITICAL and never
    interrupts the compensation that raised the alert.

    One publisher is shared by request handlers and the reconciliation thread.
    A pika BlockingConnection is not thread-safe, so connecting, publishing and
    closing are serialized behind a lock.
    """

    def __init__(self, host: str = RABBITMQ_HOST, queue: str = RECONCILIATION_QUEUE):
        self.host = host
        self.queue = queue
        self.connection = None
        self.channel = None
        self._lock = threading.Lock()

    def _connect(self):
        """
        Establishes a RabbitMQ connection and declares the alert queue.

        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
        self.connection = pika.BlockingConnection(
            pika.ConnectionParameters(host=self.host, credentials=credentials, heartbeat=60)
        )
        self.channel = self.connection.channel()
        self.channel.queue_declare(queue=self.queue, durable=True)
        log.info("Alert publisher connected to RabbitMQ.")

    def publish_alert(self, order_id: str, item_id: str, quantity: int, attempts: int, error: str) -> bool:
        """
        Publishes a reconciliation alert.

        Returns:
            bool: True if the message reached the broker.
        """
        message = {
            "type": "CompensationStuck",
            "orderId": order_id,
            "itemId": item_id,
            "quantity": quantity,
            "attempts": attempts,
            "error": error,
            "alertTimestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        with self._lock:
            try:
                if not self.connection or self.connection.is_closed:
                    self._connect()

                self.channel.basic_publish(
                    exchange='',
                    routing_key=self.queue,
                    body=json.dumps(message),
                    properties=pika.BasicProperties(delivery_mode=2)  # persistent
                )
            except pika.exceptions.AMQPError as e:
                log.critical(f"[Order: {order_id}] ALERT NOT DELIVERED ({e!r}). Alert content: {message}")
                self.connection = None
                return False
        log.warning(f"[Order: {order_id}] Reconciliation alert published to '{self.queue}'.")
        return True

    def close(self):
        with self._lock:
            if self.connection and self.connection.is_open:
                self.connection.close()
